# modules/projector.py
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple

from errors import PersistenceError
from schemas import Report

logger = logging.getLogger(__name__)

Publisher = Callable[[List[Report]], Awaitable[None]]


def _fingerprint(reports: List[Report]) -> Tuple[Tuple[str, int], ...]:
    return tuple((r.id, r.version) for r in reports)


class ClientViewProjector:
    """Live list of visible reports for one connected client.

    The view is rebuilt from the store whenever the store signals a change
    and is re-filtered on a fixed interval so that reports age out even when
    the store is quiet. The presentation layer only ever reads it.
    """

    def __init__(self, manager, refilter_interval: float = 60.0):
        self.manager = manager
        self.refilter_interval = refilter_interval
        self._view: List[Report] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._changed: Optional[asyncio.Event] = None

    @property
    def view(self) -> List[Report]:
        return list(self._view)

    def refresh(self, now: Optional[datetime] = None) -> bool:
        """Replace the view with a fresh store query. True if it changed."""
        reports = self.manager.visible_reports(now)
        changed = _fingerprint(reports) != _fingerprint(self._view)
        self._view = reports
        return changed

    def refilter(self, now: Optional[datetime] = None) -> bool:
        """Drop reports that have aged out, without touching the store."""
        kept = [r for r in self._view if self.manager.is_visible(r, now)]
        changed = len(kept) != len(self._view)
        self._view = kept
        return changed

    def _on_store_change(self) -> None:
        # Called on whichever thread performed the write.
        loop, changed = self._loop, self._changed
        if loop is None or changed is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(changed.set)

    async def _refresh_safely(self) -> bool:
        try:
            return await asyncio.to_thread(self.refresh)
        except PersistenceError as exc:
            logger.warning("Keeping previous view, refresh failed: %s", exc)
            return False

    async def run(self, publish: Publisher) -> None:
        """Publish the initial view, then every change, until cancelled."""
        self._loop = asyncio.get_running_loop()
        self._changed = asyncio.Event()
        subscription = self.manager.store.subscribe(self._on_store_change)
        try:
            await self._refresh_safely()
            await publish(self.view)
            while True:
                try:
                    await asyncio.wait_for(self._changed.wait(), timeout=self.refilter_interval)
                except asyncio.TimeoutError:
                    changed = self.refilter()
                else:
                    self._changed.clear()
                    changed = await self._refresh_safely()
                if changed:
                    await publish(self.view)
        finally:
            self.manager.store.unsubscribe(subscription)
            self._loop = None
            self._changed = None
