"""Physical cleanup of reports long past their visibility window.

Expired reports are already invisible; this only reclaims storage. The
cutoff is never allowed inside the visibility window.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from modules.lifecycle import as_utc

logger = logging.getLogger(__name__)


def retention_cutoff(manager, retention: timedelta, now: Optional[datetime] = None) -> datetime:
    now = as_utc(now if now is not None else manager.clock())
    return now - max(retention, manager.visibility_window)


def purge_expired(manager, retention: timedelta, now: Optional[datetime] = None, dry_run: bool = False) -> int:
    """Delete reports created before the retention cutoff. Returns the count."""
    cutoff = retention_cutoff(manager, retention, now)
    if dry_run:
        count = manager.store.count_created_before(cutoff)
        logger.info("Dry run: %d reports created before %s would be purged", count, cutoff.isoformat())
        return count
    return manager.store.delete_created_before(cutoff)
