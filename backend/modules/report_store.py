# modules/report_store.py
import itertools
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from database import session_scope
from errors import NotFoundError, PersistenceError, WriteConflictError
from models import ReportRecord
from schemas import Comment, Location, Report, ReportDraft

logger = logging.getLogger(__name__)

VOTE_FIELDS = frozenset({"confirmations", "voter_tokens"})
COMMENT_FIELDS = frozenset({"comments"})


def to_millis(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return round(moment.timestamp() * 1000)


def from_millis(value: int) -> datetime:
    return datetime.fromtimestamp(value // 1000, tz=timezone.utc) + timedelta(milliseconds=value % 1000)


def _comment_to_json(comment: Comment) -> Dict:
    return {"text": comment.text, "author": comment.author_token_prefix, "ts": to_millis(comment.timestamp)}


def _comment_from_json(data: Dict) -> Comment:
    return Comment(text=data["text"], author_token_prefix=data["author"], timestamp=from_millis(data["ts"]))


def _to_domain(row: ReportRecord) -> Report:
    return Report(
        id=row.id,
        location=Location(latitude=row.latitude, longitude=row.longitude),
        category=row.category,
        description=row.description,
        created_at=from_millis(row.created_at),
        author_token=row.author_token,
        confirmations=row.confirmations,
        voter_tokens=frozenset(row.voters or []),
        comments=tuple(_comment_from_json(c) for c in (row.comments or [])),
        version=row.version,
    )


class Subscription:
    """Handle returned by ReportStore.subscribe."""

    def __init__(self, handle_id: int, on_change: Callable[[], None]):
        self.id = handle_id
        self.on_change = on_change
        self.active = True
        # held across the active check and the callback; re-entrant so a
        # callback may detach itself
        self.lock = threading.RLock()

    def __repr__(self):
        return f"<Subscription {self.id} active={self.active}>"


class ReportStore:
    """SQLAlchemy-backed report storage with a change-notification feed.

    Every committed write signals all current subscribers with no payload;
    subscribers are expected to re-query. Signals are delivered synchronously
    on the writer's thread, after the transaction has committed.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._subscribers: Dict[int, Subscription] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    # --- Writes ---

    def insert(self, draft: ReportDraft) -> str:
        record = ReportRecord(
            latitude=draft.location.latitude,
            longitude=draft.location.longitude,
            category=draft.category.value,
            description=draft.description,
            created_at=to_millis(draft.created_at),
            author_token=draft.author_token,
            confirmations=draft.confirmations,
            voters=sorted(draft.voter_tokens),
            comments=[_comment_to_json(c) for c in draft.comments],
            version=0,
        )
        try:
            with session_scope(self._session_factory) as db:
                db.add(record)
                db.flush()
                report_id = record.id
        except SQLAlchemyError as exc:
            logger.error("Insert failed: %s", exc)
            raise PersistenceError("Could not save report") from exc

        logger.info("Inserted report %s", report_id)
        self._notify()
        return report_id

    def update(self, report_id: str, patch: Dict, expected_version: Optional[int] = None) -> Report:
        """Apply a vote or comment patch.

        With ``expected_version`` the write only lands if nobody else has
        written the record since it was read; otherwise WriteConflictError.
        """
        values = self._patch_values(patch)
        try:
            with session_scope(self._session_factory) as db:
                stmt = update(ReportRecord).where(ReportRecord.id == report_id)
                if expected_version is not None:
                    stmt = stmt.where(ReportRecord.version == expected_version)
                stmt = stmt.values(version=ReportRecord.version + 1, **values)
                result = db.execute(stmt.execution_options(synchronize_session=False))
                if result.rowcount == 0:
                    if db.get(ReportRecord, report_id) is None:
                        raise NotFoundError(f"Report {report_id} not found")
                    raise WriteConflictError(f"Report {report_id} changed since version {expected_version}")
                row = db.get(ReportRecord, report_id)
                report = _to_domain(row)
        except SQLAlchemyError as exc:
            logger.error("Update of report %s failed: %s", report_id, exc)
            raise PersistenceError("Could not update report") from exc

        logger.debug("Updated report %s to version %s", report_id, report.version)
        self._notify()
        return report

    def delete_created_before(self, cutoff: datetime) -> int:
        """Physically remove reports created before ``cutoff``. Retention only."""
        try:
            with session_scope(self._session_factory) as db:
                result = db.execute(
                    delete(ReportRecord)
                    .where(ReportRecord.created_at < to_millis(cutoff))
                    .execution_options(synchronize_session=False)
                )
                removed = result.rowcount
        except SQLAlchemyError as exc:
            logger.error("Purge failed: %s", exc)
            raise PersistenceError("Could not purge reports") from exc

        if removed:
            logger.info("Purged %d reports created before %s", removed, cutoff.isoformat())
            self._notify()
        return removed

    @staticmethod
    def _patch_values(patch: Dict) -> Dict:
        keys = frozenset(patch)
        if keys == COMMENT_FIELDS:
            return {"comments": [_comment_to_json(c) for c in patch["comments"]]}
        if keys == VOTE_FIELDS:
            voters = sorted(patch["voter_tokens"])
            if patch["confirmations"] != len(voters):
                raise ValueError("confirmations must equal the number of voter tokens")
            return {"confirmations": patch["confirmations"], "voters": voters}
        raise ValueError(f"Unsupported patch fields: {sorted(keys)}")

    # --- Reads ---

    def get(self, report_id: str) -> Optional[Report]:
        try:
            with session_scope(self._session_factory) as db:
                row = db.get(ReportRecord, report_id)
                return _to_domain(row) if row is not None else None
        except SQLAlchemyError as exc:
            logger.error("Lookup of report %s failed: %s", report_id, exc)
            raise PersistenceError("Could not load report") from exc

    def query_range(self, min_created_at: datetime) -> List[Report]:
        """Reports with created_at >= min_created_at, newest first."""
        stmt = (
            select(ReportRecord)
            .where(ReportRecord.created_at >= to_millis(min_created_at))
            .order_by(ReportRecord.created_at.desc(), ReportRecord.id)
        )
        try:
            with session_scope(self._session_factory) as db:
                return [_to_domain(row) for row in db.scalars(stmt)]
        except SQLAlchemyError as exc:
            logger.error("Range query failed: %s", exc)
            raise PersistenceError("Could not load reports") from exc

    def count_created_before(self, cutoff: datetime) -> int:
        stmt = select(func.count()).select_from(ReportRecord).where(ReportRecord.created_at < to_millis(cutoff))
        try:
            with session_scope(self._session_factory) as db:
                return db.scalar(stmt)
        except SQLAlchemyError as exc:
            logger.error("Count query failed: %s", exc)
            raise PersistenceError("Could not count reports") from exc

    # --- Change feed ---

    def subscribe(self, on_change: Callable[[], None]) -> Subscription:
        with self._lock:
            subscription = Subscription(next(self._ids), on_change)
            self._subscribers[subscription.id] = subscription
        logger.debug("Subscriber %s attached", subscription.id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach a subscriber. Once this returns its callback never runs again;
        if the callback is running on another thread this waits for it."""
        with self._lock:
            self._subscribers.pop(subscription.id, None)
        with subscription.lock:
            subscription.active = False
        logger.debug("Subscriber %s detached", subscription.id)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _notify(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers.values())
        for subscription in subscribers:
            with subscription.lock:
                # may have been detached after the snapshot was taken
                if not subscription.active:
                    continue
                try:
                    subscription.on_change()
                except Exception:
                    logger.exception("Subscriber %s failed on change signal", subscription.id)
