# modules/lifecycle.py
"""Rules for creating, confirming, commenting on and ageing out reports."""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Union

from errors import NotFoundError, PersistenceError, ValidationError, WriteConflictError
from modules.identity import normalize_token, token_prefix
from schemas import Category, Comment, Heat, Location, Report, ReportDraft

logger = logging.getLogger(__name__)

VISIBILITY_WINDOW = timedelta(hours=2)
CORROBORATION_THRESHOLD = 3
MAX_DESCRIPTION_LENGTH = 200
MAX_COMMENT_LENGTH = 120
MAX_TOKEN_LENGTH = 128


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(moment: datetime) -> datetime:
    # Naive datetimes are taken to be UTC, matching how the store encodes them.
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _truncate_to_millis(moment: datetime) -> datetime:
    # The store keeps millisecond precision; keep returned reports identical to stored ones.
    return moment.replace(microsecond=moment.microsecond // 1000 * 1000)


@dataclass(frozen=True)
class VoteApplied:
    report: Report


@dataclass(frozen=True)
class DuplicateVoteNoop:
    """The token had already confirmed; nothing was written."""

    report: Report


ConfirmResult = Union[VoteApplied, DuplicateVoteNoop]


class ReportLifecycleManager:
    def __init__(
        self,
        store,
        clock: Callable[[], datetime] = utcnow,
        visibility_window: timedelta = VISIBILITY_WINDOW,
        corroboration_threshold: int = CORROBORATION_THRESHOLD,
        max_write_attempts: int = 5,
    ):
        self.store = store
        self.clock = clock
        self.visibility_window = visibility_window
        self.corroboration_threshold = corroboration_threshold
        self.max_write_attempts = max(1, max_write_attempts)

    @classmethod
    def from_settings(cls, store, settings, clock: Callable[[], datetime] = utcnow) -> "ReportLifecycleManager":
        return cls(
            store,
            clock=clock,
            visibility_window=timedelta(minutes=settings.visibility_window_minutes),
            corroboration_threshold=settings.corroboration_threshold,
            max_write_attempts=settings.write_max_attempts,
        )

    def _now(self, now: Optional[datetime] = None) -> datetime:
        return as_utc(now if now is not None else self.clock())

    # --- Commands ---

    def submit_report(
        self,
        location: Location,
        category: Optional[Category],
        description: Optional[str],
        author_token: str,
    ) -> Report:
        location = self._validate_location(location)
        category = self._validate_category(category)
        description = self._validate_description(description)
        token = self._validate_token(author_token)

        draft = ReportDraft(
            location=location,
            category=category,
            description=description,
            created_at=_truncate_to_millis(self._now()),
            author_token=token,
        )
        report_id = self.store.insert(draft)
        logger.info("Report %s submitted by #%s (%s)", report_id, token_prefix(token), category.value)
        return Report(id=report_id, **draft.model_dump())

    def confirm_report(self, report_id: str, author_token: str) -> ConfirmResult:
        """Add the token to the report's voters at most once.

        Membership is checked against freshly read state and the write is
        conditional on that state being unchanged, so two racing confirms
        can never both count.
        """
        token = self._validate_token(author_token)
        for attempt in range(1, self.max_write_attempts + 1):
            report = self.get_report(report_id)
            if token in report.voter_tokens:
                logger.debug("Duplicate confirm of %s by #%s ignored", report_id, token_prefix(token))
                return DuplicateVoteNoop(report)

            voters = report.voter_tokens | {token}
            try:
                updated = self.store.update(
                    report_id,
                    {"voter_tokens": voters, "confirmations": len(voters)},
                    expected_version=report.version,
                )
            except WriteConflictError:
                logger.info("Confirm of %s raced another write (attempt %d)", report_id, attempt)
                continue
            logger.info("Report %s confirmed by #%s (%d)", report_id, token_prefix(token), updated.confirmations)
            return VoteApplied(updated)

        raise PersistenceError(f"Report {report_id} kept changing; confirmation not saved")

    def add_comment(self, report_id: str, text: str, author_token: str) -> Report:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Comment text is empty")
        if len(text) > MAX_COMMENT_LENGTH:
            raise ValidationError(f"Comment exceeds {MAX_COMMENT_LENGTH} characters")
        token = self._validate_token(author_token)

        for attempt in range(1, self.max_write_attempts + 1):
            report = self.get_report(report_id)
            comment = Comment(
                text=text,
                author_token_prefix=token_prefix(token),
                timestamp=_truncate_to_millis(self._now()),
            )
            try:
                updated = self.store.update(
                    report_id,
                    {"comments": report.comments + (comment,)},
                    expected_version=report.version,
                )
            except WriteConflictError:
                logger.info("Comment on %s raced another write (attempt %d)", report_id, attempt)
                continue
            logger.info("Comment added to %s by #%s", report_id, comment.author_token_prefix)
            return updated

        raise PersistenceError(f"Report {report_id} kept changing; comment not saved")

    # --- Queries ---

    def is_visible(self, report: Report, now: Optional[datetime] = None) -> bool:
        return self._now(now) - report.created_at < self.visibility_window

    def expires_at(self, report: Report) -> datetime:
        return report.created_at + self.visibility_window

    def visible_reports(self, now: Optional[datetime] = None) -> List[Report]:
        now = self._now(now)
        reports = self.store.query_range(now - self.visibility_window)
        visible = [r for r in reports if self.is_visible(r, now)]
        # newest first, id as tie-breaker so repeated calls agree
        visible.sort(key=lambda r: r.id)
        visible.sort(key=lambda r: r.created_at, reverse=True)
        return visible

    def get_report(self, report_id: str, now: Optional[datetime] = None) -> Report:
        report = self.store.get(report_id) if report_id else None
        if report is None:
            raise NotFoundError(f"Report {report_id} not found")
        if not self.is_visible(report, now):
            raise NotFoundError(f"Report {report_id} has expired")
        return report

    def classify_heat(self, report: Report) -> Heat:
        if report.confirmations >= self.corroboration_threshold:
            return Heat.CORROBORATED
        return Heat.NORMAL

    def summary(self, now: Optional[datetime] = None) -> dict:
        reports = self.visible_reports(now)
        corroborated = sum(1 for r in reports if self.classify_heat(r) is Heat.CORROBORATED)
        return {"active": len(reports), "corroborated": corroborated}

    # --- Validation ---

    @staticmethod
    def _validate_location(location) -> Location:
        if location is None:
            raise ValidationError("Location is required")
        lat, lng = location.latitude, location.longitude
        if not (math.isfinite(lat) and math.isfinite(lng)):
            raise ValidationError("Coordinates must be finite numbers")
        if not -90.0 <= lat <= 90.0:
            raise ValidationError("Latitude must be between -90 and 90")
        if not -180.0 <= lng <= 180.0:
            raise ValidationError("Longitude must be between -180 and 180")
        return location

    @staticmethod
    def _validate_category(category) -> Category:
        if category is None or category == "":
            return Category.UNSPECIFIED
        try:
            return Category(category)
        except ValueError:
            raise ValidationError(f"Unknown category: {category}") from None

    @staticmethod
    def _validate_description(description: Optional[str]) -> Optional[str]:
        if description is None:
            return None
        description = description.strip()
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(f"Description exceeds {MAX_DESCRIPTION_LENGTH} characters")
        return description or None

    @staticmethod
    def _validate_token(token: Optional[str]) -> str:
        token = normalize_token(token)
        if not token:
            raise ValidationError("Device token is required")
        if len(token) > MAX_TOKEN_LENGTH:
            raise ValidationError(f"Device token exceeds {MAX_TOKEN_LENGTH} characters")
        return token
