"""
Daily scan quota tracking.

Each user gets a per-UTC-day budget of emails scanned, classifications and
extractions (default 300 / 300 / 30). Counters live in the scan_quota_usage
table keyed by (user_id, usage_date), so a new day starts from zero without a
reset job.

Reservation is a single BEGIN IMMEDIATE read-modify-write, so two connections
of the same user scanning concurrently can never push a counter past its cap.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import NamedTuple

from toolsight.config import (
    QUOTA_DAILY_CLASSIFICATIONS,
    QUOTA_DAILY_EMAILS,
    QUOTA_DAILY_EXTRACTIONS,
)
from toolsight.infrastructure.database import db_transaction, get_db_connection, retry_on_db_lock
from toolsight.observability.logging import get_logger
from toolsight.observability.telemetry import counter

logger = get_logger(__name__)


class QuotaKind(str, Enum):
    """Unit of work counted against the daily quota (value is the column name)."""

    EMAILS = "emails_scanned"
    CLASSIFICATIONS = "classifications"
    EXTRACTIONS = "extractions"


@dataclass(frozen=True)
class QuotaLimits:
    emails: int = QUOTA_DAILY_EMAILS
    classifications: int = QUOTA_DAILY_CLASSIFICATIONS
    extractions: int = QUOTA_DAILY_EXTRACTIONS

    def for_kind(self, kind: QuotaKind) -> int:
        if kind is QuotaKind.EMAILS:
            return self.emails
        if kind is QuotaKind.CLASSIFICATIONS:
            return self.classifications
        return self.extractions


class QuotaStatus(NamedTuple):
    """Current quota usage for a user."""

    emails_scanned: int
    classifications: int
    extractions: int
    limits: QuotaLimits
    is_allowed: bool
    reason: str | None

    def remaining(self, kind: QuotaKind) -> int:
        used = getattr(self, kind.value)
        return max(0, self.limits.for_kind(kind) - used)


class ScanQuotaGuard:
    """Checks and reserves per-user daily quota."""

    def __init__(
        self,
        limits: QuotaLimits | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.limits = limits or QuotaLimits()
        self._clock = clock or (lambda: datetime.now(UTC))

    def _usage_date(self) -> str:
        return self._clock().astimezone(UTC).date().isoformat()

    @retry_on_db_lock()
    def check(self, user_id: str) -> QuotaStatus:
        """
        Read today's usage for a user.

        A scan is allowed while both the email and classification budgets have
        room; the extraction budget only limits extraction, not scanning.
        """
        with get_db_connection() as conn:
            row = conn.execute(
                """
                SELECT emails_scanned, classifications, extractions
                FROM scan_quota_usage
                WHERE user_id = ? AND usage_date = ?
                """,
                (user_id, self._usage_date()),
            ).fetchone()

        emails, classifications, extractions = (row[0], row[1], row[2]) if row else (0, 0, 0)

        reason = None
        if emails >= self.limits.emails:
            reason = "Daily limit reached: emails"
        elif classifications >= self.limits.classifications:
            reason = "Daily limit reached: classifications"

        return QuotaStatus(
            emails_scanned=emails,
            classifications=classifications,
            extractions=extractions,
            limits=self.limits,
            is_allowed=reason is None,
            reason=reason,
        )

    @retry_on_db_lock()
    def reserve(self, user_id: str, kind: QuotaKind, requested: int = 1) -> int:
        """
        Atomically reserve up to ``requested`` units of ``kind``.

        Returns:
            Number of units granted (0 when the cap is already reached).

        Side Effects:
            - Upserts the user's scan_quota_usage row for today
        """
        if requested <= 0:
            return 0

        usage_date = self._usage_date()
        limit = self.limits.for_kind(kind)
        column = kind.value
        now = datetime.now(UTC).isoformat()

        with db_transaction(immediate=True) as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO scan_quota_usage (user_id, usage_date, updated_at)
                VALUES (?, ?, ?)
                """,
                (user_id, usage_date, now),
            )
            used = conn.execute(
                f"SELECT {column} FROM scan_quota_usage WHERE user_id = ? AND usage_date = ?",
                (user_id, usage_date),
            ).fetchone()[0]

            granted = max(0, min(requested, limit - used))
            if granted:
                conn.execute(
                    f"""
                    UPDATE scan_quota_usage
                    SET {column} = {column} + ?, updated_at = ?
                    WHERE user_id = ? AND usage_date = ?
                    """,
                    (granted, now, user_id, usage_date),
                )

        if granted < requested:
            counter(f"quota.{kind.value}.limited")
            logger.info(
                "Quota %s for user %s: requested %d, granted %d (limit %d)",
                kind.value,
                user_id,
                requested,
                granted,
                limit,
            )
        return granted

    @retry_on_db_lock()
    def release(self, user_id: str, kind: QuotaKind, amount: int) -> None:
        """Hand back reserved units that were never used. Never drops below zero."""
        if amount <= 0:
            return

        column = kind.value
        with db_transaction(immediate=True) as conn:
            conn.execute(
                f"""
                UPDATE scan_quota_usage
                SET {column} = MAX(0, {column} - ?), updated_at = ?
                WHERE user_id = ? AND usage_date = ?
                """,
                (amount, datetime.now(UTC).isoformat(), user_id, self._usage_date()),
            )
        counter(f"quota.{kind.value}.released", amount)
        logger.info("Released %d unused %s for user %s", amount, kind.value, user_id)
