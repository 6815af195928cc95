"""
Scan Orchestrator - fetch → classify → extract → validate → upsert per
connection, then interruption rules and watermarks.

Connections are scanned one at a time unless max_workers > 1; messages within
a connection are always processed sequentially with pacing between LLM-bound
calls. A connection whose scan fails is recorded as failed and the run moves on.
"""

from __future__ import annotations

import concurrent.futures
import sqlite3
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from dateutil.relativedelta import relativedelta

from toolsight.config import (
    CLASSIFICATION_MIN_CONFIDENCE,
    SCAN_DAILY_FALLBACK_DAYS,
    SCAN_MAX_WORKERS,
    SCAN_PACING_SECONDS,
)
from toolsight.detection.classifier import EmailClassifier, get_classifier
from toolsight.detection.extractor import ToolDataExtractor, get_extractor
from toolsight.detection.lexicon import DetectionLexicon, load_lexicon
from toolsight.detection.validator import validate_extraction
from toolsight.errors import LLMRateLimitError, MailboxAPIError, MailboxAuthError
from toolsight.infrastructure.scan_quota import QuotaKind, ScanQuotaGuard
from toolsight.interruptions.rules import InterruptionRuleEngine
from toolsight.mailbox.client import MailboxGateway
from toolsight.mailbox.connection_repository import ConnectionRepository
from toolsight.mailbox.models import EmailConnection, RawMessage
from toolsight.observability.logging import get_logger
from toolsight.observability.telemetry import counter, log_event, time_block
from toolsight.scanning.models import ExtractionLogEntry, ScanLog, ScanResult, ScanStatus, ScanType
from toolsight.scanning.repository import ExtractionLogRepository, ScanLogRepository
from toolsight.tools.service import ToolUpsertService
from toolsight.utils.redaction import redact_subject

logger = get_logger(__name__)

CLASSIFICATION_LIMIT_REASON = "Daily limit reached: classifications"
EMAIL_LIMIT_REASON = "Daily limit reached: emails"


class ConnectionNotFoundError(LookupError):
    """Requested connection does not exist or is inactive."""


@dataclass
class _ScanProgress:
    emails_scanned: int = 0
    tools_detected: int = 0
    tools_updated: int = 0
    quota_limited: bool = False
    stop_reason: str | None = None
    newest_processed: datetime | None = None

    def stop(self, reason: str) -> None:
        self.quota_limited = True
        self.stop_reason = reason


class ScanOrchestrator:
    """Runs scans for one or all active connections."""

    def __init__(
        self,
        gateway: MailboxGateway | None = None,
        classifier: EmailClassifier | None = None,
        extractor: ToolDataExtractor | None = None,
        upsert_service: ToolUpsertService | None = None,
        rule_engine: InterruptionRuleEngine | None = None,
        quota_guard: ScanQuotaGuard | None = None,
        lexicon: DetectionLexicon | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        pacing_seconds: float = SCAN_PACING_SECONDS,
        max_workers: int = SCAN_MAX_WORKERS,
        clock: Callable[[], datetime] | None = None,
    ):
        lexicon = lexicon or load_lexicon()
        self.gateway = gateway or MailboxGateway()
        self.classifier = classifier or get_classifier(lexicon)
        self.extractor = extractor or get_extractor(lexicon)
        self.upsert_service = upsert_service or ToolUpsertService(lexicon)
        self.rule_engine = rule_engine or InterruptionRuleEngine()
        self.quota_guard = quota_guard or ScanQuotaGuard()
        self.sleep_fn = sleep_fn
        self.pacing_seconds = pacing_seconds
        self.max_workers = max(1, max_workers)
        self._clock = clock or (lambda: datetime.now(UTC))

    def run_scan(
        self, connection_id: str | None = None, scan_type: ScanType | str = ScanType.DAILY
    ) -> list[ScanResult]:
        """
        Scan one connection, or every active connection when ``connection_id`` is None.

        Returns:
            One ScanResult per connection, in connection order.

        Raises:
            ConnectionNotFoundError: ``connection_id`` is unknown or inactive
            ValueError: ``scan_type`` is not a known scan type
        """
        scan_type = ScanType(scan_type)

        if connection_id is not None:
            connection = ConnectionRepository.get_by_id(connection_id)
            if connection is None or not connection.is_active:
                raise ConnectionNotFoundError(f"No active connection {connection_id}")
            connections = [connection]
        else:
            connections = ConnectionRepository.list_active()

        log_event("scan.run.started", connections=len(connections), scan_type=scan_type.value)

        with time_block("scan.run.latency"):
            if self.max_workers > 1 and len(connections) > 1:
                with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                    results = list(
                        pool.map(lambda c: self.scan_connection(c, scan_type), connections)
                    )
            else:
                results = [self.scan_connection(c, scan_type) for c in connections]

        counter("scan.run.count")
        return results

    def compute_since(
        self, connection: EmailConnection, scan_type: ScanType, now: datetime
    ) -> datetime:
        """Lower bound on received time for this scan."""
        if scan_type == ScanType.BACKFILL:
            return now - relativedelta(months=connection.backfill_months)
        if connection.last_scanned_email_date is not None:
            return connection.last_scanned_email_date
        return now - timedelta(days=SCAN_DAILY_FALLBACK_DAYS)

    def scan_connection(self, connection: EmailConnection, scan_type: ScanType) -> ScanResult:
        """
        Scan a single connection. Never raises.

        Side Effects:
            - Writes an email_scan_logs row (unless skipped for quota)
            - Reserves quota, writes tools, extraction logs and interruptions
            - Advances the connection's watermarks on success
        """
        try:
            quota = self.quota_guard.check(connection.user_id)
            if not quota.is_allowed:
                counter("scan.skipped.quota")
                logger.info("Skipping connection %s: %s", connection.id, quota.reason)
                return ScanResult.skipped(connection.id, quota.reason or EMAIL_LIMIT_REASON)

            now = self._clock()
            scan_log = ScanLogRepository.start(
                ScanLog(
                    id=str(uuid.uuid4()),
                    connection_id=connection.id,
                    scan_type=scan_type,
                    started_at=now,
                )
            )
        except Exception as e:
            # No scan log exists yet, so only the result carries the error
            counter("scan.connection.failed")
            logger.exception("Could not start scan for connection %s", connection.id)
            return ScanResult.failed(connection.id, f"Unexpected error: {e}")

        progress = _ScanProgress()

        try:
            with time_block("scan.connection.latency"):
                interruptions = self._scan(connection, scan_type, now, progress)
        except (MailboxAuthError, MailboxAPIError, LLMRateLimitError) as e:
            return self._fail(connection, scan_log, progress, str(e))
        except Exception as e:
            logger.exception("Unexpected error scanning connection %s", connection.id)
            return self._fail(connection, scan_log, progress, f"Unexpected error: {e}")

        try:
            ScanLogRepository.complete(
                scan_log.id,
                emails_scanned=progress.emails_scanned,
                tools_detected=progress.tools_detected,
                tools_updated=progress.tools_updated,
                quota_limited=progress.quota_limited,
                stop_reason=progress.stop_reason,
                completed_at=self._clock(),
            )
        except sqlite3.Error as e:
            return self._fail(connection, scan_log, progress, f"Unexpected error: {e}")
        counter("scan.connection.success")
        log_event(
            "scan.connection.completed",
            connection_id=connection.id,
            scan_type=scan_type.value,
            emails_scanned=progress.emails_scanned,
            tools_detected=progress.tools_detected,
            tools_updated=progress.tools_updated,
            interruptions=interruptions,
            quota_limited=progress.quota_limited,
        )
        return ScanResult(
            connection_id=connection.id,
            status=ScanStatus.SUCCESS.value,
            scan_log_id=scan_log.id,
            emails_scanned=progress.emails_scanned,
            tools_detected=progress.tools_detected,
            tools_updated=progress.tools_updated,
            interruptions_created=interruptions,
            quota_limited=progress.quota_limited,
            stop_reason=progress.stop_reason,
        )

    def _scan(
        self,
        connection: EmailConnection,
        scan_type: ScanType,
        now: datetime,
        progress: _ScanProgress,
    ) -> int:
        since = self.compute_since(connection, scan_type, now)
        messages = self.gateway.fetch_messages(connection, since)

        watermark = connection.last_scanned_email_date
        if scan_type != ScanType.BACKFILL and watermark is not None:
            # Messages at or before the watermark were handled by an earlier scan
            messages = [m for m in messages if m.received_at > watermark]

        granted = self.quota_guard.reserve(connection.user_id, QuotaKind.EMAILS, len(messages))
        if granted < len(messages):
            logger.info(
                "Connection %s: email quota allows %d of %d messages",
                connection.id,
                granted,
                len(messages),
            )
            progress.stop(EMAIL_LIMIT_REASON)
            messages = messages[:granted]

        try:
            for message in messages:
                if not self._process_message(connection, message, progress):
                    break
        finally:
            self._release_unused_emails(connection, granted - progress.emails_scanned)

        interruptions = self.rule_engine.generate_interruptions(connection.organization_id, now)

        ConnectionRepository.update_watermarks(
            connection.id,
            last_scan_at=self._clock(),
            last_scanned_email_date=progress.newest_processed,
            last_backfill_at=now if scan_type == ScanType.BACKFILL else None,
        )
        return len(interruptions)

    def _process_message(
        self, connection: EmailConnection, message: RawMessage, progress: _ScanProgress
    ) -> bool:
        """Run one message through the pipeline. Returns False to stop the scan."""
        if not self.quota_guard.reserve(connection.user_id, QuotaKind.CLASSIFICATIONS):
            progress.stop(CLASSIFICATION_LIMIT_REASON)
            return False

        classification = self.classifier.classify(message)
        progress.emails_scanned += 1
        if progress.newest_processed is None or message.received_at > progress.newest_processed:
            progress.newest_processed = message.received_at
        self._pace()

        entry = ExtractionLogEntry(
            user_id=connection.user_id,
            connection_id=connection.id,
            email_id=message.id,
            email_subject=message.subject,
            classification_confidence=classification.confidence,
        )

        if (
            not classification.is_tool_related
            or classification.confidence < CLASSIFICATION_MIN_CONFIDENCE
        ):
            counter("scan.message.not_relevant")
            entry.failure_reason = "not_tool_related"
            self._append_log(entry)
            return True

        if not self.quota_guard.reserve(connection.user_id, QuotaKind.EXTRACTIONS):
            counter("scan.message.extraction_quota_exhausted")
            entry.failure_reason = "extraction_quota_exhausted"
            self._append_log(entry)
            return True

        entry.extraction_attempted = True
        extraction = self.extractor.extract(message)
        self._pace()
        entry.extraction_success = extraction.vendor_name is not None

        validated = validate_extraction(extraction, today=self._clock().date())
        if validated is None:
            entry.failure_reason = "Validation failed"
            self._append_log(entry)
            return True
        entry.validation_passed = True

        try:
            result = self.upsert_service.upsert(
                connection.organization_id, validated, message, connection
            )
        except (sqlite3.Error, ValueError) as e:
            counter("scan.upsert.failed")
            logger.error(
                "Upsert failed for '%s' on connection %s: %s",
                redact_subject(message.subject),
                connection.id,
                e,
            )
            entry.failure_reason = f"upsert_failed: {e}"[:200]
            self._append_log(entry)
            return True

        if result.created:
            progress.tools_detected += 1
        elif result.updated:
            progress.tools_updated += 1
        self._append_log(entry)
        return True

    def _release_unused_emails(self, connection: EmailConnection, unused: int) -> None:
        if unused <= 0:
            return
        try:
            self.quota_guard.release(connection.user_id, QuotaKind.EMAILS, unused)
        except sqlite3.Error as e:
            counter("scan.quota_release.failed")
            logger.error("Could not release %d emails for user %s: %s", unused, connection.user_id, e)

    def _append_log(self, entry: ExtractionLogEntry) -> None:
        try:
            ExtractionLogRepository.append(entry)
        except sqlite3.Error as e:
            counter("scan.extraction_log.failed")
            logger.error("Failed to write extraction log for %s: %s", entry.email_id, e)

    def _pace(self) -> None:
        if self.pacing_seconds > 0:
            self.sleep_fn(self.pacing_seconds)

    def _fail(
        self,
        connection: EmailConnection,
        scan_log: ScanLog,
        progress: _ScanProgress,
        error: str,
    ) -> ScanResult:
        counter("scan.connection.failed")
        logger.error("Scan failed for connection %s: %s", connection.id, error)
        try:
            ScanLogRepository.fail(
                scan_log.id,
                error,
                emails_scanned=progress.emails_scanned,
                completed_at=self._clock(),
            )
        except sqlite3.Error as e:
            logger.error("Could not record failed scan %s: %s", scan_log.id, e)
        return ScanResult.failed(connection.id, error, scan_log_id=scan_log.id)
