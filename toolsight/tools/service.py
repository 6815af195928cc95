"""Tool upsert/merge engine.

Resolves a validated extraction against the canonical tool for its vendor and
either creates the tool or merges the new evidence into it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from toolsight.detection.categorization import categorize
from toolsight.detection.lexicon import DetectionLexicon
from toolsight.detection.models import BillingCycle, ExtractionResult
from toolsight.infrastructure.database import db_transaction, retry_on_db_lock
from toolsight.mailbox.models import EmailConnection, RawMessage, utc_now
from toolsight.observability.logging import get_logger
from toolsight.observability.telemetry import counter
from toolsight.tools.models import DetectedTool, ToolStatus, normalize_vendor
from toolsight.tools.repository import DetectedToolRepository
from toolsight.utils.redaction import redact_subject

logger = get_logger(__name__)


@dataclass
class UpsertResult:
    """Result of an upsert: the tool as persisted and what happened to it."""

    tool: DetectedTool
    created: bool
    updated: bool


def initial_status(extraction: ExtractionResult) -> ToolStatus:
    if extraction.is_cancellation:
        return ToolStatus.CANCELLED
    if extraction.is_trial:
        return ToolStatus.TRIAL
    return ToolStatus.ACTIVE


class ToolUpsertService:
    """Create-or-merge of detected tools keyed by (organization, normalized vendor)."""

    def __init__(self, lexicon: DetectionLexicon | None = None):
        self.lexicon = lexicon

    @staticmethod
    def compute_merge_updates(
        existing: DetectedTool, extraction: ExtractionResult, message: RawMessage
    ) -> dict[str, Any]:
        """Determine which columns change when merging an extraction into a tool.

        Rules (invariant, do not reorder):
        - amount present: overwrite last_charge_amount, currency, last_charge_date
        - billing cycle present: overwrite billing_frequency ("unknown" never
          replaces a known cycle)
        - renewal date present: overwrite estimated_renewal_date
        - absent fields never null out a known value
        - status: cancellation -> cancelled; else trial -> trial; else unless
          cancelled -> active, and renewal_count + 1 when it was already active
        """
        updates: dict[str, Any] = {}

        if extraction.amount is not None:
            updates["last_charge_amount"] = extraction.amount
            updates["last_charge_date"] = message.received_at.date().isoformat()
            if extraction.currency:
                updates["currency"] = extraction.currency

        cycle = extraction.billing_cycle
        if cycle is not None:
            cycle_value = cycle.value if isinstance(cycle, BillingCycle) else str(cycle)
            known = existing.billing_frequency != BillingCycle.UNKNOWN.value
            if cycle_value != BillingCycle.UNKNOWN.value or not known:
                updates["billing_frequency"] = cycle_value

        if extraction.renewal_date is not None:
            updates["estimated_renewal_date"] = extraction.renewal_date.isoformat()

        if extraction.is_cancellation:
            updates["status"] = ToolStatus.CANCELLED.value
        elif extraction.is_trial:
            updates["status"] = ToolStatus.TRIAL.value
        elif existing.status != ToolStatus.CANCELLED.value:
            updates["status"] = ToolStatus.ACTIVE.value
            if existing.status == ToolStatus.ACTIVE.value:
                updates["renewal_count"] = existing.renewal_count + 1

        if extraction.confidence > existing.confidence_score:
            updates["confidence_score"] = extraction.confidence

        # Drop no-op assignments so "updated" reflects a real change
        current = existing.to_db_dict()
        return {col: val for col, val in updates.items() if current.get(col) != val}

    def build_new_tool(
        self,
        organization_id: str,
        extraction: ExtractionResult,
        message: RawMessage,
        connection: EmailConnection | None = None,
    ) -> DetectedTool:
        vendor_name = extraction.vendor_name or ""
        category, relevance = categorize(
            message.subject,
            message.body_text,
            self.lexicon,
            owner_role=connection.owner_role if connection else None,
        )
        message_date = message.received_at.date()
        cycle = extraction.billing_cycle
        frequency = cycle.value if isinstance(cycle, BillingCycle) else (cycle or "unknown")

        return DetectedTool(
            id=str(uuid.uuid4()),
            organization_id=organization_id,
            vendor_name=vendor_name,
            normalized_vendor=normalize_vendor(vendor_name),
            last_charge_amount=extraction.amount,
            currency=extraction.currency,
            last_charge_date=message_date if extraction.amount is not None else None,
            billing_frequency=frequency,
            estimated_renewal_date=extraction.renewal_date,
            first_seen_date=message_date,
            status=initial_status(extraction),
            renewal_count=0,
            confidence_score=extraction.confidence,
            inferred_owner_id=connection.user_id if connection else None,
            tool_category=category,
            marketing_relevance_score=relevance,
            detection_reason=extraction.reason or None,
            source_connection_id=connection.id if connection else None,
            source_email_id=message.id,
            source_email_subject=message.subject[:200],
            source_email_sender=message.sender[:200],
        )

    @retry_on_db_lock()
    def upsert(
        self,
        organization_id: str,
        extraction: ExtractionResult,
        message: RawMessage,
        connection: EmailConnection | None = None,
    ) -> UpsertResult:
        """
        Create or merge the tool for ``extraction.vendor_name``.

        Lookup and write run in one BEGIN IMMEDIATE transaction, so concurrent
        writers for the same vendor are serialised and the UNIQUE
        (organization_id, normalized_vendor) key is never contended.

        Raises:
            ValueError: If the extraction has no vendor (it was not validated)
            sqlite3.Error: On persistence failure (caller skips the message)
        """
        if not extraction.vendor_name or not normalize_vendor(extraction.vendor_name):
            raise ValueError("upsert requires a validated extraction with a vendor")

        normalized = normalize_vendor(extraction.vendor_name)

        with db_transaction(immediate=True) as conn:
            existing = DetectedToolRepository.find_by_vendor(conn, organization_id, normalized)

            if existing is None:
                tool = self.build_new_tool(organization_id, extraction, message, connection)
                DetectedToolRepository.insert(conn, tool)
                counter("tools.created")
                logger.info(
                    "Created tool %s (%s, status=%s) from '%s'",
                    tool.id,
                    normalized,
                    tool.status,
                    redact_subject(message.subject),
                )
                return UpsertResult(tool=tool, created=True, updated=False)

            updates = self.compute_merge_updates(existing, extraction, message)
            if not updates:
                logger.info("Merge for %s (%s) changed nothing", existing.id, normalized)
                return UpsertResult(tool=existing, created=False, updated=False)

            updates["updated_at"] = utc_now().isoformat()
            DetectedToolRepository.apply_updates(conn, existing.id, updates)
            merged = DetectedTool.from_db_row({**existing.to_db_dict(), **updates})

        counter("tools.merged")
        logger.info(
            "Merged into tool %s (%s): %s",
            existing.id,
            normalized,
            ", ".join(sorted(k for k in updates if k != "updated_at")),
        )
        return UpsertResult(tool=merged, created=False, updated=True)
