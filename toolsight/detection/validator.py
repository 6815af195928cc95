"""
Extraction Validator - the single gate between extraction and persistence.

Rejects extractions that cannot produce a trustworthy tool record and cleans
the fields that are merely implausible. Never mutates its input.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date

from toolsight.config import EXTRACTION_AMOUNT_MAX, EXTRACTION_MIN_CONFIDENCE
from toolsight.detection.extractor import _today, normalize_currency, within_renewal_window
from toolsight.detection.models import ExtractionResult
from toolsight.observability.logging import get_logger
from toolsight.observability.telemetry import counter

logger = get_logger(__name__)


def rejection_reason(extraction: ExtractionResult) -> str | None:
    """Return why an extraction must be dropped, or None if it may proceed."""
    if not extraction.vendor_name or not extraction.vendor_name.strip():
        return "missing vendor"
    if extraction.confidence < EXTRACTION_MIN_CONFIDENCE:
        return f"confidence {extraction.confidence} below {EXTRACTION_MIN_CONFIDENCE}"
    if extraction.amount is not None and (
        extraction.amount < 0 or extraction.amount >= EXTRACTION_AMOUNT_MAX
    ):
        return f"amount {extraction.amount} out of range"

    # Evaluated on the uncleaned renewal date.
    has_amount = extraction.amount is not None and extraction.amount > 0
    if not (extraction.is_trial or has_amount or extraction.renewal_date is not None):
        return "nothing actionable"
    return None


def validate_extraction(
    extraction: ExtractionResult, today: date | None = None
) -> ExtractionResult | None:
    """
    Validate and clean an extraction.

    Returns:
        A cleaned copy, or None when the extraction is rejected:
        - vendor absent or blank
        - confidence below EXTRACTION_MIN_CONFIDENCE
        - amount negative or >= EXTRACTION_AMOUNT_MAX
        - no trial flag, amount or renewal date

    Cleaning:
        - renewal dates before today or more than a year ahead are nulled
        - an amount of exactly 0 is treated as absent
        - currency is normalised to a 3-letter code ("USD" when malformed,
          or when an amount has no currency)
    """
    reason = rejection_reason(extraction)
    if reason is not None:
        counter("detection.validator.rejected")
        logger.debug("Extraction rejected (%s): vendor=%s", reason, extraction.vendor_name)
        return None

    today = today or _today()
    amount = extraction.amount if extraction.amount else None
    renewal_date = extraction.renewal_date
    if renewal_date is not None and not within_renewal_window(renewal_date, today):
        counter("detection.validator.renewal_date_nulled")
        logger.debug("Nulling renewal date %s outside window", renewal_date)
        renewal_date = None

    currency = extraction.currency
    if currency is not None or amount is not None:
        currency = normalize_currency(currency)

    counter("detection.validator.passed")
    return replace(
        extraction,
        vendor_name=extraction.vendor_name.strip(),
        amount=amount,
        currency=currency,
        renewal_date=renewal_date,
    )
