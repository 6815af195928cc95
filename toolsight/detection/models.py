"""
Per-message detection results.

Neither result is persisted as an entity; the orchestrator records their
outcome in the extraction log and feeds validated extractions to the tool
upsert engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"
    TRIAL = "trial"
    UNKNOWN = "unknown"


def clamp_confidence(value: float | int | None) -> int:
    """Coerce a score into the 0-100 integer range."""
    if value is None:
        return 0
    return max(0, min(100, int(round(float(value)))))


@dataclass(frozen=True)
class ClassificationResult:
    """Whether a message is about a software subscription, with a 0-100 score."""

    is_tool_related: bool
    confidence: int
    reason: str

    @classmethod
    def rejected(cls, reason: str) -> ClassificationResult:
        """Factory for a zero-confidence result."""
        return cls(is_tool_related=False, confidence=0, reason=reason)


@dataclass(frozen=True)
class ExtractionResult:
    """
    Structured subscription fields pulled from one message.

    Every field is None/False unless the message text evidences it.
    """

    vendor_name: str | None = None
    amount: float | None = None
    currency: str | None = None
    billing_cycle: BillingCycle | None = None
    renewal_date: date | None = None
    is_trial: bool = False
    is_cancellation: bool = False
    confidence: int = 0
    reason: str = ""

    @classmethod
    def empty(cls, reason: str = "no_data") -> ExtractionResult:
        """Factory for the all-null, zero-confidence result."""
        return cls(reason=reason)

    def has_actionable_data(self) -> bool:
        return self.is_trial or self.amount is not None or self.renewal_date is not None
