"""
Tool Data Extractor - pulls subscription fields out of a classified message.

Stage 2 of the detection pipeline. Two interchangeable strategies:

- RuleBasedExtractor: regex/lexicon extraction, no external calls.
- LLMExtractor: Gemini with a "never guess, use null" contract.

Shared rules: absent evidence means None, amounts must satisfy
0 < amount < 100000, renewal dates outside [today, today + 365d] are dropped,
currency must be a 3-letter ISO code (anything else becomes "USD"), and a
parse failure returns ExtractionResult.empty() instead of raising.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from typing import Protocol

from dateutil import parser as date_parser
from pydantic import BaseModel, ValidationError

from toolsight.config import EXTRACTION_AMOUNT_MAX, RENEWAL_WINDOW_DAYS
from toolsight.detection.classifier import _use_llm
from toolsight.detection.lexicon import DetectionLexicon, load_lexicon
from toolsight.detection.models import BillingCycle, ExtractionResult, clamp_confidence
from toolsight.detection.senders import vendor_from_sender
from toolsight.errors import LLMRateLimitError
from toolsight.infrastructure.settings import GEMINI_MODEL
from toolsight.mailbox.models import RawMessage
from toolsight.observability.logging import get_logger
from toolsight.observability.telemetry import counter, log_event
from toolsight.utils.redaction import redact_pii, redact_subject, sanitize_for_prompt

logger = get_logger(__name__)

_NUMBER = r"([0-9]{1,3}(?:,[0-9]{3})+(?:\.[0-9]{1,2})?|[0-9]+(?:\.[0-9]{1,2})?)"

# Ordered by specificity: labelled totals before bare currency amounts.
AMOUNT_PATTERNS = [
    re.compile(r"\btotal(?: due| charged| amount)?[:\s]+(?:[$€£]|usd|eur|gbp)?\s?" + _NUMBER, re.I),
    re.compile(r"\bamount(?: due| charged| paid)?[:\s]+(?:[$€£]|usd|eur|gbp)?\s?" + _NUMBER, re.I),
    re.compile(r"[$€£]\s?" + _NUMBER),
    re.compile(_NUMBER + r"\s?(?:usd|eur|gbp|dollars|euros)\b", re.I),
    re.compile(r"\b(?:usd|eur|gbp)\s?" + _NUMBER, re.I),
]

CURRENCY_PATTERNS = [
    ("USD", re.compile(r"\$|\busd\b|\bdollars?\b", re.I)),
    ("EUR", re.compile(r"€|\beur\b|\beuros?\b", re.I)),
    ("GBP", re.compile(r"£|\bgbp\b|\bpounds? sterling\b", re.I)),
]
ISO_CURRENCY = re.compile(r"^[A-Z]{3}$")

MONTHLY_PATTERN = re.compile(
    r"\b(monthly|per month|a month|each month|every month|/\s?mo(?:nth)?\b)", re.I
)
YEARLY_PATTERN = re.compile(
    r"\b(annual(?:ly)?|yearly|per year|a year|each year|every year|/\s?y(?:ea)?r\b)", re.I
)

_MONTHS = r"(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?"
DATE_PATTERNS = [
    re.compile(r"\b(\d{4}-\d{2}-\d{2})\b"),
    re.compile(r"\b(\d{1,2}/\d{1,2}/\d{4})\b"),
    re.compile(r"\b(" + _MONTHS + r"\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4})\b", re.I),
    re.compile(r"\b(\d{1,2}(?:st|nd|rd|th)?\s+" + _MONTHS + r",?\s+\d{4})\b", re.I),
]
RENEWAL_CONTEXT = re.compile(
    r"\b(renew\w*|next (?:charge|payment|billing|invoice)|billing date|trial (?:ends|expires|will end)"
    r"|expires?|due (?:on|date))\b",
    re.I,
)
RENEWAL_CONTEXT_WINDOW = 80


def _today() -> date:
    return datetime.now(UTC).date()


def parse_amount(raw: str | None) -> float | None:
    """Parse an amount string, returning None unless 0 < amount < max."""
    if raw is None:
        return None
    try:
        value = float(str(raw).replace(",", ""))
    except ValueError:
        return None
    if 0 < value < EXTRACTION_AMOUNT_MAX:
        return round(value, 2)
    return None


def normalize_currency(raw: str | None) -> str:
    code = (raw or "").strip().upper()
    return code if ISO_CURRENCY.match(code) else "USD"


def within_renewal_window(value: date | None, today: date) -> bool:
    if value is None:
        return False
    return today <= value <= today + timedelta(days=RENEWAL_WINDOW_DAYS)


def parse_date(raw: str | None) -> date | None:
    """Parse a date string (ISO, US m/d/Y, or month-name forms)."""
    if not raw:
        return None
    try:
        return date_parser.parse(str(raw), dayfirst=False, fuzzy=False).date()
    except (ValueError, OverflowError, TypeError):
        return None


class ToolDataExtractor(Protocol):
    def extract(self, message: RawMessage) -> ExtractionResult: ...


class RuleBasedExtractor:
    """
    Regex/lexicon extractor.

    Confidence is additive over what was found:

        base 20, +20 vendor, +30 amount, +15 billing cycle, +15 renewal date

    A result under MIN_CONFIDENCE is replaced by ExtractionResult.empty().
    """

    BASE_SCORE = 20
    VENDOR_SCORE = 20
    AMOUNT_SCORE = 30
    CYCLE_SCORE = 15
    DATE_SCORE = 15
    MIN_CONFIDENCE = 30

    def __init__(
        self,
        lexicon: DetectionLexicon | None = None,
        today_fn: Callable[[], date] = _today,
    ):
        self.lexicon = lexicon or load_lexicon()
        self._today_fn = today_fn

    def extract(self, message: RawMessage) -> ExtractionResult:
        try:
            return self._extract(message)
        except Exception as e:
            counter("detection.extractor.rule_error")
            logger.warning("Rule extraction failed for message %s: %s", message.id, e)
            return ExtractionResult.empty(f"extraction_error: {str(e)[:50]}")

    def _extract(self, message: RawMessage) -> ExtractionResult:
        text = f"{message.subject}\n{message.body_text}"
        today = self._today_fn()

        vendor = vendor_from_sender(message.sender, self.lexicon)
        amount, amount_span = self._find_amount(text)
        currency = self._find_currency(text, amount_span) if amount is not None else None
        is_trial = bool(self.lexicon.matches("trial_phrases", text))
        is_cancellation = bool(self.lexicon.matches("cancellation_phrases", text))
        cycle = self._find_cycle(text, is_trial)
        renewal_date = self._find_renewal_date(text, today)

        confidence = self.BASE_SCORE
        found = []
        if vendor:
            confidence += self.VENDOR_SCORE
            found.append("vendor")
        if amount is not None:
            confidence += self.AMOUNT_SCORE
            found.append("amount")
        if cycle is not None:
            confidence += self.CYCLE_SCORE
            found.append("cycle")
        if renewal_date is not None:
            confidence += self.DATE_SCORE
            found.append("renewal date")
        if is_trial:
            found.append("trial")
        if is_cancellation:
            found.append("cancellation")

        if confidence < self.MIN_CONFIDENCE:
            counter("detection.extractor.low_confidence")
            return ExtractionResult.empty("insufficient evidence")

        counter("detection.extractor.rule")
        return ExtractionResult(
            vendor_name=vendor,
            amount=amount,
            currency=currency,
            billing_cycle=cycle,
            renewal_date=renewal_date,
            is_trial=is_trial,
            is_cancellation=is_cancellation,
            confidence=clamp_confidence(confidence),
            reason=f"rule match: {', '.join(found) or 'sender only'}",
        )

    @staticmethod
    def _find_amount(text: str) -> tuple[float | None, tuple[int, int] | None]:
        for pattern in AMOUNT_PATTERNS:
            for match in pattern.finditer(text):
                amount = parse_amount(match.group(1))
                if amount is not None:
                    return amount, match.span()
        return None, None

    @staticmethod
    def _find_currency(text: str, span: tuple[int, int] | None) -> str | None:
        # Prefer the symbol or code next to the amount, then anywhere in the text.
        if span is not None:
            window = text[max(0, span[0] - 4) : span[1] + 8]
            for code, pattern in CURRENCY_PATTERNS:
                if pattern.search(window):
                    return code
        for code, pattern in CURRENCY_PATTERNS:
            if pattern.search(text):
                return code
        return None

    @staticmethod
    def _find_cycle(text: str, is_trial: bool) -> BillingCycle | None:
        monthly = bool(MONTHLY_PATTERN.search(text))
        yearly = bool(YEARLY_PATTERN.search(text))
        if monthly and not yearly:
            return BillingCycle.MONTHLY
        if yearly and not monthly:
            return BillingCycle.YEARLY
        if is_trial and not (monthly or yearly):
            return BillingCycle.TRIAL
        return None

    @staticmethod
    def _find_renewal_date(text: str, today: date) -> date | None:
        for context in RENEWAL_CONTEXT.finditer(text):
            window = text[context.end() : context.end() + RENEWAL_CONTEXT_WINDOW]
            for pattern in DATE_PATTERNS:
                match = pattern.search(window)
                if not match:
                    continue
                candidate = parse_date(match.group(1))
                if within_renewal_window(candidate, today):
                    return candidate
        return None


class ExtractionSchema(BaseModel):
    """Schema for LLM response validation. Every field may be null."""

    vendor_name: str | None = None
    amount: float | None = None
    currency: str | None = None
    billing_cycle: str | None = None
    renewal_date: str | None = None
    is_trial: bool = False
    is_cancellation: bool = False
    confidence: float = 0
    reason: str = ""


EXTRACTOR_SYSTEM_INSTRUCTION = """You extract subscription billing data from one email.

Rules:
- Only report what the email states. If a field is not stated, use null.
- NEVER guess a vendor, amount or date.
- vendor_name: the software/SaaS company being paid.
- amount: the charged amount as a number, no currency symbol.
- currency: 3-letter ISO code (USD, EUR, GBP).
- billing_cycle: one of monthly, yearly, trial, unknown.
- renewal_date: next renewal or trial end as YYYY-MM-DD.
- is_trial: true only for a free or paid trial.
- is_cancellation: true only when the subscription was cancelled or will not renew.
- confidence: 0-100, how sure you are of the extracted fields.

Return only JSON:
{"vendor_name": str|null, "amount": number|null, "currency": str|null,
 "billing_cycle": str|null, "renewal_date": str|null, "is_trial": bool,
 "is_cancellation": bool, "confidence": number, "reason": str}"""


class LLMExtractor:
    """Gemini-backed extractor with the same null-on-uncertainty rules."""

    PROMPT_TEMPLATE = """Today: {today}
Subject: {subject}
From: {sender}
Email date: {received}
Body: {body}"""

    def __init__(self, today_fn: Callable[[], date] = _today):
        self._today_fn = today_fn

    def extract(self, message: RawMessage) -> ExtractionResult:
        from toolsight.llm.retry import call_llm

        prompt = self.PROMPT_TEMPLATE.format(
            today=self._today_fn().isoformat(),
            subject=sanitize_for_prompt(message.subject, max_length=200),
            sender=sanitize_for_prompt(message.sender, max_length=100),
            received=message.received_at.date().isoformat(),
            body=sanitize_for_prompt(redact_pii(message.body_text), max_length=3000),
        )

        try:
            logger.info(
                "LLM EXTRACTOR: Calling %s for subject='%s'",
                GEMINI_MODEL,
                redact_subject(message.subject),
            )
            response_text = call_llm(
                prompt,
                counter_prefix="extractor",
                system_instruction=EXTRACTOR_SYSTEM_INSTRUCTION,
            )
        except LLMRateLimitError:
            raise
        except Exception as e:
            counter("detection.extractor.error")
            logger.error("LLM EXTRACTOR ERROR: %s (model=%s)", e, GEMINI_MODEL)
            log_event("detection.extractor.error", error=str(e)[:200], model=GEMINI_MODEL)
            return ExtractionResult.empty(f"llm_error: {str(e)[:50]}")

        return self.parse_response(response_text, self._today_fn())

    @staticmethod
    def parse_response(response_text: str, today: date) -> ExtractionResult:
        """Parse the model's JSON and apply the shared plausibility rules."""
        json_text = (response_text or "").strip()
        if json_text.startswith("```"):
            json_text = re.sub(r"^```(?:json)?\n?", "", json_text)
            json_text = re.sub(r"\n?```$", "", json_text)

        try:
            data = ExtractionSchema.model_validate(json.loads(json_text))
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.warning("Failed to parse extraction response: %s", e)
            counter("detection.extractor.parse_error")
            return ExtractionResult.empty("parse_error")

        vendor = (data.vendor_name or "").strip() or None
        amount = parse_amount(data.amount) if data.amount is not None else None
        renewal = parse_date(data.renewal_date)
        if not within_renewal_window(renewal, today):
            renewal = None

        try:
            cycle = BillingCycle(data.billing_cycle.lower()) if data.billing_cycle else None
        except ValueError:
            cycle = BillingCycle.UNKNOWN

        return ExtractionResult(
            vendor_name=vendor,
            amount=amount,
            currency=normalize_currency(data.currency) if data.currency else None,
            billing_cycle=cycle,
            renewal_date=renewal,
            is_trial=data.is_trial,
            is_cancellation=data.is_cancellation,
            confidence=clamp_confidence(data.confidence),
            reason=data.reason[:200],
        )


def get_extractor(lexicon: DetectionLexicon | None = None) -> ToolDataExtractor:
    """Select the extractor strategy from TOOLSIGHT_USE_LLM."""
    if _use_llm():
        return LLMExtractor()
    return RuleBasedExtractor(lexicon)
