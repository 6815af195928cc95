"""
Email Classifier - decides whether a message is about a software subscription.

Stage 1 of the detection pipeline. Two interchangeable strategies:

- KeywordClassifier: deterministic lexicon scoring, no external calls.
- LLMClassifier: Gemini with a fixed prompt contract that excludes
  transactional mail which is not a recurring software charge.

Both only score. The orchestrator applies CLASSIFICATION_MIN_CONFIDENCE.
"""

from __future__ import annotations

import json
import os
import re
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError

from toolsight.detection.lexicon import DetectionLexicon, load_lexicon
from toolsight.detection.models import ClassificationResult, clamp_confidence
from toolsight.detection.senders import registrable_domain, split_sender
from toolsight.errors import LLMRateLimitError
from toolsight.infrastructure.settings import GEMINI_MODEL
from toolsight.mailbox.models import RawMessage
from toolsight.observability.logging import get_logger
from toolsight.observability.telemetry import counter, log_event
from toolsight.utils.redaction import redact_pii, redact_subject, sanitize_for_prompt

logger = get_logger(__name__)

_MONEY = re.compile(r"[$€£]\s?\d|\b\d+(?:[.,]\d{2})?\s?(?:usd|eur|gbp|dollars)\b", re.IGNORECASE)


def _use_llm() -> bool:
    """Check the LLM feature flag at call time (not import time)."""
    return os.getenv("TOOLSIGHT_USE_LLM", "false").lower() == "true"


class EmailClassifier(Protocol):
    def classify(self, message: RawMessage) -> ClassificationResult: ...


class KeywordClassifier:
    """
    Deterministic lexicon classifier.

    A subscription keyword must appear or the message scores 0. The score is
    then a fixed sum of evidence:

        base 20
        + 10 per distinct subscription keyword (max 4)
        + 5 per distinct tool-lexicon keyword (max 3)
        + 20 if the sender is a known SaaS vendor domain
        + 10 if a money amount appears
        - 25 per distinct exclusion phrase (max 2)
    """

    BASE_SCORE = 20
    GATE_WEIGHT = 10
    GATE_CAP = 4
    TOOL_WEIGHT = 5
    TOOL_CAP = 3
    KNOWN_VENDOR_BONUS = 20
    AMOUNT_BONUS = 10
    EXCLUSION_PENALTY = 25
    EXCLUSION_CAP = 2

    def __init__(self, lexicon: DetectionLexicon | None = None):
        self.lexicon = lexicon or load_lexicon()

    def classify(self, message: RawMessage) -> ClassificationResult:
        text = f"{message.subject}\n{message.body_text}"

        gate_hits = self.lexicon.matches("subscription_keywords", text)
        if not gate_hits:
            counter("detection.classifier.no_gate")
            return ClassificationResult.rejected("no subscription keywords")

        tool_hits = (
            self.lexicon.matches("marketing_keywords", text)
            + self.lexicon.matches("infrastructure_keywords", text)
            + self.lexicon.matches("engineering_keywords", text)
        )
        exclusion_hits = self.lexicon.matches("exclusion_keywords", text)
        _, domain = split_sender(message.sender)
        known_vendor = registrable_domain(domain, self.lexicon) in self.lexicon.known_vendor_domains

        score = self.BASE_SCORE
        score += self.GATE_WEIGHT * min(len(gate_hits), self.GATE_CAP)
        score += self.TOOL_WEIGHT * min(len(tool_hits), self.TOOL_CAP)
        if known_vendor:
            score += self.KNOWN_VENDOR_BONUS
        if _MONEY.search(text):
            score += self.AMOUNT_BONUS
        score -= self.EXCLUSION_PENALTY * min(len(exclusion_hits), self.EXCLUSION_CAP)

        confidence = clamp_confidence(score)
        is_tool_related = confidence > 0 and (not exclusion_hits or known_vendor)

        reason_parts = [f"keywords: {', '.join(gate_hits[:4])}"]
        if known_vendor:
            reason_parts.append("known vendor")
        if exclusion_hits:
            reason_parts.append(f"excluded: {', '.join(exclusion_hits[:2])}")

        counter("detection.classifier.keyword")
        return ClassificationResult(
            is_tool_related=is_tool_related,
            confidence=confidence,
            reason="; ".join(reason_parts),
        )


class ClassificationSchema(BaseModel):
    """Schema for LLM response validation."""

    is_tool_related: bool
    confidence: float = Field(ge=0, le=100)
    reason: str = ""


CLASSIFIER_SYSTEM_INSTRUCTION = """You classify emails for a SaaS spend tracker.

Decide whether the email is about a RECURRING SOFTWARE or SaaS subscription:
an invoice, receipt, renewal notice, trial notice, plan change or cancellation
for a software tool a business pays for.

## NOT tool related (is_tool_related=false)
- Food delivery (DoorDash, Uber Eats, Grubhub)
- Travel (flights, hotels, car rentals, itineraries)
- One-time purchases with no future charge
- Refunds that do not mention a future charge
- Newsletters, marketing promotions and product announcements
- E-commerce orders and shipping updates

## Output
Return only JSON: {"is_tool_related": bool, "confidence": 0-100, "reason": "short explanation"}

## Examples

Subject: Your HubSpot invoice
From: billing@hubspot.com
Body: Your subscription renews monthly. Total: $450.
{"is_tool_related": true, "confidence": 92, "reason": "SaaS subscription invoice"}

Subject: Your order is on the way
From: orders@amazon.com
Body: Your package will arrive Tuesday. Tracking number 1Z999.
{"is_tool_related": false, "confidence": 95, "reason": "E-commerce shipping update"}"""


class LLMClassifier:
    """Gemini-backed classifier. Parse failures degrade to zero confidence."""

    PROMPT_TEMPLATE = """Subject: {subject}
From: {sender}
Body: {body}"""

    def classify(self, message: RawMessage) -> ClassificationResult:
        from toolsight.llm.retry import call_llm

        prompt = self.PROMPT_TEMPLATE.format(
            subject=sanitize_for_prompt(message.subject, max_length=200),
            sender=sanitize_for_prompt(message.sender, max_length=100),
            body=sanitize_for_prompt(redact_pii(message.body_text), max_length=2000),
        )

        try:
            logger.info(
                "LLM CLASSIFIER: Calling %s for subject='%s'",
                GEMINI_MODEL,
                redact_subject(message.subject),
            )
            response_text = call_llm(
                prompt,
                counter_prefix="classifier",
                system_instruction=CLASSIFIER_SYSTEM_INSTRUCTION,
            )
        except LLMRateLimitError:
            raise
        except Exception as e:
            counter("detection.classifier.error")
            logger.error("LLM CLASSIFIER ERROR: %s (model=%s)", e, GEMINI_MODEL)
            log_event("detection.classifier.error", error=str(e)[:200], model=GEMINI_MODEL)
            return ClassificationResult.rejected(f"llm_error: {str(e)[:50]}")

        result = self.parse_response(response_text)
        log_event(
            "detection.classifier.result",
            is_tool_related=result.is_tool_related,
            confidence=result.confidence,
            model=GEMINI_MODEL,
        )
        return result

    @staticmethod
    def parse_response(response_text: str) -> ClassificationResult:
        """Parse the model's JSON; anything unparseable scores zero."""
        json_text = (response_text or "").strip()
        if json_text.startswith("```"):
            json_text = re.sub(r"^```(?:json)?\n?", "", json_text)
            json_text = re.sub(r"\n?```$", "", json_text)

        try:
            validated = ClassificationSchema.model_validate(json.loads(json_text))
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.warning("Failed to parse classification response: %s", e)
            counter("detection.classifier.parse_error")
            return ClassificationResult.rejected("parse_error")

        return ClassificationResult(
            is_tool_related=validated.is_tool_related,
            confidence=clamp_confidence(validated.confidence),
            reason=validated.reason[:200],
        )


def get_classifier(lexicon: DetectionLexicon | None = None) -> EmailClassifier:
    """Select the classifier strategy from TOOLSIGHT_USE_LLM."""
    if _use_llm():
        return LLMClassifier()
    return KeywordClassifier(lexicon)
