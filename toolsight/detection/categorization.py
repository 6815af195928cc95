"""
Tool categorisation from email context.

Scores how marketing-oriented a detected tool looks from the words around its
billing email, so downstream views can separate marketing spend from
infrastructure and engineering tooling.
"""

from __future__ import annotations

from typing import NamedTuple

from toolsight.detection.lexicon import DetectionLexicon, load_lexicon

MARKETING_THRESHOLD = 70
MARKETING_ADJACENT_THRESHOLD = 40


class ContextScore(NamedTuple):
    marketing_score: int
    confidence: int
    marketing_hits: int
    infrastructure_hits: int
    engineering_hits: int


def analyze_email_context(
    subject: str, body: str, lexicon: DetectionLexicon | None = None
) -> ContextScore:
    """
    Count lexicon hits in an email.

    marketing_score = min(30, round(marketing_hits / total_hits * 30))
    confidence      = min(40, round(total_hits / 5 * 40))
    """
    lexicon = lexicon or load_lexicon()
    text = f"{subject}\n{body}"

    marketing = len(lexicon.matches("marketing_keywords", text))
    infrastructure = len(lexicon.matches("infrastructure_keywords", text))
    engineering = len(lexicon.matches("engineering_keywords", text))
    total = marketing + infrastructure + engineering

    if total == 0:
        return ContextScore(0, 0, 0, 0, 0)

    return ContextScore(
        marketing_score=min(30, round(marketing / total * 30)),
        confidence=min(40, round(total / 5 * 40)),
        marketing_hits=marketing,
        infrastructure_hits=infrastructure,
        engineering_hits=engineering,
    )


def determine_category(score: int) -> str:
    if score >= MARKETING_THRESHOLD:
        return "marketing"
    if score >= MARKETING_ADJACENT_THRESHOLD:
        return "marketing_adjacent"
    return "other"


def adjust_score_for_ownership(score: int, owner_role: str | None) -> int:
    """Shift a relevance score by the owner's role, clamped to 0-100."""
    if not owner_role:
        return score

    role = owner_role.lower()
    if "market" in role or "growth" in role:
        score += 15
    elif "engineer" in role or "dev" in role:
        score -= 20
    elif "infra" in role or "ops" in role:
        score -= 25
    return max(0, min(100, score))


def categorize(
    subject: str,
    body: str,
    lexicon: DetectionLexicon | None = None,
    owner_role: str | None = None,
) -> tuple[str, int]:
    """
    Return ``(tool_category, marketing_relevance_score)`` for a new tool.

    The owner's role, when known, shifts the score before the category is
    chosen.
    """
    context = analyze_email_context(subject, body, lexicon)
    score = max(0, min(100, context.marketing_score + context.confidence))
    score = adjust_score_for_ownership(score, owner_role)
    return determine_category(score), score
