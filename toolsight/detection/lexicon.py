"""
Static keyword configuration for the deterministic classifier and extractor.

The lexicon is loaded once from config/detection_lexicon.yaml into an
immutable DetectionLexicon and handed to strategies at construction.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

import yaml

from toolsight.config import LEXICON_PATH
from toolsight.observability.logging import get_logger

logger = get_logger(__name__)


def _compile(terms: tuple[str, ...]) -> tuple[tuple[str, re.Pattern[str]], ...]:
    return tuple(
        (term, re.compile(r"(?<![a-z0-9])" + re.escape(term), re.IGNORECASE)) for term in terms
    )


def _terms(raw: object) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(str(item).strip().lower() for item in raw if str(item).strip())


@dataclass(frozen=True)
class DetectionLexicon:
    subscription_keywords: tuple[str, ...]
    marketing_keywords: tuple[str, ...]
    infrastructure_keywords: tuple[str, ...]
    engineering_keywords: tuple[str, ...]
    known_vendor_domains: frozenset[str]
    billing_platform_domains: frozenset[str]
    free_mail_domains: frozenset[str]
    compound_suffixes: frozenset[str]
    exclusion_keywords: tuple[str, ...]
    trial_phrases: tuple[str, ...]
    cancellation_phrases: tuple[str, ...]
    _patterns: dict[str, tuple[tuple[str, re.Pattern[str]], ...]] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        for name in (
            "subscription_keywords",
            "marketing_keywords",
            "infrastructure_keywords",
            "engineering_keywords",
            "exclusion_keywords",
            "trial_phrases",
            "cancellation_phrases",
        ):
            self._patterns[name] = _compile(getattr(self, name))

    def matches(self, group: str, text: str) -> list[str]:
        """Return the distinct terms of ``group`` found in ``text``."""
        return [term for term, pattern in self._patterns[group] if pattern.search(text)]

    @classmethod
    def from_dict(cls, data: dict) -> DetectionLexicon:
        tool_keywords = data.get("tool_keywords") or {}
        return cls(
            subscription_keywords=_terms(data.get("subscription_keywords")),
            marketing_keywords=_terms(tool_keywords.get("marketing")),
            infrastructure_keywords=_terms(tool_keywords.get("infrastructure")),
            engineering_keywords=_terms(tool_keywords.get("engineering")),
            known_vendor_domains=frozenset(_terms(data.get("known_vendor_domains"))),
            billing_platform_domains=frozenset(_terms(data.get("billing_platform_domains"))),
            free_mail_domains=frozenset(_terms(data.get("free_mail_domains"))),
            compound_suffixes=frozenset(_terms(data.get("compound_suffixes"))),
            exclusion_keywords=_terms(data.get("exclusion_keywords")),
            trial_phrases=_terms(data.get("trial_phrases")),
            cancellation_phrases=_terms(data.get("cancellation_phrases")),
        )


@lru_cache(maxsize=4)
def load_lexicon(path: str | None = None) -> DetectionLexicon:
    """
    Load and cache a DetectionLexicon from YAML.

    Raises:
        FileNotFoundError: If the lexicon file is missing
    """
    lexicon_path = Path(path or LEXICON_PATH)
    with lexicon_path.open(encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    lexicon = DetectionLexicon.from_dict(data)
    logger.info(
        "Loaded detection lexicon from %s (%d gate keywords, %d vendor domains)",
        lexicon_path,
        len(lexicon.subscription_keywords),
        len(lexicon.known_vendor_domains),
    )
    return lexicon
