from __future__ import annotations

import pytest

from toolsight.detection.categorization import (
    adjust_score_for_ownership,
    analyze_email_context,
    categorize,
    determine_category,
)


def test_marketing_heavy_email(lexicon):
    body = "Mailchimp campaign analytics, newsletter automation and growth reports."

    category, score = categorize("Your Mailchimp receipt", body, lexicon)

    assert (category, score) == ("marketing", 70)


def test_infrastructure_email_is_other(lexicon):
    context = analyze_email_context("Heroku invoice", "cloud server hosting database", lexicon)

    assert context.marketing_hits == 0
    assert context.infrastructure_hits == 4
    assert context.marketing_score + context.confidence == 32
    assert categorize("Heroku invoice", "cloud server hosting database", lexicon) == ("other", 32)


def test_no_lexicon_hits(lexicon):
    assert categorize("Hello", "Nothing relevant here.", lexicon) == ("other", 0)


def test_mixed_context_scores(lexicon):
    context = analyze_email_context("Receipt", "Launch a campaign in the cloud", lexicon)
    assert context.marketing_score == 15
    assert context.confidence == 16


@pytest.mark.parametrize(
    ("score", "expected"),
    [(70, "marketing"), (69, "marketing_adjacent"), (40, "marketing_adjacent"), (39, "other")],
)
def test_category_thresholds(score, expected):
    assert determine_category(score) == expected


@pytest.mark.parametrize(
    ("score", "role", "expected"),
    [
        (50, "Growth Marketer", 65),
        (50, "Software Engineer", 30),
        (10, "DevOps", 0),
        (50, "Infrastructure", 25),
        (95, "marketing", 100),
        (50, None, 50),
    ],
)
def test_adjust_score_for_ownership(score, role, expected):
    assert adjust_score_for_ownership(score, role) == expected


def test_owner_role_shifts_score_before_category(lexicon):
    body = "Mailchimp campaign analytics, newsletter automation and growth reports."

    assert categorize(
        "Your Mailchimp receipt", body, lexicon, owner_role="Software Engineer"
    ) == ("marketing_adjacent", 50)
    assert categorize(
        "Heroku invoice", "cloud server hosting database", lexicon, owner_role="Head of Growth"
    ) == ("marketing_adjacent", 47)
