from __future__ import annotations

import pytest

from toolsight.detection.classifier import (
    KeywordClassifier,
    LLMClassifier,
    get_classifier,
)
from toolsight.errors import LLMRateLimitError


@pytest.fixture
def classifier(lexicon):
    return KeywordClassifier(lexicon)


def test_hubspot_invoice_scores_above_threshold(classifier, make_message, hubspot_body):
    message = make_message(body=hubspot_body())

    result = classifier.classify(message)

    # 20 base + 4 gate keywords + known vendor + amount
    assert result.confidence == 90
    assert result.is_tool_related is True
    assert "known vendor" in result.reason


def test_message_without_subscription_keywords_scores_zero(classifier, make_message):
    message = make_message(
        sender="friend@gmail.com", subject="Lunch on Friday?", body="See you at noon."
    )

    result = classifier.classify(message)

    assert result.confidence == 0
    assert result.is_tool_related is False
    assert result.reason == "no subscription keywords"


def test_food_delivery_receipt_is_excluded(classifier, make_message):
    message = make_message(
        sender="no-reply@doordash.com",
        subject="Your DoorDash receipt",
        body="Thanks for your food delivery order. Total: $32.50",
    )

    result = classifier.classify(message)

    assert result.confidence < 40
    assert result.is_tool_related is False


def test_confidence_is_capped_at_100(classifier, make_message):
    message = make_message(
        sender="billing@mailchimp.com",
        subject="Your Mailchimp subscription invoice and receipt",
        body="Payment for your plan: $299. Campaign analytics, newsletter automation.",
    )

    assert classifier.classify(message).confidence == 100


def test_keyword_classification_is_deterministic(classifier, make_message, hubspot_body):
    message = make_message(body=hubspot_body())
    assert classifier.classify(message) == classifier.classify(message)


def test_get_classifier_follows_flag(monkeypatch, lexicon):
    assert isinstance(get_classifier(lexicon), KeywordClassifier)
    monkeypatch.setenv("TOOLSIGHT_USE_LLM", "true")
    assert isinstance(get_classifier(lexicon), LLMClassifier)


def test_llm_response_parsing():
    result = LLMClassifier.parse_response(
        '{"is_tool_related": true, "confidence": 85, "reason": "SaaS invoice"}'
    )
    assert result.is_tool_related is True
    assert result.confidence == 85
    assert result.reason == "SaaS invoice"


def test_llm_response_in_code_fence_is_parsed():
    fenced = '```json\n{"is_tool_related": false, "confidence": 10, "reason": "newsletter"}\n```'
    result = LLMClassifier.parse_response(fenced)
    assert result.confidence == 10
    assert result.is_tool_related is False


@pytest.mark.parametrize(
    "text",
    ["not json", "", '{"confidence": 80}', '{"is_tool_related": true, "confidence": 150}'],
)
def test_unparseable_llm_response_scores_zero(text):
    result = LLMClassifier.parse_response(text)
    assert result.confidence == 0
    assert result.is_tool_related is False
    assert result.reason == "parse_error"


def test_llm_error_degrades_to_zero_confidence(monkeypatch, make_message):
    def boom(*args, **kwargs):
        raise RuntimeError("backend unavailable")

    monkeypatch.setattr("toolsight.llm.retry.call_llm", boom)

    result = LLMClassifier().classify(make_message(body="Your invoice"))

    assert result.confidence == 0
    assert result.reason.startswith("llm_error")


def test_llm_rate_limit_propagates(monkeypatch, make_message):
    def limited(*args, **kwargs):
        raise LLMRateLimitError("LLM rate limited")

    monkeypatch.setattr("toolsight.llm.retry.call_llm", limited)

    with pytest.raises(LLMRateLimitError):
        LLMClassifier().classify(make_message(body="Your invoice"))
