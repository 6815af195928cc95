from __future__ import annotations

from datetime import timedelta

import pytest

from toolsight.detection.extractor import (
    LLMExtractor,
    RuleBasedExtractor,
    normalize_currency,
    parse_amount,
)
from toolsight.detection.models import BillingCycle
from toolsight.detection.senders import registrable_domain, vendor_from_sender


@pytest.fixture
def extractor(lexicon, today):
    return RuleBasedExtractor(lexicon, today_fn=lambda: today)


def test_hubspot_invoice_extraction(extractor, make_message, hubspot_body, today):
    result = extractor.extract(make_message(body=hubspot_body(days=20)))

    assert result.vendor_name == "Hubspot"
    assert result.amount == 450.0
    assert result.currency == "USD"
    assert result.billing_cycle == BillingCycle.MONTHLY
    assert result.renewal_date == today + timedelta(days=20)
    assert result.is_trial is False
    assert result.is_cancellation is False
    assert result.confidence >= 40


def test_renewal_date_beyond_a_year_is_not_extracted(extractor, make_message, today):
    far = (today + timedelta(days=400)).isoformat()
    message = make_message(body=f"Your plan renews on {far}. Total: $99 per month.")

    result = extractor.extract(message)

    assert result.renewal_date is None
    assert result.amount == 99.0


def test_past_renewal_date_is_not_extracted(extractor, make_message, today):
    past = (today - timedelta(days=30)).isoformat()
    result = extractor.extract(make_message(body=f"Your plan renewed on {past}. Total: $99."))
    assert result.renewal_date is None


def test_implausible_amount_is_not_extracted(extractor, make_message):
    result = extractor.extract(make_message(body="Invoice total: $250,000.00 for your account."))
    assert result.amount is None
    assert result.currency is None


def test_euro_amount(extractor, make_message):
    result = extractor.extract(
        make_message(sender="billing@canva.com", subject="Receipt", body="Total: €49.00 yearly")
    )
    assert result.amount == 49.0
    assert result.currency == "EUR"
    assert result.billing_cycle == BillingCycle.YEARLY
    assert result.vendor_name == "Canva"


def test_free_mail_sender_never_names_a_vendor(extractor, make_message):
    result = extractor.extract(
        make_message(sender="someone@gmail.com", subject="Invoice", body="Total: $20 monthly")
    )
    assert result.vendor_name is None
    assert result.amount == 20.0


def test_billing_platform_vendor_from_display_name(extractor, make_message):
    message = make_message(
        sender='"Acme Analytics via Stripe" <receipts@stripe.com>',
        subject="Your receipt",
        body="Amount paid: $15.00",
    )
    assert extractor.extract(message).vendor_name == "Acme Analytics"


def test_trial_ending(extractor, make_message, today):
    ends = (today + timedelta(days=5)).isoformat()
    message = make_message(
        sender="team@notion.so",
        subject="Your free trial ends soon",
        body=f"Your trial ends on {ends}. Add a payment method to keep your workspace.",
    )

    result = extractor.extract(message)

    assert result.is_trial is True
    assert result.billing_cycle == BillingCycle.TRIAL
    assert result.renewal_date == today + timedelta(days=5)
    assert result.vendor_name == "Notion"


def test_cancellation_is_flagged(extractor, make_message):
    message = make_message(
        sender="billing@zoom.us",
        subject="Subscription cancelled",
        body="Your subscription has been cancelled and will not renew.",
    )
    result = extractor.extract(message)
    assert result.is_cancellation is True
    assert result.vendor_name == "Zoom"


def test_extractor_never_invents_fields(extractor, make_message):
    message = make_message(
        sender="hello@figma.com", subject="Your plan", body="Thanks for using Figma."
    )

    result = extractor.extract(message)

    assert result.vendor_name == "Figma"
    assert result.amount is None
    assert result.renewal_date is None
    assert result.billing_cycle is None
    assert result.currency is None


def test_extraction_error_returns_empty_result(extractor, make_message, monkeypatch):
    def boom(message):
        raise ValueError("bad regex state")

    monkeypatch.setattr(extractor, "_extract", boom)

    result = extractor.extract(make_message(body="Total: $10"))

    assert result.vendor_name is None
    assert result.confidence == 0
    assert result.reason.startswith("extraction_error")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("450", 450.0), ("1,299.50", 1299.5), ("0", None), ("-5", None), ("100000", None), ("abc", None)],
)
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


@pytest.mark.parametrize(("raw", "expected"), [("usd", "USD"), ("GBP", "GBP"), ("$", "USD"), ("", "USD")])
def test_normalize_currency(raw, expected):
    assert normalize_currency(raw) == expected


def test_registrable_domain(lexicon):
    assert registrable_domain("mail.hubspot.com", lexicon) == "hubspot.com"
    assert registrable_domain("billing.acme.co.uk", lexicon) == "acme.co.uk"
    assert vendor_from_sender("Billing <billing@mail.hubspot.com>", lexicon) == "Hubspot"


def test_llm_extraction_applies_plausibility_rules(today):
    far = (today + timedelta(days=400)).isoformat()
    response = (
        '{"vendor_name": "Acme", "amount": -5, "currency": "dollars", '
        f'"billing_cycle": "weekly", "renewal_date": "{far}", "is_trial": false, '
        '"is_cancellation": false, "confidence": 70, "reason": "invoice"}'
    )

    result = LLMExtractor.parse_response(response, today)

    assert result.vendor_name == "Acme"
    assert result.amount is None
    assert result.currency == "USD"
    assert result.billing_cycle == BillingCycle.UNKNOWN
    assert result.renewal_date is None
    assert result.confidence == 70


def test_llm_extraction_keeps_valid_fields(today):
    renewal = (today + timedelta(days=30)).isoformat()
    response = (
        '{"vendor_name": "HubSpot", "amount": 450, "currency": "usd", '
        f'"billing_cycle": "monthly", "renewal_date": "{renewal}", "confidence": 90}}'
    )

    result = LLMExtractor.parse_response(response, today)

    assert result.amount == 450.0
    assert result.currency == "USD"
    assert result.billing_cycle == BillingCycle.MONTHLY
    assert result.renewal_date == today + timedelta(days=30)


def test_llm_extraction_parse_failure_is_empty(today):
    result = LLMExtractor.parse_response("Sorry, I cannot help with that.", today)
    assert result.vendor_name is None
    assert result.confidence == 0
    assert result.reason == "parse_error"
