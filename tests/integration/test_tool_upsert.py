from __future__ import annotations

import concurrent.futures
from datetime import timedelta

import pytest

from toolsight.detection.models import BillingCycle, ExtractionResult
from toolsight.mailbox.connection_repository import ConnectionRepository
from toolsight.tools.models import normalize_vendor
from toolsight.tools.repository import DetectedToolRepository
from toolsight.tools.service import ToolUpsertService


def _extraction(**overrides) -> ExtractionResult:
    fields = {
        "vendor_name": "HubSpot",
        "amount": 450.0,
        "currency": "USD",
        "billing_cycle": BillingCycle.MONTHLY,
        "confidence": 90,
        "reason": "rule match",
    }
    fields.update(overrides)
    return ExtractionResult(**fields)


@pytest.fixture
def service(lexicon):
    return ToolUpsertService(lexicon)


def test_first_invoice_creates_active_tool(service, make_message, make_connection, today):
    connection = make_connection()
    renewal = today + timedelta(days=20)
    message = make_message(body="Your HubSpot CRM campaign subscription")

    result = service.upsert("org-1", _extraction(renewal_date=renewal), message, connection)

    assert result.created is True
    tool = DetectedToolRepository.get_by_vendor("org-1", "hubspot")
    assert tool.id == result.tool.id
    assert tool.vendor_name == "HubSpot"
    assert tool.status == "active"
    assert tool.renewal_count == 0
    assert tool.last_charge_amount == 450.0
    assert tool.currency == "USD"
    assert tool.billing_frequency == "monthly"
    assert tool.estimated_renewal_date == renewal
    assert tool.first_seen_date == message.received_at.date()
    assert tool.last_charge_date == message.received_at.date()
    assert tool.inferred_owner_id == connection.user_id
    assert tool.source_email_id == message.id
    assert tool.source_connection_id == connection.id


def test_second_invoice_merges_and_counts_renewal(service, make_message):
    service.upsert("org-1", _extraction(amount=400.0), make_message())

    result = service.upsert("org-1", _extraction(amount=450.0), make_message())

    assert result.created is False
    assert result.updated is True
    tool = DetectedToolRepository.get_by_vendor("org-1", "hubspot")
    assert tool.renewal_count == 1
    assert tool.last_charge_amount == 450.0
    assert DetectedToolRepository.count_by_vendor("org-1", "hubspot") == 1


def test_merge_without_amount_keeps_charge_and_counts_renewal(service, make_message):
    service.upsert("org-1", _extraction(), make_message())

    service.upsert("org-1", _extraction(amount=None, currency=None), make_message())

    tool = DetectedToolRepository.get_by_vendor("org-1", "hubspot")
    assert tool.last_charge_amount == 450.0
    assert tool.billing_frequency == "monthly"
    assert tool.renewal_count == 1


def test_repeated_merge_changes_only_renewal_count(service, make_message, today):
    extraction = _extraction(renewal_date=today + timedelta(days=20))
    message = make_message()
    service.upsert("org-1", extraction, message)
    service.upsert("org-1", extraction, message)
    once = DetectedToolRepository.get_by_vendor("org-1", "hubspot")

    service.upsert("org-1", extraction, message)
    twice = DetectedToolRepository.get_by_vendor("org-1", "hubspot")

    ignored = {"renewal_count", "updated_at"}
    assert twice.renewal_count == once.renewal_count + 1
    assert twice.model_dump(exclude=ignored) == once.model_dump(exclude=ignored)


def test_absent_fields_never_erase_known_values(service, make_message, today):
    renewal = today + timedelta(days=20)
    service.upsert("org-1", _extraction(renewal_date=renewal), make_message())

    service.upsert(
        "org-1",
        _extraction(amount=None, currency=None, billing_cycle=None, is_trial=False),
        make_message(),
    )

    tool = DetectedToolRepository.get_by_vendor("org-1", "hubspot")
    assert tool.last_charge_amount == 450.0
    assert tool.currency == "USD"
    assert tool.billing_frequency == "monthly"
    assert tool.estimated_renewal_date == renewal


def test_unknown_cycle_never_replaces_known_cycle(service, make_message):
    service.upsert("org-1", _extraction(), make_message())
    service.upsert("org-1", _extraction(billing_cycle=BillingCycle.UNKNOWN), make_message())

    assert DetectedToolRepository.get_by_vendor("org-1", "hubspot").billing_frequency == "monthly"


def test_trial_converts_to_active_without_counting_renewal(service, make_message):
    created = service.upsert(
        "org-1",
        _extraction(amount=None, currency=None, billing_cycle=BillingCycle.TRIAL, is_trial=True),
        make_message(),
    )
    assert created.tool.status == "trial"

    service.upsert("org-1", _extraction(), make_message())

    tool = DetectedToolRepository.get_by_vendor("org-1", "hubspot")
    assert tool.status == "active"
    assert tool.renewal_count == 0
    assert tool.billing_frequency == "monthly"


def test_cancellation_wins_on_create(service, make_message):
    result = service.upsert(
        "org-1", _extraction(is_trial=True, is_cancellation=True), make_message()
    )
    assert result.tool.status == "cancelled"


def test_cancelled_tool_stays_cancelled(service, make_message):
    service.upsert("org-1", _extraction(), make_message())
    service.upsert("org-1", _extraction(amount=None, is_cancellation=True), make_message())

    service.upsert("org-1", _extraction(amount=500.0), make_message())

    tool = DetectedToolRepository.get_by_vendor("org-1", "hubspot")
    assert tool.status == "cancelled"
    assert tool.renewal_count == 0
    assert tool.last_charge_amount == 500.0


def test_no_op_merge_reports_not_updated(service, make_message):
    service.upsert("org-1", _extraction(is_cancellation=True, amount=None), make_message())

    result = service.upsert(
        "org-1", _extraction(is_cancellation=True, amount=None, confidence=50), make_message()
    )

    assert result.created is False
    assert result.updated is False


def test_vendors_are_scoped_per_organization(service, make_message):
    service.upsert("org-1", _extraction(), make_message())
    result = service.upsert("org-2", _extraction(), make_message())

    assert result.created is True
    assert DetectedToolRepository.count_by_vendor("org-2", "hubspot") == 1


def test_vendor_spelling_variants_share_one_tool(service, make_message):
    service.upsert("org-1", _extraction(vendor_name="HubSpot"), make_message())
    result = service.upsert("org-1", _extraction(vendor_name="Hubspot"), make_message())

    assert result.created is False
    assert len(DetectedToolRepository.list_by_organization("org-1")) == 1


def test_concurrent_upserts_create_one_tool(service, make_message):
    messages = [make_message() for _ in range(8)]

    with concurrent.futures.ThreadPoolExecutor(max_workers=4) as pool:
        results = list(
            pool.map(lambda m: service.upsert("org-1", _extraction(), m), messages)
        )

    assert sum(r.created for r in results) == 1
    assert DetectedToolRepository.count_by_vendor("org-1", "hubspot") == 1
    assert DetectedToolRepository.get_by_vendor("org-1", "hubspot").renewal_count == 7


def test_upsert_without_vendor_raises(service, make_message):
    with pytest.raises(ValueError):
        service.upsert("org-1", _extraction(vendor_name=None), make_message())


@pytest.mark.parametrize(
    ("raw", "expected"),
    [("HubSpot", "hubspot"), ("Monday.com", "monday_com"), ("  Acme, Inc. ", "acme_inc")],
)
def test_normalize_vendor(raw, expected):
    assert normalize_vendor(raw) == expected


def test_new_tool_is_categorised(service, make_message):
    message = make_message(
        sender="billing@mailchimp.com",
        subject="Mailchimp receipt",
        body="campaign analytics newsletter automation growth",
    )

    result = service.upsert("org-1", _extraction(vendor_name="Mailchimp"), message)

    assert result.tool.tool_category == "marketing"
    assert result.tool.marketing_relevance_score == 70


def test_owner_role_adjusts_category_on_create(service, make_message, make_connection):
    connection = make_connection(owner_role="Platform Engineer")
    message = make_message(
        sender="billing@mailchimp.com",
        subject="Mailchimp receipt",
        body="campaign analytics newsletter automation growth",
    )

    result = service.upsert("org-1", _extraction(vendor_name="Mailchimp"), message, connection)

    assert result.tool.marketing_relevance_score == 50
    assert result.tool.tool_category == "marketing_adjacent"
    assert ConnectionRepository.get_by_id(connection.id).owner_role == "Platform Engineer"
