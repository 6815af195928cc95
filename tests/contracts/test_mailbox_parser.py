from __future__ import annotations

import base64
from datetime import UTC, datetime

import pytest

from toolsight.mailbox.parser import (
    MailboxParsingError,
    parse_gmail_message,
    parse_outlook_message,
)
from toolsight.observability.telemetry import _COUNTERS


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii")


def _headers(**values: str) -> list[dict[str, str]]:
    return [{"name": name, "value": value} for name, value in values.items()]


def _gmail(payload: dict, **extra) -> dict:
    message = {"id": "gm-1", "internalDate": "1760000000000", "payload": payload}
    message.update(extra)
    return message


def test_gmail_plain_text_message():
    payload = {
        "mimeType": "text/plain",
        "headers": _headers(
            From="HubSpot Billing <billing@hubspot.com>",
            Subject="Your HubSpot invoice",
            To="Owner <Owner@Example.com>, finance@example.com",
            Cc="cfo@example.com",
        ),
        "body": {"data": _b64("Total: $450")},
    }

    message = parse_gmail_message(_gmail(payload))

    assert message.id == "gm-1"
    assert message.sender == "HubSpot Billing <billing@hubspot.com>"
    assert message.subject == "Your HubSpot invoice"
    assert message.body_text == "Total: $450"
    assert message.received_at == datetime.fromtimestamp(1760000000, tz=UTC)
    assert message.recipients == ["owner@example.com", "finance@example.com", "cfo@example.com"]
    assert _COUNTERS["gmail.parsed.count"] == 1


def test_gmail_html_only_body_is_converted():
    html = "<html><head><style>p{}</style></head><body><p>Total: <b>$99</b></p></body></html>"
    payload = {
        "mimeType": "text/html",
        "headers": _headers(Subject="Receipt"),
        "body": {"data": _b64(html)},
    }

    body = parse_gmail_message(_gmail(payload)).body_text

    assert "Total:" in body
    assert "$99" in body
    assert "<p>" not in body
    assert "p{}" not in body


def test_gmail_nested_multipart_prefers_plain_text():
    payload = {
        "mimeType": "multipart/mixed",
        "headers": _headers(Subject="Invoice"),
        "parts": [
            {
                "mimeType": "multipart/alternative",
                "parts": [
                    {"mimeType": "text/html", "body": {"data": _b64("<p>html version</p>")}},
                    {"mimeType": "text/plain", "body": {"data": _b64("plain version")}},
                ],
            },
            {"mimeType": "application/pdf", "body": {"attachmentId": "att-1"}},
        ],
    }

    assert parse_gmail_message(_gmail(payload)).body_text == "plain version"


def test_gmail_falls_back_to_snippet():
    payload = {"mimeType": "multipart/mixed", "headers": _headers(Subject="Invoice"), "parts": []}
    message = parse_gmail_message(_gmail(payload, snippet="Your invoice is ready"))
    assert message.body_text == "Your invoice is ready"


def test_gmail_body_is_truncated():
    payload = {
        "mimeType": "text/plain",
        "headers": _headers(Subject="Long"),
        "body": {"data": _b64("x" * 5000)},
    }
    assert len(parse_gmail_message(_gmail(payload)).body_text) == 3000


def test_gmail_date_header_fallback():
    payload = {
        "mimeType": "text/plain",
        "headers": _headers(Subject="Invoice", Date="Tue, 06 Oct 2026 09:30:00 +0200"),
        "body": {"data": _b64("hi")},
    }
    message = {"id": "gm-2", "payload": payload}

    parsed = parse_gmail_message(message)

    assert parsed.received_at == datetime(2026, 10, 6, 7, 30, tzinfo=UTC)


@pytest.mark.parametrize(
    "message",
    [
        {"payload": {"headers": []}},
        {"id": "gm-3"},
        {"id": "gm-4", "payload": {"headers": []}},
        "not a dict",
    ],
)
def test_gmail_malformed_messages_raise(message):
    with pytest.raises(MailboxParsingError):
        parse_gmail_message(message)


def test_outlook_message():
    message = parse_outlook_message(
        {
            "id": "ol-1",
            "subject": "Your Zoom receipt",
            "bodyPreview": "Amount paid: $14.99",
            "receivedDateTime": "2026-10-05T08:15:00Z",
            "from": {"emailAddress": {"name": "Zoom", "address": "billing@zoom.us"}},
            "toRecipients": [{"emailAddress": {"address": "Owner@Example.com"}}],
            "ccRecipients": [{"emailAddress": {"address": "finance@example.com"}}],
        }
    )

    assert message.id == "ol-1"
    assert message.sender == "Zoom <billing@zoom.us>"
    assert message.body_text == "Amount paid: $14.99"
    assert message.received_at == datetime(2026, 10, 5, 8, 15, tzinfo=UTC)
    assert message.recipients == ["owner@example.com", "finance@example.com"]


def test_outlook_html_body_used_when_no_preview():
    message = parse_outlook_message(
        {
            "id": "ol-2",
            "receivedDateTime": "2026-10-05T08:15:00Z",
            "body": {"contentType": "html", "content": "<div>Total: $20</div>"},
            "from": {"emailAddress": {"address": "billing@zoom.us"}},
        }
    )

    assert message.body_text == "Total: $20"
    assert message.sender == "billing@zoom.us"


@pytest.mark.parametrize(
    "message",
    [
        {"receivedDateTime": "2026-10-05T08:15:00Z"},
        {"id": "ol-3"},
        {"id": "ol-4", "receivedDateTime": "yesterday"},
    ],
)
def test_outlook_malformed_messages_raise(message):
    with pytest.raises(MailboxParsingError):
        parse_outlook_message(message)
