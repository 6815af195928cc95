"""
Mailbox payload parsers: Gmail API messages and Microsoft Graph messages
converted into RawMessage.

Side-effect free apart from telemetry. Parse failures raise
MailboxParsingError; the fetch clients skip those messages.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Iterable
from datetime import UTC, datetime
from email.utils import getaddresses
from hashlib import sha256
from typing import Any

from dateutil import parser as date_parser
from pydantic import ValidationError

from toolsight.mailbox.models import RawMessage
from toolsight.observability.telemetry import counter, log_event
from toolsight.utils.html import html_to_text

_TEXT_PLAIN = "text/plain"
_TEXT_HTML = "text/html"


class MailboxParsingError(ValueError):
    """Raised when a provider payload cannot be converted into a RawMessage."""


def _hash_id(message_id: Any) -> str:
    return sha256(str(message_id or "").encode()).hexdigest()[:12]


def _header_lookup(headers: Iterable[dict[str, str]], name: str) -> str | None:
    name_lower = name.lower()
    for header in headers:
        if header.get("name", "").lower() == name_lower:
            return header.get("value")
    return None


def _decode_base64(data: str) -> str:
    """Decode Gmail's URL-safe base64 payloads."""
    padding = "=" * (-len(data) % 4)
    try:
        decoded = base64.urlsafe_b64decode((data + padding).encode("utf-8"))
        return decoded.decode("utf-8", errors="replace")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise MailboxParsingError("failed to decode message body") from exc


def _extract_body(payload: dict[str, Any]) -> dict[str, str | None]:
    """Find the first text/plain and text/html bodies, walking nested multiparts."""
    body_text: str | None = None
    body_html: str | None = None

    stack = [payload]
    while stack:
        part = stack.pop(0)
        mime_type = part.get("mimeType", "")
        data = (part.get("body") or {}).get("data")

        if data and mime_type == _TEXT_PLAIN and body_text is None:
            body_text = _decode_base64(data)
        elif data and mime_type == _TEXT_HTML and body_html is None:
            body_html = _decode_base64(data)

        stack.extend(part.get("parts") or [])

    return {"text": body_text, "html": body_html}


def _split_recipients(*values: str | None) -> list[str]:
    addresses = getaddresses([v for v in values if v])
    return [addr.lower() for _, addr in addresses if addr]


def parse_gmail_message(message: dict[str, Any]) -> RawMessage:
    """
    Convert a Gmail API message (format=full) into RawMessage.

    The received time comes from internalDate (epoch milliseconds), falling
    back to the Date header. Recipients are the union of To and Cc.
    """
    if not isinstance(message, dict):
        raise MailboxParsingError("message must be a dict")

    try:
        message_id = message["id"]
        payload = message["payload"]
    except KeyError as exc:
        raise MailboxParsingError(f"missing field: {exc}") from exc

    headers = payload.get("headers") or []
    subject = _header_lookup(headers, "Subject") or ""
    sender = _header_lookup(headers, "From") or ""

    internal_date = message.get("internalDate")
    if internal_date:
        try:
            received_at = datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
        except (TypeError, ValueError) as exc:
            raise MailboxParsingError("invalid internalDate") from exc
    else:
        date_header = _header_lookup(headers, "Date")
        if not date_header:
            raise MailboxParsingError("message has no date")
        try:
            received_at = date_parser.parse(date_header)
        except (ValueError, OverflowError) as exc:
            raise MailboxParsingError("invalid Date header") from exc

    bodies = _extract_body(payload)
    if bodies["text"]:
        body = bodies["text"]
    elif bodies["html"]:
        body = html_to_text(bodies["html"])
    else:
        body = message.get("snippet") or ""

    recipients = _split_recipients(_header_lookup(headers, "To"), _header_lookup(headers, "Cc"))
    return _build(message_id, sender, subject, body, received_at, recipients, provider="gmail")


def _graph_address(entry: dict[str, Any] | None) -> str:
    if not entry:
        return ""
    email_address = entry.get("emailAddress") or {}
    address = email_address.get("address") or ""
    name = email_address.get("name")
    if name and address and name != address:
        return f"{name} <{address}>"
    return address


def parse_outlook_message(message: dict[str, Any]) -> RawMessage:
    """
    Convert a Microsoft Graph message into RawMessage.

    Graph returns bodyPreview (plain text) for the $select used by the fetch,
    and receivedDateTime as an ISO-8601 UTC timestamp.
    """
    if not isinstance(message, dict):
        raise MailboxParsingError("message must be a dict")

    message_id = message.get("id")
    received = message.get("receivedDateTime")
    if not message_id or not received:
        raise MailboxParsingError("missing id or receivedDateTime")

    try:
        received_at = date_parser.isoparse(received)
    except ValueError as exc:
        raise MailboxParsingError("invalid receivedDateTime") from exc

    body = message.get("bodyPreview") or ""
    full_body = message.get("body") or {}
    if not body and full_body.get("content"):
        content = full_body["content"]
        body = html_to_text(content) if full_body.get("contentType") == "html" else content

    recipients = [
        (entry.get("emailAddress") or {}).get("address", "").lower()
        for entry in (message.get("toRecipients") or []) + (message.get("ccRecipients") or [])
    ]
    return _build(
        message_id,
        _graph_address(message.get("from")),
        message.get("subject") or "",
        body,
        received_at,
        [r for r in recipients if r],
        provider="outlook",
    )


def _build(
    message_id: str,
    sender: str,
    subject: str,
    body: str,
    received_at: datetime,
    recipients: list[str],
    provider: str,
) -> RawMessage:
    try:
        parsed = RawMessage(
            id=str(message_id),
            sender=sender,
            subject=subject,
            body_text=body,
            received_at=received_at,
            recipients=recipients,
        )
    except ValidationError as exc:
        counter("schema_validation_failures")
        log_event(
            f"{provider}.raw_message.validation_failed",
            errors=exc.errors(),
            message_id_hash=_hash_id(message_id),
        )
        raise MailboxParsingError("message validation failed") from exc

    counter(f"{provider}.parsed.count")
    return parsed
