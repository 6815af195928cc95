from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest
from googleapiclient.errors import HttpError

from toolsight.errors import MailboxAPIError, MailboxAuthError
from toolsight.infrastructure.retry import RetryPolicy
from toolsight.mailbox.client import MailboxGateway
from toolsight.mailbox.gmail_client import GmailClient
from toolsight.mailbox.models import EmailConnection, MailboxProvider
from toolsight.mailbox.outlook_client import OutlookClient
from toolsight.observability.telemetry import _COUNTERS

SINCE = datetime(2026, 10, 1, tzinfo=UTC)


def _connection(provider=MailboxProvider.GMAIL) -> EmailConnection:
    return EmailConnection(
        id="conn-1",
        user_id="user-1",
        organization_id="org-1",
        provider=provider,
        access_token="token",
        refresh_token="refresh",
        token_expires_at=datetime.now(UTC) + timedelta(hours=1),
    )


def _no_sleep_policy(stage: str) -> RetryPolicy:
    return RetryPolicy(stage=stage, sleep_fn=lambda _: None, jitter=0.0)


def _http_error(status: int) -> HttpError:
    return HttpError(SimpleNamespace(status=status, reason="error"), b"{}")


def _gmail_payload(message_id: str, subject: str = "Your invoice", days_ago: int = 1) -> dict:
    received = datetime(2026, 10, 10, tzinfo=UTC) - timedelta(days=days_ago)
    body = base64.urlsafe_b64encode(b"Total: $450").decode().rstrip("=")
    return {
        "id": message_id,
        "internalDate": str(int(received.timestamp() * 1000)),
        "payload": {
            "mimeType": "text/plain",
            "headers": [
                {"name": "From", "value": "billing@hubspot.com"},
                {"name": "Subject", "value": subject},
            ],
            "body": {"data": body},
        },
    }


class FakeRequest:
    def __init__(self, outcome):
        self.outcome = outcome

    def execute(self):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class FakeMessages:
    def __init__(self, list_outcomes, messages):
        self.list_outcomes = list(list_outcomes)
        self.messages = messages
        self.list_calls = []

    def list(self, **params):
        self.list_calls.append(params)
        return FakeRequest(self.list_outcomes.pop(0))

    def get(self, userId, id, format):
        return FakeRequest(self.messages[id])


class FakeGmailService:
    def __init__(self, list_outcomes, messages=None):
        self._messages = FakeMessages(list_outcomes, messages or {})

    def users(self):
        return self

    def messages(self):
        return self._messages


def _gmail_client(service, **kwargs) -> GmailClient:
    return GmailClient(
        service_factory=lambda connection: service,
        retry_policy=_no_sleep_policy("gmail.fetch"),
        **kwargs,
    )


def test_gmail_fetch_builds_query_and_parses():
    service = FakeGmailService(
        [{"messages": [{"id": "m1"}, {"id": "m2"}]}],
        {"m1": _gmail_payload("m1"), "m2": _gmail_payload("m2", days_ago=2)},
    )

    messages = _gmail_client(service).fetch(_connection(), SINCE)

    assert [m.id for m in messages] == ["m1", "m2"]
    assert messages[0].body_text == "Total: $450"
    params = service.messages().list_calls[0]
    assert params["maxResults"] == 300
    assert params["q"].endswith(f"after:{int(SINCE.timestamp())}")
    assert "invoice OR receipt" in params["q"]


def test_gmail_fetch_follows_pages_up_to_limit():
    service = FakeGmailService(
        [
            {"messages": [{"id": "m1"}, {"id": "m2"}], "nextPageToken": "p2"},
            {"messages": [{"id": "m3"}]},
        ],
        {f"m{i}": _gmail_payload(f"m{i}") for i in range(1, 4)},
    )

    messages = _gmail_client(service, max_results=3).fetch(_connection(), SINCE)

    assert len(messages) == 3
    second_call = service.messages().list_calls[1]
    assert second_call["pageToken"] == "p2"
    assert second_call["maxResults"] == 1


def test_gmail_rate_limit_is_retried():
    service = FakeGmailService(
        [_http_error(429), {"messages": [{"id": "m1"}]}], {"m1": _gmail_payload("m1")}
    )

    messages = _gmail_client(service).fetch(_connection(), SINCE)

    assert len(messages) == 1
    assert len(service.messages().list_calls) == 2


def test_gmail_rate_limit_exhaustion_fails_fetch():
    service = FakeGmailService([_http_error(429)] * 3)

    with pytest.raises(MailboxAPIError) as excinfo:
        _gmail_client(service).fetch(_connection(), SINCE)

    assert excinfo.value.status_code == 429
    assert _COUNTERS["gmail.fetch.retry_exhausted"] == 1


def test_gmail_server_error_is_not_retried():
    service = FakeGmailService([_http_error(500), {"messages": []}])

    with pytest.raises(MailboxAPIError):
        _gmail_client(service).fetch(_connection(), SINCE)

    assert len(service.messages().list_calls) == 1


def test_gmail_unauthorized_asks_to_reconnect():
    service = FakeGmailService([_http_error(401)])

    with pytest.raises(MailboxAuthError, match="reconnect"):
        _gmail_client(service).fetch(_connection(), SINCE)


def test_gmail_skips_vanished_and_unparseable_messages():
    service = FakeGmailService(
        [{"messages": [{"id": "gone"}, {"id": "broken"}, {"id": "ok"}]}],
        {
            "gone": _http_error(404),
            "broken": {"id": "broken"},
            "ok": _gmail_payload("ok"),
        },
    )

    messages = _gmail_client(service).fetch(_connection(), SINCE)

    assert [m.id for m in messages] == ["ok"]
    assert _COUNTERS["gmail.parse_failed.count"] == 1


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = ""

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers})
        return self.responses.pop(0)


def _graph_message(message_id: str, received: datetime, subject: str = "Invoice") -> dict:
    return {
        "id": message_id,
        "subject": subject,
        "bodyPreview": "Total: $20",
        "receivedDateTime": received.isoformat().replace("+00:00", "Z"),
        "from": {"emailAddress": {"name": "Zoom", "address": "billing@zoom.us"}},
        "toRecipients": [{"emailAddress": {"address": "Owner@Example.com"}}],
    }


def _outlook_client(session, **kwargs) -> OutlookClient:
    return OutlookClient(
        session=session,
        retry_policy=_no_sleep_policy("outlook.fetch"),
        base_url="https://graph.test/v1.0",
        **kwargs,
    )


def test_outlook_fetch_pages_and_filters_by_date():
    session = FakeSession(
        [
            FakeResponse(
                payload={
                    "value": [_graph_message("o1", SINCE + timedelta(days=2))],
                    "@odata.nextLink": "https://graph.test/v1.0/me/messages?$skip=1",
                }
            ),
            FakeResponse(
                payload={
                    "value": [
                        _graph_message("o2", SINCE + timedelta(days=1)),
                        _graph_message("old", SINCE - timedelta(days=3)),
                    ]
                }
            ),
        ]
    )

    messages = _outlook_client(session).fetch(_connection(MailboxProvider.OUTLOOK), SINCE)

    assert [m.id for m in messages] == ["o1", "o2"]
    assert messages[0].sender == "Zoom <billing@zoom.us>"
    assert messages[0].recipients == ["owner@example.com"]

    first, second = session.calls
    assert first["url"] == "https://graph.test/v1.0/me/messages"
    assert first["params"]["$search"].startswith('"received>=2026-10-01 AND (invoice OR')
    assert first["headers"]["Authorization"] == "Bearer token"
    assert second["url"].endswith("$skip=1")
    assert second["params"] is None


def test_outlook_rate_limit_exhaustion_fails_fetch():
    session = FakeSession([FakeResponse(429)] * 3)

    with pytest.raises(MailboxAPIError) as excinfo:
        _outlook_client(session).fetch(_connection(MailboxProvider.OUTLOOK), SINCE)

    assert excinfo.value.status_code == 429
    assert len(session.calls) == 3


def test_outlook_unauthorized_asks_to_reconnect():
    session = FakeSession([FakeResponse(401)])

    with pytest.raises(MailboxAuthError):
        _outlook_client(session).fetch(_connection(MailboxProvider.OUTLOOK), SINCE)


class PassthroughRefresher:
    def __init__(self, error=None):
        self.error = error
        self.calls = 0

    def ensure_fresh(self, connection):
        self.calls += 1
        if self.error:
            raise self.error
        return connection


class StaticClient:
    def __init__(self, messages):
        self.messages = messages

    def fetch(self, connection, since):
        return list(self.messages)


def test_gateway_sorts_oldest_first(make_message):
    newer = make_message(received_at=SINCE + timedelta(days=3))
    older = make_message(received_at=SINCE + timedelta(days=1))
    refresher = PassthroughRefresher()
    gateway = MailboxGateway(
        refresher=refresher, gmail=StaticClient([newer, older]), outlook=StaticClient([])
    )

    messages = gateway.fetch_messages(_connection(), SINCE)

    assert messages == [older, newer]
    assert refresher.calls == 1


def test_gateway_caps_messages(make_message):
    batch = [make_message() for _ in range(305)]
    gateway = MailboxGateway(
        refresher=PassthroughRefresher(), gmail=StaticClient([]), outlook=StaticClient(batch)
    )

    assert len(gateway.fetch_messages(_connection(MailboxProvider.OUTLOOK), SINCE)) == 300


def test_gateway_refresh_failure_stops_fetch():
    gateway = MailboxGateway(
        refresher=PassthroughRefresher(MailboxAuthError("Please reconnect your inbox.")),
        gmail=StaticClient([]),
        outlook=StaticClient([]),
    )

    with pytest.raises(MailboxAuthError):
        gateway.fetch_messages(_connection(), SINCE)
