"""
Outlook fetch client over Microsoft Graph.

Graph rejects $filter combined with $search on messages, so the received-date
bound goes into the KQL search string and is re-checked locally.
"""

from __future__ import annotations

from datetime import datetime
from hashlib import sha256
from typing import Any

import requests

from toolsight.config import (
    MAILBOX_HTTP_TIMEOUT_SECONDS,
    MAILBOX_MAX_RESULTS,
    MAILBOX_SEARCH_KEYWORDS,
)
from toolsight.errors import MailboxAPIError, MailboxAuthError
from toolsight.infrastructure import settings
from toolsight.infrastructure.retry import AdapterError, RetryPolicy
from toolsight.mailbox.models import EmailConnection, RawMessage
from toolsight.mailbox.parser import MailboxParsingError, parse_outlook_message
from toolsight.observability.logging import get_logger
from toolsight.observability.telemetry import counter, log_event, time_block

logger = get_logger(__name__)

SELECT_FIELDS = "id,from,subject,bodyPreview,receivedDateTime,toRecipients,ccRecipients"


def build_search_expression(since: datetime) -> str:
    keywords = " OR ".join(MAILBOX_SEARCH_KEYWORDS)
    return f'"received>={since.date().isoformat()} AND ({keywords})"'


class OutlookClient:
    """Fetches candidate billing messages from an Outlook mailbox."""

    def __init__(
        self,
        session: requests.Session | None = None,
        retry_policy: RetryPolicy | None = None,
        max_results: int = MAILBOX_MAX_RESULTS,
        base_url: str | None = None,
    ):
        self.session = session or requests.Session()
        self.retry_policy = retry_policy or RetryPolicy(stage="outlook.fetch")
        self.max_results = max_results
        self.base_url = (base_url or settings.MICROSOFT_GRAPH_URL).rstrip("/")

    def fetch(self, connection: EmailConnection, since: datetime) -> list[RawMessage]:
        """
        Fetch up to ``max_results`` messages received at or after ``since``.

        Raises:
            MailboxAuthError: Graph rejected the access token
            MailboxAPIError: Any other API failure, including exhausted 429 retries
        """
        url: str | None = f"{self.base_url}/me/messages"
        params: dict[str, Any] | None = {
            "$search": build_search_expression(since),
            "$top": self.max_results,
            "$select": SELECT_FIELDS,
        }
        headers = {"Authorization": f"Bearer {connection.access_token}"}

        raw: list[dict[str, Any]] = []
        with time_block("outlook.fetch.latency"):
            while url and len(raw) < self.max_results:
                page = self._get(url, params, headers)
                raw.extend(page.get("value", []))
                # nextLink already carries the query string
                url = page.get("@odata.nextLink")
                params = None
        counter("outlook.messages.listed", len(raw))

        messages: list[RawMessage] = []
        for payload in raw[: self.max_results]:
            try:
                message = parse_outlook_message(payload)
            except MailboxParsingError as e:
                counter("outlook.parse_failed.count")
                log_event(
                    "outlook.parse_failed",
                    message_id_hash=sha256(str(payload.get("id", "")).encode()).hexdigest()[:12],
                    error=str(e),
                )
                continue
            if message.received_at >= since:
                messages.append(message)

        logger.info(
            "Fetched %d/%d Outlook messages for connection %s",
            len(messages),
            len(raw),
            connection.id,
        )
        return messages

    def _get(
        self, url: str, params: dict[str, Any] | None, headers: dict[str, str]
    ) -> dict[str, Any]:
        def call() -> dict[str, Any]:
            try:
                response = self.session.get(
                    url, params=params, headers=headers, timeout=MAILBOX_HTTP_TIMEOUT_SECONDS
                )
            except requests.RequestException as e:
                raise AdapterError(f"Graph request failed: {e}") from e
            if not response.ok:
                raise AdapterError(
                    f"Graph API error: HTTP {response.status_code} {response.text[:200]}",
                    status_code=response.status_code,
                )
            return response.json()

        try:
            return self.retry_policy.execute(call)
        except AdapterError as e:
            log_event("outlook.fetch.error", status=e.status_code)
            if e.status_code == 401:
                raise MailboxAuthError(
                    "Microsoft Graph rejected the access token. Please reconnect your inbox."
                ) from e
            raise MailboxAPIError(str(e), status_code=e.status_code) from e
