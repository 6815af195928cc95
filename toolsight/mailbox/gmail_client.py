"""
Gmail fetch client.

Lists billing-looking messages received after a watermark and fetches each in
full. Rate-limit responses (HTTP 429) are retried through RetryPolicy; any
other API failure fails the fetch with MailboxAPIError (or MailboxAuthError
for 401). Individual messages that cannot be parsed are skipped.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from hashlib import sha256
from typing import Any

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from toolsight.config import MAILBOX_MAX_RESULTS, MAILBOX_SEARCH_KEYWORDS
from toolsight.errors import MailboxAPIError, MailboxAuthError
from toolsight.infrastructure.retry import AdapterError, RetryPolicy
from toolsight.mailbox.models import EmailConnection, RawMessage
from toolsight.mailbox.parser import MailboxParsingError, parse_gmail_message
from toolsight.observability.logging import get_logger
from toolsight.observability.telemetry import counter, log_event, time_block

logger = get_logger(__name__)


def build_gmail_service(connection: EmailConnection) -> Any:
    """Build a Gmail API resource authorised with the connection's access token."""
    credentials = Credentials(token=connection.access_token)
    return build("gmail", "v1", credentials=credentials, cache_discovery=False)


def build_search_query(since: datetime) -> str:
    """Gmail search query: any billing keyword, received after ``since`` (epoch seconds)."""
    return f"{' OR '.join(MAILBOX_SEARCH_KEYWORDS)} after:{int(since.timestamp())}"


class GmailClient:
    """Fetches candidate billing messages from a Gmail inbox."""

    def __init__(
        self,
        service_factory: Callable[[EmailConnection], Any] = build_gmail_service,
        retry_policy: RetryPolicy | None = None,
        max_results: int = MAILBOX_MAX_RESULTS,
    ):
        self.service_factory = service_factory
        self.retry_policy = retry_policy or RetryPolicy(stage="gmail.fetch")
        self.max_results = max_results

    def fetch(self, connection: EmailConnection, since: datetime) -> list[RawMessage]:
        """
        Fetch up to ``max_results`` messages received after ``since``.

        Raises:
            MailboxAuthError: Gmail rejected the access token
            MailboxAPIError: Any other API failure, including exhausted 429 retries
        """
        service = self.service_factory(connection)
        query = build_search_query(since)

        with time_block("gmail.fetch.latency"):
            message_ids = self._list_ids(service, query)
            counter("gmail.messages.listed", len(message_ids))

            messages: list[RawMessage] = []
            for message_id in message_ids:
                payload = self._get_message(service, message_id)
                if payload is None:
                    continue
                try:
                    messages.append(parse_gmail_message(payload))
                except MailboxParsingError as e:
                    counter("gmail.parse_failed.count")
                    log_event(
                        "gmail.parse_failed",
                        message_id_hash=sha256(message_id.encode()).hexdigest()[:12],
                        error=str(e),
                    )

        logger.info(
            "Fetched %d/%d Gmail messages for connection %s",
            len(messages),
            len(message_ids),
            connection.id,
        )
        return messages

    def _list_ids(self, service: Any, query: str) -> list[str]:
        ids: list[str] = []
        page_token: str | None = None

        while len(ids) < self.max_results:
            params: dict[str, Any] = {
                "userId": "me",
                "q": query,
                "maxResults": min(500, self.max_results - len(ids)),
            }
            if page_token:
                params["pageToken"] = page_token

            response = self._execute(service.users().messages().list(**params))
            ids.extend(msg["id"] for msg in response.get("messages", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        return ids[: self.max_results]

    def _get_message(self, service: Any, message_id: str) -> dict[str, Any] | None:
        request = service.users().messages().get(userId="me", id=message_id, format="full")
        try:
            return self._execute(request)
        except MailboxAPIError as e:
            if e.status_code == 404:
                # Deleted between list and get
                logger.warning("Gmail message vanished before fetch, skipping")
                return None
            raise

    def _execute(self, request: Any) -> dict[str, Any]:
        def call() -> dict[str, Any]:
            try:
                return request.execute()
            except HttpError as e:
                raise AdapterError(f"Gmail API error: {e}", status_code=e.resp.status) from e

        try:
            return self.retry_policy.execute(call)
        except AdapterError as e:
            log_event("gmail.fetch.error", status=e.status_code)
            if e.status_code == 401:
                raise MailboxAuthError(
                    "Gmail rejected the access token. Please reconnect your inbox."
                ) from e
            raise MailboxAPIError(str(e), status_code=e.status_code) from e
