"""
Mailbox gateway: one entry point for fetching a connection's messages,
whatever the provider.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from toolsight.config import MAILBOX_MAX_RESULTS
from toolsight.mailbox.gmail_client import GmailClient
from toolsight.mailbox.models import EmailConnection, MailboxProvider, RawMessage
from toolsight.mailbox.oauth import TokenRefresher
from toolsight.mailbox.outlook_client import OutlookClient
from toolsight.observability.logging import get_logger
from toolsight.observability.telemetry import counter

logger = get_logger(__name__)


class ProviderClient(Protocol):
    def fetch(self, connection: EmailConnection, since: datetime) -> list[RawMessage]: ...


class MailboxGateway:
    """Refreshes the access token, then fetches from the connection's provider."""

    def __init__(
        self,
        refresher: TokenRefresher | None = None,
        gmail: ProviderClient | None = None,
        outlook: ProviderClient | None = None,
    ):
        self.refresher = refresher or TokenRefresher()
        self.clients: dict[str, ProviderClient] = {
            MailboxProvider.GMAIL.value: gmail or GmailClient(),
            MailboxProvider.OUTLOOK.value: outlook or OutlookClient(),
        }

    def fetch_messages(self, connection: EmailConnection, since: datetime) -> list[RawMessage]:
        """
        Fetch at most MAILBOX_MAX_RESULTS messages received after ``since``,
        oldest first.

        Raises:
            MailboxAuthError: Token refresh failed or was rejected
            MailboxAPIError: The provider API failed
        """
        connection = self.refresher.ensure_fresh(connection)
        client = self.clients[connection.provider]

        messages = client.fetch(connection, since)[:MAILBOX_MAX_RESULTS]
        counter(f"mailbox.{connection.provider}.fetched", len(messages))
        logger.info(
            "Connection %s: %d messages since %s",
            connection.id,
            len(messages),
            since.isoformat(),
        )
        return sorted(messages, key=lambda m: m.received_at)
