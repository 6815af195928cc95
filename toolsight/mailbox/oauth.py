"""
OAuth access-token refresh for connected inboxes.

Consent and the initial code exchange happen outside this project. Before any
fetch, the access token is refreshed when it expires within
TOKEN_REFRESH_MARGIN_SECONDS (5 minutes), and the new token and expiry are
persisted to the connection.

Any refresh failure is fatal for that connection's scan and surfaces as
MailboxAuthError asking the user to reconnect. Refresh is not retried.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import requests
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from toolsight.config import MAILBOX_HTTP_TIMEOUT_SECONDS, TOKEN_REFRESH_MARGIN_SECONDS
from toolsight.errors import MailboxAuthError
from toolsight.infrastructure import settings
from toolsight.mailbox.connection_repository import ConnectionRepository
from toolsight.mailbox.models import EmailConnection, MailboxProvider
from toolsight.observability.logging import get_logger
from toolsight.observability.telemetry import counter, log_event

logger = get_logger(__name__)

GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
OUTLOOK_SCOPES = "offline_access Mail.Read"


class TokenRefresher:
    """Keeps a connection's access token valid for the next fetch."""

    def __init__(
        self,
        session: requests.Session | None = None,
        clock: Callable[[], datetime] | None = None,
        margin_seconds: int = TOKEN_REFRESH_MARGIN_SECONDS,
        persist: Callable[..., None] = ConnectionRepository.update_tokens,
    ):
        self.session = session or requests.Session()
        self._clock = clock or (lambda: datetime.now(UTC))
        self.margin = timedelta(seconds=margin_seconds)
        self._persist = persist

    def needs_refresh(self, connection: EmailConnection) -> bool:
        if not connection.access_token or connection.token_expires_at is None:
            return True
        return connection.token_expires_at - self._clock() <= self.margin

    def ensure_fresh(self, connection: EmailConnection) -> EmailConnection:
        """
        Return the connection with a usable access token.

        Raises:
            MailboxAuthError: If the token cannot be refreshed

        Side Effects:
            - Calls the provider's token endpoint when the token is expiring
            - Persists the new token/expiry on the connection row
        """
        if not self.needs_refresh(connection):
            return connection

        if not connection.refresh_token:
            counter("mailbox.token_refresh.failed")
            raise MailboxAuthError(
                "Token refresh failed: no refresh token stored. Please reconnect your inbox."
            )

        logger.info("Access token for connection %s expiring, refreshing", connection.id)
        try:
            if connection.provider == MailboxProvider.GMAIL.value:
                access_token, expires_at, refresh_token = self._refresh_gmail(connection)
            else:
                access_token, expires_at, refresh_token = self._refresh_outlook(connection)
        except MailboxAuthError:
            counter("mailbox.token_refresh.failed")
            raise
        except Exception as e:
            counter("mailbox.token_refresh.failed")
            logger.error("Token refresh failed for connection %s: %s", connection.id, e)
            raise MailboxAuthError(
                f"Token refresh failed: {e}. Please reconnect your inbox."
            ) from e

        self._persist(connection.id, access_token, expires_at, refresh_token)
        counter("mailbox.token_refresh.success")
        log_event("mailbox.token_refreshed", connection_id=connection.id)

        update: dict[str, Any] = {"access_token": access_token, "token_expires_at": expires_at}
        if refresh_token:
            update["refresh_token"] = refresh_token
        return connection.model_copy(update=update)

    def _refresh_gmail(
        self, connection: EmailConnection
    ) -> tuple[str, datetime | None, str | None]:
        credentials = Credentials(
            token=connection.access_token,
            refresh_token=connection.refresh_token,
            token_uri=settings.GOOGLE_TOKEN_URI,
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
            scopes=GMAIL_SCOPES,
        )
        credentials.refresh(Request(session=self.session))

        # google-auth reports expiry as naive UTC
        expiry = credentials.expiry.replace(tzinfo=UTC) if credentials.expiry else None
        rotated = credentials.refresh_token
        return (
            credentials.token,
            expiry,
            rotated if rotated and rotated != connection.refresh_token else None,
        )

    def _refresh_outlook(
        self, connection: EmailConnection
    ) -> tuple[str, datetime | None, str | None]:
        response = self.session.post(
            settings.MICROSOFT_TOKEN_URI,
            data={
                "client_id": settings.MICROSOFT_CLIENT_ID,
                "client_secret": settings.MICROSOFT_CLIENT_SECRET,
                "refresh_token": connection.refresh_token,
                "grant_type": "refresh_token",
                "scope": OUTLOOK_SCOPES,
            },
            timeout=MAILBOX_HTTP_TIMEOUT_SECONDS,
        )
        if not response.ok:
            raise MailboxAuthError(
                f"Token refresh failed: HTTP {response.status_code} {response.text[:200]}. "
                "Please reconnect your inbox."
            )

        payload = response.json()
        access_token = payload.get("access_token")
        if not access_token:
            raise MailboxAuthError(
                "Token refresh failed: response had no access_token. Please reconnect your inbox."
            )

        expires_in = payload.get("expires_in")
        expires_at = (
            self._clock() + timedelta(seconds=int(expires_in)) if expires_in is not None else None
        )
        return access_token, expires_at, payload.get("refresh_token")
