"""Exception types shared across the scan pipeline."""

from __future__ import annotations


class ToolsightError(RuntimeError):
    """Base class for pipeline errors that fail a connection's scan."""


class MailboxAuthError(ToolsightError):
    """OAuth token could not be refreshed; the user has to reconnect the inbox."""


class MailboxAPIError(ToolsightError):
    """Mailbox provider returned an error that retries did not resolve."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class LLMRateLimitError(ToolsightError):
    """LLM kept answering 429 after the bounded retries."""
