"""
Bounded retry with exponential backoff for external HTTP calls.

Only rate-limit responses (HTTP 429) are retried by default; anything else
propagates on the first attempt so the caller can fail the connection's scan.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from toolsight.errors import ToolsightError
from toolsight.observability.telemetry import counter, log_event

T = TypeVar("T")


class AdapterError(ToolsightError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class RetryPolicy:
    stage: str
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    jitter: float = 0.1
    retry_statuses: frozenset[int] = field(default_factory=lambda: frozenset({429}))
    sleep_fn: Callable[[float], None] = time.sleep

    def execute(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Run ``func``, retrying AdapterErrors whose status is retryable.

        Raises:
            AdapterError: The last error once attempts are exhausted, or the
                first non-retryable one.
        """
        attempt = 0
        last_error: AdapterError | None = None

        while attempt < self.max_attempts:
            attempt += 1
            try:
                return func(*args, **kwargs)
            except AdapterError as exc:
                log_event(
                    "stage_error",
                    stage=self.stage,
                    error=str(exc),
                    status=exc.status_code,
                    attempt=attempt,
                )
                if not self._should_retry(exc):
                    raise
                last_error = exc

            if attempt >= self.max_attempts:
                break

            self._backoff(attempt)

        counter(f"{self.stage}.retry_exhausted")
        assert last_error is not None
        raise last_error

    def _should_retry(self, exc: AdapterError) -> bool:
        return exc.status_code in self.retry_statuses

    def _backoff(self, attempt: int) -> None:
        counter("retry_count")
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        delay += random.uniform(0, self.jitter)
        log_event("retry_scheduled", stage=self.stage, attempt=attempt, delay=round(delay, 3))
        if self.sleep_fn is not None:
            self.sleep_fn(delay)
