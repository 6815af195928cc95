"""Shared LLM call with rate-limit retry.

Both LLMClassifier and LLMExtractor call through here. Only rate-limit
responses (ResourceExhausted / HTTP 429) are retried, three attempts with
exponential backoff; after that LLMRateLimitError propagates and fails the
enclosing scan step. Other SDK errors are raised unchanged for the caller to
degrade into a zero-confidence result.
"""

from __future__ import annotations

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from toolsight.config import LLM_MAX_RETRIES, LLM_TIMEOUT_SECONDS
from toolsight.errors import LLMRateLimitError
from toolsight.infrastructure.settings import GEMINI_MAX_TOKENS, GEMINI_TEMPERATURE
from toolsight.llm.gemini import get_gemini_model_with_options
from toolsight.observability.logging import get_logger
from toolsight.observability.telemetry import counter

logger = get_logger(__name__)


@retry(
    stop=stop_after_attempt(LLM_MAX_RETRIES),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    retry=retry_if_exception_type(LLMRateLimitError),
    reraise=True,
)
def call_llm(
    prompt: str,
    counter_prefix: str = "llm",
    system_instruction: str | None = None,
    json_output: bool = True,
) -> str:
    """Call Gemini and return the response text.

    Raises:
        LLMRateLimitError: On ResourceExhausted, retried until attempts run out.
        TimeoutError: On deadline exceeded.
        Exception: Any other SDK error (not retried).
    """
    from google.api_core.exceptions import DeadlineExceeded, ResourceExhausted

    model = get_gemini_model_with_options(system_instruction=system_instruction)

    generation_config = {
        "temperature": GEMINI_TEMPERATURE,
        "max_output_tokens": GEMINI_MAX_TOKENS,
    }
    if json_output:
        generation_config["response_mime_type"] = "application/json"

    try:
        response = model.generate_content(prompt, generation_config=generation_config)
        counter(f"detection.{counter_prefix}.llm_call")
        return response.text
    except ResourceExhausted as e:
        counter(f"detection.{counter_prefix}.rate_limited")
        logger.warning("LLM rate limited (429): %s", e)
        raise LLMRateLimitError(f"LLM rate limited: {e}") from e
    except DeadlineExceeded as e:
        counter(f"detection.{counter_prefix}.timeout")
        logger.warning("LLM call timed out after %ds", LLM_TIMEOUT_SECONDS)
        raise TimeoutError(f"LLM call timed out: {e}") from e
