from __future__ import annotations

import pytest
from google.api_core.exceptions import DeadlineExceeded, ResourceExhausted
from tenacity import wait_none

from toolsight.errors import LLMRateLimitError
from toolsight.llm import retry as llm_retry
from toolsight.observability.telemetry import _COUNTERS


class FakeModel:
    def __init__(self, errors, text='{"ok": true}'):
        self.errors = list(errors)
        self.text = text
        self.calls = 0

    def generate_content(self, prompt, generation_config=None):
        self.calls += 1
        self.generation_config = generation_config
        if self.errors:
            raise self.errors.pop(0)
        return type("Response", (), {"text": self.text})()


@pytest.fixture
def fast_call_llm():
    return llm_retry.call_llm.retry_with(wait=wait_none())


def _use_model(monkeypatch, model):
    monkeypatch.setattr(
        llm_retry, "get_gemini_model_with_options", lambda system_instruction=None: model
    )


def test_rate_limit_is_retried_then_succeeds(monkeypatch, fast_call_llm):
    model = FakeModel([ResourceExhausted("quota")])
    _use_model(monkeypatch, model)

    assert fast_call_llm("prompt", counter_prefix="classifier") == '{"ok": true}'
    assert model.calls == 2
    assert model.generation_config["response_mime_type"] == "application/json"
    assert _COUNTERS["detection.classifier.rate_limited"] == 1


def test_rate_limit_exhaustion_raises(monkeypatch, fast_call_llm):
    model = FakeModel([ResourceExhausted("quota")] * 5)
    _use_model(monkeypatch, model)

    with pytest.raises(LLMRateLimitError):
        fast_call_llm("prompt")

    assert model.calls == 3


def test_timeout_is_not_retried(monkeypatch, fast_call_llm):
    model = FakeModel([DeadlineExceeded("slow")])
    _use_model(monkeypatch, model)

    with pytest.raises(TimeoutError):
        fast_call_llm("prompt")

    assert model.calls == 1
