import pytest
import requests

from nomadic_journal.llm.deadline import Deadline
from nomadic_journal.llm.providers import base
from nomadic_journal.llm.providers.anthropic_provider import AnthropicProvider
from nomadic_journal.llm.providers.gemini_provider import GeminiProvider
from nomadic_journal.llm.providers.ollama_provider import OllamaProvider
from nomadic_journal.llm.providers.openai_provider import OpenAIProvider
from nomadic_journal.llm.types import (
    CompletionRequest,
    InvalidRequest,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
    Unauthorized,
)


class FakeResponse:
    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


def test_gemini_uses_google_api_key_alias(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.setenv("GOOGLE_API_KEY", "test-key")

    provider = GeminiProvider()
    assert provider._api_key == "test-key"


def test_openai_without_key_is_unauthorized(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    provider = OpenAIProvider()
    with pytest.raises(Unauthorized):
        provider.complete(CompletionRequest(prompt="hi", model="gpt-4.1-mini"), Deadline(5))


def test_ollama_reads_base_url_from_env(monkeypatch):
    monkeypatch.setenv("OLLAMA_BASE_URL", "http://ollama.internal:11434/")
    captured = {}

    def fake_post(url, headers=None, json=None, timeout=None):
        captured["url"] = url
        captured["json"] = json
        return FakeResponse(200, {"response": " hello ", "prompt_eval_count": 3, "eval_count": 2})

    monkeypatch.setattr(base.requests, "post", fake_post)
    request = CompletionRequest(prompt="hi", model="llama3.1", stop=("END",))
    result = OllamaProvider().complete(request, Deadline(5))

    assert captured["url"] == "http://ollama.internal:11434/api/generate"
    assert captured["json"]["options"]["stop"] == ["END"]
    assert result.text == "hello"
    assert (result.tokens_in, result.tokens_out) == (3, 2)


def test_anthropic_parses_text_blocks(monkeypatch):
    def fake_post(url, headers=None, json=None, timeout=None):
        assert headers["x-api-key"] == "k"
        assert json["system"] == "be brief"
        assert timeout <= 5
        return FakeResponse(
            200,
            {
                "id": "msg_1",
                "content": [{"type": "text", "text": "Kyoto "}, {"type": "text", "text": "was calm."}],
                "usage": {"input_tokens": 12, "output_tokens": 4},
            },
        )

    monkeypatch.setattr(base.requests, "post", fake_post)
    request = CompletionRequest(prompt="hi", system="be brief", model="claude-3-5-haiku-latest", timeout_seconds=30)
    result = AnthropicProvider(api_key="k").complete(request, Deadline(5))

    assert result.text == "Kyoto was calm."
    assert result.provider == "anthropic"
    assert result.tokens_in == 12


@pytest.mark.parametrize(
    "status,expected",
    [
        (401, Unauthorized),
        (429, RateLimited),
        (504, ProviderTimeout),
        (422, InvalidRequest),
        (503, ProviderUnavailable),
    ],
)
def test_http_status_maps_to_error_kind(monkeypatch, status, expected):
    monkeypatch.setattr(base.requests, "post", lambda *a, **kw: FakeResponse(status, text="nope"))

    with pytest.raises(expected) as info:
        base.post_json("anthropic", "https://example.invalid", {}, timeout=1)
    assert info.value.provider == "anthropic"


def test_transport_timeout_maps_to_provider_timeout(monkeypatch):
    def fake_post(*args, **kwargs):
        raise requests.Timeout("read timed out")

    monkeypatch.setattr(base.requests, "post", fake_post)

    with pytest.raises(ProviderTimeout):
        base.post_json("gemini", "https://example.invalid", {}, timeout=1)


def test_expired_deadline_fails_before_sending(monkeypatch):
    def fake_post(*args, **kwargs):
        raise AssertionError("request should not be sent")

    monkeypatch.setattr(base.requests, "post", fake_post)

    with pytest.raises(ProviderTimeout):
        GeminiProvider(api_key="k").complete(CompletionRequest(prompt="hi", model="m"), Deadline(0))


def test_stop_sequences_cut_text():
    assert base.apply_stop_sequences("one\nEND\ntwo", ("END",)) == "one\n"
    assert base.apply_stop_sequences("no stop here", ()) == "no stop here"
