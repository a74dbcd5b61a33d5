"""Upstream client: SDK error classification and gateway stream parsing."""
from types import SimpleNamespace

import httpx
import openai
import pytest

from app.config import Settings
from app.services.ai_service import TextDelta, UpstreamClient, Usage, classify_error
from app.services.errors import UpstreamError
from app.services.providers import CATALOG

REQUEST = httpx.Request("POST", "https://gateway.test/v1/chat/completions")


def test_rate_limit_is_mirrored():
    exc = openai.RateLimitError("quota", response=httpx.Response(429, request=REQUEST), body=None)
    err = classify_error(exc, "openai")
    assert err.status_code == 429
    assert err.rate_limited
    assert err.message == "Rate limited. Please wait and try again."
    assert err.provider == "openai"


def test_status_error_keeps_provider_status():
    exc = openai.InternalServerError("overloaded", response=httpx.Response(503, request=REQUEST), body=None)
    assert classify_error(exc).status_code == 503


def test_timeout_is_504():
    err = classify_error(openai.APITimeoutError(request=REQUEST))
    assert err.status_code == 504
    assert "timeout" in err.message.lower()


def test_unknown_error_is_500():
    err = classify_error(ValueError("weird"))
    assert err.status_code == 500
    assert err.message == "weird"


def test_upstream_error_passes_through():
    original = UpstreamError("x", 418)
    assert classify_error(original) is original


class _FakeStream:
    def __init__(self, chunks):
        self._chunks = chunks
        self.closed = False

    def __aiter__(self):
        return self._gen()

    async def _gen(self):
        for c in self._chunks:
            yield c

    async def close(self):
        self.closed = True


def _chunk(text=None, usage=None):
    choices = [SimpleNamespace(delta=SimpleNamespace(content=text))] if text is not None else []
    return SimpleNamespace(choices=choices, usage=usage)


def _client_with(stream=None, error=None):
    calls = []

    async def create(**kwargs):
        calls.append(kwargs)
        if error is not None:
            raise error
        return stream

    client = UpstreamClient(Settings(ai_gateway_api_key="k"))
    client._gateway_client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    return client, calls


@pytest.mark.asyncio
async def test_gateway_stream_yields_text_then_usage():
    stream = _FakeStream([
        _chunk("2 + 2"),
        _chunk(" = 4"),
        _chunk(usage=SimpleNamespace(prompt_tokens=12, completion_tokens=6)),
    ])
    client, calls = _client_with(stream)
    events = [e async for e in client.stream_text(CATALOG["openai"], "What is 2+2?")]

    assert events == [TextDelta("2 + 2"), TextDelta(" = 4"), Usage(12, 6)]
    assert calls[0]["model"] == "openai/gpt-4o"
    assert calls[0]["stream"] is True
    assert calls[0]["messages"] == [{"role": "user", "content": "What is 2+2?"}]
    assert stream.closed


@pytest.mark.asyncio
async def test_gateway_error_is_classified():
    exc = openai.RateLimitError("quota", response=httpx.Response(429, request=REQUEST), body=None)
    client, _ = _client_with(error=exc)
    with pytest.raises(UpstreamError) as exc_info:
        async for _ in client.stream_text(CATALOG["anthropic"], "hi"):
            pass
    assert exc_info.value.status_code == 429
    assert exc_info.value.provider == "anthropic"


@pytest.mark.asyncio
async def test_missing_gateway_key():
    client = UpstreamClient(Settings(ai_gateway_api_key=""))
    with pytest.raises(UpstreamError) as exc_info:
        async for _ in client.stream_text(CATALOG["xai"], "hi"):
            pass
    assert exc_info.value.status_code == 500
