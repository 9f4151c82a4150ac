"""Tests for the streaming providers. HTTP-backed ones run against httpx.MockTransport."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest
from google.genai import errors

from model_switcher.core.config import settings
from model_switcher.services.llm import get_stream_provider
from model_switcher.services.llm.anthropic import AnthropicStreamProvider
from model_switcher.services.llm.base import (
    AgentPlatform,
    ContextMessage,
    ProviderConfigError,
    ProviderError,
    ProviderOverloadedError,
    StreamOutcome,
)
from model_switcher.services.llm.gemini import GeminiStreamProvider
from model_switcher.services.llm.llama import LlamaStreamProvider, parse_chunk
from model_switcher.services.llm.openai import OpenAIStreamProvider

CONTEXT = [ContextMessage(role="user", content="Hi"), ContextMessage(role="assistant", content="Hello!")]


def _mock_client(base_url, handler):
    return httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(handler))


@pytest.fixture
def keys(monkeypatch):
    monkeypatch.setattr(settings, "anthropic_api_key", "sk-ant-test")
    monkeypatch.setattr(settings, "openai_api_key", "sk-test")
    monkeypatch.setattr(settings, "llama_api_endpoint", "http://localhost:11434")
    monkeypatch.setattr(settings, "gemini_api_key", "gm-test")


def test_factory_returns_provider_per_platform(keys):
    assert isinstance(get_stream_provider("anthropic"), AnthropicStreamProvider)
    assert isinstance(get_stream_provider(AgentPlatform.OPENAI), OpenAIStreamProvider)
    assert isinstance(get_stream_provider("llama"), LlamaStreamProvider)
    assert isinstance(get_stream_provider("gemini"), GeminiStreamProvider)
    with pytest.raises(ValueError):
        get_stream_provider("mistral")


@pytest.mark.asyncio
async def test_unconfigured_provider_refuses_to_open(monkeypatch):
    monkeypatch.setattr(settings, "anthropic_api_key", "")
    provider = AnthropicStreamProvider()
    assert provider.is_configured is False
    with pytest.raises(ProviderConfigError):
        await provider.open(CONTEXT)


# --- Anthropic ---


def _anthropic_sse(*events):
    return "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events)


def _event_stream(body):
    return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})


@pytest.mark.asyncio
async def test_anthropic_streams_text_deltas(keys, monkeypatch):
    monkeypatch.setattr(settings, "system_prompt", "Be brief")
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return _event_stream(
            _anthropic_sse(
                {"type": "message_start", "message": {"id": "msg_1", "type": "message", "role": "assistant",
                                                      "content": [], "model": "claude", "usage": {}}},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hello"}},
                {"type": "ping"},
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": " there"}},
                {"type": "message_stop"},
            )
        )

    provider = AnthropicStreamProvider(http_client=_mock_client("https://api.anthropic.com", handler))
    stream = await provider.open(CONTEXT)
    assert [f async for f in stream] == ["Hello", " there"]
    assert stream.outcome == StreamOutcome.EXHAUSTED

    assert seen["path"] == "/v1/messages"
    assert seen["headers"]["x-api-key"] == "sk-ant-test"
    assert seen["body"]["stream"] is True
    assert seen["body"]["system"] == "Be brief"
    assert seen["body"]["messages"][1] == {"role": "assistant", "content": "Hello!"}
    await provider.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 503, 529])
async def test_anthropic_overload_status(keys, status):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(
            status, json={"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}
        )

    provider = AnthropicStreamProvider(http_client=_mock_client("https://api.anthropic.com", handler))
    with pytest.raises(ProviderOverloadedError):
        await provider.open(CONTEXT)
    # The router fails over instead of the SDK retrying
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_anthropic_request_error_is_not_overload(keys):
    def handler(request):
        return httpx.Response(
            400, json={"type": "error", "error": {"type": "invalid_request_error", "message": "bad"}}
        )

    provider = AnthropicStreamProvider(http_client=_mock_client("https://api.anthropic.com", handler))
    with pytest.raises(ProviderError) as exc_info:
        await provider.open(CONTEXT)
    assert not isinstance(exc_info.value, ProviderOverloadedError)
    assert "bad" in str(exc_info.value)


@pytest.mark.asyncio
async def test_anthropic_overload_mid_stream(keys):
    def handler(request):
        return _event_stream(
            _anthropic_sse(
                {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Par"}},
                {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
            )
        )

    provider = AnthropicStreamProvider(http_client=_mock_client("https://api.anthropic.com", handler))
    stream = await provider.open(CONTEXT)
    received = []
    with pytest.raises(ProviderOverloadedError):
        async for fragment in stream:
            received.append(fragment)
    assert received == ["Par"]
    assert stream.outcome == StreamOutcome.OVERLOADED


# --- OpenAI ---


def _sse(*events):
    return "".join(f"data: {json.dumps(e) if not isinstance(e, str) else e}\n\n" for e in events)


@pytest.mark.asyncio
async def test_openai_streams_deltas(keys, monkeypatch):
    monkeypatch.setattr(settings, "system_prompt", "Be brief")
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return _event_stream(
            _sse(
                {"id": "c1", "object": "chat.completion.chunk", "choices": [{"index": 0, "delta": {"role": "assistant"}}]},
                {"id": "c1", "object": "chat.completion.chunk", "choices": [{"index": 0, "delta": {"content": "Hi"}}]},
                {"id": "c1", "object": "chat.completion.chunk", "choices": []},
                {"id": "c1", "object": "chat.completion.chunk", "choices": [{"index": 0, "delta": {"content": " you"}}]},
                "[DONE]",
            )
        )

    provider = OpenAIStreamProvider(http_client=_mock_client("https://api.openai.com/v1", handler))
    stream = await provider.open(CONTEXT)
    assert [f async for f in stream] == ["Hi", " you"]

    assert seen["url"] == "https://api.openai.com/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["stream"] is True
    assert seen["body"]["messages"][0] == {"role": "system", "content": "Be brief"}
    await provider.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 503])
async def test_openai_unavailable_is_overload(keys, status):
    def handler(request):
        return httpx.Response(status, json={"error": {"message": "slow down", "type": "rate_limit"}})

    provider = OpenAIStreamProvider(http_client=_mock_client("https://api.openai.com/v1", handler))
    with pytest.raises(ProviderOverloadedError):
        await provider.open(CONTEXT)


@pytest.mark.asyncio
async def test_openai_bad_request_is_not_overload(keys):
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "bad model", "type": "invalid_request_error"}})

    provider = OpenAIStreamProvider(http_client=_mock_client("https://api.openai.com/v1", handler))
    with pytest.raises(ProviderError) as exc_info:
        await provider.open(CONTEXT)
    assert not isinstance(exc_info.value, ProviderOverloadedError)


@pytest.mark.asyncio
async def test_openai_error_chunk(keys):
    def handler(request):
        return _event_stream(_sse({"error": {"message": "server exploded"}}))

    provider = OpenAIStreamProvider(http_client=_mock_client("https://api.openai.com/v1", handler))
    stream = await provider.open(CONTEXT)
    with pytest.raises(ProviderError, match="server exploded"):
        [f async for f in stream]


# --- Llama ---


def test_parse_chunk():
    assert parse_chunk('{"message":{"role":"assistant","content":"Hel"},"done":false}') == "Hel"
    assert parse_chunk('{"message":{"role":"assistant","content":""},"done":true}') == ""
    # Truncated line falls back to the regex scrape
    assert parse_chunk('{"message":{"role":"assistant","content":"lo"},"do') == "lo"
    assert parse_chunk("garbage") == ""
    with pytest.raises(ProviderError):
        parse_chunk('{"error":"model crashed"}')


@pytest.mark.asyncio
async def test_llama_streams_ndjson(keys):
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        lines = [
            {"message": {"role": "assistant", "content": "Hi"}, "done": False},
            {"message": {"role": "assistant", "content": " there"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True},
        ]
        return httpx.Response(200, text="\n".join(json.dumps(line) for line in lines))

    provider = LlamaStreamProvider(client=_mock_client("http://localhost:11434", handler))
    stream = await provider.open(CONTEXT)
    assert [f async for f in stream] == ["Hi", " there"]
    assert seen["path"] == "/api/chat"
    assert seen["body"]["model"] == "llama2"


@pytest.mark.asyncio
async def test_llama_unconfigured(monkeypatch):
    monkeypatch.setattr(settings, "llama_api_endpoint", "")
    provider = LlamaStreamProvider()
    assert provider.is_configured is False
    with pytest.raises(ProviderConfigError):
        await provider.open(CONTEXT)


@pytest.mark.asyncio
async def test_llama_connection_refused(keys):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    provider = LlamaStreamProvider(client=_mock_client("http://localhost:11434", handler))
    with pytest.raises(ProviderError, match="Cannot connect to Ollama"):
        await provider.open(CONTEXT)


@pytest.mark.asyncio
async def test_llama_missing_model(keys):
    provider = LlamaStreamProvider(
        client=_mock_client("http://localhost:11434", lambda r: httpx.Response(404, text="model not found"))
    )
    with pytest.raises(ProviderError, match="not installed"):
        await provider.open(CONTEXT)


# --- Gemini ---


def _gemini_client(chunks=None, error=None):
    async def stream():
        for text in chunks or []:
            yield SimpleNamespace(text=text)

    generate = AsyncMock(side_effect=error) if error else AsyncMock(return_value=stream())
    return SimpleNamespace(aio=SimpleNamespace(models=SimpleNamespace(generate_content_stream=generate)))


@pytest.mark.asyncio
async def test_gemini_streams_text(keys):
    client = _gemini_client(["Hi", None, " there"])
    provider = GeminiStreamProvider(client=client)
    stream = await provider.open(CONTEXT)
    assert [f async for f in stream] == ["Hi", " there"]

    kwargs = client.aio.models.generate_content_stream.call_args.kwargs
    assert kwargs["model"] == "gemini-2.0-flash"
    assert [c["role"] for c in kwargs["contents"]] == ["user", "model"]


@pytest.mark.asyncio
async def test_gemini_unavailable_is_overload(keys):
    error = errors.ServerError(503, {"error": {"code": 503, "message": "overloaded", "status": "UNAVAILABLE"}})
    provider = GeminiStreamProvider(client=_gemini_client(error=error))
    with pytest.raises(ProviderOverloadedError):
        await provider.open(CONTEXT)
