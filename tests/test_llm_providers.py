"""Tests for LLM providers against a mocked HTTP transport."""
import json

import httpx
import pytest

from viny_rag.config import LLMConfig
from viny_rag.errors import ProviderRequestFailure, ProviderUnavailable
from viny_rag.llm.providers import (
    AnthropicProvider,
    OllamaProvider,
    OpenAIProvider,
    create_provider,
)


class Recorder:
    """MockTransport handler that serves canned responses by path."""

    def __init__(self, routes):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, text="not found")
        if isinstance(route, Exception):
            raise route
        return route

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def last(self, path: str) -> httpx.Request:
        return [r for r in self.requests if r.url.path == path][-1]


def ndjson(*frames) -> bytes:
    return "\n".join(f if isinstance(f, str) else json.dumps(f) for f in frames).encode()


def sse(*frames) -> bytes:
    lines = []
    for frame in frames:
        payload = frame if isinstance(frame, str) else json.dumps(frame)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode()


OLLAMA_TAGS = httpx.Response(200, json={"models": [{"name": "llama3.2:latest"}]})


# ---- ollama ----


@pytest.mark.asyncio
async def test_ollama_generate():
    recorder = Recorder({
        ("GET", "/api/tags"): OLLAMA_TAGS,
        ("POST", "/api/generate"): httpx.Response(200, json={"response": "Rust uses ownership.", "eval_count": 12}),
    })
    provider = OllamaProvider("llama3.2", "http://localhost:11434", max_tokens=256, transport=recorder.transport)

    async with provider:
        response = await provider.generate("What is ownership?")

    assert response.text == "Rust uses ownership."
    assert response.tokens_used == 12
    assert response.provider == "ollama"

    body = json.loads(recorder.last("/api/generate").content)
    assert body["model"] == "llama3.2"
    assert body["prompt"] == "What is ownership?"
    assert body["stream"] is False
    assert body["options"] == {"num_predict": 256}

    stats = provider.get_stats()
    assert stats["requests"] == 1
    assert stats["tokens_used"] == 12
    assert stats["failures"] == 0


@pytest.mark.asyncio
async def test_ollama_stream_skips_malformed_frames():
    recorder = Recorder({
        ("GET", "/api/tags"): OLLAMA_TAGS,
        ("POST", "/api/generate"): httpx.Response(200, content=ndjson(
            {"response": "Hel", "done": False},
            "{not json",
            {"response": {"nested": "object"}, "done": False},
            {"response": "lo", "done": False},
            {"response": "", "done": True},
            {"response": "ignored after done"},
        )),
    })
    provider = OllamaProvider("llama3.2", "http://localhost:11434", transport=recorder.transport)
    await provider.initialize()

    fragments = [f async for f in provider.stream("hi")]
    await provider.destroy()

    assert "".join(fragments) == "Hello"
    assert json.loads(recorder.last("/api/generate").content)["stream"] is True


@pytest.mark.asyncio
async def test_ollama_unreachable_is_unavailable():
    recorder = Recorder({("GET", "/api/tags"): httpx.ConnectError("connection refused")})
    provider = OllamaProvider("llama3.2", "http://localhost:11434", transport=recorder.transport)

    with pytest.raises(ProviderUnavailable, match="cannot reach"):
        await provider.initialize()

    assert not provider.initialized
    assert provider.client is None


@pytest.mark.asyncio
async def test_ollama_non_json_tags_reply_is_unavailable():
    recorder = Recorder({("GET", "/api/tags"): httpx.Response(200, text="<html>captive portal</html>")})
    provider = OllamaProvider("llama3.2", "http://localhost:11434", transport=recorder.transport)

    with pytest.raises(ProviderUnavailable, match="unexpected response"):
        await provider.initialize()

    assert provider.client is None


@pytest.mark.asyncio
async def test_ollama_json_list_tags_reply_is_unavailable():
    recorder = Recorder({("GET", "/api/tags"): httpx.Response(200, json=["llama3.2"])})
    provider = OllamaProvider("llama3.2", "http://localhost:11434", transport=recorder.transport)

    with pytest.raises(ProviderUnavailable, match="AttributeError"):
        await provider.initialize()

    assert not provider.initialized


@pytest.mark.asyncio
async def test_generate_before_initialize_is_unavailable():
    provider = OllamaProvider("llama3.2", "http://localhost:11434")

    with pytest.raises(ProviderUnavailable, match="not initialized"):
        await provider.generate("hi")


# ---- openai / groq ----


@pytest.mark.asyncio
async def test_openai_missing_key_is_unavailable():
    provider = OpenAIProvider("gpt-4o-mini", "https://api.openai.com/v1", transport=Recorder({}).transport)

    with pytest.raises(ProviderUnavailable, match="API key not configured"):
        await provider.initialize()


@pytest.mark.asyncio
async def test_openai_rejected_key_is_unavailable():
    recorder = Recorder({("GET", "/v1/models"): httpx.Response(401, json={"error": "bad key"})})
    provider = OpenAIProvider("gpt-4o-mini", "https://api.openai.com/v1", api_key="sk-bad",
                              transport=recorder.transport)

    with pytest.raises(ProviderUnavailable, match="authentication failed"):
        await provider.initialize()


@pytest.mark.asyncio
async def test_openai_generate_with_bearer_auth():
    recorder = Recorder({
        ("GET", "/v1/models"): httpx.Response(200, json={"data": []}),
        ("POST", "/v1/chat/completions"): httpx.Response(200, json={
            "model": "gpt-4o-mini",
            "choices": [{"message": {"role": "assistant", "content": "Borrowing lends access."}}],
            "usage": {"total_tokens": 42},
        }),
    })
    provider = OpenAIProvider("gpt-4o-mini", "https://api.openai.com/v1", api_key="sk-test",
                              transport=recorder.transport)

    async with provider:
        response = await provider.generate("Explain borrowing")

    request = recorder.last("/v1/chat/completions")
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert json.loads(request.content)["messages"] == [{"role": "user", "content": "Explain borrowing"}]
    assert response.text == "Borrowing lends access."
    assert response.tokens_used == 42


@pytest.mark.asyncio
async def test_openai_stream_stops_at_done():
    recorder = Recorder({
        ("GET", "/v1/models"): httpx.Response(200, json={"data": []}),
        ("POST", "/v1/chat/completions"): httpx.Response(200, content=sse(
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "Own"}}]},
            "garbage",
            {"choices": [{"delta": "garbled"}]},
            {"choices": "not-a-list"},
            {"choices": [{"delta": {"content": 42}}]},
            {"choices": [{"delta": {"content": "ership"}}]},
            "[DONE]",
            {"choices": [{"delta": {"content": " never"}}]},
        )),
    })
    provider = OpenAIProvider("gpt-4o-mini", "https://api.openai.com/v1", api_key="sk-test",
                              transport=recorder.transport)

    async with provider:
        fragments = [f async for f in provider.stream("hi")]

    assert fragments == ["Own", "ership"]


@pytest.mark.asyncio
async def test_openai_server_error_is_request_failure():
    recorder = Recorder({
        ("GET", "/v1/models"): httpx.Response(200, json={"data": []}),
        ("POST", "/v1/chat/completions"): httpx.Response(500, text="upstream exploded"),
    })
    provider = OpenAIProvider("gpt-4o-mini", "https://api.openai.com/v1", api_key="sk-test",
                              transport=recorder.transport)

    async with provider:
        with pytest.raises(ProviderRequestFailure, match="HTTP 500"):
            await provider.generate("hi")

        assert provider.get_stats()["failures"] == 1


@pytest.mark.asyncio
async def test_stream_error_status_is_request_failure():
    recorder = Recorder({
        ("GET", "/v1/models"): httpx.Response(200, json={"data": []}),
        ("POST", "/v1/chat/completions"): httpx.Response(429, text="slow down"),
    })
    provider = OpenAIProvider("gpt-4o-mini", "https://api.openai.com/v1", api_key="sk-test",
                              transport=recorder.transport)

    async with provider:
        with pytest.raises(ProviderRequestFailure, match="429"):
            async for _ in provider.stream("hi"):
                pass


@pytest.mark.asyncio
async def test_create_provider_groq_uses_openai_protocol():
    recorder = Recorder({
        ("GET", "/openai/v1/models"): httpx.Response(200, json={"data": []}),
        ("POST", "/openai/v1/chat/completions"): httpx.Response(200, json={
            "choices": [{"message": {"content": "fast answer"}}],
        }),
    })
    config = LLMConfig(provider="groq", model="llama-3.1-8b-instant", api_key="gsk-test")
    provider = create_provider(config, transport=recorder.transport)

    assert isinstance(provider, OpenAIProvider)
    assert provider.name == "groq"
    assert provider.base_url == "https://api.groq.com/openai/v1"

    async with provider:
        response = await provider.generate("hi")

    assert response.provider == "groq"
    assert response.text == "fast answer"


def test_create_provider_defaults():
    assert isinstance(create_provider(LLMConfig()), OllamaProvider)
    anthropic = create_provider(LLMConfig(provider="anthropic", model="claude-3-5-haiku-latest", api_key="k"))
    assert isinstance(anthropic, AnthropicProvider)
    assert anthropic.base_url == "https://api.anthropic.com/v1"


# ---- anthropic ----


@pytest.mark.asyncio
async def test_anthropic_generate_headers_and_text():
    recorder = Recorder({
        ("GET", "/v1/models"): httpx.Response(200, json={"data": []}),
        ("POST", "/v1/messages"): httpx.Response(200, json={
            "model": "claude-3-5-haiku-latest",
            "content": [{"type": "text", "text": "Soil "}, {"type": "text", "text": "matters."}],
            "usage": {"input_tokens": 10, "output_tokens": 5},
        }),
    })
    provider = AnthropicProvider("claude-3-5-haiku-latest", "https://api.anthropic.com/v1", api_key="ak-test",
                                 transport=recorder.transport)

    async with provider:
        response = await provider.generate("Garden tips?")

    request = recorder.last("/v1/messages")
    assert request.headers["x-api-key"] == "ak-test"
    assert request.headers["anthropic-version"] == "2023-06-01"
    assert response.text == "Soil matters."
    assert response.tokens_used == 15


@pytest.mark.asyncio
async def test_anthropic_stream_deltas():
    recorder = Recorder({
        ("GET", "/v1/models"): httpx.Response(200, json={"data": []}),
        ("POST", "/v1/messages"): httpx.Response(200, content=(
            b"event: message_start\n"
            + sse({"type": "message_start", "message": {}})
            + b"event: content_block_delta\n"
            + sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Toss "}})
            + sse({"type": "content_block_delta", "delta": "garbled"})
            + sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": 7}})
            + sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "with sauce."}})
            + sse({"type": "message_stop"})
            + sse({"type": "content_block_delta", "delta": {"text": "late"}})
        )),
    })
    provider = AnthropicProvider("claude-3-5-haiku-latest", "https://api.anthropic.com/v1", api_key="ak-test",
                                 transport=recorder.transport)

    async with provider:
        fragments = [f async for f in provider.stream("pasta?")]

    assert "".join(fragments) == "Toss with sauce."


@pytest.mark.asyncio
async def test_anthropic_stream_error_event():
    recorder = Recorder({
        ("GET", "/v1/models"): httpx.Response(200, json={"data": []}),
        ("POST", "/v1/messages"): httpx.Response(200, content=sse(
            {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}},
        )),
    })
    provider = AnthropicProvider("claude-3-5-haiku-latest", "https://api.anthropic.com/v1", api_key="ak-test",
                                 transport=recorder.transport)

    async with provider:
        with pytest.raises(ProviderRequestFailure, match="Overloaded"):
            async for _ in provider.stream("hi"):
                pass
