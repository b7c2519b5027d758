"""LLM providers for answer generation.

A closed set of backends behind one interface:
- ollama: local daemon over loopback HTTP, NDJSON streaming
- openai / groq: chat completions with bearer auth, SSE streaming
- anthropic: messages API with x-api-key, SSE streaming

The backend is picked once by ``create_provider``. ``initialize`` raises
``ProviderUnavailable`` when the backend cannot be used at all; ``generate``
and ``stream`` raise ``ProviderRequestFailure`` for a failed call.
"""
from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx

from ..config.engine import LLMConfig
from ..errors import ProviderError, ProviderRequestFailure, ProviderUnavailable

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


@dataclass
class LLMResponse:
    """Result of a non-streaming generate call."""
    text: str
    model: str
    provider: str
    tokens_used: Optional[int] = None


class BaseLLMProvider(ABC):
    """Common lifecycle, error mapping and stats for all providers."""

    name = "base"

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str = "",
        temperature: float = 0.7,
        max_tokens: int = 1024,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        name: Optional[str] = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.transport = transport
        if name:
            self.name = name

        self.client: Optional[httpx.AsyncClient] = None
        self.initialized = False

        self.requests = 0
        self.failures = 0
        self.tokens_used = 0
        self.total_latency = 0.0

    # ---- lifecycle ----

    async def initialize(self) -> None:
        """Connect and verify the backend is usable.

        Raises:
            ProviderUnavailable: Backend unreachable, unauthenticated or not configured
        """
        if self.initialized:
            return

        self.client = httpx.AsyncClient(
            timeout=self.timeout,
            headers=self._headers(),
            transport=self.transport,
        )
        try:
            await self._check_available()
        except ProviderUnavailable:
            await self._close_client()
            raise
        except httpx.HTTPStatusError as e:
            await self._close_client()
            if e.response.status_code in (401, 403):
                raise ProviderUnavailable(self.name, "authentication failed (check API key)") from e
            raise ProviderUnavailable(self.name, f"HTTP {e.response.status_code} from {self.base_url}") from e
        except httpx.HTTPError as e:
            await self._close_client()
            raise ProviderUnavailable(self.name, f"cannot reach {self.base_url} ({e})") from e
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            await self._close_client()
            raise ProviderUnavailable(
                self.name, f"unexpected response from {self.base_url} ({type(e).__name__})"
            ) from e

        self.initialized = True
        logger.info(f"LLM provider ready: {self.name}/{self.model}")

    async def destroy(self) -> None:
        await self._close_client()
        self.initialized = False

    async def _close_client(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    async def __aenter__(self) -> BaseLLMProvider:
        await self.initialize()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.destroy()

    def _require_client(self) -> httpx.AsyncClient:
        if not self.initialized or self.client is None:
            raise ProviderUnavailable(self.name, "provider not initialized")
        return self.client

    # ---- calls ----

    async def generate(self, prompt: str) -> LLMResponse:
        """Generate a complete answer for ``prompt``.

        Raises:
            ProviderUnavailable: If not initialized
            ProviderRequestFailure: If the call fails
        """
        client = self._require_client()
        self.requests += 1
        start = time.perf_counter()
        try:
            response = await self._generate(client, prompt)
        except ProviderError:
            self.failures += 1
            raise
        except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as e:
            self.failures += 1
            raise ProviderRequestFailure(self.name, self._describe(e)) from e
        finally:
            self.total_latency += time.perf_counter() - start

        if response.tokens_used:
            self.tokens_used += response.tokens_used
        return response

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        """Yield answer fragments as the backend produces them.

        Malformed frames are skipped. The sequence ends when the backend
        signals completion or closes the connection.

        Raises:
            ProviderUnavailable: If not initialized
            ProviderRequestFailure: If the call fails
        """
        client = self._require_client()
        self.requests += 1
        start = time.perf_counter()
        try:
            async for fragment in self._stream(client, prompt):
                yield fragment
        except ProviderError:
            self.failures += 1
            raise
        except httpx.HTTPError as e:
            self.failures += 1
            raise ProviderRequestFailure(self.name, self._describe(e)) from e
        finally:
            self.total_latency += time.perf_counter() - start

    @staticmethod
    def _describe(e: Exception) -> str:
        if isinstance(e, httpx.HTTPStatusError):
            return f"HTTP {e.response.status_code}: {e.response.text[:200]}"
        return f"{type(e).__name__}: {e}"

    async def _raise_for_stream_status(self, response: httpx.Response) -> None:
        if response.status_code >= 400:
            body = (await response.aread()).decode(errors="replace")
            raise ProviderRequestFailure(self.name, f"HTTP {response.status_code}: {body[:200]}")

    def _parse_frame(self, payload: str) -> Optional[dict[str, Any]]:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning(f"Skipping malformed {self.name} stream frame: {payload[:80]!r}")
            return None
        if not isinstance(data, dict):
            self._skip_frame(payload)
            return None
        return data

    def _skip_frame(self, payload: Any) -> None:
        logger.warning(f"Skipping malformed {self.name} stream frame: {str(payload)[:80]!r}")

    def get_stats(self) -> dict[str, Any]:
        return {
            "provider": self.name,
            "model": self.model,
            "initialized": self.initialized,
            "requests": self.requests,
            "failures": self.failures,
            "tokens_used": self.tokens_used,
            "avg_latency_ms": (self.total_latency / self.requests * 1000) if self.requests else 0.0,
        }

    # ---- backend hooks ----

    def _headers(self) -> dict[str, str]:
        return {}

    @abstractmethod
    async def _check_available(self) -> None: ...

    @abstractmethod
    async def _generate(self, client: httpx.AsyncClient, prompt: str) -> LLMResponse: ...

    @abstractmethod
    def _stream(self, client: httpx.AsyncClient, prompt: str) -> AsyncIterator[str]: ...


class OllamaProvider(BaseLLMProvider):
    """Local Ollama daemon."""

    name = "ollama"

    async def _check_available(self) -> None:
        response = await self.client.get(f"{self.base_url}/api/tags")
        response.raise_for_status()
        models = [m.get("name", "") for m in response.json().get("models", [])]
        if models and not any(m == self.model or m.split(":")[0] == self.model for m in models):
            logger.warning(f"Model {self.model} not found in Ollama (available: {', '.join(models)})")

    def _payload(self, prompt: str, stream: bool) -> dict[str, Any]:
        return {
            "model": self.model,
            "prompt": prompt,
            "temperature": self.temperature,
            "options": {"num_predict": self.max_tokens},
            "stream": stream,
        }

    async def _generate(self, client: httpx.AsyncClient, prompt: str) -> LLMResponse:
        response = await client.post(f"{self.base_url}/api/generate", json=self._payload(prompt, False))
        response.raise_for_status()
        data = response.json()
        return LLMResponse(
            text=data.get("response", ""),
            model=self.model,
            provider=self.name,
            tokens_used=data.get("eval_count"),
        )

    async def _stream(self, client: httpx.AsyncClient, prompt: str) -> AsyncIterator[str]:
        async with client.stream(
            "POST", f"{self.base_url}/api/generate", json=self._payload(prompt, True)
        ) as response:
            await self._raise_for_stream_status(response)
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                data = self._parse_frame(line)
                if data is None:
                    continue
                text = data.get("response")
                if text is not None and not isinstance(text, str):
                    self._skip_frame(data)
                elif text:
                    yield text
                if data.get("done"):
                    break


class OpenAIProvider(BaseLLMProvider):
    """OpenAI-compatible chat completions (OpenAI, Groq and similar)."""

    name = "openai"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    async def _check_available(self) -> None:
        if not self.api_key:
            raise ProviderUnavailable(self.name, "API key not configured")
        response = await self.client.get(f"{self.base_url}/models")
        response.raise_for_status()

    def _payload(self, prompt: str, stream: bool) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": stream,
        }

    async def _generate(self, client: httpx.AsyncClient, prompt: str) -> LLMResponse:
        response = await client.post(f"{self.base_url}/chat/completions", json=self._payload(prompt, False))
        response.raise_for_status()
        data = response.json()
        usage = data.get("usage") or {}
        return LLMResponse(
            text=data["choices"][0]["message"]["content"] or "",
            model=data.get("model", self.model),
            provider=self.name,
            tokens_used=usage.get("total_tokens"),
        )

    async def _stream(self, client: httpx.AsyncClient, prompt: str) -> AsyncIterator[str]:
        async with client.stream(
            "POST", f"{self.base_url}/chat/completions", json=self._payload(prompt, True)
        ) as response:
            await self._raise_for_stream_status(response)
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                payload = line[len("data:"):].strip()
                if payload == "[DONE]":
                    break
                data = self._parse_frame(payload)
                if data is None:
                    continue
                content = self._delta_content(data)
                if content is None:
                    self._skip_frame(payload)
                elif content:
                    yield content

    @staticmethod
    def _delta_content(data: dict[str, Any]) -> Optional[str]:
        """Text of a chunk's first delta; "" when it carries none, None when misshapen."""
        choices = data.get("choices")
        if choices is None or choices == []:
            return ""
        if not isinstance(choices, list) or not isinstance(choices[0], dict):
            return None
        delta = choices[0].get("delta")
        if delta is None:
            return ""
        if not isinstance(delta, dict):
            return None
        content = delta.get("content")
        if content is None:
            return ""
        return content if isinstance(content, str) else None


class AnthropicProvider(BaseLLMProvider):
    """Anthropic messages API."""

    name = "anthropic"

    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION}

    async def _check_available(self) -> None:
        if not self.api_key:
            raise ProviderUnavailable(self.name, "API key not configured")
        response = await self.client.get(f"{self.base_url}/models")
        response.raise_for_status()

    def _payload(self, prompt: str, stream: bool) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": stream,
        }

    async def _generate(self, client: httpx.AsyncClient, prompt: str) -> LLMResponse:
        response = await client.post(f"{self.base_url}/messages", json=self._payload(prompt, False))
        response.raise_for_status()
        data = response.json()
        text = "".join(block.get("text", "") for block in data.get("content", []) if block.get("type") == "text")
        usage = data.get("usage") or {}
        tokens = (usage.get("input_tokens") or 0) + (usage.get("output_tokens") or 0)
        return LLMResponse(
            text=text,
            model=data.get("model", self.model),
            provider=self.name,
            tokens_used=tokens or None,
        )

    async def _stream(self, client: httpx.AsyncClient, prompt: str) -> AsyncIterator[str]:
        async with client.stream(
            "POST", f"{self.base_url}/messages", json=self._payload(prompt, True)
        ) as response:
            await self._raise_for_stream_status(response)
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = self._parse_frame(line[len("data:"):].strip())
                if data is None:
                    continue
                event = data.get("type")
                if event == "content_block_delta":
                    delta = data.get("delta")
                    text = delta.get("text") if isinstance(delta, dict) else None
                    if not isinstance(delta, dict) or (text is not None and not isinstance(text, str)):
                        self._skip_frame(data)
                    elif text:
                        yield text
                elif event == "message_stop":
                    break
                elif event == "error":
                    error = data.get("error")
                    message = error.get("message") if isinstance(error, dict) else None
                    raise ProviderRequestFailure(self.name, str(message or "stream error"))


PROVIDERS: dict[str, type[BaseLLMProvider]] = {
    "ollama": OllamaProvider,
    "openai": OpenAIProvider,
    "groq": OpenAIProvider,
    "anthropic": AnthropicProvider,
}


def create_provider(
    config: LLMConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BaseLLMProvider:
    """Build the provider selected in config (not yet initialized).

    groq is served by OpenAIProvider, since Groq speaks the OpenAI-compatible protocol.

    Raises:
        ValueError: If provider is invalid
    """
    try:
        provider_cls = PROVIDERS[config.provider]
    except KeyError:
        raise ValueError(f"Invalid LLM provider: {config.provider}") from None

    return provider_cls(
        model=config.model,
        base_url=config.resolved_base_url(),
        api_key=config.api_key,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        timeout=config.timeout,
        transport=transport,
        name=config.provider,
    )
