"""Ollama embeddings client.

Provides embedding generation via Ollama's /api/embeddings endpoint.
"""
from __future__ import annotations
import asyncio
import httpx
import logging

from ..errors import EmbeddingFailure

logger = logging.getLogger(__name__)


async def ollama_embed(
    texts: list[str],
    model: str,
    base_url: str,
    max_retries: int = 3,
    timeout: float = 120.0
) -> list[list[float]]:
    """Generate embeddings using Ollama.

    Args:
        texts: List of texts to embed
        model: Model name (e.g., "all-minilm:latest")
        base_url: Ollama base URL
        max_retries: Attempts per text on HTTP 5xx
        timeout: Request timeout in seconds

    Returns:
        List of embedding vectors, in input order

    Raises:
        EmbeddingFailure: If a text cannot be embedded
    """
    if not texts:
        return []

    embeddings: list[list[float]] = []

    async with httpx.AsyncClient(timeout=timeout) as client:
        # Ollama API processes one text at a time
        for idx, text in enumerate(texts):
            text_preview = text[:200] + "..." if len(text) > 200 else text
            logger.debug(f"Embedding text {idx+1}/{len(texts)}: length={len(text)}, preview={text_preview!r}")

            for attempt in range(max_retries):
                try:
                    response = await client.post(
                        f"{base_url.rstrip('/')}/api/embeddings",
                        json={"model": model, "prompt": text},
                    )
                    response.raise_for_status()
                    data = response.json()
                    embeddings.append(data["embedding"])
                    break

                except httpx.HTTPStatusError as e:
                    if e.response.status_code >= 500 and attempt < max_retries - 1:
                        # Retry with exponential backoff
                        await asyncio.sleep(2 ** attempt)
                        continue
                    raise EmbeddingFailure(
                        f"Ollama embedding failed for text {idx+1}/{len(texts)} (len={len(text)}): {e}"
                    ) from e

                except (httpx.HTTPError, KeyError, ValueError) as e:
                    raise EmbeddingFailure(
                        f"Ollama embedding failed for text {idx+1}/{len(texts)} (len={len(text)}): {e}"
                    ) from e

    return embeddings
