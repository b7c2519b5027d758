"""Embedding model backends.

Each backend turns a list of texts into one vector per text. HTTP backends are
awaited directly; in-process backends are CPU-bound and marked ``blocking`` so
the worker pool runs them on its threads instead of the event loop.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from ..config.engine import EmbeddingsConfig
from .ollama import ollama_embed
from .openai_compat import openai_embed

logger = logging.getLogger(__name__)


class EmbeddingModel(ABC):
    """Pluggable embedding model."""

    provider: str = "base"
    blocking: bool = False

    def __init__(self, model_name: str, dimension: int):
        self.model_name = model_name
        self.dimension = dimension

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts, returning vectors in input order."""

    def info(self) -> dict[str, Any]:
        return {"provider": self.provider, "name": self.model_name, "dimension": self.dimension}


class BlockingEmbeddingModel(EmbeddingModel):
    """In-process model whose inference must run off the event loop."""

    blocking = True

    @abstractmethod
    def embed_sync(self, texts: list[str]) -> list[list[float]]:
        """Embed texts on the calling thread."""

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return await asyncio.to_thread(self.embed_sync, texts)


class OllamaEmbeddingModel(EmbeddingModel):
    provider = "ollama"

    def __init__(self, model_name: str, dimension: int, base_url: str):
        super().__init__(model_name, dimension)
        self.base_url = base_url

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return await ollama_embed(texts, model=self.model_name, base_url=self.base_url)


class OpenAIEmbeddingModel(EmbeddingModel):
    provider = "openai"

    def __init__(self, model_name: str, dimension: int, base_url: str, api_key: str = ""):
        super().__init__(model_name, dimension)
        self.base_url = base_url
        self.api_key = api_key

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return await openai_embed(
            texts,
            model=self.model_name,
            base_url=self.base_url,
            api_key=self.api_key,
        )


class SentenceTransformerModel(BlockingEmbeddingModel):
    """Local sentence-transformers model (mean pooling, normalized)."""

    provider = "local"

    def __init__(self, model_name: str, dimension: int):
        super().__init__(model_name, dimension)
        self._model = None

    def _load(self):
        if self._model is None:
            # Optional dependency: pip install viny-rag[local]
            from sentence_transformers import SentenceTransformer

            logger.info(f"Loading sentence-transformers model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed_sync(self, texts: list[str]) -> list[list[float]]:
        model = self._load()
        vectors = model.encode(texts, normalize_embeddings=True, show_progress_bar=False)
        return [v.tolist() for v in vectors]


def create_embedding_model(config: EmbeddingsConfig) -> EmbeddingModel:
    """Build the embedding model selected in config.

    Raises:
        ValueError: If provider is invalid
    """
    if config.provider == "ollama":
        return OllamaEmbeddingModel(config.model_name, config.dimension, config.base_url)
    if config.provider == "openai":
        return OpenAIEmbeddingModel(config.model_name, config.dimension, config.base_url, config.api_key)
    if config.provider == "local":
        return SentenceTransformerModel(config.model_name, config.dimension)
    raise ValueError(f"Invalid embeddings provider: {config.provider}")
