"""Embedding models, worker pool and engine."""
from .engine import EmbeddingEngine, normalize_query, query_cache_key
from .models import (
    BlockingEmbeddingModel,
    EmbeddingModel,
    OllamaEmbeddingModel,
    OpenAIEmbeddingModel,
    SentenceTransformerModel,
    create_embedding_model,
)
from .workers import EmbeddingWorkerPool

__all__ = [
    "BlockingEmbeddingModel",
    "EmbeddingEngine",
    "EmbeddingModel",
    "EmbeddingWorkerPool",
    "OllamaEmbeddingModel",
    "OpenAIEmbeddingModel",
    "SentenceTransformerModel",
    "create_embedding_model",
    "normalize_query",
    "query_cache_key",
]
