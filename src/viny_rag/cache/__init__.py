"""Embedding cache backends."""
from __future__ import annotations

from datetime import datetime
from typing import Callable

from ..config.engine import CacheConfig
from ..models import utc_now
from .base import EmbeddingCache
from .null import NullCache
from .postgres import PostgresEmbeddingCache
from .sqlite import SQLiteEmbeddingCache

__all__ = [
    "EmbeddingCache",
    "NullCache",
    "PostgresEmbeddingCache",
    "SQLiteEmbeddingCache",
    "create_cache",
]


def create_cache(
    config: CacheConfig,
    model_name: str,
    dimension: int,
    clock: Callable[[], datetime] = utc_now,
) -> EmbeddingCache:
    """Build the cache backend selected in config (not yet initialized)."""
    kwargs = dict(
        model_name=model_name,
        dimension=dimension,
        query_ttl_hours=config.query_cache_ttl_hours,
        clock=clock,
    )
    if not config.use_cache or config.backend == "none":
        return NullCache(**kwargs)
    if config.backend == "postgres":
        return PostgresEmbeddingCache(config.dsn, **kwargs)
    return SQLiteEmbeddingCache(config.path, **kwargs)
