"""Cache that stores nothing; used when caching is disabled."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

import numpy as np

from ..models import CachedQueryVector, Embedding
from .base import EmbeddingCache


class NullCache(EmbeddingCache):
    """Every read is a miss and every write is dropped."""

    backend = "none"

    async def _open(self) -> None:
        pass

    async def _close(self) -> None:
        pass

    async def _get_meta(self, key: str) -> Optional[str]:
        return None

    async def _set_meta(self, key: str, value: str) -> None:
        pass

    async def _get_embeddings(self, document_id: str, version: str) -> list[Embedding]:
        return []

    async def _replace_embeddings(self, document_id: str, embeddings: list[Embedding], version: str) -> None:
        pass

    async def _delete_embeddings(self, document_id: str) -> None:
        pass

    async def _get_versions(self, document_ids: list[str]) -> dict[str, str]:
        return {}

    async def _get_all_embeddings(self) -> list[Embedding]:
        return []

    async def _get_embeddings_by_document_ids(self, document_ids: list[str]) -> list[Embedding]:
        return []

    async def _get_query_vector(self, query_key: str, now: datetime) -> Optional[CachedQueryVector]:
        return None

    async def _put_query_vector(
        self, query_key: str, vector: np.ndarray, created_at: datetime, expires_at: datetime
    ) -> None:
        pass

    async def _delete_expired_queries(self, now: datetime) -> int:
        return 0

    async def _clear(self) -> None:
        pass

    async def _counts(self) -> tuple[int, int, Optional[str]]:
        return 0, 0, None
