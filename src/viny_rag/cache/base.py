"""
Embedding cache interface.

Two logical tables:
- embeddings: chunk vectors keyed by document id, stamped with the document
  version they were computed for
- queries: query vectors keyed by normalized query text, with an expiry

The cache is an optimization. Every public method catches backend errors, logs
them and degrades to cache-miss behaviour; nothing here raises to the caller.
Backends implement the underscore methods and may raise freely.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Iterable, Optional

import numpy as np

from ..models import CachedQueryVector, Document, Embedding, utc_now

logger = logging.getLogger(__name__)

# Per-row overhead used for size estimates (bytes)
EMBEDDING_ROW_OVERHEAD = 200
QUERY_ROW_OVERHEAD = 100


@dataclass
class _DocumentLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class EmbeddingCache(ABC):
    """Durable store for chunk and query vectors."""

    backend = "base"

    def __init__(
        self,
        model_name: str = "",
        dimension: int = 384,
        query_ttl_hours: int = 24,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.model_name = model_name
        self.dimension = dimension
        self.query_ttl = timedelta(hours=query_ttl_hours)
        self.clock = clock
        self.available = False
        self._document_locks: dict[str, _DocumentLock] = {}

    # ---- lifecycle ----

    async def initialize(self) -> None:
        """Open the store, create tables and sweep expired queries.

        A different embedding model than the one that wrote the cache
        invalidates all stored vectors.
        """
        try:
            await self._open()
            stored_model = await self._get_meta("model_name")
            if self.model_name and stored_model and stored_model != self.model_name:
                logger.info(
                    f"Embedding model changed ({stored_model} -> {self.model_name}), clearing cache"
                )
                await self._clear()
            if self.model_name:
                await self._set_meta("model_name", self.model_name)
            self.available = True
            logger.info(f"Embedding cache initialized ({self.backend})")
        except Exception as e:
            self.available = False
            logger.error(f"Failed to initialize embedding cache ({self.backend}): {e}")
            return

        await self.cleanup_expired_queries()

    async def close(self) -> None:
        try:
            await self._close()
        except Exception as e:
            logger.warning(f"Error closing embedding cache: {e}")
        self.available = False

    async def __aenter__(self) -> EmbeddingCache:
        await self.initialize()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ---- embeddings ----

    @asynccontextmanager
    async def _document_lock(self, document_id: str) -> AsyncIterator[None]:
        """Serialize writers per document; the entry is dropped once nobody holds or waits on it."""
        entry = self._document_locks.setdefault(document_id, _DocumentLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._document_locks[document_id]

    async def get_embeddings(self, document_id: str, version: str) -> list[Embedding]:
        """Return the set cached for exactly this version, or [] on any mismatch."""
        if not self.available:
            return []
        try:
            return await self._get_embeddings(document_id, version)
        except Exception as e:
            logger.warning(f"Failed to get cached embeddings for document {document_id}: {e}")
            return []

    async def store_embeddings(self, document_id: str, embeddings: list[Embedding], version: str) -> None:
        """Replace all rows for a document with ``embeddings`` computed at ``version``.

        Writers for the same document serialize; different documents do not block.
        """
        if not self.available:
            return
        async with self._document_lock(document_id):
            try:
                await self._replace_embeddings(document_id, embeddings, version)
                logger.debug(f"Stored {len(embeddings)} embeddings for document {document_id}")
            except Exception as e:
                logger.warning(f"Failed to store embeddings for document {document_id}: {e}")

    async def delete_embeddings(self, document_id: str) -> None:
        if not self.available:
            return
        async with self._document_lock(document_id):
            try:
                await self._delete_embeddings(document_id)
            except Exception as e:
                logger.warning(f"Failed to delete embeddings for document {document_id}: {e}")

    async def get_modified_documents(self, documents: Iterable[Document]) -> list[Document]:
        """Documents whose cached version differs from theirs, or that have none."""
        documents = list(documents)
        if not self.available or not documents:
            return documents
        try:
            versions = await self._get_versions([d.id for d in documents])
        except Exception as e:
            logger.warning(f"Failed to read cached versions: {e}")
            return documents
        return [d for d in documents if versions.get(d.id) != d.version]

    async def get_all_embeddings(self) -> list[Embedding]:
        if not self.available:
            return []
        try:
            return await self._get_all_embeddings()
        except Exception as e:
            logger.warning(f"Failed to get all embeddings: {e}")
            return []

    async def get_embeddings_by_document_ids(self, document_ids: Iterable[str]) -> dict[str, list[Embedding]]:
        document_ids = list(document_ids)
        if not self.available or not document_ids:
            return {}
        try:
            rows = await self._get_embeddings_by_document_ids(document_ids)
        except Exception as e:
            logger.warning(f"Failed to get embeddings by document ids: {e}")
            return {}
        result: dict[str, list[Embedding]] = {}
        for emb in rows:
            result.setdefault(emb.document_id, []).append(emb)
        return result

    # ---- queries ----

    async def get_query_entry(self, query_key: str) -> Optional[CachedQueryVector]:
        """Unexpired cache row for a query key, with its timestamps."""
        if not self.available:
            return None
        try:
            return await self._get_query_vector(query_key, self.clock())
        except Exception as e:
            logger.warning(f"Failed to get cached query embedding: {e}")
            return None

    async def get_query_vector(self, query_key: str) -> Optional[np.ndarray]:
        """Cached query vector, filtered by expiry at read time."""
        entry = await self.get_query_entry(query_key)
        return entry.vector if entry is not None else None

    async def store_query_vector(self, query_key: str, vector: np.ndarray) -> None:
        if not self.available:
            return
        now = self.clock()
        try:
            await self._put_query_vector(
                query_key,
                np.asarray(vector, dtype=np.float32),
                now,
                now + self.query_ttl,
            )
        except Exception as e:
            logger.warning(f"Failed to store query embedding: {e}")

    async def cleanup_expired_queries(self) -> int:
        """Delete query rows with ``expires_at <= now``; returns rows removed."""
        if not self.available:
            return 0
        try:
            removed = await self._delete_expired_queries(self.clock())
        except Exception as e:
            logger.warning(f"Failed to clean up expired queries: {e}")
            return 0
        if removed:
            logger.debug(f"Removed {removed} expired query vectors")
        return removed

    # ---- maintenance ----

    async def clear(self) -> None:
        if not self.available:
            return
        try:
            await self._clear()
            logger.info("Cleared all embeddings")
        except Exception as e:
            logger.warning(f"Failed to clear embeddings: {e}")

    async def get_stats(self) -> dict:
        """Row counts and an estimated byte size."""
        stats = {
            "backend": self.backend,
            "available": self.available,
            "total_embeddings": 0,
            "total_queries": 0,
            "size": 0,
            "oldest_embedding": None,
        }
        if not self.available:
            return stats
        try:
            embedding_count, query_count, oldest = await self._counts()
        except Exception as e:
            logger.warning(f"Failed to get cache stats: {e}")
            return stats

        vector_bytes = self.dimension * 4
        stats.update(
            total_embeddings=embedding_count,
            total_queries=query_count,
            size=(
                embedding_count * (vector_bytes + EMBEDDING_ROW_OVERHEAD)
                + query_count * (vector_bytes + QUERY_ROW_OVERHEAD)
            ),
            oldest_embedding=oldest,
        )
        return stats

    # ---- backend hooks ----

    @abstractmethod
    async def _open(self) -> None: ...

    @abstractmethod
    async def _close(self) -> None: ...

    @abstractmethod
    async def _get_meta(self, key: str) -> Optional[str]: ...

    @abstractmethod
    async def _set_meta(self, key: str, value: str) -> None: ...

    @abstractmethod
    async def _get_embeddings(self, document_id: str, version: str) -> list[Embedding]: ...

    @abstractmethod
    async def _replace_embeddings(self, document_id: str, embeddings: list[Embedding], version: str) -> None: ...

    @abstractmethod
    async def _delete_embeddings(self, document_id: str) -> None: ...

    @abstractmethod
    async def _get_versions(self, document_ids: list[str]) -> dict[str, str]: ...

    @abstractmethod
    async def _get_all_embeddings(self) -> list[Embedding]: ...

    @abstractmethod
    async def _get_embeddings_by_document_ids(self, document_ids: list[str]) -> list[Embedding]: ...

    @abstractmethod
    async def _get_query_vector(self, query_key: str, now: datetime) -> Optional[CachedQueryVector]: ...

    @abstractmethod
    async def _put_query_vector(
        self, query_key: str, vector: np.ndarray, created_at: datetime, expires_at: datetime
    ) -> None: ...

    @abstractmethod
    async def _delete_expired_queries(self, now: datetime) -> int: ...

    @abstractmethod
    async def _clear(self) -> None: ...

    @abstractmethod
    async def _counts(self) -> tuple[int, int, Optional[str]]: ...
