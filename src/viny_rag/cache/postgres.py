"""
Postgres embedding cache.

For deployments that share one cache between machines. Vectors are stored as
``real[]`` so no extension is required.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Optional

import asyncpg
import numpy as np

from ..errors import CacheFailure
from ..models import CachedQueryVector, Embedding
from .base import EmbeddingCache

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS viny_embedding (
    id TEXT PRIMARY KEY,
    document_id TEXT NOT NULL,
    chunk_id TEXT NOT NULL,
    version TEXT NOT NULL,
    vector REAL[] NOT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    text TEXT NOT NULL DEFAULT '',
    timestamp TEXT NOT NULL,
    seq BIGSERIAL
);
CREATE INDEX IF NOT EXISTS idx_viny_embedding_document ON viny_embedding(document_id);
CREATE INDEX IF NOT EXISTS idx_viny_embedding_timestamp ON viny_embedding(timestamp);

CREATE TABLE IF NOT EXISTS viny_query_cache (
    query_key TEXT PRIMARY KEY,
    vector REAL[] NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_viny_query_cache_expires ON viny_query_cache(expires_at);

CREATE TABLE IF NOT EXISTS viny_cache_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class PostgresEmbeddingCache(EmbeddingCache):
    """Embedding cache backed by an asyncpg connection pool."""

    backend = "postgres"

    def __init__(self, dsn: str, pool_size: int = 5, **kwargs):
        super().__init__(**kwargs)
        self.dsn = dsn
        self.pool_size = pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise CacheFailure("Postgres cache is not open")
        return self._pool

    async def _open(self) -> None:
        if self._pool is not None:
            return
        try:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=1,
                max_size=self.pool_size,
                command_timeout=60.0,
            )
            async with self._pool.acquire() as conn:
                await conn.execute(SCHEMA)
        except (OSError, asyncpg.PostgresError) as e:
            await self._close()
            raise CacheFailure(f"cannot open Postgres cache: {e}") from e

    async def _close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _get_meta(self, key: str) -> Optional[str]:
        return await self.pool.fetchval("SELECT value FROM viny_cache_meta WHERE key = $1", key)

    async def _set_meta(self, key: str, value: str) -> None:
        await self.pool.execute(
            """
            INSERT INTO viny_cache_meta (key, value) VALUES ($1, $2)
            ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value
            """,
            key, value,
        )

    @staticmethod
    def _row_to_embedding(row: asyncpg.Record) -> Embedding:
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return Embedding(
            id=row["id"],
            document_id=row["document_id"],
            chunk_id=row["chunk_id"],
            vector=np.array(row["vector"], dtype=np.float32),
            metadata=metadata,
            timestamp=row["timestamp"],
            text=row["text"],
        )

    async def _get_embeddings(self, document_id: str, version: str) -> list[Embedding]:
        rows = await self.pool.fetch(
            "SELECT * FROM viny_embedding WHERE document_id = $1 AND version = $2 ORDER BY seq",
            document_id, version,
        )
        return [self._row_to_embedding(r) for r in rows]

    async def _replace_embeddings(self, document_id: str, embeddings: list[Embedding], version: str) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM viny_embedding WHERE document_id = $1", document_id)
                await conn.executemany(
                    """
                    INSERT INTO viny_embedding (id, document_id, chunk_id, version, vector, metadata, text, timestamp)
                    VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8)
                    """,
                    [
                        (
                            emb.id,
                            document_id,
                            emb.chunk_id,
                            version,
                            emb.vector.tolist(),
                            json.dumps(emb.metadata),
                            emb.text,
                            emb.timestamp,
                        )
                        for emb in embeddings
                    ],
                )

    async def _delete_embeddings(self, document_id: str) -> None:
        await self.pool.execute("DELETE FROM viny_embedding WHERE document_id = $1", document_id)

    async def _get_versions(self, document_ids: list[str]) -> dict[str, str]:
        rows = await self.pool.fetch(
            "SELECT DISTINCT document_id, version FROM viny_embedding WHERE document_id = ANY($1::text[])",
            document_ids,
        )
        return {r["document_id"]: r["version"] for r in rows}

    async def _get_all_embeddings(self) -> list[Embedding]:
        rows = await self.pool.fetch("SELECT * FROM viny_embedding ORDER BY document_id, seq")
        return [self._row_to_embedding(r) for r in rows]

    async def _get_embeddings_by_document_ids(self, document_ids: list[str]) -> list[Embedding]:
        rows = await self.pool.fetch(
            "SELECT * FROM viny_embedding WHERE document_id = ANY($1::text[]) ORDER BY document_id, seq",
            document_ids,
        )
        return [self._row_to_embedding(r) for r in rows]

    async def _get_query_vector(self, query_key: str, now: datetime) -> Optional[CachedQueryVector]:
        row = await self.pool.fetchrow(
            "SELECT vector, created_at, expires_at FROM viny_query_cache WHERE query_key = $1 AND expires_at > $2",
            query_key, now,
        )
        if row is None:
            return None
        return CachedQueryVector(
            query_key=query_key,
            vector=np.array(row["vector"], dtype=np.float32),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    async def _put_query_vector(
        self, query_key: str, vector: np.ndarray, created_at: datetime, expires_at: datetime
    ) -> None:
        await self.pool.execute(
            """
            INSERT INTO viny_query_cache (query_key, vector, created_at, expires_at)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (query_key) DO UPDATE
            SET vector = EXCLUDED.vector,
                created_at = EXCLUDED.created_at,
                expires_at = EXCLUDED.expires_at
            """,
            query_key, vector.tolist(), created_at, expires_at,
        )

    async def _delete_expired_queries(self, now: datetime) -> int:
        result = await self.pool.execute("DELETE FROM viny_query_cache WHERE expires_at <= $1", now)
        # Result is like "DELETE 5"
        return int(result.split()[-1])

    async def _clear(self) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM viny_embedding")
                await conn.execute("DELETE FROM viny_query_cache")

    async def _counts(self) -> tuple[int, int, Optional[str]]:
        row = await self.pool.fetchrow(
            "SELECT COUNT(*) AS n, MIN(timestamp) AS oldest FROM viny_embedding"
        )
        query_count = await self.pool.fetchval("SELECT COUNT(*) FROM viny_query_cache")
        return row["n"], query_count, row["oldest"]
