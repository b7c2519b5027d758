"""
SQLite embedding cache (default, local-first).

Vectors are stored as little-endian float32 blobs; metadata as JSON text.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import numpy as np

from ..errors import CacheFailure
from ..models import CachedQueryVector, Embedding
from .base import EmbeddingCache

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS embeddings (
    id TEXT PRIMARY KEY,
    document_id TEXT NOT NULL,
    chunk_id TEXT NOT NULL,
    version TEXT NOT NULL,
    vector BLOB NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    text TEXT NOT NULL DEFAULT '',
    timestamp TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_embeddings_document ON embeddings(document_id);
CREATE INDEX IF NOT EXISTS idx_embeddings_timestamp ON embeddings(timestamp);

CREATE TABLE IF NOT EXISTS queries (
    query_key TEXT PRIMARY KEY,
    vector BLOB NOT NULL,
    created_at REAL NOT NULL,
    expires_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_queries_expires ON queries(expires_at);

CREATE TABLE IF NOT EXISTS cache_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


def _to_blob(vector: np.ndarray) -> bytes:
    return np.asarray(vector, dtype="<f4").tobytes()


def _from_blob(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype="<f4").astype(np.float32)


class SQLiteEmbeddingCache(EmbeddingCache):
    """Embedding cache in a single SQLite file (or ``:memory:``)."""

    backend = "sqlite"

    def __init__(self, path: str | Path = ":memory:", **kwargs):
        super().__init__(**kwargs)
        self.path = str(path)
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise CacheFailure("SQLite cache is not open")
        return self._conn

    async def _open(self) -> None:
        if self._conn is not None:
            return
        try:
            if self.path != ":memory:":
                Path(self.path).expanduser().parent.mkdir(parents=True, exist_ok=True)
                self.path = str(Path(self.path).expanduser())
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except (sqlite3.Error, OSError) as e:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            raise CacheFailure(f"cannot open SQLite cache at {self.path}: {e}") from e
        logger.debug(f"Opened SQLite cache at {self.path}")

    async def _close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    async def _get_meta(self, key: str) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM cache_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    async def _set_meta(self, key: str, value: str) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO cache_meta (key, value) VALUES (?, ?)",
                (key, value),
            )

    @staticmethod
    def _row_to_embedding(row: sqlite3.Row) -> Embedding:
        return Embedding(
            id=row["id"],
            document_id=row["document_id"],
            chunk_id=row["chunk_id"],
            vector=_from_blob(row["vector"]),
            metadata=json.loads(row["metadata"]),
            timestamp=row["timestamp"],
            text=row["text"],
        )

    async def _get_embeddings(self, document_id: str, version: str) -> list[Embedding]:
        rows = self.conn.execute(
            "SELECT * FROM embeddings WHERE document_id = ? AND version = ? ORDER BY rowid",
            (document_id, version),
        ).fetchall()
        return [self._row_to_embedding(r) for r in rows]

    async def _replace_embeddings(self, document_id: str, embeddings: list[Embedding], version: str) -> None:
        # Connection context manager commits on success and rolls back on error
        with self.conn:
            self.conn.execute("DELETE FROM embeddings WHERE document_id = ?", (document_id,))
            self.conn.executemany(
                """
                INSERT INTO embeddings (id, document_id, chunk_id, version, vector, metadata, text, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        emb.id,
                        document_id,
                        emb.chunk_id,
                        version,
                        _to_blob(emb.vector),
                        json.dumps(emb.metadata),
                        emb.text,
                        emb.timestamp,
                    )
                    for emb in embeddings
                ],
            )

    async def _delete_embeddings(self, document_id: str) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM embeddings WHERE document_id = ?", (document_id,))

    async def _get_versions(self, document_ids: list[str]) -> dict[str, str]:
        placeholders = ",".join("?" for _ in document_ids)
        rows = self.conn.execute(
            f"SELECT DISTINCT document_id, version FROM embeddings WHERE document_id IN ({placeholders})",
            document_ids,
        ).fetchall()
        return {r["document_id"]: r["version"] for r in rows}

    async def _get_all_embeddings(self) -> list[Embedding]:
        rows = self.conn.execute("SELECT * FROM embeddings ORDER BY document_id, rowid").fetchall()
        return [self._row_to_embedding(r) for r in rows]

    async def _get_embeddings_by_document_ids(self, document_ids: list[str]) -> list[Embedding]:
        placeholders = ",".join("?" for _ in document_ids)
        rows = self.conn.execute(
            f"SELECT * FROM embeddings WHERE document_id IN ({placeholders}) ORDER BY document_id, rowid",
            document_ids,
        ).fetchall()
        return [self._row_to_embedding(r) for r in rows]

    async def _get_query_vector(self, query_key: str, now: datetime) -> Optional[CachedQueryVector]:
        row = self.conn.execute(
            "SELECT vector, created_at, expires_at FROM queries WHERE query_key = ? AND expires_at > ?",
            (query_key, now.timestamp()),
        ).fetchone()
        if row is None:
            return None
        return CachedQueryVector(
            query_key=query_key,
            vector=_from_blob(row["vector"]),
            created_at=datetime.fromtimestamp(row["created_at"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(row["expires_at"], tz=timezone.utc),
        )

    async def _put_query_vector(
        self, query_key: str, vector: np.ndarray, created_at: datetime, expires_at: datetime
    ) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO queries (query_key, vector, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (query_key, _to_blob(vector), created_at.timestamp(), expires_at.timestamp()),
            )

    async def _delete_expired_queries(self, now: datetime) -> int:
        with self.conn:
            cursor = self.conn.execute("DELETE FROM queries WHERE expires_at <= ?", (now.timestamp(),))
        return cursor.rowcount

    async def _clear(self) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM embeddings")
            self.conn.execute("DELETE FROM queries")

    async def _counts(self) -> tuple[int, int, Optional[str]]:
        row = self.conn.execute(
            "SELECT COUNT(*) AS n, MIN(timestamp) AS oldest FROM embeddings"
        ).fetchone()
        queries = self.conn.execute("SELECT COUNT(*) AS n FROM queries").fetchone()
        return row["n"], queries["n"], row["oldest"]
