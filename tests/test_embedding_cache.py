"""Tests for the SQLite and null embedding caches."""
import asyncio
from datetime import timedelta

import numpy as np
import pytest

from viny_rag.cache import NullCache, SQLiteEmbeddingCache, create_cache
from viny_rag.config import CacheConfig
from viny_rag.errors import CacheFailure
from viny_rag.models import CachedQueryVector, Document, Embedding

from conftest import FAKE_DIMENSION


def make_embeddings(doc_id: str, count: int, seed: float = 0.0) -> list[Embedding]:
    return [
        Embedding(
            id=f"{doc_id}_chunk_{i}",
            document_id=doc_id,
            chunk_id=f"{doc_id}_chunk_{i}",
            vector=np.full(FAKE_DIMENSION, seed + i, dtype=np.float32),
            metadata={"title": "T", "tags": ["a", "b"], "notebook": "nb"},
            text=f"chunk {i}",
        )
        for i in range(count)
    ]


@pytest.mark.asyncio
async def test_strict_version_match(sqlite_cache):
    """A different version is a miss; the same version returns exactly what was stored."""
    embs = make_embeddings("doc1", 3)
    await sqlite_cache.store_embeddings("doc1", embs, "v1")

    assert await sqlite_cache.get_embeddings("doc1", "v2") == []
    assert await sqlite_cache.get_embeddings("doc1", "v1") == embs


@pytest.mark.asyncio
async def test_store_replaces_previous_set(sqlite_cache):
    await sqlite_cache.store_embeddings("doc1", make_embeddings("doc1", 3), "v1")
    await sqlite_cache.store_embeddings("doc1", make_embeddings("doc1", 1, seed=5.0), "v2")

    assert await sqlite_cache.get_embeddings("doc1", "v1") == []
    stored = await sqlite_cache.get_embeddings("doc1", "v2")
    assert len(stored) == 1
    assert stored[0].vector[0] == 5.0


@pytest.mark.asyncio
async def test_concurrent_writers_same_document(sqlite_cache):
    """Concurrent replaces of one document leave one complete set."""
    first = make_embeddings("doc1", 4, seed=1.0)
    second = make_embeddings("doc1", 2, seed=9.0)

    await asyncio.gather(
        sqlite_cache.store_embeddings("doc1", first, "v1"),
        sqlite_cache.store_embeddings("doc1", second, "v1"),
    )

    stored = await sqlite_cache.get_embeddings("doc1", "v1")
    assert stored in (first, second)


@pytest.mark.asyncio
async def test_document_locks_released_after_writes(sqlite_cache):
    await asyncio.gather(*(
        sqlite_cache.store_embeddings(f"doc{i % 3}", make_embeddings(f"doc{i % 3}", 1), "v1")
        for i in range(9)
    ))
    await sqlite_cache.delete_embeddings("doc0")

    assert sqlite_cache._document_locks == {}


@pytest.mark.asyncio
async def test_get_modified_documents(sqlite_cache):
    await sqlite_cache.store_embeddings("a", make_embeddings("a", 1), "v1")
    await sqlite_cache.store_embeddings("b", make_embeddings("b", 1), "v1")
    docs = [
        Document(id="a", version="v1"),
        Document(id="b", version="v2"),
        Document(id="c", version="v1"),
    ]

    modified = await sqlite_cache.get_modified_documents(docs)

    assert [d.id for d in modified] == ["b", "c"]


@pytest.mark.asyncio
async def test_bulk_retrieval(sqlite_cache):
    await sqlite_cache.store_embeddings("a", make_embeddings("a", 2), "v1")
    await sqlite_cache.store_embeddings("b", make_embeddings("b", 3), "v1")

    all_embs = await sqlite_cache.get_all_embeddings()
    by_id = await sqlite_cache.get_embeddings_by_document_ids(["b"])

    assert len(all_embs) == 5
    assert list(by_id) == ["b"]
    assert [e.chunk_id for e in by_id["b"]] == ["b_chunk_0", "b_chunk_1", "b_chunk_2"]


@pytest.mark.asyncio
async def test_delete_and_clear(sqlite_cache):
    await sqlite_cache.store_embeddings("a", make_embeddings("a", 2), "v1")
    await sqlite_cache.store_embeddings("b", make_embeddings("b", 2), "v1")

    await sqlite_cache.delete_embeddings("a")
    assert await sqlite_cache.get_embeddings("a", "v1") == []
    assert len(await sqlite_cache.get_embeddings("b", "v1")) == 2

    await sqlite_cache.clear()
    assert await sqlite_cache.get_all_embeddings() == []


@pytest.mark.asyncio
async def test_query_vector_ttl(sqlite_cache, clock):
    """Retrievable before T + 24h, a miss at T + 24h."""
    vector = np.arange(FAKE_DIMENSION, dtype=np.float32)
    await sqlite_cache.store_query_vector("query_hello", vector)

    clock.advance(hours=23, minutes=59)
    cached = await sqlite_cache.get_query_vector("query_hello")
    assert cached is not None
    assert np.array_equal(cached, vector)

    clock.advance(minutes=1)
    assert await sqlite_cache.get_query_vector("query_hello") is None


@pytest.mark.asyncio
async def test_query_entry_keeps_timestamps(sqlite_cache, clock):
    start = clock()
    await sqlite_cache.store_query_vector("query_hello", np.ones(FAKE_DIMENSION))

    entry = await sqlite_cache.get_query_entry("query_hello")

    assert isinstance(entry, CachedQueryVector)
    assert entry.query_key == "query_hello"
    assert entry.created_at == start
    assert entry.expires_at == start + timedelta(hours=24)
    assert await sqlite_cache.get_query_entry("query_missing") is None


@pytest.mark.asyncio
async def test_cleanup_expired_queries(sqlite_cache, clock):
    await sqlite_cache.store_query_vector("query_old", np.ones(FAKE_DIMENSION))
    clock.advance(hours=12)
    await sqlite_cache.store_query_vector("query_new", np.ones(FAKE_DIMENSION))
    clock.advance(hours=12)

    removed = await sqlite_cache.cleanup_expired_queries()

    assert removed == 1
    stats = await sqlite_cache.get_stats()
    assert stats["total_queries"] == 1


@pytest.mark.asyncio
async def test_stats_size_estimate(sqlite_cache):
    await sqlite_cache.store_embeddings("a", make_embeddings("a", 2), "v1")
    await sqlite_cache.store_query_vector("query_x", np.ones(FAKE_DIMENSION))

    stats = await sqlite_cache.get_stats()

    vector_bytes = FAKE_DIMENSION * 4
    assert stats["total_embeddings"] == 2
    assert stats["total_queries"] == 1
    assert stats["size"] == 2 * (vector_bytes + 200) + 1 * (vector_bytes + 100)
    assert stats["oldest_embedding"] is not None


@pytest.mark.asyncio
async def test_model_change_invalidates_cache(tmp_path):
    path = tmp_path / "cache.sqlite3"

    cache = SQLiteEmbeddingCache(path, model_name="model-a", dimension=FAKE_DIMENSION)
    await cache.initialize()
    await cache.store_embeddings("a", make_embeddings("a", 1), "v1")
    await cache.close()

    same = SQLiteEmbeddingCache(path, model_name="model-a", dimension=FAKE_DIMENSION)
    await same.initialize()
    assert len(await same.get_embeddings("a", "v1")) == 1
    await same.close()

    other = SQLiteEmbeddingCache(path, model_name="model-b", dimension=FAKE_DIMENSION)
    await other.initialize()
    assert await other.get_embeddings("a", "v1") == []
    await other.close()


@pytest.mark.asyncio
async def test_backend_errors_degrade_to_miss(sqlite_cache):
    """A broken connection turns reads into misses and writes into no-ops."""
    await sqlite_cache.store_embeddings("a", make_embeddings("a", 1), "v1")
    sqlite_cache.conn.close()

    assert await sqlite_cache.get_embeddings("a", "v1") == []
    await sqlite_cache.store_embeddings("a", make_embeddings("a", 1), "v2")
    assert await sqlite_cache.get_query_vector("query_x") is None
    docs = [Document(id="a", version="v1")]
    assert await sqlite_cache.get_modified_documents(docs) == docs
    assert (await sqlite_cache.get_stats())["total_embeddings"] == 0

    # Fixture teardown closes again
    sqlite_cache._conn = None


@pytest.mark.asyncio
async def test_unopenable_cache_is_unavailable(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x")
    cache = SQLiteEmbeddingCache(blocker / "cache.sqlite3", model_name="m", dimension=FAKE_DIMENSION)

    await cache.initialize()

    assert cache.available is False
    assert await cache.get_embeddings("a", "v1") == []
    await cache.store_embeddings("a", make_embeddings("a", 1), "v1")
    await cache.close()


@pytest.mark.asyncio
async def test_backend_open_failure_is_cache_failure(tmp_path):
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("x")
    cache = SQLiteEmbeddingCache(blocker / "cache.sqlite3", model_name="m", dimension=FAKE_DIMENSION)

    with pytest.raises(CacheFailure, match="cannot open"):
        await cache._open()
    with pytest.raises(CacheFailure, match="not open"):
        cache.conn


@pytest.mark.asyncio
async def test_null_cache_always_misses():
    cache = NullCache(model_name="m", dimension=FAKE_DIMENSION)
    await cache.initialize()

    await cache.store_embeddings("a", make_embeddings("a", 1), "v1")
    await cache.store_query_vector("query_x", np.ones(FAKE_DIMENSION))

    assert await cache.get_embeddings("a", "v1") == []
    assert await cache.get_query_vector("query_x") is None
    assert [d.id for d in await cache.get_modified_documents([Document(id="a", version="v1")])] == ["a"]


def test_create_cache_selects_backend(tmp_path):
    assert isinstance(create_cache(CacheConfig(use_cache=False), "m", 384), NullCache)
    assert isinstance(create_cache(CacheConfig(backend="none"), "m", 384), NullCache)
    sqlite = create_cache(CacheConfig(path=str(tmp_path / "c.sqlite3"), query_cache_ttl_hours=2), "m", 384)
    assert isinstance(sqlite, SQLiteEmbeddingCache)
    assert sqlite.query_ttl.total_seconds() == 7200
