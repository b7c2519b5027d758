"""
Embedding engine.

Turns documents into cached chunk embeddings and queries into vectors:
- Cache-first: a document whose version matches the cache is never re-embedded
- Chunks are embedded independently; one failed chunk never fails the document
- Model inference goes through the worker pool when one is running
"""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

import numpy as np

from ..cache.base import EmbeddingCache
from ..cache.null import NullCache
from ..errors import EmbeddingFailure
from ..indexer.chunker import DocumentChunker
from ..models import Document, Embedding, TextChunk
from .models import EmbeddingModel
from .workers import EmbeddingWorkerPool

logger = logging.getLogger(__name__)

QUERY_KEY_PREFIX = "query_"


def normalize_query(text: str) -> str:
    """Collapse whitespace so trivially different inputs share a cache entry."""
    return " ".join(text.split())


def query_cache_key(text: str) -> str:
    return f"{QUERY_KEY_PREFIX}{normalize_query(text)}"


class EmbeddingEngine:
    """Chunks, embeds and caches documents and queries."""

    def __init__(
        self,
        model: EmbeddingModel,
        cache: Optional[EmbeddingCache] = None,
        chunker: Optional[DocumentChunker] = None,
        pool: Optional[EmbeddingWorkerPool] = None,
        batch_size: int = 8,
    ):
        self.model = model
        self.cache = cache if cache is not None else NullCache(
            model_name=model.model_name, dimension=model.dimension
        )
        self.chunker = chunker or DocumentChunker()
        self.pool = pool
        self.batch_size = max(1, batch_size)

    async def initialize(self) -> None:
        """Open the cache and start the worker pool (if any)."""
        await self.cache.initialize()
        if self.pool is not None:
            await self.pool.start()
        logger.info(f"Embedding engine ready (model={self.model.model_name}, cache={self.cache.backend})")

    async def destroy(self) -> None:
        if self.pool is not None:
            await self.pool.stop()
        await self.cache.close()
        logger.info("Embedding engine stopped")

    async def __aenter__(self) -> EmbeddingEngine:
        await self.initialize()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.destroy()

    # ---- model calls ----

    async def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        if self.pool is not None and self.pool.running:
            return await self.pool.submit(texts)
        return await self.model.embed(texts)

    async def _embed_chunk(self, chunk: TextChunk) -> Embedding:
        try:
            vectors = await self._embed_texts([chunk.text])
        except EmbeddingFailure as e:
            raise EmbeddingFailure(str(e), chunk_id=chunk.id) from e
        except Exception as e:
            raise EmbeddingFailure(f"Embedding failed: {e}", chunk_id=chunk.id) from e

        if len(vectors) != 1:
            raise EmbeddingFailure(f"Expected 1 vector, got {len(vectors)}", chunk_id=chunk.id)

        return Embedding(
            id=chunk.id,
            document_id=chunk.document_id,
            chunk_id=chunk.id,
            vector=vectors[0],
            metadata={
                **chunk.metadata,
                "start_offset": chunk.start_offset,
                "end_offset": chunk.end_offset,
            },
            text=chunk.text,
        )

    async def _embed_chunks(self, chunks: list[TextChunk]) -> tuple[dict[str, Embedding], list[TextChunk]]:
        """Embed chunks concurrently; returns successes by chunk id and the failed chunks."""
        results = await asyncio.gather(
            *(self._embed_chunk(chunk) for chunk in chunks),
            return_exceptions=True,
        )

        embedded: dict[str, Embedding] = {}
        failed: list[TextChunk] = []
        for chunk, result in zip(chunks, results):
            if isinstance(result, BaseException):
                logger.warning(f"Dropping chunk {chunk.id}: {result}")
                failed.append(chunk)
            else:
                embedded[chunk.id] = result
        return embedded, failed

    # ---- documents ----

    async def embed_document(self, document: Document) -> list[Embedding]:
        """Embeddings for one document, from cache when its version matches.

        Failed chunks are retried once. If some still fail, the partial set is
        returned but not cached, so the next call tries again.
        """
        cached = await self.cache.get_embeddings(document.id, document.version)
        if cached:
            logger.debug(f"Cache hit for document {document.id}")
            return cached

        chunks = self.chunker.chunk_document(document)
        if not chunks:
            return []

        embedded, failed = await self._embed_chunks(chunks)
        if failed:
            logger.info(f"Retrying {len(failed)} failed chunk(s) for document {document.id}")
            retried, failed = await self._embed_chunks(failed)
            embedded.update(retried)

        # Keep chunk order
        embeddings = [embedded[c.id] for c in chunks if c.id in embedded]

        if failed:
            logger.warning(
                f"Document {document.id}: {len(failed)}/{len(chunks)} chunks failed, "
                f"not caching partial set"
            )
            return embeddings

        await self.cache.store_embeddings(document.id, embeddings, document.version)
        logger.debug(f"Embedded document {document.id} ({len(embeddings)} chunks)")
        return embeddings

    async def embed_documents(self, documents: Iterable[Document]) -> dict[str, list[Embedding]]:
        """Embed documents in fixed-size batches.

        Documents within a batch run concurrently. A document that fails
        outright maps to an empty list.
        """
        documents = list(documents)
        results: dict[str, list[Embedding]] = {}

        for i in range(0, len(documents), self.batch_size):
            batch = documents[i:i + self.batch_size]
            outcomes = await asyncio.gather(
                *(self.embed_document(doc) for doc in batch),
                return_exceptions=True,
            )
            for doc, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(f"Failed to embed document {doc.id}: {outcome}")
                    results[doc.id] = []
                else:
                    results[doc.id] = outcome
            logger.debug(f"Embedded batch {i // self.batch_size + 1} ({len(batch)} documents)")

        return results

    async def update_embeddings(self, documents: Iterable[Document]) -> dict[str, list[Embedding]]:
        """Re-embed only documents whose cached version differs or is missing."""
        documents = list(documents)
        modified = await self.cache.get_modified_documents(documents)
        logger.info(f"Updating embeddings: {len(modified)} of {len(documents)} documents changed")
        if not modified:
            return {}
        return await self.embed_documents(modified)

    async def get_or_create_embeddings(self, documents: Iterable[Document]) -> dict[str, list[Embedding]]:
        """Embeddings for every document: fresh ones for changed notes, cached for the rest."""
        documents = list(documents)
        modified = await self.cache.get_modified_documents(documents)
        modified_ids = {d.id for d in modified}

        results = await self.embed_documents(modified) if modified else {}

        unchanged_ids = [d.id for d in documents if d.id not in modified_ids]
        if unchanged_ids:
            cached = await self.cache.get_embeddings_by_document_ids(unchanged_ids)
            for doc in documents:
                if doc.id in modified_ids:
                    continue
                if doc.id in cached:
                    results[doc.id] = cached[doc.id]
                else:
                    # Version row vanished between the two reads
                    results[doc.id] = await self.embed_document(doc)

        return results

    async def remove_document(self, document_id: str) -> None:
        await self.cache.delete_embeddings(document_id)

    async def clear_embeddings(self) -> None:
        await self.cache.clear()

    # ---- queries ----

    async def embed_query(self, text: str) -> np.ndarray:
        """Vector for a query, cached under ``query_<normalized text>``.

        Raises:
            EmbeddingFailure: If the model call fails
        """
        key = query_cache_key(text)
        cached = await self.cache.get_query_vector(key)
        if cached is not None:
            logger.debug(f"Query cache hit: {key!r}")
            return cached

        try:
            vectors = await self._embed_texts([normalize_query(text)])
        except EmbeddingFailure:
            raise
        except Exception as e:
            raise EmbeddingFailure(f"Query embedding failed: {e}") from e

        vector = np.asarray(vectors[0], dtype=np.float32)
        await self.cache.store_query_vector(key, vector)
        return vector

    async def get_stats(self) -> dict:
        stats = await self.cache.get_stats()
        stats["model"] = self.model.info()
        if self.pool is not None:
            stats["workers"] = self.pool.get_stats()
        return stats
