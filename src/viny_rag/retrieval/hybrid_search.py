"""Hybrid note search combining fuzzy keyword matching and vector similarity.

Both scorers report distance-like scores (0 is perfect, lower is better), so
fusion compares them directly: a document found by both keeps the better of
its two scores and is marked ``BOTH``.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from ..config.engine import SearchConfig
from ..embeddings.engine import EmbeddingEngine
from ..errors import EmbeddingFailure
from ..models import Document, MatchKind, SearchMode, SearchResult
from .lexical import LexicalScorer
from .vector_search import mean_vector, semantic_search

logger = logging.getLogger(__name__)


def fuse_results(
    lexical: list[SearchResult],
    semantic: list[SearchResult],
) -> list[SearchResult]:
    """Union two result lists by document id.

    A document in both lists keeps the numerically better score; on an exact
    tie the lexical score is kept. Either way it is marked ``BOTH`` and carries
    both component scores plus the semantic chunk.

    Ordering: score ascending, then ``BOTH`` before single-source matches, then
    most recent version first.
    """
    candidates: dict[str, SearchResult] = {}

    for r in lexical:
        candidates[r.document.id] = SearchResult(
            document=r.document,
            score=r.score,
            match_kind=MatchKind.LEXICAL,
            lexical_score=r.score,
        )

    for r in semantic:
        doc_id = r.document.id
        existing = candidates.get(doc_id)
        if existing is None:
            candidates[doc_id] = SearchResult(
                document=r.document,
                score=r.score,
                match_kind=MatchKind.SEMANTIC,
                matched_chunk=r.matched_chunk,
                chunk_id=r.chunk_id,
                semantic_score=r.score,
            )
            continue

        existing.score = min(existing.score, r.score)
        existing.match_kind = MatchKind.BOTH
        existing.matched_chunk = r.matched_chunk
        existing.chunk_id = r.chunk_id
        existing.semantic_score = r.score

    results = list(candidates.values())
    # Two stable passes: recency first, then the primary key
    results.sort(key=lambda r: r.document.version, reverse=True)
    results.sort(key=lambda r: (r.score, r.match_kind != MatchKind.BOTH))
    return results


class HybridSearcher:
    """Searches a set of documents lexically, semantically or both."""

    def __init__(
        self,
        engine: EmbeddingEngine,
        lexical: Optional[LexicalScorer] = None,
        similarity_floor: float = 0.5,
        top_k: int = 10,
        semantic_min_query_length: int = 3,
    ):
        self.engine = engine
        self.lexical = lexical or LexicalScorer()
        self.similarity_floor = similarity_floor
        self.top_k = top_k
        self.semantic_min_query_length = semantic_min_query_length

    @classmethod
    def from_config(cls, engine: EmbeddingEngine, config: SearchConfig) -> HybridSearcher:
        return cls(
            engine,
            lexical=LexicalScorer(
                threshold=config.lexical_threshold,
                distance=config.lexical_distance,
                ignore_location=config.lexical_ignore_location,
                min_query_length=config.lexical_min_query_length,
            ),
            similarity_floor=config.semantic_similarity_floor,
            top_k=config.semantic_top_k,
            semantic_min_query_length=config.semantic_min_query_length,
        )

    async def search(
        self,
        query: str,
        documents: Iterable[Document],
        mode: SearchMode = SearchMode.HYBRID,
    ) -> list[SearchResult]:
        """Ranked results for ``query`` over ``documents``.

        Args:
            query: Free-text query
            documents: Notes to search (read-only)
            mode: Lexical, semantic or hybrid

        Returns:
            One result per document, best first
        """
        documents = list(documents)
        mode = SearchMode(mode)

        if mode == SearchMode.LEXICAL:
            return self.lexical.search(query, documents)
        if mode == SearchMode.SEMANTIC:
            return await self.semantic_search(query, documents)

        if len(query.strip()) < self.lexical.min_query_length:
            return []

        lexical = self.lexical.search(query, documents)
        semantic = await self.semantic_search(query, documents)
        results = fuse_results(lexical, semantic)

        logger.debug(
            f"Hybrid search for {query!r}: {len(lexical)} lexical, "
            f"{len(semantic)} semantic, {len(results)} fused"
        )
        return results

    async def semantic_search(
        self,
        query: str,
        documents: Iterable[Document],
        top_k: Optional[int] = None,
    ) -> list[SearchResult]:
        """Vector-similarity results; empty on short queries or embedding failure."""
        documents = list(documents)
        if len(query.strip()) < self.semantic_min_query_length or not documents:
            return []

        try:
            query_vector = await self.engine.embed_query(query)
        except EmbeddingFailure as e:
            logger.error(f"Semantic search failed: {e}")
            return []

        embeddings = await self.engine.get_or_create_embeddings(documents)
        return semantic_search(
            query_vector,
            embeddings,
            documents,
            similarity_floor=self.similarity_floor,
            top_k=top_k or self.top_k,
        )

    async def find_similar(
        self,
        document_id: str,
        documents: Iterable[Document],
        limit: int = 5,
    ) -> list[SearchResult]:
        """Notes closest to ``document_id`` by mean chunk vector, excluding itself."""
        documents = list(documents)
        embeddings = await self.engine.get_or_create_embeddings(documents)

        target = mean_vector(embeddings.get(document_id, []))
        if target is None:
            logger.debug(f"No embeddings for document {document_id}, nothing similar")
            return []

        others = [d for d in documents if d.id != document_id]
        return semantic_search(
            target,
            {k: v for k, v in embeddings.items() if k != document_id},
            others,
            similarity_floor=self.similarity_floor,
            top_k=limit,
        )
