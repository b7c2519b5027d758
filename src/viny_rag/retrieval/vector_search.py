"""Cosine-similarity search over chunk embeddings."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence

import numpy as np

from ..models import Document, Embedding, MatchKind, SearchResult

logger = logging.getLogger(__name__)


@dataclass
class ChunkHit:
    """A chunk whose similarity to the query cleared the floor."""
    embedding: Embedding
    similarity: float


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def rank_chunks(
    query_vector: np.ndarray,
    embeddings: Sequence[Embedding],
    similarity_floor: float = 0.5,
) -> list[ChunkHit]:
    """Chunks with cosine similarity >= floor, most similar first."""
    if not embeddings:
        return []

    query = np.asarray(query_vector, dtype=np.float32)
    query_norm = float(np.linalg.norm(query))
    if query_norm == 0:
        return []
    query = query / query_norm

    usable = [e for e in embeddings if e.vector.shape == query.shape]
    if len(usable) < len(embeddings):
        logger.warning(
            f"Skipping {len(embeddings) - len(usable)} embeddings with mismatched dimension"
        )
    if not usable:
        return []

    matrix = _normalize_rows(np.stack([e.vector for e in usable]))
    similarities = matrix @ query

    order = np.argsort(-similarities, kind="stable")
    return [
        ChunkHit(embedding=usable[i], similarity=float(similarities[i]))
        for i in order
        if similarities[i] >= similarity_floor
    ]


def semantic_search(
    query_vector: np.ndarray,
    embeddings_by_document: dict[str, list[Embedding]],
    documents: Iterable[Document],
    similarity_floor: float = 0.5,
    top_k: int = 10,
) -> list[SearchResult]:
    """Documents ranked by their best-matching chunk.

    Each document appears once, carrying the chunk that matched best.
    Score is ``1 - similarity`` so lower is better.
    """
    by_id = {doc.id: doc for doc in documents}
    candidates = [
        emb
        for doc_id, embs in embeddings_by_document.items()
        if doc_id in by_id
        for emb in embs
    ]

    results: list[SearchResult] = []
    seen: set[str] = set()
    for hit in rank_chunks(query_vector, candidates, similarity_floor):
        doc_id = hit.embedding.document_id
        if doc_id in seen:
            continue
        seen.add(doc_id)
        score = 1.0 - hit.similarity
        results.append(SearchResult(
            document=by_id[doc_id],
            score=score,
            match_kind=MatchKind.SEMANTIC,
            matched_chunk=hit.embedding.text,
            chunk_id=hit.embedding.chunk_id,
            semantic_score=score,
        ))
        if len(results) >= top_k:
            break

    return results


def mean_vector(embeddings: Sequence[Embedding]) -> np.ndarray | None:
    """Average of a document's chunk vectors, or None if it has none."""
    if not embeddings:
        return None
    return np.mean(np.stack([e.vector for e in embeddings]), axis=0).astype(np.float32)
