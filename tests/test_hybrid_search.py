"""Tests for lexical, semantic and hybrid note search."""
import numpy as np
import pytest
import pytest_asyncio

from viny_rag.config import SearchConfig
from viny_rag.embeddings.engine import EmbeddingEngine
from viny_rag.indexer.chunker import ChunkingConfig, DocumentChunker
from viny_rag.models import Document, Embedding, MatchKind, SearchMode, SearchResult
from viny_rag.retrieval.hybrid_search import HybridSearcher, fuse_results
from viny_rag.retrieval.lexical import LexicalScorer, fuzzy_score
from viny_rag.retrieval.vector_search import rank_chunks

from conftest import FakeEmbeddingModel


@pytest_asyncio.fixture
async def searcher(fake_model, sqlite_cache):
    engine = EmbeddingEngine(
        fake_model,
        cache=sqlite_cache,
        chunker=DocumentChunker(ChunkingConfig(max_length=200, overlap=20)),
    )
    return HybridSearcher.from_config(engine, SearchConfig())


# ---- lexical ----


def test_fuzzy_score_exact_and_typo():
    assert fuzzy_score("ownership", "ownership") == 0.0
    typo = fuzzy_score("ownershp", "rust ownership")
    assert 0.0 < typo <= 0.3


def test_fuzzy_score_penalizes_distance_from_start():
    text = "x" * 200 + "tomato"
    assert fuzzy_score("tomato", text) == 1.0
    assert fuzzy_score("tomato", text, ignore_location=True) == 0.0


def test_lexical_misspelled_query_finds_note(notes):
    """'ownershp' still matches the note titled 'Rust Ownership'."""
    results = LexicalScorer().search("ownershp", notes)

    assert results
    assert results[0].document.id == "n1"
    assert results[0].match_kind == MatchKind.LEXICAL
    assert results[0].score == results[0].lexical_score


def test_lexical_title_beats_content_only_match():
    in_title = Document(id="a", version="v1", title="Tomato", content="Notes about the garden.")
    in_content = Document(id="b", version="v1", title="Garden", content="Tomato varieties.")

    results = LexicalScorer().search("tomato", [in_content, in_title])

    assert [r.document.id for r in results] == ["a", "b"]


def test_lexical_matches_tags_and_notebook(notes):
    assert [r.document.id for r in LexicalScorer().search("recipe", notes)] == ["n3"]
    assert [r.document.id for r in LexicalScorer().search("kitchen", notes)] == ["n3"]


def test_lexical_unrelated_query_matches_nothing(notes):
    assert LexicalScorer().search("quantum chromodynamics", notes) == []


def test_lexical_minimum_query_length(notes):
    assert LexicalScorer().search("r", notes) == []


# ---- semantic ----


def test_rank_chunks_applies_floor_and_order():
    def emb(i, vec):
        return Embedding(id=str(i), document_id=str(i), chunk_id=str(i), vector=vec)

    query = np.array([1.0, 0.0], dtype=np.float32)
    hits = rank_chunks(query, [
        emb(1, [0.0, 1.0]),   # cos 0
        emb(2, [1.0, 1.0]),   # cos 0.707
        emb(3, [2.0, 0.0]),   # cos 1
    ], similarity_floor=0.5)

    assert [h.embedding.id for h in hits] == ["3", "2"]
    assert hits[0].similarity == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_semantic_search_without_shared_keywords(searcher, notes):
    """'who owns memory in rust' finds the ownership note by meaning."""
    results = await searcher.search("who owns memory in rust", notes, SearchMode.SEMANTIC)

    assert results[0].document.id == "n1"
    assert results[0].match_kind == MatchKind.SEMANTIC
    assert results[0].chunk_id.startswith("n1_chunk_")
    assert results[0].matched_chunk
    assert results[0].score == pytest.approx(1 - results[0].similarity)
    assert "n2" not in [r.document.id for r in results]


@pytest.mark.asyncio
async def test_semantic_one_result_per_document(searcher, notes):
    results = await searcher.search("ownership and borrowing in rust", notes, SearchMode.SEMANTIC)

    ids = [r.document.id for r in results]
    assert ids.count("n1") == 1


@pytest.mark.asyncio
async def test_semantic_top_k_cap(fake_model, sqlite_cache):
    engine = EmbeddingEngine(fake_model, cache=sqlite_cache)
    searcher = HybridSearcher(engine, top_k=3)
    docs = [Document(id=f"d{i}", version="v1", title=f"Tomato {i}", content="Tomatoes in soil.") for i in range(6)]

    results = await searcher.search("tomato soil", docs, SearchMode.SEMANTIC)

    assert len(results) == 3


@pytest.mark.asyncio
async def test_semantic_minimum_query_length(searcher, fake_model, notes):
    assert await searcher.search("ru", notes, SearchMode.SEMANTIC) == []
    assert fake_model.calls == []


@pytest.mark.asyncio
async def test_semantic_embedding_failure_returns_empty(sqlite_cache, notes):
    engine = EmbeddingEngine(FakeEmbeddingModel(failures={"rust": -1}), cache=sqlite_cache)
    searcher = HybridSearcher(engine)

    assert await searcher.search("rust memory", notes, SearchMode.SEMANTIC) == []


# ---- hybrid ----


@pytest.mark.asyncio
async def test_hybrid_deduplicates_with_better_score(searcher, notes):
    """A note found both ways appears once, as BOTH, with the better score."""
    results = await searcher.search("rust ownership", notes, SearchMode.HYBRID)

    matches = [r for r in results if r.document.id == "n1"]
    assert len(matches) == 1
    match = matches[0]
    assert match.match_kind == MatchKind.BOTH
    assert match.lexical_score is not None and match.semantic_score is not None
    assert match.score == min(match.lexical_score, match.semantic_score)
    assert results[0].document.id == "n1"


@pytest.mark.asyncio
async def test_hybrid_keeps_single_source_matches(searcher, notes):
    results = await searcher.search("who owns memory in rust", notes, SearchMode.HYBRID)

    n1 = next(r for r in results if r.document.id == "n1")
    assert n1.match_kind in (MatchKind.SEMANTIC, MatchKind.BOTH)
    assert len({r.document.id for r in results}) == len(results)


@pytest.mark.asyncio
async def test_hybrid_minimum_query_length(searcher, notes):
    assert await searcher.search("r", notes, SearchMode.HYBRID) == []


def _result(doc, score, kind, **kwargs):
    return SearchResult(document=doc, score=score, match_kind=kind, **kwargs)


def test_fuse_prefers_numerically_better_score():
    doc = Document(id="a", version="v1", title="A")
    lexical = [_result(doc, 0.4, MatchKind.LEXICAL, lexical_score=0.4)]
    semantic = [_result(doc, 0.1, MatchKind.SEMANTIC, semantic_score=0.1, matched_chunk="chunk")]

    fused = fuse_results(lexical, semantic)

    assert len(fused) == 1
    assert fused[0].score == 0.1
    assert fused[0].match_kind == MatchKind.BOTH
    assert fused[0].matched_chunk == "chunk"
    assert (fused[0].lexical_score, fused[0].semantic_score) == (0.4, 0.1)

    # Lexical better this time
    fused = fuse_results(
        [_result(doc, 0.05, MatchKind.LEXICAL, lexical_score=0.05)],
        [_result(doc, 0.3, MatchKind.SEMANTIC, semantic_score=0.3)],
    )
    assert fused[0].score == 0.05
    assert fused[0].match_kind == MatchKind.BOTH


def test_fuse_exact_tie_is_both():
    doc = Document(id="a", version="v1")
    fused = fuse_results(
        [_result(doc, 0.2, MatchKind.LEXICAL, lexical_score=0.2)],
        [_result(doc, 0.2, MatchKind.SEMANTIC, semantic_score=0.2)],
    )
    assert fused[0].score == 0.2
    assert fused[0].match_kind == MatchKind.BOTH


def test_fuse_ordering_ties_prefer_both_then_recency():
    old = Document(id="old", version="2024-01-01T00:00:00Z")
    new = Document(id="new", version="2024-06-01T00:00:00Z")
    both = Document(id="both", version="2023-01-01T00:00:00Z")
    best = Document(id="best", version="2020-01-01T00:00:00Z")

    fused = fuse_results(
        lexical=[
            _result(old, 0.2, MatchKind.LEXICAL),
            _result(both, 0.2, MatchKind.LEXICAL),
            _result(best, 0.1, MatchKind.LEXICAL),
        ],
        semantic=[
            _result(new, 0.2, MatchKind.SEMANTIC),
            _result(both, 0.3, MatchKind.SEMANTIC),
        ],
    )

    assert [r.document.id for r in fused] == ["best", "both", "new", "old"]


@pytest.mark.asyncio
async def test_find_similar_excludes_itself(searcher, fake_model):
    docs = [
        Document(id="r1", version="v1", title="Rust ownership", content="Ownership and borrowing."),
        Document(id="r2", version="v1", title="Rust references", content="Borrow rules for references."),
        Document(id="g1", version="v1", title="Garden", content="Tomatoes and soil."),
    ]

    results = await searcher.find_similar("r1", docs)

    assert [r.document.id for r in results] == ["r2"]
