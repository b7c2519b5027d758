"""Lexical, semantic and hybrid note search."""
from .debounce import DebouncedSearch
from .hybrid_search import HybridSearcher, fuse_results
from .lexical import LexicalScorer, fuzzy_score
from .vector_search import rank_chunks, semantic_search

__all__ = [
    "DebouncedSearch",
    "HybridSearcher",
    "LexicalScorer",
    "fuse_results",
    "fuzzy_score",
    "rank_chunks",
    "semantic_search",
]
