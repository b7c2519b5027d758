"""Viny RAG - local-first semantic retrieval and Q&A over notes."""
from .models import Document, Embedding, MatchKind, SearchMode, SearchResult, TextChunk
from .session import RetrievalSession

__version__ = "0.1.0"

__all__ = [
    "Document",
    "Embedding",
    "MatchKind",
    "RetrievalSession",
    "SearchMode",
    "SearchResult",
    "TextChunk",
]
