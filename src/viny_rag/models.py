"""
Data model shared by the chunker, embedding engine, cache and search layers.

Documents come from the note store and are read-only here. Chunks and
embeddings are derived from them; search results point back at them.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Document(BaseModel):
    """A note as exposed by the document store."""
    model_config = ConfigDict(frozen=True)

    id: str
    version: str = Field(..., description="Revision marker, e.g. ISO last-modified timestamp")
    title: str = ""
    content: str = ""
    tags: list[str] = Field(default_factory=list)
    notebook: str = ""

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, v: Any) -> str:
        if isinstance(v, datetime):
            return v.isoformat()
        return str(v)

    @property
    def text(self) -> str:
        """Title followed by body; chunk offsets are relative to this string."""
        return f"{self.title}\n\n{self.content}"

    @property
    def shared_metadata(self) -> dict[str, Any]:
        return {"title": self.title, "tags": list(self.tags), "notebook": self.notebook}


@dataclass(frozen=True)
class TextChunk:
    """A contiguous span of a document's text."""
    id: str
    document_id: str
    text: str
    start_offset: int
    end_offset: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Embedding:
    """Vector for one chunk, tagged with the chunk it came from."""
    id: str
    document_id: str
    chunk_id: str
    vector: np.ndarray
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: utc_now().isoformat())
    text: str = ""

    def __post_init__(self) -> None:
        self.vector = np.asarray(self.vector, dtype=np.float32)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Embedding):
            return NotImplemented
        return (
            self.id == other.id
            and self.document_id == other.document_id
            and self.chunk_id == other.chunk_id
            and self.metadata == other.metadata
            and self.text == other.text
            and np.array_equal(self.vector, other.vector)
        )


@dataclass
class CachedQueryVector:
    """Query embedding with a fixed lifespan."""
    query_key: str
    vector: np.ndarray
    created_at: datetime
    expires_at: datetime


class MatchKind(str, Enum):
    """Which scorer(s) matched a document."""
    LEXICAL = "lexical"
    SEMANTIC = "semantic"
    BOTH = "both"


class SearchMode(str, Enum):
    LEXICAL = "lexical"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


@dataclass
class SearchResult:
    """A ranked document with explainability fields.

    ``score`` is distance-like: 0 is a perfect match and lower is better.
    """
    document: Document
    score: float
    match_kind: MatchKind
    matched_chunk: Optional[str] = None
    chunk_id: Optional[str] = None

    # Explainability fields
    lexical_score: Optional[float] = None
    semantic_score: Optional[float] = None

    @property
    def similarity(self) -> float:
        """Higher-is-better view of ``score`` for presentation."""
        return 1.0 - self.score


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
