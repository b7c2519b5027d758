"""Error taxonomy for the retrieval engine.

Only provider errors are expected to reach callers; the others are raised and
caught inside the engine so that a single bad chunk, document or cache read
degrades the result instead of failing it.
"""
from __future__ import annotations


class VinyRagError(Exception):
    """Base class for engine errors."""


class ChunkingWarning(UserWarning):
    """Malformed but usable input found while chunking (e.g. unterminated fence)."""


class EmbeddingFailure(VinyRagError):
    """Model inference failed for a chunk, query or document."""

    def __init__(self, message: str, chunk_id: str | None = None):
        super().__init__(message)
        self.chunk_id = chunk_id


class CacheFailure(VinyRagError):
    """The embedding cache could not be read or written."""


class ProviderError(VinyRagError):
    """Base class for LLM provider errors."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.reason = message


class ProviderUnavailable(ProviderError):
    """Backend unreachable or not configured at initialize time."""


class ProviderRequestFailure(ProviderError):
    """A specific generate/stream call failed."""
