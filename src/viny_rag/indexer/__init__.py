"""Document chunking."""
from .chunker import ChunkingConfig, ChunkValidation, DocumentChunker

__all__ = ["ChunkingConfig", "ChunkValidation", "DocumentChunker"]
