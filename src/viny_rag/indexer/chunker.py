"""
Markdown-aware note chunker.

Creates bounded chunks that follow the structure of a note:
- Headings start a new chunk
- Fenced code blocks are kept whole when they fit
- Long paragraphs are split at sentence boundaries with overlap
- Every chunk is an exact slice of ``Document.text`` (see ``start_offset``)
"""
from __future__ import annotations

import logging
import math
import re
import warnings
from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, Field

from ..errors import ChunkingWarning
from ..models import Document, TextChunk

logger = logging.getLogger(__name__)

HEADING_RE = re.compile(r"^#{1,6}\s")
FENCE = "```"
SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+|[^.!?]+$")
PARAGRAPH_SEP_RE = re.compile(r"\n\s*\n")

# Fraction of max length at which a blank line closes the current chunk
SOFT_BOUNDARY_RATIO = 0.8


class ChunkingConfig(BaseModel):
    """Chunker settings."""
    max_length: int = Field(512, ge=1)
    overlap: int = Field(128, ge=0)
    preserve_markdown: bool = True
    preserve_code_blocks: bool = True
    min_chunk_size: int = Field(100, ge=0)


@dataclass
class ChunkValidation:
    """Result of ``DocumentChunker.validate_chunks``."""
    valid: bool
    issues: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Span:
    start: int
    end: int
    is_code: bool = False


class DocumentChunker:
    """Chunks documents into semantically meaningful pieces."""

    def __init__(self, config: Optional[ChunkingConfig] = None):
        self.config = config or ChunkingConfig()

    def chunk_document(self, document: Document) -> list[TextChunk]:
        """Chunk a document into ordered TextChunk objects.

        Args:
            document: The note to chunk

        Returns:
            Chunks with ids ``{document.id}_chunk_{n}``; empty for an empty note
        """
        text = document.text

        if self.config.preserve_markdown:
            segments = self._segment_markdown(text, document.id)
        else:
            segments = self._segment_paragraphs(text)

        spans: list[_Span] = []
        for segment in segments:
            if segment.end - segment.start <= self.config.max_length:
                spans.append(segment)
            elif segment.is_code:
                spans.extend(self._split_code(text, segment))
            else:
                spans.extend(self._split_sentences(text, segment))

        metadata = document.shared_metadata
        chunks = [
            TextChunk(
                id=f"{document.id}_chunk_{i}",
                document_id=document.id,
                text=text[span.start:span.end],
                start_offset=span.start,
                end_offset=span.end,
                metadata=dict(metadata),
            )
            for i, span in enumerate(spans)
        ]

        logger.debug(f"Created {len(chunks)} chunks from document {document.id}")
        return chunks

    def _segment_markdown(self, text: str, document_id: str) -> list[_Span]:
        """Walk the text line by line, cutting at headings, fences and soft paragraph breaks."""
        segments: list[_Span] = []
        max_length = self.config.max_length
        preserve_code = self.config.preserve_code_blocks

        current_start = 0
        in_code = False
        code_start = 0
        pos = 0

        lines = text.split("\n")
        for i, line in enumerate(lines):
            line_end = pos + len(line) + (1 if i < len(lines) - 1 else 0)

            if line.lstrip().startswith(FENCE):
                if not in_code:
                    in_code = True
                    code_start = pos
                    if preserve_code:
                        self._flush(text, current_start, pos, segments)
                else:
                    in_code = False
                    if preserve_code:
                        self._flush(text, code_start, line_end, segments, is_code=True)
                        current_start = line_end
            elif in_code:
                pass
            elif HEADING_RE.match(line):
                if text[current_start:pos].strip():
                    self._flush(text, current_start, pos, segments)
                    current_start = pos
            elif not line.strip() and pos - current_start > self.config.min_chunk_size:
                if line_end - current_start > max_length * SOFT_BOUNDARY_RATIO:
                    self._flush(text, current_start, line_end, segments)
                    current_start = line_end

            pos = line_end

        if in_code:
            warnings.warn(
                f"Unterminated code fence in document {document_id}",
                ChunkingWarning,
                stacklevel=3,
            )
            if preserve_code:
                self._flush(text, code_start, len(text), segments, is_code=True)
                return segments

        self._flush(text, current_start, len(text), segments)
        return segments

    def _segment_paragraphs(self, text: str) -> list[_Span]:
        """Split on blank lines only."""
        segments: list[_Span] = []
        start = 0
        for sep in PARAGRAPH_SEP_RE.finditer(text):
            self._flush(text, start, sep.start(), segments)
            start = sep.end()
        self._flush(text, start, len(text), segments)
        return segments

    def _split_sentences(self, text: str, segment: _Span) -> list[_Span]:
        """Split an oversized prose segment at sentence boundaries with overlap."""
        body = text[segment.start:segment.end]
        bounds = [m.end() for m in SENTENCE_RE.finditer(body)]
        if not bounds or bounds[-1] != len(body):
            bounds.append(len(body))

        pieces: list[tuple[int, int]] = []
        prev = 0
        for end in bounds:
            if end > prev:
                pieces.extend(self._split_words(body, prev, end))
            prev = end

        return [
            _Span(segment.start + s, segment.start + e)
            for s, e in self._accumulate(body, pieces, self.config.overlap)
        ]

    def _split_code(self, text: str, segment: _Span) -> list[_Span]:
        """Split an oversized code block on line boundaries, without overlap."""
        body = text[segment.start:segment.end]
        max_length = self.config.max_length

        pieces: list[tuple[int, int]] = []
        pos = 0
        for line in body.split("\n"):
            end = min(pos + len(line) + 1, len(body))
            for s in range(pos, end, max_length):
                pieces.append((s, min(s + max_length, end)))
            pos = end

        return [
            _Span(segment.start + s, segment.start + e, is_code=True)
            for s, e in self._accumulate(body, pieces, 0)
        ]

    def _split_words(self, body: str, start: int, end: int) -> list[tuple[int, int]]:
        """Break a single span longer than max length at whitespace."""
        max_length = self.config.max_length
        if end - start <= max_length:
            return [(start, end)]

        pieces = []
        pos = start
        while end - pos > max_length:
            cut = body.rfind(" ", pos + 1, pos + max_length)
            if cut <= pos:
                cut = pos + max_length
            pieces.append((pos, cut))
            pos = cut
        pieces.append((pos, end))
        return pieces

    def _accumulate(
        self,
        body: str,
        pieces: list[tuple[int, int]],
        overlap: int,
    ) -> list[tuple[int, int]]:
        """Greedily pack contiguous pieces into spans no longer than max length.

        Each new span after the first is seeded with up to ``overlap`` trailing
        characters of the previous one, moved forward to a word boundary.
        """
        max_length = self.config.max_length
        spans: list[tuple[int, int]] = []
        chunk_start: Optional[int] = None
        chunk_end = 0

        for piece_start, piece_end in pieces:
            if chunk_start is None:
                chunk_start, chunk_end = piece_start, piece_end
                continue

            if piece_end - chunk_start <= max_length:
                chunk_end = piece_end
                continue

            self._emit(body, chunk_start, chunk_end, spans)

            seed = self._overlap_start(body, chunk_start, chunk_end, overlap)
            chunk_start = seed if piece_end - seed <= max_length else piece_start
            chunk_end = piece_end

        if chunk_start is not None:
            self._emit(body, chunk_start, chunk_end, spans)

        return spans

    @staticmethod
    def _overlap_start(body: str, start: int, end: int, overlap: int) -> int:
        if overlap <= 0:
            return end
        seed = max(start, end - overlap)
        if seed > start and not body[seed - 1].isspace():
            while seed < end and not body[seed].isspace():
                seed += 1
        return seed

    @staticmethod
    def _emit(body: str, start: int, end: int, spans: list[tuple[int, int]]) -> None:
        while start < end and body[start].isspace():
            start += 1
        while end > start and body[end - 1].isspace():
            end -= 1
        if end > start:
            spans.append((start, end))

    @staticmethod
    def _flush(
        text: str,
        start: int,
        end: int,
        segments: list[_Span],
        is_code: bool = False,
    ) -> None:
        """Append ``text[start:end]`` with surrounding whitespace trimmed, if non-empty."""
        while start < end and text[start].isspace():
            start += 1
        while end > start and text[end - 1].isspace():
            end -= 1
        if end > start:
            segments.append(_Span(start, end, is_code))

    def estimate_chunk_count(self, document: Document) -> int:
        """Rough chunk count assuming chunks average 75% of max length."""
        avg_chunk_size = self.config.max_length * 0.75
        return math.ceil(len(document.text) / avg_chunk_size)

    def validate_chunks(self, chunks: list[TextChunk]) -> ChunkValidation:
        """Flag undersized/oversized chunks and low total coverage.

        Diagnostic only; issues are logged and returned, never raised.
        """
        issues: list[str] = []

        for chunk in chunks:
            if len(chunk.text) < self.config.min_chunk_size:
                issues.append(f"Chunk {chunk.id} is too small ({len(chunk.text)} chars)")
            if len(chunk.text) > self.config.max_length:
                issues.append(f"Chunk {chunk.id} exceeds max length ({len(chunk.text)} chars)")

        total_length = sum(len(chunk.text) for chunk in chunks)
        expected_min_length = len(chunks) * self.config.min_chunk_size
        if total_length < expected_min_length * 0.8:
            issues.append("Total chunk coverage seems too low")

        for issue in issues:
            logger.debug(issue)

        return ChunkValidation(valid=not issues, issues=issues)
