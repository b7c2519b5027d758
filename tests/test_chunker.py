"""Tests for the markdown-aware document chunker."""
import warnings

import pytest

from viny_rag.errors import ChunkingWarning
from viny_rag.indexer.chunker import ChunkingConfig, DocumentChunker
from viny_rag.models import Document


def make_doc(content: str, title: str = "Note", doc_id: str = "d1") -> Document:
    return Document(id=doc_id, version="v1", title=title, content=content, tags=["t"], notebook="nb")


def assert_exact_slices(doc, chunks):
    for chunk in chunks:
        assert chunk.text == doc.text[chunk.start_offset:chunk.end_offset]


def test_rust_note_splits_at_headings(rust_note):
    """Headings start new chunks."""
    chunker = DocumentChunker(ChunkingConfig(max_length=200, overlap=20))
    chunks = chunker.chunk_document(rust_note)

    assert len(chunks) >= 2
    texts = [c.text for c in chunks]
    assert any(t.startswith("# Intro") for t in texts)
    assert any(t.startswith("# Borrowing") for t in texts)
    assert_exact_slices(rust_note, chunks)


def test_chunk_ids_and_metadata(rust_note):
    chunks = DocumentChunker(ChunkingConfig(max_length=200, overlap=20)).chunk_document(rust_note)

    assert [c.id for c in chunks] == [f"n1_chunk_{i}" for i in range(len(chunks))]
    for chunk in chunks:
        assert chunk.document_id == "n1"
        assert chunk.metadata == {
            "title": "Rust Ownership",
            "tags": ["rust", "programming"],
            "notebook": "Languages",
        }


def test_chunking_is_deterministic(rust_note):
    chunker = DocumentChunker(ChunkingConfig(max_length=200, overlap=20))
    first = chunker.chunk_document(rust_note)
    second = chunker.chunk_document(rust_note)

    assert [(c.id, c.start_offset, c.end_offset, c.text) for c in first] == \
           [(c.id, c.start_offset, c.end_offset, c.text) for c in second]


def test_empty_document_has_no_chunks():
    doc = Document(id="empty", version="v1")
    assert DocumentChunker().chunk_document(doc) == []


def test_long_paragraph_split_at_sentences_with_overlap():
    sentences = [f"Sentence number {i} talks about topic {i} in some detail." for i in range(20)]
    doc = make_doc(" ".join(sentences))
    chunker = DocumentChunker(ChunkingConfig(max_length=150, overlap=40))

    chunks = chunker.chunk_document(doc)

    assert len(chunks) > 2
    assert all(len(c.text) <= 150 for c in chunks)
    assert_exact_slices(doc, chunks)
    # Later chunks start inside the previous one
    for prev, nxt in zip(chunks[1:], chunks[2:]):
        assert nxt.start_offset < prev.end_offset


def test_chunks_cover_source_text():
    content = (
        "# One\n" + "First section text. " * 5 + "\n\n"
        "# Two\n" + "Second section text. " * 5 + "\n\n"
        "Trailing paragraph without heading."
    )
    doc = make_doc(content)
    chunks = DocumentChunker(ChunkingConfig(max_length=120, overlap=0)).chunk_document(doc)

    covered = set()
    for c in chunks:
        covered.update(range(c.start_offset, c.end_offset))
    uncovered = [i for i, ch in enumerate(doc.text) if not ch.isspace() and i not in covered]
    assert uncovered == []


def test_code_block_kept_whole():
    code = "```python\ndef f():\n\n    return 1\n\n\nprint(f())\n```"
    doc = make_doc("Intro text.\n\n" + code + "\n\nAfter the code.")
    chunks = DocumentChunker(ChunkingConfig(max_length=200, overlap=20, min_chunk_size=0)).chunk_document(doc)

    code_chunks = [c for c in chunks if c.text.startswith("```")]
    assert len(code_chunks) == 1
    assert code_chunks[0].text == code


def test_oversized_code_block_split_by_lines():
    code = "```\n" + "\n".join(f"line_{i} = {i}" for i in range(40)) + "\n```"
    doc = make_doc(code)
    chunks = DocumentChunker(ChunkingConfig(max_length=100, overlap=20)).chunk_document(doc)

    assert len(chunks) > 1
    assert all(len(c.text) <= 100 for c in chunks)
    assert_exact_slices(doc, chunks)


def test_unterminated_fence_warns_and_flushes_code():
    doc = make_doc("Some prose.\n\n```js\nconsole.log('never closed')")
    chunker = DocumentChunker(ChunkingConfig(max_length=200, overlap=20))

    with pytest.warns(ChunkingWarning):
        chunks = chunker.chunk_document(doc)

    assert chunks[-1].text.startswith("```js")
    assert chunks[-1].text.endswith("never closed')")


def test_paragraph_mode_splits_on_blank_lines():
    doc = make_doc("First paragraph.\n\nSecond paragraph.\n   \nThird # not a heading")
    chunker = DocumentChunker(ChunkingConfig(max_length=200, overlap=20, preserve_markdown=False))

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        chunks = chunker.chunk_document(doc)

    assert [c.text for c in chunks] == [
        "Note",
        "First paragraph.",
        "Second paragraph.",
        "Third # not a heading",
    ]


def test_validate_chunks_flags_small_chunks(rust_note):
    chunker = DocumentChunker(ChunkingConfig(max_length=200, overlap=20, min_chunk_size=100))
    chunks = chunker.chunk_document(rust_note)

    validation = chunker.validate_chunks(chunks)

    assert not validation.valid
    assert any("is too small" in issue for issue in validation.issues)
    assert "Total chunk coverage seems too low" in validation.issues


def test_validate_chunks_accepts_good_chunks():
    doc = make_doc("word " * 60)
    chunker = DocumentChunker(ChunkingConfig(max_length=512, overlap=20, min_chunk_size=50))

    validation = chunker.validate_chunks(chunker.chunk_document(doc))

    assert validation.valid
    assert validation.issues == []


def test_estimate_chunk_count():
    doc = make_doc("x" * (768 - len("Note\n\n")))
    assert DocumentChunker(ChunkingConfig(max_length=512)).estimate_chunk_count(doc) == 2
