"""Retrieval-augmented answers and note features over notes."""
from .ask import AskResult, ask_notes, stream_answer
from .features import (
    NoteSummary,
    TagSuggestion,
    batch_suggest_tags,
    batch_summarize,
    suggest_tags,
    summarize_collection,
    summarize_note,
)
from .prompts import build_context, build_prompt, is_question

__all__ = [
    "AskResult", "ask_notes", "stream_answer", "build_context", "build_prompt", "is_question",
    "NoteSummary", "TagSuggestion", "suggest_tags", "batch_suggest_tags",
    "summarize_note", "batch_summarize", "summarize_collection",
]
