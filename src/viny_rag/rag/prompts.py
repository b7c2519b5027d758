"""Prompt construction for answering questions over notes."""
from __future__ import annotations

import re
from typing import Sequence

from ..models import SearchResult

CONTEXT_SEPARATOR = "\n\n---\n\n"

QUESTION_WORDS = (
    "what", "why", "how", "when", "where", "who", "whom", "whose", "which",
    "is", "are", "can", "could", "should", "would", "does", "do", "did", "will",
)

IMPERATIVE_PHRASES = (
    "explain", "describe", "tell me", "summarize", "summarise", "list",
    "show me", "compare", "define", "help me",
)

_LEAD_WORD_RE = re.compile(r"^\W*([a-z']+)")

SYSTEM_PROMPT = """You are an assistant answering questions about the user's personal notes.
Use only the notes provided below. If they do not contain the answer, say so instead of guessing."""

TEMPLATES = {
    "default": """{system}

NOTES:
{context}

QUESTION: {question}

Answer the question using the notes above.""",

    "detailed": """{system}

NOTES:
{context}

QUESTION: {question}

Give a thorough answer. Quote the relevant passages, name the note each one
comes from, and point out anything the notes leave unanswered.""",

    "conversational": """{system}
Keep the tone friendly and brief, as if chatting with the user.

Here is what I found in your notes:
{context}

You asked: {question}""",
}


def is_question(query: str) -> bool:
    """Heuristically decide whether ``query`` asks for an answer.

    True for a trailing ``?``, an interrogative lead word, or an imperative
    request such as "explain ..." or "tell me ...".
    """
    text = query.strip().lower()
    if not text:
        return False
    if text.endswith("?"):
        return True

    match = _LEAD_WORD_RE.match(text)
    if match and match.group(1) in QUESTION_WORDS and len(text.split()) > 1:
        return True

    return any(text.startswith(phrase) for phrase in IMPERATIVE_PHRASES)


def format_source(result: SearchResult, include_metadata: bool = False) -> str:
    """One context block: title and the matched chunk (or full content)."""
    doc = result.document
    content = result.matched_chunk or doc.content
    block = f"Title: {doc.title}\nContent: {content}"
    if include_metadata:
        extras = []
        if doc.notebook:
            extras.append(f"Notebook: {doc.notebook}")
        if doc.tags:
            extras.append(f"Tags: {', '.join(doc.tags)}")
        if extras:
            block = f"{block}\n" + "\n".join(extras)
    return block


def build_context(results: Sequence[SearchResult], include_metadata: bool = False) -> str:
    return CONTEXT_SEPARATOR.join(format_source(r, include_metadata) for r in results)


def build_prompt(question: str, context: str, template: str = "default") -> str:
    """Compose question and context into a single prompt.

    Raises:
        ValueError: If template is unknown
    """
    try:
        body = TEMPLATES[template]
    except KeyError:
        raise ValueError(f"Unknown prompt template: {template}") from None
    return body.format(system=SYSTEM_PROMPT, context=context or "(no matching notes)", question=question.strip())


TAGGING_PROMPT = """You are a tagging assistant. Analyze the note and suggest relevant tags.
Prefer tags already used in the collection so tagging stays consistent.
Return only a comma-separated list of tags, nothing else.

NOTE:
{note}

Tags already in use: {existing}

Suggest 3-5 tags for this note:"""

SUMMARY_PROMPTS = {
    "brief": "Summarize this note in one concise paragraph:\n\n{note}",
    "detailed": (
        "Create a detailed summary of this note:\n\n{note}\n\n"
        "Include:\n- Main topics\n- Key insights\n- Action items (if any)"
    ),
    "bullet-points": (
        "Summarize this note as a bullet-point list of the main points:\n\n{note}\n\n"
        'Format each point starting with "- "'
    ),
    "key-insights": (
        "Extract the key insights and learnings from this note:\n\n{note}\n\n"
        'Format as bullet points starting with "- " and focus on actionable insights.'
    ),
}

COLLECTION_PROMPT = """Create a comprehensive summary of these {count} related notes about "{title}":

{notes}

Provide a cohesive summary that synthesizes the information across all notes."""


def note_text(title: str, content: str) -> str:
    return f"{title}\n\n{content}".strip()


def build_tagging_prompt(title: str, content: str, existing_tags: Sequence[str]) -> str:
    return TAGGING_PROMPT.format(
        note=note_text(title, content),
        existing=", ".join(existing_tags) or "(none)",
    )


def build_summary_prompt(title: str, content: str, style: str = "brief") -> str:
    """Raises ValueError for an unknown style."""
    try:
        body = SUMMARY_PROMPTS[style]
    except KeyError:
        raise ValueError(f"Unknown summary style: {style}") from None
    return body.format(note=note_text(title, content))


def build_collection_prompt(title: str, notes: Sequence[tuple[str, str]]) -> str:
    combined = CONTEXT_SEPARATOR.join(f"## {t}\n{c}" for t, c in notes)
    return COLLECTION_PROMPT.format(count=len(notes), title=title, notes=combined)
