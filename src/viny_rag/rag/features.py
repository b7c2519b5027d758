"""
Note features built on retrieval: tag suggestions and summaries.

Tag suggestions combine the tags of the most similar notes, collection tags
the note already mentions, and optionally an LLM pass. Summaries use the LLM
when one is configured and fall back to a rule-based extract otherwise, so
neither feature needs a reachable provider.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from ..errors import ProviderError
from ..llm.providers import BaseLLMProvider
from ..models import Document, utc_now
from ..retrieval.hybrid_search import HybridSearcher
from .ask import ensure_ready
from .prompts import SUMMARY_PROMPTS, build_collection_prompt, build_summary_prompt, build_tagging_prompt

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 200
MAX_KEY_POINTS = 5

# Weights for similarity-based tag confidence
SIMILARITY_WEIGHT = 0.7
FREQUENCY_WEIGHT = 0.3

LLM_TAG_CONFIDENCE = 0.8
MENTIONED_TAG_CONFIDENCE = 0.95
AGREEMENT_BOOST = 1.1

BULLET_STYLES = ("bullet-points", "key-insights")

_HEADING_RE = re.compile(r"^#{1,6}\s+(.+)$")
_LIST_ITEM_RE = re.compile(r"^(?:[-*+]|\d+[.)])\s+(.+)$")
_BULLET_RE = re.compile(r"^[-*•]\s+(.+)$")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_EMPHASIS_RE = re.compile(r"\*\*([^*]+)\*\*|__([^_]+)__")
_INSIGHT_RE = re.compile(
    r"^(in conclusion|therefore|thus|hence|as a result|key takeaway|important|note that|remember|lesson)\b",
    re.IGNORECASE,
)


@dataclass
class TagSuggestion:
    tag: str
    confidence: float
    reason: str = ""


@dataclass
class NoteSummary:
    """Summary of one note plus reading statistics of the summary text."""
    document_id: str
    summary: str
    style: str = "brief"
    key_points: list[str] = field(default_factory=list)
    word_count: int = 0
    reading_time: int = 0
    generated_at: datetime = field(default_factory=utc_now)
    provider: Optional[str] = None
    error: Optional[str] = None


# ---- tags ----


async def suggest_tags(
    document_id: str,
    documents: Iterable[Document],
    searcher: HybridSearcher,
    provider: Optional[BaseLLMProvider] = None,
    max_tags: int = 5,
    min_confidence: float = 0.7,
    use_llm: bool = True,
) -> list[TagSuggestion]:
    """Rank tag suggestions for one note, most confident first.

    Tags the note already carries are never suggested. Suggestions from
    different sources that agree on a tag reinforce each other. LLM errors
    are logged and leave the other suggestions in place.

    Raises:
        ValueError: If document_id is not among documents
    """
    documents = list(documents)
    target = next((d for d in documents if d.id == document_id), None)
    if target is None:
        raise ValueError(f"Document not found: {document_id}")

    suggestions = await _similarity_tags(target, documents, searcher, max_tags * 2)
    suggestions += _mentioned_tags(target, documents)
    if use_llm and provider is not None:
        suggestions += await _llm_tags(target, documents, provider)

    own = {t.lower() for t in target.tags}
    candidates = [s for s in merge_suggestions(suggestions) if s.tag.lower() not in own]
    ranked = sorted(
        (s for s in candidates if s.confidence >= min_confidence),
        key=lambda s: s.confidence,
        reverse=True,
    )
    logger.debug(f"Suggested {len(ranked[:max_tags])} tags for note {document_id}")
    return ranked[:max_tags]


async def batch_suggest_tags(
    documents: Iterable[Document],
    searcher: HybridSearcher,
    provider: Optional[BaseLLMProvider] = None,
    max_tags: int = 5,
    min_confidence: float = 0.7,
    use_llm: bool = True,
) -> dict[str, list[TagSuggestion]]:
    """Suggestions for every note, each ranked against the whole collection."""
    documents = list(documents)
    results: dict[str, list[TagSuggestion]] = {}
    for doc in documents:
        results[doc.id] = await suggest_tags(
            doc.id, documents, searcher, provider,
            max_tags=max_tags, min_confidence=min_confidence, use_llm=use_llm,
        )
    return results


def merge_suggestions(suggestions: Iterable[TagSuggestion]) -> list[TagSuggestion]:
    """Deduplicate case-insensitively, keeping the first spelling seen.

    The higher confidence wins. A tag backed by a second, different reason
    gets its confidence boosted (capped at 1.0).
    """
    merged: dict[str, TagSuggestion] = {}
    for suggestion in suggestions:
        key = suggestion.tag.lower()
        existing = merged.get(key)
        if existing is None:
            merged[key] = TagSuggestion(suggestion.tag, suggestion.confidence, suggestion.reason)
            continue
        confidence = max(existing.confidence, suggestion.confidence)
        if suggestion.reason and suggestion.reason not in existing.reason:
            existing.reason = f"{existing.reason}; {suggestion.reason}" if existing.reason else suggestion.reason
            confidence = min(1.0, confidence * AGREEMENT_BOOST)
        existing.confidence = confidence
    return list(merged.values())


async def _similarity_tags(
    target: Document,
    documents: list[Document],
    searcher: HybridSearcher,
    limit: int,
) -> list[TagSuggestion]:
    similar = await searcher.find_similar(target.id, documents, limit)
    if not similar:
        return []

    counts: dict[str, int] = {}
    best: dict[str, float] = {}
    for result in similar:
        for tag in result.document.tags:
            counts[tag] = counts.get(tag, 0) + 1
            best[tag] = max(best.get(tag, 0.0), result.similarity)

    return [
        TagSuggestion(
            tag=tag,
            confidence=best[tag] * SIMILARITY_WEIGHT + count / len(similar) * FREQUENCY_WEIGHT,
            reason=f"Found in {count} similar note{'' if count == 1 else 's'}",
        )
        for tag, count in counts.items()
    ]


def _mentioned_tags(target: Document, documents: list[Document]) -> list[TagSuggestion]:
    text = target.text.lower()
    vocabulary = {t.lower(): t for d in documents for t in d.tags}
    return [
        TagSuggestion(tag, MENTIONED_TAG_CONFIDENCE, "Existing tag mentioned in content")
        for key, tag in vocabulary.items()
        if re.search(rf"(?<!\w){re.escape(key)}(?!\w)", text)
    ]


async def _llm_tags(
    target: Document,
    documents: list[Document],
    provider: BaseLLMProvider,
) -> list[TagSuggestion]:
    vocabulary = sorted({t for d in documents for t in d.tags})
    prompt = build_tagging_prompt(target.title, target.content, vocabulary)
    try:
        ready = await ensure_ready(provider)
        response = await ready.generate(prompt)
    except ProviderError as e:
        logger.warning(f"Skipping LLM tag suggestions for note {target.id}: {e}")
        return []

    tags = (t.strip().lstrip("#").strip() for t in re.split(r"[,\n]", response.text))
    return [TagSuggestion(t, LLM_TAG_CONFIDENCE, "AI suggested") for t in tags if t]


# ---- summaries ----


async def summarize_note(
    document: Document,
    provider: Optional[BaseLLMProvider] = None,
    style: str = "brief",
) -> NoteSummary:
    """Summarize one note in the given style.

    Styles: brief, detailed, bullet-points, key-insights. Without a provider,
    or when the provider fails, the summary is extracted from the note itself
    and ``error`` records why the LLM was not used.

    Raises:
        ValueError: If style is unknown
    """
    if style not in SUMMARY_PROMPTS:
        raise ValueError(f"Unknown summary style: {style}")

    result = NoteSummary(document_id=document.id, summary="", style=style)
    if provider is not None:
        try:
            ready = await ensure_ready(provider)
            response = await ready.generate(build_summary_prompt(document.title, document.content, style))
            result.summary = response.text.strip()
            result.provider = response.provider
            if style in BULLET_STYLES:
                result.key_points = _bullets(response.text)
        except ProviderError as e:
            logger.warning(f"LLM summary failed for note {document.id}, using extract: {e}")
            result.error = str(e)

    if not result.summary:
        result.summary = extract_summary(document, style)
    if not result.key_points:
        result.key_points = extract_key_points(document)

    result.word_count = len(result.summary.split())
    result.reading_time = math.ceil(result.word_count / WORDS_PER_MINUTE)
    return result


async def batch_summarize(
    documents: Iterable[Document],
    provider: Optional[BaseLLMProvider] = None,
    style: str = "brief",
) -> dict[str, NoteSummary]:
    return {doc.id: await summarize_note(doc, provider, style) for doc in documents}


async def summarize_collection(
    documents: Iterable[Document],
    title: str,
    provider: Optional[BaseLLMProvider] = None,
    style: str = "detailed",
) -> str:
    """One summary across related notes.

    With a provider the notes are summarized together in a single call;
    otherwise (or if that call fails) the per-note extracts are joined.
    """
    documents = list(documents)
    if not documents:
        return "No notes to summarize."

    if provider is not None:
        prompt = build_collection_prompt(title, [(d.title, d.content) for d in documents])
        try:
            ready = await ensure_ready(provider)
            response = await ready.generate(prompt)
            if response.text.strip():
                return response.text.strip()
        except ProviderError as e:
            logger.warning(f"LLM collection summary failed, joining note extracts: {e}")

    summaries = await batch_summarize(documents, None, style)
    return "\n\n".join(s.summary for s in summaries.values() if s.summary)


def extract_summary(document: Document, style: str = "brief") -> str:
    """Rule-based summary used when no LLM is available."""
    paragraphs = _paragraphs(document.content)
    if not paragraphs:
        return document.title

    if style == "brief":
        long = [p for p in paragraphs if len(p) > 50]
        if long:
            return long[0]
        sentences = _sentences(document.content)
        return sentences[0] if sentences else paragraphs[0]

    if style == "detailed":
        long = [p for p in paragraphs if len(p) > 50] or paragraphs
        if len(long) > 3:
            # First, middle and last
            long = [long[0], long[len(long) // 2], long[-1]]
        return "\n\n".join(long)

    points = _insights(document) if style == "key-insights" else []
    points = points or extract_key_points(document)
    return "\n".join(f"- {p}" for p in points)


def extract_key_points(document: Document) -> list[str]:
    """Headings, then list items, then leading sentences if still short."""
    lines = [line.strip() for line in document.content.splitlines()]
    headings = [m.group(1).strip() for m in map(_HEADING_RE.match, lines) if m]
    items = [m.group(1).strip() for m in map(_LIST_ITEM_RE.match, lines) if m]

    points = headings[:MAX_KEY_POINTS] + items[:MAX_KEY_POINTS]
    if len(points) < 3:
        points += _sentences(document.content)[:3]
    return list(dict.fromkeys(p for p in points if p))[:MAX_KEY_POINTS]


def _paragraphs(content: str) -> list[str]:
    """Paragraphs with heading lines removed."""
    paragraphs = []
    for block in _PARAGRAPH_SPLIT_RE.split(content):
        body = "\n".join(line for line in block.splitlines() if not _HEADING_RE.match(line.strip())).strip()
        if body:
            paragraphs.append(body)
    return paragraphs


def _sentences(content: str) -> list[str]:
    flat = " ".join(_paragraphs(content))
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(" ".join(flat.split())) if len(s.strip()) > 20]


def _insights(document: Document) -> list[str]:
    found = [line.strip() for line in document.content.splitlines() if _INSIGHT_RE.match(line.strip())]
    found += [a or b for a, b in _EMPHASIS_RE.findall(document.content)]
    return list(dict.fromkeys(p.strip() for p in found if p.strip()))[:MAX_KEY_POINTS]


def _bullets(text: str) -> list[str]:
    points = [m.group(1).strip() for m in map(_BULLET_RE.match, (line.strip() for line in text.splitlines())) if m]
    return [p for p in points if p]
