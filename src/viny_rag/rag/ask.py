"""
Ask your notes: retrieval-augmented answers.

Questions go through semantic search; the top notes become the context for
one LLM call. Retrieval never depends on the LLM: when the provider is
missing, unreachable or fails mid-request, the sources are still returned and
the answer explains what went wrong.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Iterable, Optional

from ..errors import ProviderRequestFailure, ProviderUnavailable
from ..llm.providers import BaseLLMProvider
from ..models import Document, SearchMode, SearchResult
from ..retrieval.hybrid_search import HybridSearcher
from .prompts import build_context, build_prompt, is_question

logger = logging.getLogger(__name__)


@dataclass
class AskResult:
    """Answer plus the notes it was built from."""
    query: str
    is_question: bool
    sources: list[SearchResult] = field(default_factory=list)
    answer: Optional[str] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    tokens_used: Optional[int] = None
    latency_ms: float = 0.0
    error: Optional[str] = None


def unavailable_message(error: ProviderUnavailable) -> str:
    return (
        f"AI answers are unavailable: the configured provider '{error.provider}' "
        f"could not be used ({error.reason}). Showing matching notes only."
    )


def request_failed_message(error: ProviderRequestFailure) -> str:
    return f"AI request failed ({error.provider}): {error.reason}. Showing matching notes only."


async def ensure_ready(provider: Optional[BaseLLMProvider]) -> BaseLLMProvider:
    if provider is None:
        raise ProviderUnavailable("none", "no LLM provider configured")
    if not provider.initialized:
        await provider.initialize()
    return provider


async def _retrieve(
    query: str,
    documents: list[Document],
    searcher: HybridSearcher,
    top_k: int,
) -> tuple[bool, list[SearchResult]]:
    question = is_question(query)
    if question:
        sources = await searcher.semantic_search(query, documents, top_k=top_k)
    else:
        sources = await searcher.search(query, documents, SearchMode.HYBRID)
    return question, sources


async def ask_notes(
    query: str,
    documents: Iterable[Document],
    searcher: HybridSearcher,
    provider: Optional[BaseLLMProvider],
    top_k: int = 5,
    template: str = "default",
    include_metadata: bool = False,
) -> AskResult:
    """Search the notes and, for questions, generate an answer.

    Non-questions get hybrid search results and no answer. Provider errors
    never propagate; they become the answer text.
    """
    start = time.perf_counter()
    documents = list(documents)
    question, sources = await _retrieve(query, documents, searcher, top_k)
    result = AskResult(query=query, is_question=question, sources=sources)

    if not question:
        result.latency_ms = (time.perf_counter() - start) * 1000
        return result

    prompt = build_prompt(query, build_context(sources, include_metadata), template)

    try:
        ready = await ensure_ready(provider)
        response = await ready.generate(prompt)
        result.answer = response.text
        result.model = response.model
        result.provider = response.provider
        result.tokens_used = response.tokens_used
    except ProviderUnavailable as e:
        logger.warning(f"LLM provider unavailable: {e}")
        result.answer = unavailable_message(e)
        result.provider = e.provider
        result.error = str(e)
    except ProviderRequestFailure as e:
        logger.error(f"LLM request failed: {e}")
        result.answer = request_failed_message(e)
        result.provider = e.provider
        result.error = str(e)

    result.latency_ms = (time.perf_counter() - start) * 1000
    logger.info(
        f"Answered question with {len(sources)} sources in {result.latency_ms:.0f}ms"
        + (f" (error: {result.error})" if result.error else "")
    )
    return result


async def stream_answer(
    query: str,
    documents: Iterable[Document],
    searcher: HybridSearcher,
    provider: Optional[BaseLLMProvider],
    top_k: int = 5,
    template: str = "default",
    include_metadata: bool = False,
) -> tuple[list[SearchResult], AsyncIterator[str]]:
    """Retrieve sources now and return them with a lazy answer stream.

    The stream yields answer fragments; provider errors are yielded as a
    final explanatory fragment instead of being raised.
    """
    documents = list(documents)
    sources = await searcher.semantic_search(query, documents, top_k=top_k)
    prompt = build_prompt(query, build_context(sources, include_metadata), template)

    async def fragments() -> AsyncIterator[str]:
        try:
            ready = await ensure_ready(provider)
            async for fragment in ready.stream(prompt):
                yield fragment
        except ProviderUnavailable as e:
            logger.warning(f"LLM provider unavailable: {e}")
            yield unavailable_message(e)
        except ProviderRequestFailure as e:
            logger.error(f"LLM stream failed: {e}")
            yield f"\n\n{request_failed_message(e)}"

    return sources, fragments()
