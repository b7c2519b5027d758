"""Retrieval session: owns the cache, engine, searcher and LLM provider.

Construct one per process (or per open notes window) and pass it around
instead of reaching for module-level singletons.

Usage:
    async with RetrievalSession(config) as session:
        results = await session.search("ownership", notes)
        answer = await session.ask("what is ownership?", notes)
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

import httpx

from .cache import create_cache
from .config.engine import EngineConfig
from .embeddings.engine import EmbeddingEngine
from .embeddings.models import EmbeddingModel, create_embedding_model
from .embeddings.workers import EmbeddingWorkerPool
from .errors import ProviderUnavailable
from .indexer.chunker import ChunkingConfig, DocumentChunker
from .llm.providers import BaseLLMProvider, create_provider
from .models import Document, SearchMode, SearchResult, utc_now
from .rag.ask import AskResult, ask_notes, stream_answer
from .rag.features import NoteSummary, TagSuggestion, suggest_tags, summarize_collection, summarize_note
from .retrieval.debounce import DebouncedSearch
from .retrieval.hybrid_search import HybridSearcher

logger = logging.getLogger(__name__)


class RetrievalSession:
    """Explicitly scoped wiring of every engine component."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        model: Optional[EmbeddingModel] = None,
        provider: Optional[BaseLLMProvider] = None,
        clock: Callable[[], datetime] = utc_now,
        llm_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or EngineConfig()
        emb = self.config.embeddings

        self.model = model or create_embedding_model(emb)
        self.cache = create_cache(self.config.cache, self.model.model_name, self.model.dimension, clock=clock)
        self.chunker = DocumentChunker(ChunkingConfig(
            max_length=emb.max_chunk_length,
            overlap=emb.chunk_overlap,
            preserve_markdown=emb.preserve_markdown,
            preserve_code_blocks=emb.preserve_code_blocks,
            min_chunk_size=emb.min_chunk_size,
        ))
        self.pool = EmbeddingWorkerPool(self.model, workers=emb.workers) if emb.workers > 0 else None
        self.engine = EmbeddingEngine(
            self.model,
            cache=self.cache,
            chunker=self.chunker,
            pool=self.pool,
            batch_size=emb.batch_size,
        )
        self.searcher = HybridSearcher.from_config(self.engine, self.config.search)
        self.provider = provider or create_provider(self.config.llm, transport=llm_transport)

        self._sweep_task: Optional[asyncio.Task] = None
        self.started = False

    async def start(self) -> None:
        """Open the cache, start workers and the expired-query sweep.

        The LLM provider is connected lazily on first use so that an
        unreachable backend never blocks search.
        """
        if self.started:
            return
        await self.engine.initialize()
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="query-cache-sweep")
        self.started = True
        logger.info("Retrieval session started")

    async def close(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None
        await self.provider.destroy()
        await self.engine.destroy()
        self.started = False
        logger.info("Retrieval session closed")

    async def __aenter__(self) -> RetrievalSession:
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _sweep_loop(self) -> None:
        interval = self.config.cache.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            await self.cache.cleanup_expired_queries()

    # ---- operations ----

    async def reindex(self, documents: Iterable[Document]) -> dict[str, int]:
        """Embed every document (cached ones are served from cache)."""
        results = await self.engine.embed_documents(documents)
        return {doc_id: len(embs) for doc_id, embs in results.items()}

    async def update(self, documents: Iterable[Document]) -> dict[str, int]:
        """Embed only documents changed since they were last cached."""
        results = await self.engine.update_embeddings(documents)
        return {doc_id: len(embs) for doc_id, embs in results.items()}

    async def search(
        self,
        query: str,
        documents: Iterable[Document],
        mode: SearchMode = SearchMode.HYBRID,
    ) -> list[SearchResult]:
        return await self.searcher.search(query, documents, mode)

    def debounced(self, documents: Iterable[Document], mode: SearchMode = SearchMode.HYBRID) -> DebouncedSearch:
        """Debounced search over a fixed document set."""
        documents = list(documents)

        async def run(query: str) -> list[SearchResult]:
            return await self.searcher.search(query, documents, mode)

        return DebouncedSearch(run, delay_ms=self.config.search.debounce_ms)

    async def ask(self, query: str, documents: Iterable[Document]) -> AskResult:
        return await ask_notes(
            query,
            documents,
            self.searcher,
            self.provider,
            top_k=self.config.search.rag_top_k,
            template=self.config.llm.prompt_template,
        )

    async def stream(self, query: str, documents: Iterable[Document]):
        return await stream_answer(
            query,
            documents,
            self.searcher,
            self.provider,
            top_k=self.config.search.rag_top_k,
            template=self.config.llm.prompt_template,
        )

    async def find_similar(self, document_id: str, documents: Iterable[Document], limit: int = 5) -> list[SearchResult]:
        return await self.searcher.find_similar(document_id, documents, limit)

    async def suggest_tags(
        self,
        document_id: str,
        documents: Iterable[Document],
        max_tags: int = 5,
        use_llm: bool = True,
    ) -> list[TagSuggestion]:
        return await suggest_tags(
            document_id, documents, self.searcher, self.provider, max_tags=max_tags, use_llm=use_llm
        )

    async def summarize(self, document: Document, style: str = "brief") -> NoteSummary:
        return await summarize_note(document, self.provider, style)

    async def summarize_collection(self, documents: Iterable[Document], title: str) -> str:
        return await summarize_collection(documents, title, self.provider)

    async def remove_document(self, document_id: str) -> None:
        await self.engine.remove_document(document_id)

    async def check_provider(self) -> Optional[str]:
        """None if the LLM provider can be used, else the reason it cannot."""
        try:
            await self.provider.initialize()
        except ProviderUnavailable as e:
            return e.reason
        return None

    async def get_stats(self) -> dict:
        stats = await self.engine.get_stats()
        stats["llm"] = self.provider.get_stats()
        return stats
