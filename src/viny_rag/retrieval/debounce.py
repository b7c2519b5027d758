"""
Debounced search-as-you-type.

Each submitted query restarts a quiet-period timer. Only a query that survives
the full period is searched, and only the newest query's results are ever
delivered: a newer submit cancels the older timer or in-flight search, and a
search that finishes after being superseded is discarded.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from ..models import SearchResult

logger = logging.getLogger(__name__)

SearchFn = Callable[[str], Awaitable[list[SearchResult]]]
ResultsCallback = Callable[[str, list[SearchResult]], None]


class DebouncedSearch:
    """Runs ``search_fn`` for the latest query once input settles."""

    def __init__(
        self,
        search_fn: SearchFn,
        delay_ms: int = 300,
        on_results: Optional[ResultsCallback] = None,
    ):
        self.search_fn = search_fn
        self.delay_ms = delay_ms
        self.on_results = on_results

        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self.latest_query: Optional[str] = None
        self.latest_results: list[SearchResult] = []

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    async def submit(self, query: str) -> Optional[list[SearchResult]]:
        """Schedule a search for ``query``.

        Returns:
            The results if this query was still the newest when its search
            finished, or None if a later submit (or cancel) superseded it
        """
        self._generation += 1
        generation = self._generation

        if self._task is not None and not self._task.done():
            self._task.cancel()

        task = asyncio.create_task(self._run(query, generation))
        self._task = task

        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            # Caller went away; stop its search if it is still the current one
            if self._task is task:
                task.cancel()
            raise

        if task.cancelled():
            return None
        return task.result()

    async def _run(self, query: str, generation: int) -> Optional[list[SearchResult]]:
        await asyncio.sleep(self.delay_ms / 1000.0)
        if generation != self._generation:
            return None

        results = await self.search_fn(query)

        if generation != self._generation:
            logger.debug(f"Discarding results for superseded query {query!r}")
            return None

        self.latest_query = query
        self.latest_results = results
        if self.on_results is not None:
            self.on_results(query, results)
        return results

    def cancel(self) -> None:
        """Drop any pending or in-flight search."""
        self._generation += 1
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def aclose(self) -> None:
        self.cancel()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
