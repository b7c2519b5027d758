"""
Worker pool for embedding jobs.

Callers submit texts and await a future; a fixed number of worker tasks take
jobs from a bounded queue and run them against the model. Blocking (in-process)
models run on the pool's own threads so the event loop stays responsive.

Cancelling the awaiting caller cancels its job: a queued job is skipped, a
running HTTP request is cancelled, a running thread job has its result dropped.
"""
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from itertools import count
from typing import Optional

from .models import EmbeddingModel

logger = logging.getLogger(__name__)

_job_ids = count(1)


@dataclass
class EmbeddingJob:
    texts: list[str]
    future: asyncio.Future
    id: int = field(default_factory=lambda: next(_job_ids))


class EmbeddingWorkerPool:
    """Runs embedding jobs off the caller's context with bounded concurrency."""

    def __init__(self, model: EmbeddingModel, workers: int = 1, max_queue: int = 256):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.model = model
        self.workers = workers
        self.max_queue = max_queue
        self.running = False

        self._queue: Optional[asyncio.Queue] = None
        self._tasks: list[asyncio.Task] = []
        self._executor: Optional[ThreadPoolExecutor] = None
        self._active: set[EmbeddingJob] = set()

        self.processed = 0
        self.failed = 0
        self.cancelled = 0

    async def start(self) -> None:
        """Spawn worker tasks (and threads for blocking models)."""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.max_queue)
        if self.model.blocking:
            self._executor = ThreadPoolExecutor(
                max_workers=self.workers,
                thread_name_prefix="embedding-worker",
            )
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"embedding-worker-{i}")
            for i in range(self.workers)
        ]
        self.running = True
        logger.info(f"Started {self.workers} embedding worker(s) for {self.model.model_name}")

    async def stop(self) -> None:
        """Stop workers; queued and running jobs fail with RuntimeError."""
        if not self.running:
            return
        self.running = False

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        pending = list(self._active)
        while self._queue is not None and not self._queue.empty():
            pending.append(self._queue.get_nowait())
        for job in pending:
            self._fail_stopped(job)
        self._active.clear()

        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

        logger.info("Embedding workers stopped")

    async def submit(self, texts: list[str]) -> list[list[float]]:
        """Queue texts for embedding and wait for the vectors.

        Raises:
            RuntimeError: If the pool is not running
            Exception: Whatever the model raised for this job
        """
        if not self.running or self._queue is None:
            raise RuntimeError("Embedding worker pool is not running")

        loop = asyncio.get_running_loop()
        job = EmbeddingJob(texts=texts, future=loop.create_future())
        await self._queue.put(job)

        try:
            return await job.future
        except asyncio.CancelledError:
            job.future.cancel()
            raise

    async def _worker(self, worker_num: int) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                if job.future.done():
                    self.cancelled += 1
                    continue
                await self._handle(job)
            finally:
                self._queue.task_done()

    async def _handle(self, job: EmbeddingJob) -> None:
        runner = asyncio.ensure_future(self._run_model(job.texts))

        def _cancel_runner(fut: asyncio.Future) -> None:
            if fut.cancelled():
                runner.cancel()

        job.future.add_done_callback(_cancel_runner)

        self._active.add(job)
        try:
            await asyncio.wait({runner})
        except asyncio.CancelledError:
            # Worker stopped mid-job; release the caller
            runner.cancel()
            self._fail_stopped(job)
            raise
        finally:
            self._active.discard(job)

        if runner.cancelled():
            self.cancelled += 1
            return

        exc = runner.exception()
        if exc is not None:
            self.failed += 1
            logger.debug(f"Embedding job {job.id} failed: {exc}")
            if not job.future.done():
                job.future.set_exception(exc)
            return

        self.processed += 1
        if not job.future.done():
            job.future.set_result(runner.result())

    @staticmethod
    def _fail_stopped(job: EmbeddingJob) -> None:
        if not job.future.done():
            job.future.set_exception(RuntimeError("Embedding worker pool stopped"))

    async def _run_model(self, texts: list[str]) -> list[list[float]]:
        if self.model.blocking and self._executor is not None:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, self.model.embed_sync, texts)
        return await self.model.embed(texts)

    def get_stats(self) -> dict:
        return {
            "workers": self.workers,
            "running": self.running,
            "queued": self._queue.qsize() if self._queue is not None else 0,
            "processed": self.processed,
            "failed": self.failed,
            "cancelled": self.cancelled,
        }
