"""
Background embedding generation with priorities and retries.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from dataclasses import dataclass, field
from typing import Literal

from .providers.embeddings import EmbeddingProvider
from .storage.duckdb import DuckDBVectorStore


logger = logging.getLogger(__name__)

TaskState = Literal["queued", "running", "retrying", "completed", "failed"]


@dataclass
class EmbeddingTask:
    """Embed a set of chunks. Lower ``priority`` numbers run first."""

    chunk_ids: list[str]
    priority: int = 5
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    attempt: int = 0


@dataclass
class TaskStatus:
    task_id: str
    state: TaskState = "queued"
    attempts: int = 0
    embedded: int = 0
    failed_chunk_ids: list[str] = field(default_factory=list)
    error: str | None = None


class EmbeddingTaskQueue:
    """A bounded pool of asyncio workers draining a priority queue."""

    def __init__(
        self,
        store: DuckDBVectorStore,
        embeddings: EmbeddingProvider,
        *,
        concurrency: int = 2,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        max_finished: int = 1000,
    ) -> None:
        self.store = store
        self.embeddings = embeddings
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.max_finished = max(0, max_finished)
        self.statuses: dict[str, TaskStatus] = {}
        self._queue: asyncio.PriorityQueue[tuple[int, int, EmbeddingTask]] = asyncio.PriorityQueue()
        self._counter = itertools.count()
        self._workers: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"embedding-worker-{n}")
            for n in range(self.concurrency)
        ]
        logger.info("Started %d embedding workers", self.concurrency)

    async def stop(self) -> None:
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def join(self) -> None:
        """Wait until every queued task (including retries) has finished."""
        await self._queue.join()

    def enqueue(self, chunk_ids: list[str], *, priority: int = 5) -> EmbeddingTask:
        task = EmbeddingTask(chunk_ids=list(chunk_ids), priority=priority)
        self.statuses[task.id] = TaskStatus(task_id=task.id)
        self._put(task)
        return task

    def status(self, task_id: str) -> TaskStatus | None:
        return self.statuses.get(task_id)

    def _put(self, task: EmbeddingTask) -> None:
        # The counter keeps FIFO order within a priority.
        self._queue.put_nowait((task.priority, next(self._counter), task))

    async def _worker(self, number: int) -> None:
        while True:
            _, _, task = await self._queue.get()
            try:
                await self._run(task)
            except Exception:
                logger.exception("Embedding worker %d crashed on task %s", number, task.id)
            finally:
                self._queue.task_done()

    async def _run(self, task: EmbeddingTask) -> None:
        status = self.statuses.setdefault(task.id, TaskStatus(task_id=task.id))
        task.attempt += 1
        status.attempts = task.attempt
        status.state = "running"
        try:
            embedded, failed = await self.process(task.chunk_ids)
        except Exception as exc:
            status.error = str(exc)
            if task.attempt < self.max_attempts:
                delay = self.retry_delay * 2 ** (task.attempt - 1)
                status.state = "retrying"
                logger.warning(
                    "Embedding task %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    task.id,
                    task.attempt,
                    self.max_attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                self._put(task)
            else:
                status.state = "failed"
                status.failed_chunk_ids = list(task.chunk_ids)
                logger.error("Embedding task %s failed permanently: %s", task.id, exc)
                self._prune_statuses()
            return

        status.embedded += embedded
        status.failed_chunk_ids = failed
        status.state = "completed" if not failed else "failed"
        if failed:
            logger.error("Embedding task %s left %d chunks unembedded", task.id, len(failed))
        self._prune_statuses()

    def _prune_statuses(self) -> None:
        """Forget the oldest finished tasks beyond ``max_finished``."""
        finished = [
            task_id
            for task_id, status in self.statuses.items()
            if status.state in ("completed", "failed")
        ]
        for task_id in finished[: max(0, len(finished) - self.max_finished)]:
            del self.statuses[task_id]

    async def process(self, chunk_ids: list[str]) -> tuple[int, list[str]]:
        return await embed_chunks(self.store, self.embeddings, chunk_ids)


async def embed_chunks(
    store: DuckDBVectorStore, embeddings: EmbeddingProvider, chunk_ids: list[str]
) -> tuple[int, list[str]]:
    """Embed and store the given chunks. Returns (stored, failed ids)."""
    chunks = await asyncio.to_thread(store.get_chunks, chunk_ids)
    if not chunks:
        return 0, []
    vectors = await embeddings.embed_batch([chunk.content for chunk in chunks])
    pairs = [(chunk.id, vector) for chunk, vector in zip(chunks, vectors) if vector is not None]
    failed = [chunk.id for chunk, vector in zip(chunks, vectors) if vector is None]
    stored = await asyncio.to_thread(store.store_chunk_embeddings, pairs) if pairs else 0
    return stored, failed
