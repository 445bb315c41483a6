"""Ingestion queue: total ordering of every main-chain mutation.

A single consumer task drains a FIFO of operations. Each enqueue returns a
future that resolves after that operation has fully run and every earlier
operation has finished, regardless of which external call returns first.
A failing operation resolves only its own future; the queue keeps going.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class IngestionQueue:
    """Single-consumer FIFO of async operations on the running loop."""

    def __init__(self, name: str = "main"):
        self.name = name
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None
        self._completed = 0
        self._failed = 0

    @property
    def pending_count(self) -> int:
        return self._queue.qsize() if self._queue else 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def _ensure_worker(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if not self.running:
            self._worker = asyncio.get_running_loop().create_task(self._drain())
        return self._queue

    def enqueue(self, operation: Operation) -> asyncio.Future:
        """Queue an operation; the future settles with its result or error."""
        queue = self._ensure_worker()
        future = asyncio.get_running_loop().create_future()
        queue.put_nowait((operation, future))
        return future

    async def submit(self, operation: Operation) -> Any:
        """Queue an operation and wait for it."""
        return await self.enqueue(operation)

    async def _drain(self) -> None:
        assert self._queue is not None
        while True:
            operation, future = await self._queue.get()
            try:
                if future.cancelled():
                    continue
                try:
                    result = await operation()
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as e:
                    self._failed += 1
                    if not future.cancelled():
                        future.set_exception(e)
                else:
                    self._completed += 1
                    if not future.cancelled():
                        future.set_result(result)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued operation has run."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Stop the worker; operations still queued are cancelled."""
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._queue is not None:
            while not self._queue.empty():
                _, future = self._queue.get_nowait()
                future.cancel()
                self._queue.task_done()
        logger.debug(f"Ingestion queue '{self.name}' closed")

    def get_stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "pending": self.pending_count,
            "completed": self._completed,
            "failed": self._failed,
            "running": self.running,
        }
