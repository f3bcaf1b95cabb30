"""
Bounded background queue for history optimization passes.

One worker drains the queue. A session is accepted at most once while it is
pending or running, so repeated triggers for the same session collapse into
a single pass.
"""

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class OptimizationQueue:
    """Single-worker queue of session ids awaiting optimization."""

    def __init__(
        self,
        handler: Callable[[str], Awaitable[Any]],
        maxsize: int = 100,
    ):
        self.handler = handler
        self.maxsize = maxsize
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self._pending: set[str] = set()
        self._worker: asyncio.Task | None = None
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def is_pending(self, session_id: str) -> bool:
        return session_id in self._pending

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._worker_loop())
        logger.debug("Optimization worker started")

    def enqueue(self, session_id: str) -> bool:
        """
        Schedule a pass for ``session_id`` without waiting.

        Returns:
            True if the session was queued, False if it was already pending
            or the queue is full
        """
        if session_id in self._pending:
            return False
        try:
            self._queue.put_nowait(session_id)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Optimization queue full - dropped session {session_id} "
                f"({self.dropped} dropped so far)"
            )
            return False
        self._pending.add(session_id)
        return True

    async def join(self) -> None:
        """Wait until every queued pass has finished."""
        await self._queue.join()

    async def _worker_loop(self) -> None:
        while True:
            session_id = await self._queue.get()
            try:
                await self.handler(session_id)
            except Exception as e:
                logger.error(f"Optimization of session {session_id} failed: {e}")
            finally:
                self._pending.discard(session_id)
                self._queue.task_done()

    async def stop(self) -> None:
        """Cancel the worker. Passes still queued are dropped."""
        if self._worker is None:
            return
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None

        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._pending.clear()
        logger.debug("Optimization worker stopped")
