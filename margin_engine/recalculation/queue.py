"""
In-Memory Recalculation Queue

Holds recalculation requests until a worker takes them. A request with the
same (product, weeks) key as one still queued is not enqueued twice.
"""

import asyncio
from typing import Awaitable, Callable, Set, Tuple

import structlog

from margin_engine.recalculation.controller import RecalculationRequest

logger = structlog.get_logger(__name__)

Dispatch = Callable[[RecalculationRequest], Awaitable[None]]


class RecalculationQueue:
    """FIFO of recalculation requests with duplicate suppression"""

    def __init__(self, maxsize: int = 0):
        self._queue: "asyncio.Queue[RecalculationRequest]" = asyncio.Queue(maxsize=maxsize)
        self._queued: Set[Tuple] = set()

    def __len__(self) -> int:
        return self._queue.qsize()

    def __contains__(self, request: RecalculationRequest) -> bool:
        return request.key in self._queued

    async def put(self, request: RecalculationRequest) -> bool:
        """
        Enqueue a request.

        Returns:
            False if an identical request is already waiting
        """
        if request.key in self._queued:
            logger.debug("Recalculation already queued", nm_id=request.nm_id)
            return False

        self._queued.add(request.key)
        await self._queue.put(request)
        logger.info(
            "Recalculation enqueued",
            nm_id=request.nm_id,
            weeks=[str(w) for w in request.weeks],
            queue_size=self._queue.qsize(),
        )
        return True

    async def get(self) -> RecalculationRequest:
        """Take the next request; its key may be queued again afterwards"""
        request = await self._queue.get()
        self._queued.discard(request.key)
        return request

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        """Wait until every taken request is marked done"""
        await self._queue.join()

    async def consume(self, dispatch: Dispatch) -> None:
        """
        Hand requests to ``dispatch`` one at a time until cancelled.

        A failed dispatch is logged and the worker moves on to the next
        request; the backend is expected to report failures through the
        margin status instead.
        """
        logger.info("Recalculation worker started")
        while True:
            request = await self.get()
            try:
                await dispatch(request)
            except Exception as e:
                logger.error(
                    "Recalculation dispatch failed",
                    nm_id=request.nm_id,
                    weeks=[str(w) for w in request.weeks],
                    error=str(e),
                )
            finally:
                self.task_done()
