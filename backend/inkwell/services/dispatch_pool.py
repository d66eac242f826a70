"""
Inkwell Backend: OCR Dispatch Pool
==================================

What:  A bounded queue of extraction jobs drained by a fixed number of
       worker tasks.
How:   `submit()` is synchronous and non-blocking (`put_nowait`), so it can
       run from a post-commit hook without delaying the confirm response.
       Workers call `dispatcher.dispatch(job)`; on any failure they await
       the job's `on_failure` callback, which records the failure in its
       own transaction.
Who:   Fed by AssetLifecycle.confirm_upload after commit; started and
       stopped by the FastAPI lifespan.

Failure paths (all end in on_failure):
    - queue full at submit time
    - dispatcher raised (retries exhausted, 4xx, circuit open, bug)

Jobs still queued at shutdown are dropped; their assets stay in
`processing` and the reconciliation sweep fails them after the deadline.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from inkwell.config import settings
from inkwell.exceptions import DispatchFailureError
from inkwell.schemas.asset import ExtractionJob
from inkwell.services.ocr_dispatcher import OcrDispatcher

logger = logging.getLogger(__name__)

FailureCallback = Callable[[ExtractionJob, Exception], Awaitable[None]]


class OcrDispatchPool:
    def __init__(
        self,
        dispatcher: OcrDispatcher,
        workers: Optional[int] = None,
        capacity: Optional[int] = None,
    ):
        self.dispatcher = dispatcher
        self.worker_count = workers or settings.ocr_dispatch_workers
        self.capacity = capacity or settings.ocr_dispatch_queue_capacity
        self._queue: asyncio.Queue[Tuple[ExtractionJob, FailureCallback]] = asyncio.Queue(
            maxsize=self.capacity
        )
        self._workers: List[asyncio.Task] = []
        self._failure_tasks: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._workers)

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    def submit(self, job: ExtractionJob, on_failure: FailureCallback) -> bool:
        """
        Enqueue a job without waiting.

        Returns:
            True if queued. False if the queue was full; `on_failure` has
            then been scheduled as a task.
        """
        try:
            self._queue.put_nowait((job, on_failure))
        except asyncio.QueueFull:
            logger.error(
                "OCR dispatch queue full (capacity=%d); failing asset %s",
                self.capacity,
                job.asset_id,
            )
            error = DispatchFailureError(
                message="OCR dispatch queue is full",
                context={"asset_id": str(job.asset_id), "capacity": self.capacity},
            )
            task = asyncio.create_task(self._run_failure(job, on_failure, error))
            self._failure_tasks.add(task)
            task.add_done_callback(self._failure_tasks.discard)
            return False

        logger.debug("OCR job queued for asset %s (depth=%d)", job.asset_id, self.queue_depth)
        return True

    async def start(self) -> None:
        if self.is_running:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"ocr-dispatch-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(
            "OCR dispatch pool started (workers=%d, capacity=%d)",
            self.worker_count,
            self.capacity,
        )

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if not self._queue.empty():
            logger.warning(
                "OCR dispatch pool stopped with %d queued jobs; "
                "reconciliation will fail them after the extraction deadline",
                self.queue_depth,
            )
        logger.info("OCR dispatch pool stopped")

    async def join(self) -> None:
        """Wait until every queued job and every failure callback has finished."""
        await self._queue.join()
        while self._failure_tasks:
            await asyncio.gather(*list(self._failure_tasks), return_exceptions=True)

    async def _worker(self, index: int) -> None:
        while True:
            job, on_failure = await self._queue.get()
            try:
                await self.dispatcher.dispatch(job)
                logger.info("OCR job for asset %s accepted (worker %d)", job.asset_id, index)
            except Exception as e:
                logger.error(
                    "OCR dispatch failed for asset %s: %s",
                    job.asset_id,
                    getattr(e, "message", str(e)),
                )
                await self._run_failure(job, on_failure, e)
            finally:
                self._queue.task_done()

    async def _run_failure(
        self, job: ExtractionJob, on_failure: FailureCallback, error: Exception
    ) -> None:
        try:
            await on_failure(job, error)
        except Exception:
            logger.exception("Recording dispatch failure for asset %s failed", job.asset_id)
