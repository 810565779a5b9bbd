"""
run_queue.py: in-process worker pool that executes pipeline runs.

The WorkflowRun row is the durable record of a job: anything still queued
when the process stops is picked up again by recovery on the next start.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("intel-report.queue")

Handler = Callable[[str], Awaitable[None]]


class QueueClosedError(RuntimeError):
    pass


class RunQueue:
    def __init__(self, workers: int = 2):
        self.workers = max(1, workers)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._handler: Optional[Handler] = None
        self._in_flight: set[str] = set()
        self._accepting = False
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._accepting

    def start(self, handler: Handler) -> None:
        if self._tasks:
            return
        self._handler = handler
        self._accepting = True
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"run-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info(f"Run queue started with {self.workers} worker(s)")

    def submit(self, workflow_id: str) -> None:
        if not self._accepting:
            raise QueueClosedError("run queue is not accepting jobs")
        self._queue.put_nowait(workflow_id)

    async def join(self) -> None:
        """Wait until every submitted job has finished. Mostly for tests."""
        await self._queue.join()

    async def _worker(self, index: int) -> None:
        while True:
            workflow_id = await self._queue.get()
            self._in_flight.add(workflow_id)
            try:
                await self._handler(workflow_id)
                self.processed += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # The handler records failures on the run itself; this is a last resort
                self.failed += 1
                logger.error(f"[{workflow_id}] Worker {index} handler crashed: {e}", exc_info=True)
            finally:
                self._in_flight.discard(workflow_id)
                self._queue.task_done()

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop accepting, let in-flight runs finish (up to ``timeout``), then cancel."""
        self._accepting = False
        if not self._tasks:
            return

        # Jobs nobody has started stay queued in the database
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        if dropped:
            logger.info(f"Run queue stopping: {dropped} unstarted job(s) left for recovery")

        if self._in_flight:
            logger.info(f"Run queue stopping: waiting for {len(self._in_flight)} in-flight run(s)")
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Run queue drain timed out after {timeout}s, cancelling {sorted(self._in_flight)}")

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    def stats(self) -> dict:
        return {
            "workers": self.workers,
            "accepting": self._accepting,
            "queued": self._queue.qsize(),
            "in_flight": sorted(self._in_flight),
            "processed": self.processed,
            "failed": self.failed,
        }
