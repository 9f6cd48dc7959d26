"""Background extraction worker - runs SemanticExtractor off the request path."""

import asyncio
import contextlib

from mnemo.context.extractor import ExtractionResult, SemanticExtractor
from mnemo.core.logging import get_logger

logger = get_logger("context.worker")

JobKey = tuple[str, str | None]


class ExtractionWorker:
    """Queue of (user, session) extraction jobs processed one at a time.

    Scheduling a job that is already queued is a no-op. A job whose batch came
    back full is queued again so a backlog drains without further turns.
    """

    def __init__(self, extractor: SemanticExtractor):
        self.extractor = extractor
        self._queue: asyncio.Queue[JobKey] = asyncio.Queue()
        self._queued: set[JobKey] = set()
        self._running = False
        self._task: asyncio.Task | None = None
        self.completed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return len(self._queued)

    def schedule(self, user_id: str, session_id: str | None = None) -> bool:
        """Queue an extraction job. Returns False if it is already queued."""
        key = (user_id, session_id)
        if key in self._queued:
            return False
        self._queued.add(key)
        self._queue.put_nowait(key)
        return True

    async def start(self) -> None:
        """Start the worker loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Extraction worker started")

    async def stop(self) -> None:
        """Stop the worker. Queued jobs are dropped."""
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        dropped = len(self._queued)
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._queued.clear()
        logger.info(f"Extraction worker stopped ({dropped} queued jobs dropped)")

    async def drain(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def run_job(self, user_id: str, session_id: str | None = None) -> ExtractionResult | None:
        """Run one job now. Errors are logged, never raised."""
        try:
            result = await self.extractor.extract_batch(user_id, session_id)
        except Exception as e:
            self.failed += 1
            logger.error(f"Extraction job for {user_id} failed: {e}")
            return None
        self.completed += 1
        return result

    async def _loop(self) -> None:
        while self._running:
            key = await self._queue.get()
            self._queued.discard(key)
            try:
                result = await self.run_job(*key)
                if result is not None and result.stats.processed >= self.extractor.batch_size:
                    self.schedule(*key)
            finally:
                self._queue.task_done()
