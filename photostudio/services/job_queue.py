"""
Background job queue for generation batches.

Jobs run on a small pool of asyncio worker tasks inside the service
process. A job's identity is derived from its generation id, and a job
that is queued or running blocks any other job with the same identity.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from photostudio.exceptions import DuplicateJobError, QueueUnavailableError

logger = logging.getLogger(__name__)


def job_id_for(generation_id: str) -> str:
    return f"generation-{generation_id}"


class GenerationJob:
    """
    One unit of background work.

    Attributes:
        generation_id: Generation being processed
        user_id: Owner (used for event filtering)
        slots: [{"index", "type", "prompt", "aspect_ratio", "resolution"}]
        model: Optional model override
    """

    def __init__(self, generation_id: str, user_id: str, slots: List[Dict], model: Optional[str] = None):
        self.generation_id = generation_id
        self.user_id = user_id
        self.slots = slots
        self.model = model

    @property
    def job_id(self) -> str:
        return job_id_for(self.generation_id)

    def __repr__(self):
        return f"GenerationJob({self.job_id}, slots={len(self.slots)})"


class GenerationJobQueue:
    """asyncio.Queue drained by worker tasks"""

    def __init__(self, handler: Optional[Callable[[GenerationJob], Awaitable[None]]] = None, workers: int = 2):
        self.handler = handler
        self.workers = max(1, workers)
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []
        self._active: Dict[str, GenerationJob] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_jobs(self) -> List[str]:
        return list(self._active)

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    async def start(self):
        if self._running:
            return
        if self.handler is None:
            raise RuntimeError("Job queue handler is not set")
        self._queue = asyncio.Queue()
        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker(number), name=f"generation-worker-{number}")
            for number in range(self.workers)
        ]
        logger.info(f"Generation job queue started with {self.workers} workers")

    def enqueue(self, job: GenerationJob) -> str:
        """
        Submit job.

        Raises:
            QueueUnavailableError: Queue is not running
            DuplicateJobError: Job with the same identity is already active
        """
        if not self._running or self._queue is None:
            raise QueueUnavailableError("Generation queue is not running")
        if job.job_id in self._active:
            raise DuplicateJobError(job.job_id)

        self._active[job.job_id] = job
        self._queue.put_nowait(job)
        logger.info(f"Enqueued {job} (queue size: {self._queue.qsize()})")
        return job.job_id

    async def _worker(self, number: int):
        while True:
            job = await self._queue.get()
            try:
                logger.info(f"Worker {number} | Processing {job}")
                await self.handler(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Worker {number} | Job {job.job_id} crashed: {e}", exc_info=True)
            finally:
                self._active.pop(job.job_id, None)
                self._queue.task_done()

    async def join(self):
        """Wait until every submitted job has finished"""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self):
        """Stop accepting jobs and cancel the workers"""
        if not self._running:
            return
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._active:
            logger.warning(f"Job queue stopped with {len(self._active)} unfinished jobs: {self.active_jobs}")
        self._active.clear()
        logger.info("Generation job queue stopped")
