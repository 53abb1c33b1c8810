"""
Generation worker: executes queued generation jobs.

Every slot of a job is generated independently; one slot failing never
stops the others. Each slot outcome is written to the Generation row as
soon as it is known, under the per-generation lock, so progress queries see
partial results. The aggregate status is computed only after all slots of
the job have settled.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm.exc import StaleDataError

from photostudio.database import Database, crud
from photostudio.database.models import Generation, GenerationStatus, VisualStatus, utcnow, isoformat
from photostudio.exceptions import ContentPolicyError, GenerationTimeoutError
from photostudio.services.ai_backend import ImageBackend
from photostudio.services.events import GenerationEventBus
from photostudio.services.generation_state import (
    InvalidTransition,
    TERMINAL_VISUAL_STATUSES,
    finish_if_terminal,
    refresh_progress,
    transition_visual,
)
from photostudio.services.job_queue import GenerationJob
from photostudio.services.storage import LocalFileStorage
from photostudio.utils.api_retry import APIRetryHandler, CircuitBreakerOpen
from photostudio.utils.locks import GenerationLocks

logger = logging.getLogger(__name__)

_SKIP = object()


def describe_error(error: Exception) -> str:
    """User-facing error string for a failed slot"""
    if isinstance(error, ContentPolicyError):
        return f"Content policy refusal: {error}"
    if isinstance(error, GenerationTimeoutError):
        return str(error)
    if isinstance(error, CircuitBreakerOpen):
        return "Image service temporarily unavailable"
    return f"{type(error).__name__}: {error}" if str(error) else type(error).__name__


class GenerationWorker:
    """Processes GenerationJob instances taken from the job queue"""

    def __init__(
        self,
        db: Database,
        backend: ImageBackend,
        storage: LocalFileStorage,
        events: GenerationEventBus,
        locks: GenerationLocks,
        retry_handler: APIRetryHandler,
        concurrency: int = 2,
        persist_max_retries: int = 3,
        persist_retry_delay: float = 0.1
    ):
        self.db = db
        self.backend = backend
        self.storage = storage
        self.events = events
        self.locks = locks
        self.retry_handler = retry_handler
        self.concurrency = max(1, concurrency)
        self.persist_max_retries = max(1, persist_max_retries)
        self.persist_retry_delay = persist_retry_delay

    async def process_job(self, job: GenerationJob):
        """Run every slot of the job, then settle the generation"""
        logger.info(f"User {job.user_id} | Generation {job.generation_id} | Starting {len(job.slots)} visuals")
        semaphore = asyncio.Semaphore(self.concurrency)

        results = await asyncio.gather(
            *(self._process_slot(job, slot, semaphore) for slot in job.slots),
            return_exceptions=True
        )

        for slot, result in zip(job.slots, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Generation {job.generation_id} | Slot {slot['index']} result was not saved: "
                    f"{type(result).__name__}: {result}"
                )

        await self._settle(job)

    # ==================== SLOT PROCESSING ====================

    async def _process_slot(self, job: GenerationJob, slot: Dict[str, Any], semaphore: asyncio.Semaphore):
        index = slot["index"]

        async with semaphore:
            visual = await self._update_visual(
                job.generation_id, index, VisualStatus.PROCESSING.value, started_at=isoformat(utcnow())
            )
            if visual is None:
                return
            self.events.visual_processing(job.generation_id, job.user_id, index, slot["type"])

            try:
                image = await self.retry_handler.execute_with_retry(
                    self.backend.generate_image,
                    slot["prompt"],
                    slot.get("aspect_ratio"),
                    slot.get("resolution"),
                    job.model
                )
                stored = await self.storage.store(image.image_bytes, image.mime_type)
            except Exception as e:
                # Slot boundary: record the failure, siblings carry on
                error = describe_error(e)
                logger.warning(f"Generation {job.generation_id} | Slot {index} ({slot['type']}) failed: {error}")
                visual = await self._update_visual(job.generation_id, index, VisualStatus.FAILED.value, error=error)
                if visual is not None:
                    self.events.visual_failed(job.generation_id, job.user_id, index, error)
                return

            visual = await self._update_visual(
                job.generation_id,
                index,
                VisualStatus.COMPLETED.value,
                image_url=stored["url"],
                image_path=stored["path"],
                mime_type=image.mime_type,
                prompt=slot["prompt"],
                generated_at=isoformat(utcnow()),
                error=None
            )
            if visual is not None:
                logger.info(f"Generation {job.generation_id} | Slot {index} ({slot['type']}) completed")
                self.events.visual_completed(job.generation_id, job.user_id, index, visual)

    async def _update_visual(self, generation_id: str, index: int, status: str, **fields) -> Optional[Dict]:
        """Persist one slot transition; None if the generation left processing"""
        def mutate(generation: Generation):
            if generation.status != GenerationStatus.PROCESSING.value:
                logger.info(f"Generation {generation_id} is {generation.status}, discarding slot {index} update")
                return _SKIP
            visuals = list(generation.visuals or [])
            if index >= len(visuals):
                logger.warning(f"Generation {generation_id} has no slot {index}, discarding update")
                return _SKIP
            try:
                visuals[index] = transition_visual(visuals[index], status, **fields)
            except InvalidTransition as e:
                logger.warning(f"Generation {generation_id} | {e}")
                return _SKIP
            generation.visuals = visuals
            refresh_progress(generation)
            return visuals[index]

        result = await self._write(generation_id, mutate)
        return None if result is _SKIP else result

    async def _settle(self, job: GenerationJob):
        """Close the job: aggregate status once all slots are terminal"""
        job_indexes = {slot["index"] for slot in job.slots}

        def mutate(generation: Generation):
            if generation.status != GenerationStatus.PROCESSING.value:
                return _SKIP
            visuals = list(generation.visuals or [])
            for position, visual in enumerate(visuals):
                # Slots whose outcome could not be persisted must still end terminal
                if visual.get("status") not in TERMINAL_VISUAL_STATUSES:
                    reason = "Result could not be saved" if position in job_indexes else "Not processed"
                    visuals[position] = transition_visual(visual, VisualStatus.FAILED.value, error=reason)
            generation.visuals = visuals
            finish_if_terminal(generation)
            return generation.status, generation.completed_visuals_count, len(visuals)

        result = await self._write(job.generation_id, mutate)
        if result is _SKIP or result is None:
            return

        status, completed, total = result
        logger.info(
            f"User {job.user_id} | Generation {job.generation_id} | Finished: {status} ({completed}/{total} completed)"
        )
        self.events.generation_completed(job.generation_id, job.user_id, status, completed, total)

    # ==================== RECOVERY ====================

    async def recover_interrupted(self, is_active: Callable[[str], bool]) -> List[str]:
        """
        Close generations left in processing by a previous process.

        Jobs only live in memory, so a processing row without an active job
        will never be finished. Slots that completed are kept, the rest fail
        with "Interrupted" and the aggregate status is computed as usual.

        Args:
            is_active: Tells whether a generation still has a queued or running job

        Returns:
            IDs of the recovered generations
        """
        async with self.db.get_session() as session:
            generation_ids = await crud.get_generation_ids_by_status(session, GenerationStatus.PROCESSING.value)

        def mutate(generation: Generation):
            if generation.status != GenerationStatus.PROCESSING.value:
                return _SKIP
            visuals = list(generation.visuals or [])
            for position, visual in enumerate(visuals):
                if visual.get("status") not in TERMINAL_VISUAL_STATUSES:
                    visuals[position] = transition_visual(visual, VisualStatus.FAILED.value, error="Interrupted")
            generation.visuals = visuals
            if not finish_if_terminal(generation):
                # Nothing was ever dispatched for it
                generation.status = GenerationStatus.FAILED.value
                generation.error_message = "Interrupted"
                generation.completed_at = utcnow()
                refresh_progress(generation)
            return generation.user_id, generation.status, generation.completed_visuals_count, len(visuals)

        recovered = []
        for generation_id in generation_ids:
            if is_active(generation_id):
                continue
            result = await self._write(generation_id, mutate)
            if result is _SKIP:
                continue
            user_id, status, completed, total = result
            logger.warning(
                f"User {user_id} | Generation {generation_id} | Interrupted job closed as {status} "
                f"({completed}/{total} completed)"
            )
            self.events.generation_completed(generation_id, user_id, status, completed, total)
            recovered.append(generation_id)
        return recovered

    # ==================== PERSISTENCE ====================

    async def _write(self, generation_id: str, mutate: Callable[[Generation], Any]) -> Any:
        """
        Serialized read-modify-write of one generation.

        Retries on optimistic-lock conflicts and database errors so a slot
        result is not silently dropped.
        """
        for attempt in range(self.persist_max_retries):
            try:
                async with self.locks.acquire(generation_id):
                    async with self.db.get_session() as session:
                        generation = await crud.get_generation(session, generation_id)
                        if generation is None:
                            logger.warning(f"Generation {generation_id} disappeared, dropping update")
                            return _SKIP
                        result = mutate(generation)
                        if result is _SKIP:
                            await session.rollback()
                            return _SKIP
                        await session.commit()
                        return result
            except (StaleDataError, DBAPIError) as e:
                if attempt == self.persist_max_retries - 1:
                    logger.error(f"Generation {generation_id} | Failed to persist update: {e}", exc_info=True)
                    raise
                delay = self.persist_retry_delay * (2 ** attempt)
                logger.warning(
                    f"Generation {generation_id} | Persist attempt {attempt + 1} failed "
                    f"({type(e).__name__}), retrying in {delay}s"
                )
                await asyncio.sleep(delay)
