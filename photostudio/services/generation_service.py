"""
Generation service: lifecycle of a Generation record.

pending -> processing -> completed | failed, with reset back to pending.
All state changes for one generation happen under its GenerationLocks
entry, the same lock the worker takes for slot writes.
"""
import copy
import logging
import re
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from photostudio.database import crud
from photostudio.database.models import Generation, GenerationStatus, GenerationType, VisualStatus, utcnow, isoformat
from photostudio.exceptions import (
    ConflictError,
    DuplicateJobError,
    ForbiddenError,
    NotFoundError,
    QueueUnavailableError,
    ServiceUnavailableError,
    ValidationError,
)
from photostudio.services.archive import archive_filename, plan_archive, stream_archive
from photostudio.services.events import GenerationEventBus
from photostudio.services.generation_state import (
    extract_prompts,
    finish_if_terminal,
    new_visual,
    progress_snapshot,
    refresh_progress,
    transition_visual,
)
from photostudio.services.job_queue import GenerationJob, GenerationJobQueue, job_id_for
from photostudio.services.prompt_merge import (
    VISUAL_SLOTS,
    build_merged_prompts,
    find_unresolved_placeholders,
    merge_da_json,
    merge_product_json,
)
from photostudio.services.storage import LocalFileStorage
from photostudio.utils.locks import GenerationLocks
from photostudio.utils.logging_config import log_user_action
from photostudio.utils.validators import parse_positive_int, parse_visual_index, validate_aspect_ratio, validate_resolution

logger = logging.getLogger(__name__)

GENERATION_TYPES = [item.value for item in GenerationType]
GENERATION_STATUSES = [item.value for item in GenerationStatus]

VISUAL_ID_PATTERN = re.compile(r"^visual_(\d+)_")


def ordered_prompts(merged_prompts: Optional[Dict[str, Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """
    Merged prompt objects in slot order.

    JSONB does not keep key order, so the position is taken from visual_id,
    falling back to the standard slot order.
    """
    def position(entry):
        slot, item = entry
        match = VISUAL_ID_PATTERN.match(str(item.get("visual_id") or ""))
        if match:
            return int(match.group(1))
        if slot in VISUAL_SLOTS:
            return VISUAL_SLOTS.index(slot) + 1
        return len(merged_prompts) + 1

    return [item for _, item in sorted((merged_prompts or {}).items(), key=position)]


class GenerationService:
    """Generation CRUD, prompt editing and job dispatch"""

    def __init__(
        self,
        queue: GenerationJobQueue,
        events: GenerationEventBus,
        locks: GenerationLocks,
        storage: LocalFileStorage,
        settings,
        backend=None
    ):
        self.queue = queue
        self.events = events
        self.locks = locks
        self.storage = storage
        self.settings = settings
        self.backend = backend

    # ==================== HELPERS ====================

    async def get(self, session: AsyncSession, generation_id: str, user_id: str) -> Generation:
        """Generation owned by user_id, freshly loaded"""
        generation = await crud.get_generation(session, generation_id, user_id)
        if generation is None:
            raise NotFoundError(f"Generation {generation_id} not found", code="GENERATION_NOT_FOUND")
        return generation

    async def _commit(self, session: AsyncSession):
        try:
            await session.commit()
        except StaleDataError:
            await session.rollback()
            raise ConflictError("Generation was modified concurrently, please retry", code="CONCURRENT_UPDATE")

    def _ensure_not_processing(self, generation: Generation):
        if generation.status == GenerationStatus.PROCESSING.value or self.queue.is_active(job_id_for(generation.id)):
            raise ConflictError("Generation is already in progress", code="GENERATION_IN_PROGRESS")

    def _ensure_backend(self):
        if self.backend is None:
            raise ServiceUnavailableError("Image backend is not configured", code="BACKEND_NOT_CONFIGURED")

    def _check_output(self, aspect_ratio: Optional[str], resolution: Optional[str]):
        if aspect_ratio is not None and not validate_aspect_ratio(aspect_ratio, self.settings.AVAILABLE_ASPECT_RATIOS):
            raise ValidationError(
                f"Unsupported aspect ratio {aspect_ratio}. Allowed: {', '.join(self.settings.AVAILABLE_ASPECT_RATIOS)}",
                code="INVALID_ASPECT_RATIO"
            )
        if resolution is not None and not validate_resolution(resolution, self.settings.AVAILABLE_RESOLUTIONS):
            raise ValidationError(
                f"Unsupported resolution {resolution}. Allowed: {', '.join(self.settings.AVAILABLE_RESOLUTIONS)}",
                code="INVALID_RESOLUTION"
            )

    @staticmethod
    def _slot_name(item: Any, position: int, count: int) -> str:
        if isinstance(item, dict):
            name = item.get("type") or item.get("slot")
            if name:
                return str(name)
        if count <= len(VISUAL_SLOTS):
            return VISUAL_SLOTS[position]
        return f"visual_{position + 1}"

    # ==================== CREATE / READ ====================

    async def create(self, session: AsyncSession, user_id: str, data: Dict[str, Any]) -> Generation:
        """
        Create a pending generation.

        Raises:
            ValidationError: Bad input or product/collection mismatch
            NotFoundError: Product or collection does not exist
            ForbiddenError: Product belongs to another user
        """
        product_id = data.get("product_id")
        collection_id = data.get("collection_id")
        generation_type = data.get("generation_type") or GenerationType.PRODUCT_VISUALS.value
        aspect_ratio = data.get("aspect_ratio") or self.settings.DEFAULT_ASPECT_RATIO
        resolution = (data.get("resolution") or self.settings.DEFAULT_RESOLUTION).upper()

        if not product_id:
            raise ValidationError("product_id is required")
        if generation_type not in GENERATION_TYPES:
            raise ValidationError(
                f"Invalid generation_type. Allowed: {', '.join(GENERATION_TYPES)}", code="INVALID_GENERATION_TYPE"
            )
        self._check_output(aspect_ratio, resolution)

        product = await crud.get_product(session, product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found", code="PRODUCT_NOT_FOUND")
        if product.user_id != user_id:
            raise ForbiddenError("You do not have access to this product")
        if product.collection_id != collection_id:
            raise ValidationError(
                "Product does not belong to the specified collection", code="PRODUCT_COLLECTION_MISMATCH"
            )
        if collection_id is not None and await crud.get_collection(session, collection_id) is None:
            raise NotFoundError(f"Collection {collection_id} not found", code="COLLECTION_NOT_FOUND")

        generation = await crud.create_generation(
            session,
            product_id=product_id,
            user_id=user_id,
            collection_id=collection_id,
            generation_type=generation_type,
            aspect_ratio=aspect_ratio,
            resolution=resolution
        )
        log_user_action(logger, user_id, "Created generation", f"{generation.id} ({generation_type})")
        return generation

    async def list_generations(self, session: AsyncSession, user_id: str, filters: Dict[str, Any]) -> Dict[str, Any]:
        page = parse_positive_int(filters.get("page"), 1)
        limit = parse_positive_int(filters.get("limit"), 20, maximum=100)
        status = filters.get("status")
        if status and status not in GENERATION_STATUSES:
            raise ValidationError(f"Invalid status. Allowed: {', '.join(GENERATION_STATUSES)}")

        items, total = await crud.list_generations(
            session,
            user_id,
            product_id=filters.get("product_id"),
            collection_id=filters.get("collection_id"),
            generation_type=filters.get("generation_type"),
            status=status,
            page=page,
            limit=limit
        )
        return {"items": [item.to_dict() for item in items], "total": total, "page": page, "limit": limit}

    # ==================== PROMPTS ====================

    async def merge_prompts(
        self,
        session: AsyncSession,
        generation_id: str,
        user_id: str,
        data: Dict[str, Any]
    ) -> Generation:
        """Build merged prompts from the product spec and a DA preset"""
        da_preset_id = data.get("da_preset_id")
        if not da_preset_id:
            raise ValidationError("da_preset_id is required")

        async with self.locks.acquire(generation_id):
            generation = await self.get(session, generation_id, user_id)
            self._ensure_not_processing(generation)

            product = await crud.get_product(session, generation.product_id)
            if product is None:
                raise NotFoundError("Product not found", code="PRODUCT_NOT_FOUND")
            if not product.final_product_json:
                raise ValidationError("Product must be analyzed first", code="PRODUCT_NOT_ANALYZED")

            preset = await crud.get_da_preset(session, da_preset_id)
            if preset is None:
                raise NotFoundError(f"DA preset {da_preset_id} not found", code="DA_PRESET_NOT_FOUND")

            templates = None
            if generation.collection_id:
                collection = await crud.get_collection(session, generation.collection_id)
                templates = collection.prompt_templates if collection else None

            product_json = merge_product_json(product.final_product_json, data.get("product_overrides"))
            da_json = merge_da_json(preset.to_preset_config(), data.get("da_overrides"))
            merged = build_merged_prompts(
                product_json, da_json, generation.aspect_ratio, generation.resolution, templates
            )

            unresolved = {
                slot: find_unresolved_placeholders(item["prompt"])
                for slot, item in merged.items()
                if find_unresolved_placeholders(item["prompt"])
            }
            if unresolved:
                details = "; ".join(f"{slot}: {', '.join(names)}" for slot, names in unresolved.items())
                raise ValidationError(f"Unresolved placeholders: {details}", code="UNRESOLVED_PLACEHOLDERS")

            generation.merged_prompts = merged
            generation.visuals = [
                new_visual(index, slot, item["prompt"], generation.aspect_ratio, generation.resolution)
                for index, (slot, item) in enumerate(merged.items())
            ]
            self._back_to_pending(generation, keep_visuals=True)
            await self._commit(session)

        log_user_action(logger, user_id, "Merged prompts", f"{generation_id} with DA {preset.name}")
        return generation

    async def preview_prompts(self, session: AsyncSession, generation_id: str, user_id: str) -> Dict[str, List[str]]:
        generation = await self.get(session, generation_id, user_id)
        source = generation.visuals or ordered_prompts(generation.merged_prompts)
        return {"prompts": extract_prompts(source)}

    async def update_prompts(
        self,
        session: AsyncSession,
        generation_id: str,
        user_id: str,
        prompts: List[Any]
    ) -> Generation:
        """Replace prompts with a user-edited list and return to pending"""
        if not isinstance(prompts, list) or not prompts:
            raise ValidationError("No visuals found in request", code="NO_VISUALS_FOUND")

        async with self.locks.acquire(generation_id):
            generation = await self.get(session, generation_id, user_id)
            self._ensure_not_processing(generation)

            edited_at = isoformat(utcnow())
            merged = {}
            visuals = []
            for position, item in enumerate(prompts):
                texts = extract_prompts([item])
                if not texts:
                    raise ValidationError(f"Prompt {position} is empty", code="EMPTY_PROMPT")

                slot = self._slot_name(item, position, len(prompts))
                base, suffix = slot, position + 1
                while slot in merged:
                    slot = f"{base}_{suffix}"
                    suffix += 1

                entry = copy.deepcopy(item) if isinstance(item, dict) else {}
                output = entry.get("output") or {}
                entry.update({
                    "type": slot,
                    "prompt": texts[0],
                    "editable": True,
                    "last_edited_at": edited_at,
                })
                entry["visual_id"] = f"visual_{position + 1}_{slot}"
                merged[slot] = entry
                visuals.append(new_visual(
                    position,
                    slot,
                    texts[0],
                    output.get("aspect_ratio") or generation.aspect_ratio,
                    output.get("resolution") or generation.resolution
                ))

            generation.merged_prompts = merged
            generation.visuals = visuals
            self._back_to_pending(generation, keep_visuals=True)
            await self._commit(session)

        log_user_action(logger, user_id, "Updated prompts", f"{generation_id} ({len(visuals)} visuals)")
        return generation

    def _resolve_slots(self, generation: Generation, prompts: Optional[List[Any]]) -> List[Dict[str, Any]]:
        """Effective prompt list: request prompts, else stored visuals, else merged prompts"""
        if prompts:
            items = prompts
        elif generation.visuals:
            items = generation.visuals
        else:
            items = ordered_prompts(generation.merged_prompts)

        slots = []
        for position, item in enumerate(items):
            texts = extract_prompts([item])
            if not texts:
                continue
            output = item.get("output") or {} if isinstance(item, dict) else {}
            aspect_ratio = (item.get("aspect_ratio") if isinstance(item, dict) else None) or output.get("aspect_ratio")
            resolution = (item.get("resolution") if isinstance(item, dict) else None) or output.get("resolution")
            slots.append({
                "index": len(slots),
                "type": self._slot_name(item, position, len(items)),
                "prompt": texts[0],
                "aspect_ratio": aspect_ratio or generation.aspect_ratio,
                "resolution": resolution or generation.resolution,
            })
        return slots

    # ==================== STATE TRANSITIONS ====================

    @staticmethod
    def _back_to_pending(generation: Generation, keep_visuals: bool = False):
        generation.status = GenerationStatus.PENDING.value
        if not keep_visuals:
            generation.visuals = []
        generation.started_at = None
        generation.completed_at = None
        generation.error_message = None
        refresh_progress(generation)

    async def generate(
        self,
        session: AsyncSession,
        generation_id: str,
        user_id: str,
        prompts: Optional[List[Any]] = None,
        model: Optional[str] = None
    ) -> Generation:
        """
        Dispatch the generation job.

        Raises:
            ConflictError: A job for this generation is already active
            ValidationError: No prompts to generate
            ServiceUnavailableError: Job queue is down (generation marked failed)
        """
        if prompts is not None and not isinstance(prompts, list):
            raise ValidationError("prompts must be a list")
        self._ensure_backend()

        async with self.locks.acquire(generation_id):
            generation = await self.get(session, generation_id, user_id)
            self._ensure_not_processing(generation)

            slots = self._resolve_slots(generation, prompts)
            if not slots:
                raise ValidationError("No prompts to generate", code="NO_PROMPTS")
            for slot in slots:
                self._check_output(slot["aspect_ratio"], slot["resolution"])

            generation.visuals = [
                new_visual(slot["index"], slot["type"], slot["prompt"], slot["aspect_ratio"], slot["resolution"])
                for slot in slots
            ]
            generation.status = GenerationStatus.PROCESSING.value
            generation.started_at = utcnow()
            generation.completed_at = None
            generation.error_message = None
            refresh_progress(generation)
            await self._commit(session)

            job = GenerationJob(generation.id, user_id, slots, model)
            try:
                self.queue.enqueue(job)
            except DuplicateJobError:
                raise ConflictError("Generation is already in progress", code="GENERATION_IN_PROGRESS")
            except QueueUnavailableError as e:
                logger.error(f"User {user_id} | Generation {generation_id} | Dispatch failed: {e}")
                generation.status = GenerationStatus.FAILED.value
                generation.visuals = []
                generation.completed_at = utcnow()
                generation.error_message = f"Dispatch failed: {e}"
                refresh_progress(generation)
                await self._commit(session)
                raise ServiceUnavailableError("Generation queue is unavailable", code="QUEUE_UNAVAILABLE")

        log_user_action(logger, user_id, "Generation dispatched", f"{generation_id} ({len(slots)} visuals, model={model})")
        return generation

    async def reset(self, session: AsyncSession, generation_id: str, user_id: str) -> Generation:
        """Return to pending, clearing visuals and completion timestamp"""
        async with self.locks.acquire(generation_id):
            generation = await self.get(session, generation_id, user_id)
            if self.queue.is_active(job_id_for(generation.id)):
                raise ConflictError("Generation job is still running", code="GENERATION_IN_PROGRESS")
            self._back_to_pending(generation)
            await self._commit(session)

        log_user_action(logger, user_id, "Generation reset", generation_id)
        return generation

    async def retry_visual(
        self,
        session: AsyncSession,
        generation_id: str,
        user_id: str,
        index: Any,
        model: Optional[str] = None
    ) -> Generation:
        """Regenerate exactly one slot; every other slot is left untouched"""
        visual_index = parse_visual_index(index)
        if visual_index is None:
            raise ValidationError("Invalid visual index", code="INVALID_VISUAL_INDEX")
        self._ensure_backend()

        async with self.locks.acquire(generation_id):
            generation = await self.get(session, generation_id, user_id)
            self._ensure_not_processing(generation)

            visuals = list(generation.visuals or [])
            if visual_index >= len(visuals):
                raise ValidationError("Invalid visual index", code="INVALID_VISUAL_INDEX")
            if generation.status == GenerationStatus.PENDING.value:
                raise ValidationError("Generation has not been run yet", code="GENERATION_NOT_STARTED")

            target = visuals[visual_index]
            prompt = target.get("prompt")
            if not prompt:
                raise ValidationError(f"Visual {visual_index} has no prompt", code="NO_PROMPTS")

            slot = {
                "index": visual_index,
                "type": target.get("type") or f"visual_{visual_index + 1}",
                "prompt": prompt,
                "aspect_ratio": target.get("aspect_ratio") or generation.aspect_ratio,
                "resolution": target.get("resolution") or generation.resolution,
            }
            visuals[visual_index] = new_visual(
                visual_index, slot["type"], prompt, slot["aspect_ratio"], slot["resolution"]
            )
            generation.visuals = visuals
            generation.status = GenerationStatus.PROCESSING.value
            generation.completed_at = None
            generation.error_message = None
            refresh_progress(generation)
            await self._commit(session)

            try:
                self.queue.enqueue(GenerationJob(generation.id, user_id, [slot], model))
            except DuplicateJobError:
                raise ConflictError("Generation is already in progress", code="GENERATION_IN_PROGRESS")
            except QueueUnavailableError as e:
                logger.error(f"User {user_id} | Generation {generation_id} | Retry dispatch failed: {e}")
                visuals = list(generation.visuals)
                visuals[visual_index] = transition_visual(
                    visuals[visual_index], VisualStatus.FAILED.value, error="Generation queue is unavailable"
                )
                generation.visuals = visuals
                finish_if_terminal(generation)
                await self._commit(session)
                raise ServiceUnavailableError("Generation queue is unavailable", code="QUEUE_UNAVAILABLE")

        log_user_action(logger, user_id, "Visual retry dispatched", f"{generation_id} slot {visual_index}")
        return generation

    # ==================== PROGRESS / DOWNLOAD ====================

    async def get_progress(self, session: AsyncSession, generation_id: str, user_id: str) -> Dict[str, Any]:
        generation = await self.get(session, generation_id, user_id)
        return progress_snapshot(generation)

    async def download(
        self, session: AsyncSession, generation_id: str, user_id: str
    ) -> Tuple[str, AsyncIterator[bytes]]:
        """
        Zip archive of completed visuals.

        Entries are checked here, so a generation with nothing to package
        fails before the response starts.

        Returns:
            (filename, async iterator of archive chunks)
        """
        generation = await self.get(session, generation_id, user_id)
        product = await crud.get_product(session, generation.product_id)
        collection = await crud.get_collection(session, generation.collection_id) if generation.collection_id else None

        entries = plan_archive(
            generation,
            self.storage,
            collection_name=collection.name if collection else None,
            product_name=product.name if product else None
        )
        log_user_action(logger, user_id, "Downloaded archive", f"{generation_id} ({len(entries)} files)")
        return archive_filename(generation.id), stream_archive(entries, self.storage)

    def debug_config(self) -> Dict[str, Any]:
        return {
            "backend": self.settings.IMAGE_BACKEND,
            "model": self.backend.model if self.backend else self.settings.image_model,
            "image_configured": self.backend is not None,
            "queue_running": self.queue.is_running,
            "active_jobs": self.queue.active_jobs,
            "subscribers": self.events.subscriber_count,
        }
