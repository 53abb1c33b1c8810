"""
Generation state rules shared by the service and the worker.

Progress fields on a Generation are always derived from its visuals list;
nothing writes them directly.
"""
import copy
from typing import Any, Dict, List, Optional

from photostudio.database.models import Generation, GenerationStatus, VisualStatus, utcnow, isoformat

TERMINAL_VISUAL_STATUSES = (VisualStatus.COMPLETED.value, VisualStatus.FAILED.value)

# Visual status can only move forward along this order
_VISUAL_RANK = {
    VisualStatus.PENDING.value: 0,
    VisualStatus.PROCESSING.value: 1,
    VisualStatus.COMPLETED.value: 2,
    VisualStatus.FAILED.value: 2,
}


class InvalidTransition(ValueError):
    pass


def new_visual(
    index: int,
    visual_type: str,
    prompt: str,
    aspect_ratio: Optional[str] = None,
    resolution: Optional[str] = None
) -> Dict[str, Any]:
    """Fresh pending visual record for one slot"""
    return {
        "index": index,
        "type": visual_type,
        "status": VisualStatus.PENDING.value,
        "prompt": prompt,
        "aspect_ratio": aspect_ratio,
        "resolution": resolution,
        "image_url": None,
        "image_path": None,
        "mime_type": None,
        "started_at": None,
        "generated_at": None,
        "error": None,
    }


def transition_visual(visual: Dict[str, Any], status: str, **fields) -> Dict[str, Any]:
    """
    Return a copy of visual moved to status with extra fields applied.

    Raises:
        InvalidTransition: If the move would regress the slot or leave a
            terminal state
    """
    current = visual.get("status", VisualStatus.PENDING.value)
    if current in TERMINAL_VISUAL_STATUSES or _VISUAL_RANK[status] < _VISUAL_RANK[current]:
        raise InvalidTransition(f"Visual {visual.get('index')} cannot move from {current} to {status}")

    updated = copy.deepcopy(visual)
    updated["status"] = status
    updated.update(fields)
    return updated


def count_status(visuals: List[Dict[str, Any]], status: str) -> int:
    return sum(1 for visual in visuals or [] if visual.get("status") == status)


def calculate_progress(visuals: List[Dict[str, Any]]) -> int:
    """Completed share in whole percent, rounded half up; 0 when empty"""
    total = len(visuals or [])
    if total == 0:
        return 0
    completed = count_status(visuals, VisualStatus.COMPLETED.value)
    return (200 * completed + total) // (2 * total)


def all_terminal(visuals: List[Dict[str, Any]]) -> bool:
    return bool(visuals) and all(visual.get("status") in TERMINAL_VISUAL_STATUSES for visual in visuals)


def aggregate_status(visuals: List[Dict[str, Any]]) -> str:
    """Completed if at least one slot succeeded, otherwise failed"""
    if count_status(visuals, VisualStatus.COMPLETED.value) > 0:
        return GenerationStatus.COMPLETED.value
    return GenerationStatus.FAILED.value


def describe_step(generation: Generation) -> str:
    visuals = generation.visuals or []
    total = len(visuals)
    if generation.status == GenerationStatus.PROCESSING.value:
        done = sum(1 for visual in visuals if visual.get("status") in TERMINAL_VISUAL_STATUSES)
        return f"Generating visuals ({done}/{total})"
    if generation.status == GenerationStatus.COMPLETED.value:
        failed = count_status(visuals, VisualStatus.FAILED.value)
        if failed:
            return f"Completed with {failed} failed of {total}"
        return "Completed"
    if generation.status == GenerationStatus.FAILED.value:
        return "Failed"
    return "Pending"


def refresh_progress(generation: Generation):
    """Recompute derived progress fields from visuals"""
    visuals = generation.visuals or []
    generation.completed_visuals_count = count_status(visuals, VisualStatus.COMPLETED.value)
    generation.progress_percent = calculate_progress(visuals)
    generation.current_step = describe_step(generation)


def finish_if_terminal(generation: Generation) -> bool:
    """
    Set aggregate status once every visual is terminal.

    Returns:
        True if the generation reached a terminal status
    """
    visuals = generation.visuals or []
    if not all_terminal(visuals):
        refresh_progress(generation)
        return False

    generation.status = aggregate_status(visuals)
    generation.completed_at = utcnow()
    if generation.status == GenerationStatus.FAILED.value:
        generation.error_message = "All visuals failed"
    else:
        generation.error_message = None
    refresh_progress(generation)
    return True


def extract_prompts(items: List[Any]) -> List[str]:
    """Prompt text from strings or prompt objects"""
    prompts = []
    for item in items or []:
        if isinstance(item, str):
            text = item
        elif isinstance(item, dict):
            text = item.get("prompt") or item.get("gemini_prompt") or item.get("text") or item.get("description")
        else:
            text = None
        if text and str(text).strip():
            prompts.append(str(text).strip())
    return prompts


def progress_snapshot(generation: Generation) -> Dict[str, Any]:
    visuals = generation.visuals or []
    return {
        "generationId": generation.id,
        "status": generation.status,
        "progress": calculate_progress(visuals),
        "completed": count_status(visuals, VisualStatus.COMPLETED.value),
        "failed": count_status(visuals, VisualStatus.FAILED.value),
        "total": len(visuals),
        "current_step": generation.current_step,
        "started_at": isoformat(generation.started_at),
        "completed_at": isoformat(generation.completed_at),
        "visuals": [
            {
                "index": visual.get("index", position),
                "type": visual.get("type"),
                "status": visual.get("status"),
                "image_url": visual.get("image_url"),
                **({"error": visual["error"]} if visual.get("error") else {}),
            }
            for position, visual in enumerate(visuals)
        ],
    }
