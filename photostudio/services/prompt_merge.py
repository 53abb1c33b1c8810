"""
Prompt Merge Engine

Turns a product specification and a DA (art direction) specification into
one concrete prompt per visual slot:
- merge(): clone-then-merge of JSON-like trees (objects recurse, arrays and
  scalars replace)
- build(): {{key}} placeholder substitution
- clean(): whitespace normalization
"""
import copy
import json
import logging
import re
from typing import Any, Dict, List, Optional

from photostudio.utils.json_merge import merge

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r'\{\{([^{}]+)\}\}')

VISUAL_SLOTS = [
    "duo",
    "solo",
    "flatlay_front",
    "flatlay_back",
    "closeup_front",
    "closeup_back",
]

NEGATIVE_PROMPT = (
    "blurry, low resolution, distorted proportions, extra limbs, deformed hands, "
    "watermark, text overlay, logo distortion, wrong product color, cropped product, "
    "cluttered background, oversaturated, cartoon, illustration"
)

SLOT_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    "duo": {
        "shot_type": "duo",
        "model_type": "adult_kid",
        "display_name": "Duo (adult + kid)",
        "camera": {"focal_length_mm": 50, "aperture": 4.0, "angle": "eye level", "framing": "full body"},
        "template": (
            "Editorial fashion photograph of an adult and a child standing side by side, both wearing "
            "the matching {{color_name}} {{product_type}} ({{color_hex}}) made of {{material}}. "
            "{{texture_description}}. Details: {{details}}. Front logo: {{logo_front}}. "
            "Background: {{background}}. Floor: {{floor}}. Props on the left: {{props_left}}. "
            "Props on the right: {{props_right}}. Styling: {{pants}}, {{footwear}}. "
            "Lighting: {{lighting}}. Mood: {{mood}}. {{quality}}"
        ),
    },
    "solo": {
        "shot_type": "solo",
        "model_type": "adult",
        "display_name": "Solo (adult)",
        "camera": {"focal_length_mm": 85, "aperture": 2.8, "angle": "eye level", "framing": "three quarter"},
        "template": (
            "Fashion photograph of a single adult model wearing the {{color_name}} {{product_type}} "
            "({{color_hex}}) in {{material}}. {{texture_description}}. Details: {{details}}. "
            "Front logo: {{logo_front}}. Background: {{background}}. Floor: {{floor}}. "
            "Styling: {{pants}}, {{footwear}}. Lighting: {{lighting}}. Mood: {{mood}}. {{quality}}"
        ),
    },
    "flatlay_front": {
        "shot_type": "flatlay",
        "model_type": "none",
        "display_name": "Flat lay (front)",
        "camera": {"focal_length_mm": 35, "aperture": 8.0, "angle": "top down", "framing": "full garment"},
        "template": (
            "Top-down flat lay of the {{color_name}} {{product_type}} ({{color_hex}}) laid flat, front side up, "
            "neatly arranged on {{floor}}. Material: {{material}}. {{texture_description}}. "
            "Details: {{details}}. Front logo: {{logo_front}}. Props around the garment: {{props_left}}, "
            "{{props_right}}. Lighting: {{lighting}}. {{quality}}"
        ),
    },
    "flatlay_back": {
        "shot_type": "flatlay",
        "model_type": "none",
        "display_name": "Flat lay (back)",
        "camera": {"focal_length_mm": 35, "aperture": 8.0, "angle": "top down", "framing": "full garment"},
        "template": (
            "Top-down flat lay of the {{color_name}} {{product_type}} ({{color_hex}}) laid flat, back side up, "
            "on {{floor}}. Material: {{material}}. {{texture_description}}. Back logo: {{logo_back}}. "
            "Lighting: {{lighting}}. {{quality}}"
        ),
    },
    "closeup_front": {
        "shot_type": "closeup",
        "model_type": "none",
        "display_name": "Close-up (front)",
        "camera": {"focal_length_mm": 100, "aperture": 5.6, "angle": "straight on", "framing": "macro detail"},
        "template": (
            "Macro close-up of the front of the {{color_name}} {{product_type}} ({{color_hex}}) showing "
            "{{material}} texture: {{texture_description}}. Focus on {{logo_front}} and {{details}}. "
            "Background: {{background}}. Lighting: {{lighting}}. {{quality}}"
        ),
    },
    "closeup_back": {
        "shot_type": "closeup",
        "model_type": "none",
        "display_name": "Close-up (back)",
        "camera": {"focal_length_mm": 100, "aperture": 5.6, "angle": "straight on", "framing": "macro detail"},
        "template": (
            "Macro close-up of the back of the {{color_name}} {{product_type}} ({{color_hex}}) showing "
            "{{material}} texture: {{texture_description}}. Focus on {{logo_back}}. "
            "Background: {{background}}. Lighting: {{lighting}}. {{quality}}"
        ),
    },
}


def merge_product_json(original: Optional[Dict[str, Any]], overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Apply user corrections to an AI-analyzed product specification"""
    if not overrides:
        return copy.deepcopy(original or {})
    return merge(original or {}, overrides)


def merge_da_json(original: Optional[Dict[str, Any]], overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Apply per-generation tweaks to a DA preset configuration"""
    if not overrides:
        return copy.deepcopy(original or {})
    return merge(original or {}, overrides)


def _compact_numbers(value: Any) -> Any:
    """Integral floats as ints, the way JSON.stringify prints them"""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {key: _compact_numbers(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_compact_numbers(item) for item in value]
    return value


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(_compact_numbers(value))
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return ", ".join(value)
    return json.dumps(_compact_numbers(value), ensure_ascii=False, separators=(",", ":"))


def build(template: str, variables: Dict[str, Any]) -> str:
    """
    Substitute {{key}} placeholders.

    Strings, numbers and booleans are inserted as text, arrays of strings as a
    comma-joined list, anything else as JSON. Placeholders with no matching
    variable are left untouched.

    Example:
        build("Color: {{color}}, Tags: {{tags}}", {"color": "red", "tags": ["a", "b"]})
        -> "Color: red, Tags: a, b"
    """
    def replace(match):
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        return _stringify(variables[key])

    return PLACEHOLDER_PATTERN.sub(replace, template).strip()


def clean(text: str) -> str:
    """Collapse whitespace runs to a single space and trim"""
    return re.sub(r'\s+', ' ', text or '').strip()


def find_unresolved_placeholders(text: str) -> List[str]:
    """Names of placeholders still present in text"""
    return PLACEHOLDER_PATTERN.findall(text or '')


# ==================== VARIABLES ====================

def _describe(value: Any) -> str:
    """Flatten nested spec fragments (logos, details) into readable text"""
    if value is None:
        return ""
    if isinstance(value, dict):
        parts = []
        for key, item in value.items():
            text = _describe(item)
            if text:
                parts.append(f"{key.replace('_', ' ')}: {text}")
        return "; ".join(parts)
    if isinstance(value, list):
        return ", ".join(_describe(item) for item in value if _describe(item))
    return str(value)


def _logo(value: Any) -> str:
    if isinstance(value, dict):
        parts = [value.get("type"), value.get("color"), value.get("position"), value.get("size")]
        return ", ".join(str(part) for part in parts if part)
    return _describe(value)


def product_variables(product_json: Dict[str, Any]) -> Dict[str, Any]:
    """Template variables derived from a product specification"""
    spec = product_json or {}
    return {
        "product_type": spec.get("product_type") or "garment",
        "product_name": spec.get("product_name") or "",
        "color_name": spec.get("color_name") or "",
        "color_hex": spec.get("color_hex") or "",
        "material": spec.get("material") or "",
        "texture_description": spec.get("texture_description") or "",
        "details": _describe(spec.get("details")),
        "logo_front": _logo(spec.get("logo_front")) or "no visible logo",
        "logo_back": _logo(spec.get("logo_back")) or "no visible logo",
        "additional_details": [str(item) for item in spec.get("additional_details") or []],
    }


def da_variables(da_json: Dict[str, Any]) -> Dict[str, Any]:
    """Template variables derived from a DA specification"""
    da = da_json or {}
    background = da.get("background") or {}
    floor = da.get("floor") or {}
    props = da.get("props") or {}
    styling = da.get("styling") or {}
    lighting = da.get("lighting") or {}

    return {
        "da_name": da.get("da_name") or "",
        "background": clean(f"{background.get('type', '')} {background.get('hex', '')}"),
        "background_type": background.get("type", ""),
        "background_hex": background.get("hex", ""),
        "floor": clean(f"{floor.get('type', '')} {floor.get('hex', '')}"),
        "floor_type": floor.get("type", ""),
        "floor_hex": floor.get("hex", ""),
        "props_left": [str(item) for item in props.get("left_side") or []] or "none",
        "props_right": [str(item) for item in props.get("right_side") or []] or "none",
        "pants": styling.get("pants", ""),
        "footwear": styling.get("footwear", ""),
        "lighting": clean(f"{lighting.get('type', '')}, {lighting.get('temperature', '')}").strip(", "),
        "mood": da.get("mood", ""),
        "quality": da.get("quality", ""),
    }


def build_merged_prompts(
    product_json: Dict[str, Any],
    da_json: Dict[str, Any],
    aspect_ratio: str,
    resolution: str,
    templates: Optional[Dict[str, str]] = None
) -> Dict[str, Dict[str, Any]]:
    """
    Build one merged prompt object per visual slot.

    Args:
        product_json: Final product specification
        da_json: Final DA specification
        aspect_ratio: Output aspect ratio for every slot
        resolution: Output resolution for every slot
        templates: Optional per-slot template overrides (collection level)

    Returns:
        Ordered mapping slot -> merged prompt object
    """
    variables = {**product_variables(product_json), **da_variables(da_json)}
    templates = templates or {}
    merged = {}

    for position, slot in enumerate(VISUAL_SLOTS, start=1):
        definition = SLOT_DEFINITIONS[slot]
        template = templates.get(slot) or definition["template"]
        prompt = clean(build(template, variables))

        merged[slot] = {
            "visual_id": f"visual_{position}_{slot}",
            "type": slot,
            "shot_type": definition["shot_type"],
            "model_type": definition["model_type"],
            "display_name": definition["display_name"],
            "prompt": prompt,
            "negative_prompt": NEGATIVE_PROMPT,
            "output": {"resolution": resolution, "aspect_ratio": aspect_ratio},
            "camera": copy.deepcopy(definition["camera"]),
            "editable": True,
            "last_edited_at": None,
        }

    logger.info(f"Built merged prompts for {len(merged)} slots (DA: {variables['da_name'] or 'custom'})")
    return merged
