from typing import Any, List, Optional
import re


def validate_aspect_ratio(aspect_ratio: str, allowed: List[str]) -> bool:
    """
    Validate aspect ratio against the configured list

    Args:
        aspect_ratio: Ratio like "4:5"
        allowed: Allowed ratios from settings

    Returns:
        True if valid
    """
    return isinstance(aspect_ratio, str) and aspect_ratio in allowed


def validate_resolution(resolution: str, allowed: List[str]) -> bool:
    """Validate resolution token ("1K", "2K", "4K")"""
    return isinstance(resolution, str) and resolution.upper() in allowed


def parse_visual_index(raw: Any) -> Optional[int]:
    """
    Parse visual index from a path parameter

    Returns:
        Non-negative integer or None if the value is not a valid index
    """
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw >= 0 else None
    if isinstance(raw, str) and re.fullmatch(r'\d+', raw.strip()):
        return int(raw.strip())
    return None


def parse_positive_int(raw: Any, default: int, maximum: Optional[int] = None) -> int:
    """
    Parse pagination values, falling back to default on garbage

    Args:
        raw: Query string value
        default: Value used when raw is missing or invalid
        maximum: Upper bound
    """
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    if value < 1:
        return default
    if maximum is not None:
        value = min(value, maximum)
    return value


def sanitize_name(name: Optional[str], max_length: int = 50, fallback: str = "untitled") -> str:
    """
    Sanitize a name for use as an archive path component

    Keeps letters, digits, underscore and hyphen; everything else becomes an
    underscore. Repeated underscores are collapsed and the result is capped.

    Args:
        name: Raw name (collection, product, slot)
        max_length: Maximum length of the result
        fallback: Value used when nothing safe remains

    Returns:
        Safe name
    """
    if not name:
        return fallback
    safe = re.sub(r'[^A-Za-z0-9_-]', '_', name)
    safe = re.sub(r'_+', '_', safe).strip('_')
    safe = safe[:max_length].rstrip('_')
    return safe or fallback
