"""Deep merge for JSON-like trees (dicts, lists, scalars)"""
import copy
from typing import Any


def merge(base: Any, overrides: Any) -> Any:
    """
    Deep-merge overrides onto a deep clone of base.

    Nested objects recurse; scalars and arrays in overrides replace the base
    value wholesale; keys missing from base are added. Neither argument is
    mutated.

    Example:
        merge({"props": ["a", "b"]}, {"props": ["c"]}) -> {"props": ["c"]}
    """
    if overrides is None:
        return copy.deepcopy(base)
    if not isinstance(base, dict) or not isinstance(overrides, dict):
        return copy.deepcopy(overrides)

    result = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result
