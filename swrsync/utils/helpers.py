"""
Utility helpers for safe data handling and nested state access.
"""
from typing import Any, Sequence


def safe_str(value: Any, default: str = "") -> str:
    """
    Safely convert value to string, handling None.

    Args:
        value: Any value to convert
        default: Default string if value is None

    Returns:
        String representation or default
    """
    if value is None:
        return default
    return str(value)


def safe_lower(value: Any) -> str:
    """
    Safely lowercase a value, handling None.

    Args:
        value: Any value to lowercase

    Returns:
        Lowercased string or empty string if None
    """
    if value is None:
        return ""
    return str(value).lower()


def get_in(data: Any, path: Sequence[str], default: Any = None) -> Any:
    """
    Read a nested value from dicts.

    Args:
        data: Root object
        path: Keys to follow; an empty path returns data itself
        default: Returned when any step is missing

    Returns:
        The nested value or default
    """
    current = data
    for part in path:
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def set_in(data: Any, path: Sequence[str], value: Any) -> Any:
    """
    Return a copy of data with the value at path replaced.

    Intermediate dicts are copied, never mutated; missing ones are created.
    An empty path returns value.
    """
    if not path:
        return value
    head, rest = path[0], path[1:]
    base = dict(data) if isinstance(data, dict) else {}
    base[head] = set_in(base.get(head), rest, value)
    return base
