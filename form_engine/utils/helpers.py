"""
Utility helpers for the counseling form engine

Small pure functions shared across modules: ID generation, numeric
coercion, required-value checks and dotted-path navigation.
"""

import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Tuple


def generate_record_id(short=True):
    """
    Generate unique record identifier

    Args:
        short (bool): If True, return 8-char hex. If False, return full UUID.

    Returns:
        str: Record ID

    Examples:
        >>> generate_record_id()
        'a3f7e2b9'
    """
    full_id = uuid.uuid4().hex
    return full_id[:8] if short else full_id


def utc_timestamp() -> str:
    """ISO 8601 timestamp in UTC"""
    return datetime.now(timezone.utc).isoformat()


def to_number(value: Any) -> float:
    """
    Coerce a field value to float for arithmetic.

    Missing or unparseable values become 0.0, never an error. Strings may
    carry thousands separators ("1,200") and surrounding whitespace.

    Examples:
        >>> to_number('1,200.50')
        1200.5
        >>> to_number('')
        0.0
        >>> to_number(None)
        0.0
        >>> to_number('abc')
        0.0
    """
    if value is None:
        return 0.0

    if isinstance(value, bool):
        return 1.0 if value else 0.0

    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip().replace(',', '')
        if not text:
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return 0.0
    else:
        return 0.0

    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def is_number(value: Any) -> bool:
    """True for int/float values (bool excluded)"""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def values_equal(left: Any, right: Any, epsilon: float) -> bool:
    """
    Compare two field values, numbers within epsilon.

    Used as the propagation stop condition so floating-point jitter from
    12x / 12 conversions never counts as a change.
    """
    if is_number(left) and is_number(right):
        return abs(float(left) - float(right)) <= epsilon
    return left == right


def is_valid_value(value: Any) -> bool:
    """
    Check whether a required field holds a usable value.

    Rules:
    - None is invalid
    - Strings must be non-blank
    - Booleans must be True (e.g. declaration confirmations)
    - Any finite number is valid, including 0
    """
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (int, float)):
        return not (math.isnan(value) or math.isinf(value))
    return bool(value)


def split_path(path: str) -> Tuple[str, ...]:
    """Split a dotted path, rejecting empty segments"""
    parts = tuple(path.split('.'))
    if not path or any(not part for part in parts):
        raise ValueError(f"Invalid form path: {path!r}")
    return parts


def section_of(path: str) -> str:
    """First segment of a dotted path is its owning section key"""
    return split_path(path)[0]


def get_nested(data: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Read a dotted path from a nested dict"""
    container = data
    parts = split_path(path)
    for part in parts[:-1]:
        if not isinstance(container, dict) or part not in container:
            return default
        container = container[part]
    if not isinstance(container, dict):
        return default
    return container.get(parts[-1], default)


def set_nested(data: Dict[str, Any], path: str, value: Any) -> None:
    """Write a dotted path into a nested dict, creating containers"""
    parts = split_path(path)
    container = data
    for part in parts[:-1]:
        if not isinstance(container.get(part), dict):
            container[part] = {}
        container = container[part]
    container[parts[-1]] = value


def iter_leaves(data: Dict[str, Any], prefix: str = '') -> Iterator[Tuple[str, Any]]:
    """Yield (dotted_path, value) for every non-dict leaf"""
    for key, value in data.items():
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            yield from iter_leaves(value, path)
        else:
            yield path, value
