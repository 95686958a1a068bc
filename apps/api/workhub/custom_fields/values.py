from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from typing import Any


_MISSING = object()


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def is_set(values: Mapping[str, Any], field_id: str) -> bool:
    value = values.get(field_id, _MISSING)
    if value is _MISSING or value is None:
        return False
    if isinstance(value, str) and value == "":
        return False
    if isinstance(value, (list, tuple)) and len(value) == 0:
        return False
    return True


def values_equal(left: Any, right: Any) -> bool:
    """Type-aware equality: booleans never equal numbers, 1 == 1.0, lists compare in order."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if is_number(left) and is_number(right):
        return float(left) == float(right)
    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        if len(left) != len(right):
            return False
        return all(values_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, (list, tuple)) or isinstance(right, (list, tuple)):
        return False
    return left == right


def collection_contains(container: Any, needle: Any) -> bool | None:
    """Membership for list targets, substring for text targets, ``None`` when undefined."""
    if isinstance(container, (list, tuple)):
        return any(values_equal(item, needle) for item in container)
    if isinstance(container, str):
        return isinstance(needle, str) and needle in container
    return None
