"""
Snapshot comparison and merging.

values_equal() tolerates float noise introduced by a store round-trip
(|a - b| < 0.01) and compares lists and objects structurally.
"""

from __future__ import annotations

from typing import Any

NUMERIC_TOLERANCE = 0.01


def values_equal(a: Any, b: Any) -> bool:
    """Structural equality with numeric tolerance."""
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if a == b:
        return True
    if a is None or b is None:
        return False

    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return abs(a - b) < NUMERIC_TOLERANCE

    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))

    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(values_equal(a[k], b[k]) for k in a)

    return False


def diff_fields(
    server: dict[str, Any] | None,
    client: dict[str, Any] | None,
) -> list[str]:
    """Top-level keys whose values differ between two snapshots.

    A snapshot that is None (record absent) differs from any present one;
    the result is then every key of the present snapshot, or ["*"] when it
    has none.
    """
    if server is None and client is None:
        return []
    if server is None or client is None:
        present = server if server is not None else client
        return sorted(present) or ["*"]

    return sorted(
        key
        for key in set(server) | set(client)
        if key not in server or key not in client or not values_equal(server[key], client[key])
    )


def merge_snapshots(
    server: dict[str, Any] | None,
    client: dict[str, Any] | None,
) -> dict[str, Any]:
    """Field union of two snapshots; the client value wins on shared keys.

    Example:
        >>> merge_snapshots({"a": 1, "b": 2}, {"b": 5, "c": 9})
        {'a': 1, 'b': 5, 'c': 9}
    """
    merged = dict(server or {})
    merged.update(client or {})
    return merged
