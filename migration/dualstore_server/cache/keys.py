"""
Cache key construction.

Key format:
    {prefix}:{scope}:user:{user_id}:{sha1(canonical query)}

Registry (scope index) key format:
    {prefix}:reg:{scope}:{user_id}

The query part is canonicalized before hashing so equivalent requests
collapse onto one key: parameter names are lower-cased and stripped, blank
values are dropped and the pairs are sorted.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Mapping
from typing import Any
from urllib.parse import parse_qsl, urlencode

from ..errors import ValidationError

DEFAULT_PREFIX = "dualstore:v1"

_SCOPE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


def canonicalize_query(query: Mapping[str, Any] | str | None) -> str:
    """Canonical form of request parameters.

    Args:
        query: A mapping (values may be lists) or a query string

    Returns:
        Sorted, url-encoded parameter string ("" when empty)

    Example:
        >>> canonicalize_query("?Page=2&limit=20&q=")
        'limit=20&page=2'
    """
    if not query:
        return ""

    if isinstance(query, str):
        raw_pairs = parse_qsl(query.lstrip("?"), keep_blank_values=True)
    else:
        raw_pairs = []
        for name, value in query.items():
            values = value if isinstance(value, (list, tuple)) else [value]
            raw_pairs.extend((name, v) for v in values)

    pairs = []
    for name, value in raw_pairs:
        if value is None:
            continue
        text = str(value).strip()
        if not text:
            continue
        pairs.append((str(name).strip().lower(), text))

    return urlencode(sorted(pairs))


def _check_scope(scope: str) -> None:
    if not _SCOPE.match(scope):
        raise ValidationError(f"Invalid cache scope: {scope!r}", field_name="scope", value=scope)


def build_user_scoped_cache_key(
    scope: str,
    user_id: str,
    query: Mapping[str, Any] | str | None = None,
    prefix: str = DEFAULT_PREFIX,
) -> str:
    """Deterministic, user-scoped cache key.

    Raises:
        ValidationError: If the scope or user id cannot be encoded in a key
    """
    scope = getattr(scope, "value", scope)
    _check_scope(scope)
    if not user_id:
        raise ValidationError("Cache key requires a user id", field_name="user_id")

    digest = hashlib.sha1(canonicalize_query(query).encode("utf-8")).hexdigest()
    return f"{prefix}:{scope}:user:{user_id}:{digest}"


def registry_key(scope: str, user_id: str, prefix: str = DEFAULT_PREFIX) -> str:
    """Key of the set that indexes every cache key of one (scope, user)."""
    scope = getattr(scope, "value", scope)
    return f"{prefix}:reg:{scope}:{user_id}"


def parse_key(key: str, prefix: str = DEFAULT_PREFIX) -> tuple[str, str] | None:
    """Extract (scope, user_id) from a cache key, or None if it is not one."""
    head = f"{prefix}:"
    if not key.startswith(head):
        return None

    scope, sep, rest = key[len(head):].partition(":user:")
    if not sep or not scope or ":" in scope:
        return None

    user_id, sep, digest = rest.rpartition(":")
    if not sep or not user_id or not digest:
        return None
    return scope, user_id
