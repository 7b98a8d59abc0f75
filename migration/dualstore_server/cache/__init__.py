"""
Cache module for DualStore - user-scoped read cache.

This module handles:
- Deterministic per-user cache keys and scope registries
- Single-flight get-or-load with HIT/MISS/BYPASSED reporting
- Scope invalidation driven by mutation kinds
- Backend connection lifecycle with a circuit breaker
"""

from .backend import CacheBackend, InMemoryCacheBackend, RedisCacheBackend
from .connection import CacheConnectionManager
from .keys import build_user_scoped_cache_key, canonicalize_query, parse_key, registry_key
from .layer import CacheResult, CacheStatus, ReadCache
from .scopes import CACHE_TTL_SECONDS, CacheScope, MutationKind, scopes_for, ttl_for

__all__ = [
    "CACHE_TTL_SECONDS",
    "CacheBackend",
    "CacheConnectionManager",
    "CacheResult",
    "CacheScope",
    "CacheStatus",
    "InMemoryCacheBackend",
    "MutationKind",
    "ReadCache",
    "RedisCacheBackend",
    "build_user_scoped_cache_key",
    "canonicalize_query",
    "parse_key",
    "registry_key",
    "scopes_for",
    "ttl_for",
]
