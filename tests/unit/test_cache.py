"""
Unit tests for the read cache.

Tests cover:
- Key canonicalization and registry keys
- Mutation scopes and TTLs
- Single-flight loading and HIT/MISS/BYPASSED reporting
- Circuit breaker cooldown
- Targeted invalidation, including loads invalidated in flight
- Reads and invalidations that overlap a cache write
"""

import asyncio

import pytest

from migration.dualstore_server.cache import (
    CacheConnectionManager,
    CacheScope,
    CacheStatus,
    InMemoryCacheBackend,
    MutationKind,
    ReadCache,
    build_user_scoped_cache_key,
    canonicalize_query,
    parse_key,
    registry_key,
    scopes_for,
    ttl_for,
)
from migration.dualstore_server.config import CacheConfig
from migration.dualstore_server.errors import ValidationError
from tests.conftest import FakeMonotonic


@pytest.fixture
def mono():
    return FakeMonotonic()


@pytest.fixture
def backend(mono):
    return InMemoryCacheBackend(clock=mono)


@pytest.fixture
def cache_config():
    return CacheConfig(retry_after_ms=60_000, registry_grace_seconds=60)


@pytest.fixture
def connection(cache_config, backend, mono):
    return CacheConnectionManager(cache_config, lambda: backend, clock=mono)


@pytest.fixture
def cache(connection, cache_config):
    return ReadCache(connection, cache_config)


class Loader:
    """Counting loader with an optional delay."""

    def __init__(self, value, delay=0.0):
        self.value = value
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.value


class GatedBackend(InMemoryCacheBackend):
    """In-memory backend whose set() or index_add() waits for release."""

    def __init__(self, clock, gate="set"):
        super().__init__(clock=clock)
        self.gate = gate
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def _wait(self, method):
        if method == self.gate:
            self.entered.set()
            await self.release.wait()

    async def set(self, key, value, ttl_seconds):
        await self._wait("set")
        await super().set(key, value, ttl_seconds)

    async def index_add(self, index_key, member, ttl_seconds):
        await self._wait("index_add")
        await super().index_add(index_key, member, ttl_seconds)


def gated_cache(backend, cache_config, mono):
    connection = CacheConnectionManager(cache_config, lambda: backend, clock=mono)
    return ReadCache(connection, cache_config)


class TestKeys:
    """Tests for key construction."""

    def test_canonicalize_query(self):
        assert canonicalize_query("?Page=2&limit=20&q=") == "limit=20&page=2"
        assert canonicalize_query({"page": 2, "limit": "20", "q": None}) == "limit=20&page=2"
        assert canonicalize_query({"tag": ["b", "a"]}) == "tag=a&tag=b"
        assert canonicalize_query(None) == ""
        assert canonicalize_query("") == ""

    def test_equivalent_queries_share_a_key(self):
        a = build_user_scoped_cache_key("expenses", "u1", {"page": "2", "limit": 20})
        b = build_user_scoped_cache_key("expenses", "u1", "?limit=20&Page=2&q=")
        assert a == b

    def test_key_format(self):
        key = build_user_scoped_cache_key("expenses", "u1")
        head, digest = key.rsplit(":", 1)
        assert head == "dualstore:v1:expenses:user:u1"
        assert len(digest) == 40

    def test_users_and_scopes_are_isolated(self):
        base = build_user_scoped_cache_key("expenses", "u1", {"page": 1})
        assert base != build_user_scoped_cache_key("expenses", "u2", {"page": 1})
        assert base != build_user_scoped_cache_key("groups", "u1", {"page": 1})
        assert base != build_user_scoped_cache_key("expenses", "u1", {"page": 2})

    def test_enum_scope(self):
        assert build_user_scoped_cache_key(CacheScope.EXPENSES, "u1") == build_user_scoped_cache_key(
            "expenses", "u1"
        )
        assert registry_key(CacheScope.GROUPS, "u1") == "dualstore:v1:reg:groups:u1"

    def test_custom_prefix(self):
        key = build_user_scoped_cache_key("expenses", "u1", prefix="app:v2")
        assert key.startswith("app:v2:expenses:user:u1:")

    @pytest.mark.parametrize("scope", ["", "Expenses", "a:b", "-x"])
    def test_invalid_scope(self, scope):
        with pytest.raises(ValidationError):
            build_user_scoped_cache_key(scope, "u1")

    def test_missing_user(self):
        with pytest.raises(ValidationError):
            build_user_scoped_cache_key("expenses", "")

    def test_parse_key(self):
        key = build_user_scoped_cache_key("friend-details", "auth0:123", {"friend": "u9"})
        assert parse_key(key) == ("friend-details", "auth0:123")
        assert parse_key(registry_key("expenses", "u1")) is None
        assert parse_key("other:v1:expenses:user:u1:abc") is None


class TestScopes:
    """Tests for mutation scopes and TTLs."""

    def test_expense_scopes(self):
        scopes = scopes_for("expense")
        assert CacheScope.EXPENSES in scopes
        assert CacheScope.USER_BALANCE in scopes
        assert CacheScope.SETTLEMENTS not in scopes

    def test_settlement_extends_expense(self):
        assert scopes_for(MutationKind.SETTLEMENT) == scopes_for("expense") | {CacheScope.SETTLEMENTS}

    def test_group_scopes(self):
        scopes = scopes_for("group")
        assert CacheScope.GROUPS in scopes
        assert CacheScope.FRIEND_TRANSACTIONS not in scopes

    def test_unknown_kind(self):
        with pytest.raises(ValidationError) as exc_info:
            scopes_for("payment")
        assert exc_info.value.field_name == "mutation"

    def test_ttls(self):
        assert ttl_for(CacheScope.EXPENSES) == 180
        assert ttl_for("user-balance") == 120
        assert ttl_for("notifications") == 60
        assert ttl_for("profile") == 300
        assert ttl_for("unknown-scope") == 120


class TestReadCache:
    """Tests for get_or_set_json_with_meta."""

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, cache, backend):
        key = cache.key_for("expenses", "u1", {"page": 1})
        loader = Loader({"items": [1, 2]})

        first = await cache.get_or_set_json_with_meta(key, 180, loader)
        second = await cache.get_or_set_json_with_meta(key, 180, loader)

        assert first.status is CacheStatus.MISS
        assert second.status is CacheStatus.HIT
        assert second.data == {"items": [1, 2]}
        assert loader.calls == 1
        assert key in backend.keys()

    @pytest.mark.asyncio
    async def test_get_or_set_json_returns_data(self, cache):
        key = cache.key_for("groups", "u1")
        assert await cache.get_or_set_json(key, 60, Loader([1])) == [1]

    @pytest.mark.asyncio
    async def test_entry_expires(self, cache, mono):
        key = cache.key_for("notifications", "u1")
        loader = Loader({"n": 1})

        await cache.get_or_set_json_with_meta(key, 60, loader)
        mono.advance(61)
        result = await cache.get_or_set_json_with_meta(key, 60, loader)

        assert result.status is CacheStatus.MISS
        assert loader.calls == 2

    @pytest.mark.asyncio
    async def test_single_flight(self, cache, connection):
        await connection.acquire()
        key = cache.key_for("expenses", "u1")
        loader = Loader({"total": 42}, delay=0.05)

        results = await asyncio.gather(
            *(cache.get_or_set_json_with_meta(key, 180, loader) for _ in range(10))
        )

        assert loader.calls == 1
        statuses = [r.status for r in results]
        assert statuses.count(CacheStatus.MISS) == 1
        assert statuses.count(CacheStatus.HIT) == 9
        assert sum(1 for r in results if r.coalesced) == 9
        assert all(r.data == {"total": 42} for r in results)
        assert cache.stats["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_loader_error_propagates_to_all_callers(self, cache, backend, connection):
        await connection.acquire()
        key = cache.key_for("expenses", "u1")

        async def failing():
            await asyncio.sleep(0.01)
            raise RuntimeError("db down")

        results = await asyncio.gather(
            *(cache.get_or_set_json_with_meta(key, 180, failing) for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, RuntimeError) for r in results)
        assert key not in backend.keys()
        assert cache.stats["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_server_timing(self, cache):
        key = cache.key_for("expenses", "u1")
        result = await cache.get_or_set_json_with_meta(key, 180, Loader(1))
        assert result.server_timing().startswith('cache;desc="MISS";dur=')

    @pytest.mark.asyncio
    async def test_registers_key_in_scope_index(self, cache, backend):
        key = cache.key_for("expenses", "u1", {"page": 1})
        await cache.get_or_set_json_with_meta(key, 180, Loader(1))

        assert await backend.index_members(registry_key("expenses", "u1")) == {key}


class TestCircuitBreaker:
    """Tests for degraded operation when the backend is unreachable."""

    @pytest.mark.asyncio
    async def test_bypass_when_unavailable(self, cache, backend, connection):
        backend.set_unavailable()
        key = cache.key_for("expenses", "u1")
        loader = Loader({"v": 1})

        result = await cache.get_or_set_json_with_meta(key, 180, loader)

        assert result.status is CacheStatus.BYPASSED
        assert result.data == {"v": 1}
        assert connection.state == "disabled"

    @pytest.mark.asyncio
    async def test_cooldown_then_reconnect(self, cache, backend, connection, mono):
        backend.set_unavailable()
        key = cache.key_for("expenses", "u1")
        loader = Loader({"v": 1})

        await cache.get_or_set_json_with_meta(key, 180, loader)
        calls_after_failure = backend.call_count

        # Disabled: the backend is not contacted at all
        backend.set_unavailable(False)
        result = await cache.get_or_set_json_with_meta(key, 180, loader)
        assert result.status is CacheStatus.BYPASSED
        assert backend.call_count == calls_after_failure

        mono.advance(61)
        result = await cache.get_or_set_json_with_meta(key, 180, loader)
        assert result.status is CacheStatus.MISS
        assert connection.state == "ready"
        assert loader.calls == 3

    @pytest.mark.asyncio
    async def test_failure_after_connect_trips_breaker(self, cache, backend, connection):
        await connection.acquire()
        backend.set_unavailable()

        result = await cache.get_or_set_json_with_meta(cache.key_for("expenses", "u1"), 180, Loader(1))

        assert result.status is CacheStatus.BYPASSED
        assert connection.stats["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_misconfigured_factory(self, cache_config, mono):
        def factory():
            raise ValueError("bad url")

        connection = CacheConnectionManager(cache_config, factory, clock=mono)
        assert await connection.acquire() is None
        assert connection.state == "disabled"


class TestInvalidation:
    """Tests for invalidate_users_cache."""

    @pytest.mark.asyncio
    async def test_targeted_invalidation(self, cache, backend):
        u1_expenses = cache.key_for("expenses", "u1", {"page": 1})
        u1_expenses_p2 = cache.key_for("expenses", "u1", {"page": 2})
        u1_profile = cache.key_for("profile", "u1")
        u2_expenses = cache.key_for("expenses", "u2")
        for key in (u1_expenses, u1_expenses_p2, u1_profile, u2_expenses):
            await cache.get_or_set_json_with_meta(key, 180, Loader(key))

        deleted = await cache.invalidate_users_cache(["u1"], scopes_for("expense"))

        live = set(backend.keys())
        assert u1_expenses not in live
        assert u1_expenses_p2 not in live
        assert u1_profile in live
        assert u2_expenses in live
        # Two entries plus the expenses index
        assert deleted == 3

    @pytest.mark.asyncio
    async def test_invalidate_several_users(self, cache, backend):
        keys = [cache.key_for("groups", user) for user in ("u1", "u2", "u3")]
        for key in keys:
            await cache.get_or_set_json_with_meta(key, 180, Loader(1))

        await cache.invalidate_users_cache(["u1", "u2", ""], [CacheScope.GROUPS])

        assert set(backend.keys()) == {keys[2]}

    @pytest.mark.asyncio
    async def test_nothing_to_invalidate(self, cache):
        assert await cache.invalidate_users_cache([], scopes_for("expense")) == 0
        assert await cache.invalidate_users_cache(["u1"], []) == 0

    @pytest.mark.asyncio
    async def test_invalidation_while_unavailable(self, cache, backend):
        key = cache.key_for("expenses", "u1")
        await cache.get_or_set_json_with_meta(key, 180, Loader(1))
        backend.set_unavailable()

        assert await cache.invalidate_users_cache(["u1"], ["expenses"]) == 0

    @pytest.mark.asyncio
    async def test_load_invalidated_in_flight_is_not_stored(self, cache, backend, connection):
        await connection.acquire()
        key = cache.key_for("expenses", "u1")
        release = asyncio.Event()

        async def slow_loader():
            await release.wait()
            return {"stale": True}

        task = asyncio.create_task(cache.get_or_set_json_with_meta(key, 180, slow_loader))
        await asyncio.sleep(0)
        await cache.invalidate_users_cache(["u1"], ["expenses"])
        release.set()

        result = await task
        assert result.status is CacheStatus.MISS
        assert result.data == {"stale": True}
        assert key not in backend.keys()

        fresh = await cache.get_or_set_json_with_meta(key, 180, Loader({"stale": False}))
        assert fresh.status is CacheStatus.MISS
        assert fresh.data == {"stale": False}


class TestConcurrentWrites:
    """Tests for reads and invalidations that overlap a cache write."""

    @pytest.mark.asyncio
    async def test_invalidation_during_write_is_honored(self, cache_config, mono):
        backend = GatedBackend(mono, gate="set")
        cache = gated_cache(backend, cache_config, mono)
        key = cache.key_for("expenses", "u1", {"page": 1})

        first = asyncio.create_task(
            cache.get_or_set_json_with_meta(key, 180, Loader({"amount": "old"}))
        )
        await backend.entered.wait()
        await cache.invalidate_users_cache(["u1"], ["expenses"])
        backend.release.set()
        assert (await first).status is CacheStatus.MISS

        assert key not in backend.keys()
        result = await cache.get_or_set_json_with_meta(key, 180, Loader({"amount": "new"}))
        assert result.status is CacheStatus.MISS
        assert result.data == {"amount": "new"}

    @pytest.mark.asyncio
    async def test_stale_value_not_served_before_it_is_dropped(self, cache_config, mono):
        backend = GatedBackend(mono, gate="index_add")
        cache = gated_cache(backend, cache_config, mono)
        key = cache.key_for("expenses", "u1")

        first = asyncio.create_task(
            cache.get_or_set_json_with_meta(key, 180, Loader({"amount": "old"}))
        )
        await backend.entered.wait()
        # The stale value is already in the backend, its index entry is not
        assert key in backend.keys()
        await cache.invalidate_users_cache(["u1"], ["expenses"])

        reader = asyncio.create_task(
            cache.get_or_set_json_with_meta(key, 180, Loader({"amount": "new"}))
        )
        backend.release.set()
        await first
        result = await reader

        assert result.status is CacheStatus.MISS
        assert result.data == {"amount": "new"}

    @pytest.mark.asyncio
    async def test_caller_during_write_joins_the_load(self, cache_config, mono):
        backend = GatedBackend(mono, gate="set")
        cache = gated_cache(backend, cache_config, mono)
        key = cache.key_for("groups", "u1")
        loader = Loader(["g1"])

        first = asyncio.create_task(cache.get_or_set_json_with_meta(key, 180, loader))
        await backend.entered.wait()

        second = await cache.get_or_set_json_with_meta(key, 180, loader)
        backend.release.set()
        await first

        assert loader.calls == 1
        assert second.status is CacheStatus.HIT
        assert second.coalesced
        assert second.data == ["g1"]
        assert cache.stats["in_flight"] == 0


class TestPurge:
    """Tests for purge."""

    @pytest.fixture
    async def seeded(self, cache):
        keys = {
            "u1_expenses": cache.key_for("expenses", "u1"),
            "u2_expenses": cache.key_for("expenses", "u2"),
            "u1_groups": cache.key_for("groups", "u1"),
        }
        for key in keys.values():
            await cache.get_or_set_json_with_meta(key, 180, Loader(1))
        return keys

    @pytest.mark.asyncio
    async def test_purge_one_scope(self, cache, backend, seeded):
        deleted = await cache.purge("expenses")

        # Two entries plus their two indexes
        assert deleted == 4
        assert set(backend.keys()) == {seeded["u1_groups"]}
        assert await backend.index_members(registry_key("groups", "u1")) == {seeded["u1_groups"]}

    @pytest.mark.asyncio
    async def test_purge_everything(self, cache, backend, seeded):
        assert await cache.purge() == 6
        assert backend.keys() == []

    @pytest.mark.asyncio
    async def test_purge_while_unavailable(self, cache, backend, seeded):
        backend.set_unavailable()
        assert await cache.purge(CacheScope.EXPENSES) == 0

    @pytest.mark.asyncio
    async def test_load_purged_in_flight_is_not_stored(self, cache, backend, connection):
        await connection.acquire()
        key = cache.key_for("profile", "u9")
        release = asyncio.Event()

        async def slow_loader():
            await release.wait()
            return {"stale": True}

        task = asyncio.create_task(cache.get_or_set_json_with_meta(key, 180, slow_loader))
        await asyncio.sleep(0)
        await cache.purge("profile")
        release.set()

        await task
        assert key not in backend.keys()
