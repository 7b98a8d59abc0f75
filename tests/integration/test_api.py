"""
Integration tests for the HTTP API.

Runs the FastAPI app through TestClient against in-memory record stores,
an in-memory cache backend and a SQLite control database.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from migration.dualstore_server.api import HttpSettings, clamp_limit, create_app, parse_filter_value
from migration.dualstore_server.cache import InMemoryCacheBackend
from migration.dualstore_server.config import (
    ModeConfig,
    ServerConfig,
    StorageConfig,
    StoreDriver,
    WriteMode,
)
from migration.dualstore_server.errors import TerminalStoreError, TransientStoreError
from migration.dualstore_server.service import DualStoreService
from migration.dualstore_server.stores import InMemoryRecordStore, StorePair

SECRET = "s3cret"
AUTH = {"Authorization": f"Bearer {SECRET}"}
OPERATOR_TOKEN = "op-token"
OPS = {"Authorization": f"Bearer {OPERATOR_TOKEN}"}
USER = {"X-User-ID": "u1"}


@pytest.fixture
def service(data_dir):
    config = ServerConfig(
        modes=ModeConfig(write_mode=WriteMode.DUAL),
        storage=StorageConfig(driver=StoreDriver.MEMORY, data_dir=data_dir, wal_mode=False),
    )
    stores = StorePair(legacy=InMemoryRecordStore("legacy"), target=InMemoryRecordStore("target"))
    backend = InMemoryCacheBackend()
    return DualStoreService(config, stores=stores, cache_backend_factory=lambda: backend)


@pytest.fixture
def client(service):
    app = create_app(service, HttpSettings(outbox_cron_secret=SECRET, operator_token=OPERATOR_TOKEN))
    with TestClient(app) as test_client:
        yield test_client


def put_expense(client, record_id, payload, user="u1", **extra):
    return client.put(
        f"/api/v1/records/expenses/{record_id}",
        json={"payload": payload, "mutation": "expense", **extra},
        headers={"X-User-ID": user},
    )


class TestClampLimit:
    """Tests for flush limit parsing."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            (None, 100),
            ("", 100),
            ("abc", 100),
            ("25", 25),
            ("12abc", 12),
            ("0", 1),
            ("-5", 1),
            ("100000", 500),
            (" 7", 7),
        ],
    )
    def test_clamp(self, raw, expected):
        assert clamp_limit(raw) == expected


class TestParseFilterValue:
    """Tests for query-string filter typing."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("5", 5),
            ("2.5", 2.5),
            ("true", True),
            ("null", None),
            ('"5"', "5"),
            ("g1", "g1"),
            ("[1]", "[1]"),
            ("", ""),
        ],
    )
    def test_parse(self, raw, expected):
        value = parse_filter_value(raw)
        assert value == expected
        assert type(value) is type(expected)


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["write_mode"] == "dual"
        assert body["outbox"]["pending"] == 0


class TestOutboxAuth:
    """Every auth failure is the same 401."""

    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"Authorization": "Bearer wrong"},
            {"Authorization": f"Basic {SECRET}"},
            {"Authorization": "Bearer "},
            {"Authorization": SECRET},
        ],
    )
    def test_rejected(self, client, headers):
        response = client.post("/api/internal/outbox/flush", headers=headers)
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_no_secret_configured(self, service, monkeypatch):
        monkeypatch.delenv("OUTBOX_CRON_SECRET", raising=False)
        monkeypatch.delenv("CRON_SECRET", raising=False)
        app = create_app(service, HttpSettings())
        with TestClient(app) as client:
            response = client.post("/api/internal/outbox/flush", headers=AUTH)
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_failed_and_requeue_require_auth(self, client):
        assert client.get("/api/internal/outbox/failed").status_code == 401
        assert client.post("/api/internal/outbox/abc/requeue").status_code == 401


class TestFlush:
    """Tests for the flush endpoint."""

    def test_flush_mirrors_writes(self, client, service):
        put_expense(client, "e1", {"amount": 10})
        put_expense(client, "e2", {"amount": 20})

        response = client.post("/api/internal/outbox/flush", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["drained"] == 2
        assert body["succeeded"] == 2
        assert set(service.stores.target.snapshot("expenses")) == {"e1", "e2"}

    def test_flush_get_with_limit(self, client):
        for i in range(3):
            put_expense(client, f"e{i}", {"amount": i})

        response = client.get("/api/internal/outbox/flush?limit=2", headers=AUTH)
        assert response.json()["drained"] == 2

        response = client.get("/api/internal/outbox/flush?limit=abc", headers=AUTH)
        assert response.json()["drained"] == 1

    def test_flush_limit_zero_clamped_to_one(self, client):
        put_expense(client, "e1", {"amount": 1})
        put_expense(client, "e2", {"amount": 2})

        response = client.post("/api/internal/outbox/flush?limit=0", headers=AUTH)
        assert response.json()["drained"] == 1


class TestFailedEntries:
    """Tests for failed listing and requeue."""

    def test_failed_then_requeue(self, client, service):
        put_expense(client, "e1", {"amount": 10})
        service.stores.target.inject_failure(TerminalStoreError("rejected", store="target"))
        client.post("/api/internal/outbox/flush", headers=AUTH)

        response = client.get("/api/internal/outbox/failed", headers=AUTH)
        body = response.json()
        assert body["count"] == 1
        entry = body["entries"][0]
        assert entry["status"] == "failed"
        assert entry["last_error"] == "rejected"

        response = client.post(f"/api/internal/outbox/{entry['idempotency_key']}/requeue", headers=AUTH)
        assert response.status_code == 200
        assert response.json()["status"] == "pending"

        response = client.post("/api/internal/outbox/flush", headers=AUTH)
        assert response.json()["succeeded"] == 1

    def test_requeue_unknown(self, client):
        response = client.post("/api/internal/outbox/nope/requeue", headers=AUTH)
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestConflicts:
    """Tests for conflict listing and resolution."""

    @pytest.fixture
    def conflict_id(self, client, service):
        async def seed():
            await service.stores.legacy.upsert("expenses", "e1", {"a": 1, "b": 2})
            await service.stores.target.upsert("expenses", "e1", {"b": 5, "c": 9})
            record, _ = await service.ledger.detect(
                "expenses",
                "e1",
                await service.stores.legacy.get("expenses", "e1"),
                await service.stores.target.get("expenses", "e1"),
            )
            return record.id

        return asyncio.run(seed())

    @pytest.mark.parametrize(
        "headers",
        [{}, AUTH, {"Authorization": "Bearer wrong"}, {"X-Actor": "user:ops"}],
    )
    def test_operator_token_required(self, client, service, conflict_id, headers):
        calls_before = service.stores.target.call_count

        listed = client.get("/api/v1/conflicts", headers=headers)
        resolved = client.post(
            f"/api/v1/conflicts/{conflict_id}/resolve", json={"resolution": "merge"}, headers=headers
        )

        assert listed.status_code == 401
        assert resolved.status_code == 401
        assert resolved.json() == {"error": "Unauthorized"}
        assert service.stores.target.call_count == calls_before

    def test_no_operator_token_configured(self, service, monkeypatch):
        monkeypatch.delenv("DUALSTORE_OPERATOR_TOKEN", raising=False)
        app = create_app(service, HttpSettings(outbox_cron_secret=SECRET))
        with TestClient(app) as client:
            response = client.get("/api/v1/conflicts", headers=OPS)
        assert response.status_code == 401

    def test_list(self, client, conflict_id):
        response = client.get("/api/v1/conflicts", headers=OPS)
        body = response.json()
        assert body["count"] == 1
        assert body["conflicts"][0]["id"] == conflict_id
        assert body["conflicts"][0]["diff_fields"] == ["a", "b", "c"]

        assert client.get("/api/v1/conflicts?entity_type=groups", headers=OPS).json()["count"] == 0

    def test_resolve_merge(self, client, service, conflict_id):
        response = client.post(
            f"/api/v1/conflicts/{conflict_id}/resolve",
            json={"resolution": "merge"},
            headers={**OPS, "X-Actor": "user:ops"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Conflict resolved successfully"
        assert body["conflict"]["status"] == "resolved"
        assert body["conflict"]["resolved_by"] == "user:ops"

        expected = {"id": "e1", "a": 1, "b": 5, "c": 9}
        assert service.stores.legacy.snapshot("expenses")["e1"] == expected
        assert service.stores.target.snapshot("expenses")["e1"] == expected

    def test_default_actor(self, client, conflict_id):
        response = client.post(
            f"/api/v1/conflicts/{conflict_id}/resolve", json={"resolution": "server-wins"}, headers=OPS
        )
        assert response.json()["conflict"]["resolved_by"] == "api:anonymous"

    @pytest.mark.parametrize("body", [{"resolution": "invalid"}, {"resolution": None}, {}, None])
    def test_invalid_resolution(self, client, service, conflict_id, body):
        calls_before = service.stores.legacy.call_count
        if body is None:
            response = client.post(f"/api/v1/conflicts/{conflict_id}/resolve", headers=OPS)
        else:
            response = client.post(
                f"/api/v1/conflicts/{conflict_id}/resolve", json=body, headers=OPS
            )

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert service.stores.legacy.call_count == calls_before

    def test_unknown_conflict(self, client):
        response = client.post(
            "/api/v1/conflicts/missing/resolve", json={"resolution": "merge"}, headers=OPS
        )
        assert response.status_code == 404

    def test_resolve_twice(self, client, conflict_id):
        url = f"/api/v1/conflicts/{conflict_id}/resolve"
        assert client.post(url, json={"resolution": "merge"}, headers=OPS).status_code == 200
        assert client.post(url, json={"resolution": "merge"}, headers=OPS).status_code == 404

    def test_store_failure_leaves_conflict_open(self, client, service, conflict_id):
        service.stores.target.inject_failure(TransientStoreError("target down", store="target"))

        response = client.post(
            f"/api/v1/conflicts/{conflict_id}/resolve", json={"resolution": "merge"}, headers=OPS
        )

        assert response.status_code == 503
        assert client.get("/api/v1/conflicts", headers=OPS).json()["count"] == 1


class TestRecords:
    """Tests for cached record reads and invalidating writes."""

    def test_put_and_get(self, client):
        response = put_expense(client, "e1", {"amount": 10})
        assert response.status_code == 200
        assert response.json()["mirrored"] is True

        response = client.get("/api/v1/records/expenses/e1", headers=USER)
        assert response.status_code == 200
        assert response.json() == {"id": "e1", "amount": 10}
        assert response.headers["X-Cache-Status"] == "MISS"
        assert response.headers["Server-Timing"].startswith('cache;desc="MISS"')

        response = client.get("/api/v1/records/expenses/e1", headers=USER)
        assert response.headers["X-Cache-Status"] == "HIT"

    def test_write_invalidates_affected_users(self, client):
        put_expense(client, "e1", {"amount": 10})
        for user in ("u1", "u2", "u3"):
            client.get("/api/v1/records/expenses/e1", headers={"X-User-ID": user})

        put_expense(client, "e1", {"amount": 15}, user="u1", affected_user_ids=["u2"])

        def read(user):
            return client.get("/api/v1/records/expenses/e1", headers={"X-User-ID": user})

        assert read("u1").headers["X-Cache-Status"] == "MISS"
        assert read("u2").json()["amount"] == 15
        stale = read("u3")
        assert stale.headers["X-Cache-Status"] == "HIT"
        assert stale.json()["amount"] == 10

    def test_list_with_filters(self, client):
        put_expense(client, "e1", {"group": "g1"})
        put_expense(client, "e2", {"group": "g2"})

        response = client.get("/api/v1/records/expenses?group=g1", headers=USER)

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["items"][0]["id"] == "e1"
        assert response.headers["X-Cache-Status"] == "MISS"

    def test_list_with_numeric_filter(self, client):
        put_expense(client, "e1", {"amount": 5})
        put_expense(client, "e2", {"amount": 7})

        response = client.get("/api/v1/records/expenses?amount=5", headers=USER)

        assert [item["id"] for item in response.json()["items"]] == ["e1"]

    def test_delete(self, client, service):
        put_expense(client, "e1", {"amount": 10})

        response = client.delete(
            "/api/v1/records/expenses/e1?mutation=expense&affected_user_id=u2", headers=USER
        )

        assert response.status_code == 200
        assert response.json()["changed"] is True
        assert client.get("/api/v1/records/expenses/e1", headers=USER).status_code == 404

    def test_missing_record(self, client):
        response = client.get("/api/v1/records/expenses/nope", headers=USER)
        assert response.status_code == 404

    def test_missing_user_header(self, client):
        response = client.get("/api/v1/records/expenses/e1")
        assert response.status_code == 400
        assert response.json()["details"]["field"] == "X-User-ID"

    def test_unknown_mutation_kind(self, client, service):
        response = client.put(
            "/api/v1/records/expenses/e1",
            json={"payload": {"amount": 1}, "mutation": "payment"},
            headers=USER,
        )
        assert response.status_code == 400
        assert "e1" not in service.stores.legacy.snapshot("expenses")

    def test_primary_failure(self, client, service):
        service.stores.legacy.inject_failure(TransientStoreError("legacy down", store="legacy"))
        response = put_expense(client, "e1", {"amount": 1})
        assert response.status_code == 503
        assert response.json()["code"] == "TRANSIENT_STORE_ERROR"
