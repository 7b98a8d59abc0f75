"""
Unit tests for mode routing and shadow comparison.

Tests cover:
- Read routing per backend mode
- Shadow comparison into the conflict ledger
- Dual-write mirroring through the outbox
- Primary failures and enqueue gaps
"""

import logging
import os

import pytest

from migration.dualstore_server.alerts import OUTBOX_ENQUEUE_GAP
from migration.dualstore_server.config import (
    BackendMode,
    ModeConfig,
    ShadowConfig,
    StoreRole,
    WriteMode,
)
from migration.dualstore_server.conflicts import ConflictLedger
from migration.dualstore_server.errors import TransientStoreError, ValidationError
from migration.dualstore_server.outbox import OutboxOperation, OutboxProducer, OutboxStatus, OutboxStore
from migration.dualstore_server.routing import (
    ModeRouter,
    ReadDescriptor,
    ShadowComparator,
    WriteDescriptor,
)


@pytest.fixture
def outbox(data_dir, clock):
    return OutboxStore(os.path.join(data_dir, "control.db"), wal_mode=False, clock=clock)


@pytest.fixture
def ledger(data_dir):
    return ConflictLedger(os.path.join(data_dir, "control.db"), wal_mode=False)


@pytest.fixture
def make_router(stores, outbox, ledger, alert_sink):
    def _make(backend_mode="legacy", write_mode="single", shadow_config=None, producer=None):
        modes = ModeConfig(backend_mode=BackendMode(backend_mode), write_mode=WriteMode(write_mode))
        comparator = ShadowComparator(ledger, shadow_config or ShadowConfig())
        return ModeRouter(
            modes,
            stores,
            producer or OutboxProducer(outbox),
            comparator=comparator,
            alert_sink=alert_sink,
        )

    return _make


class FailingProducer:
    """Producer whose outbox is unreachable."""

    async def enqueue_mirror(self, *args, **kwargs):
        raise TransientStoreError("outbox: database is locked", store="outbox")


class TestReadRouting:
    """Tests for ModeRouter.read."""

    @pytest.fixture(autouse=True)
    async def seed(self, legacy, target):
        await legacy.upsert("expenses", "e1", {"amount": 10})
        await target.upsert("expenses", "e1", {"amount": 99})

    @pytest.mark.asyncio
    async def test_legacy_mode_reads_legacy(self, make_router):
        router = make_router("legacy")
        record = await router.read(ReadDescriptor("expenses", record_id="e1"))
        assert record["amount"] == 10

    @pytest.mark.asyncio
    async def test_target_mode_reads_target(self, make_router, legacy):
        router = make_router("target")
        record = await router.read(ReadDescriptor("expenses", record_id="e1"))
        assert record["amount"] == 99
        assert legacy.call_count == 1  # only the seed write

    @pytest.mark.asyncio
    async def test_query(self, make_router, legacy):
        await legacy.upsert("expenses", "e2", {"amount": 20})
        router = make_router("legacy")

        records = await router.read(ReadDescriptor("expenses", filters={"amount": 20}))
        assert [r["id"] for r in records] == ["e2"]

    @pytest.mark.asyncio
    async def test_legacy_mode_schedules_no_comparison(self, make_router, target):
        router = make_router("legacy")
        await router.read(ReadDescriptor("expenses", record_id="e1"))
        assert router.comparator.stats["scheduled"] == 0
        assert target.call_count == 1


class TestShadowRead:
    """Tests for shadow comparison."""

    @pytest.mark.asyncio
    async def test_mismatch_recorded_in_ledger(self, make_router, legacy, target, ledger):
        await legacy.upsert("expenses", "e1", {"amount": 10})
        await target.upsert("expenses", "e1", {"amount": 12})
        router = make_router("shadow")

        record = await router.read(ReadDescriptor("expenses", record_id="e1"))
        assert record["amount"] == 10

        await router.comparator.wait_idle()
        conflict = await ledger.find_open("expenses", "e1")
        assert conflict is not None
        assert conflict.server_snapshot == {"id": "e1", "amount": 10}
        assert conflict.client_snapshot == {"id": "e1", "amount": 12}
        assert conflict.diff_fields == ["amount"]

    @pytest.mark.asyncio
    async def test_matching_records_not_recorded(self, make_router, legacy, target, ledger):
        await legacy.upsert("expenses", "e1", {"amount": 10.0})
        await target.upsert("expenses", "e1", {"amount": 10.004})
        router = make_router("shadow")

        await router.read(ReadDescriptor("expenses", record_id="e1"))
        await router.comparator.wait_idle()

        assert await ledger.count_open() == 0
        assert router.comparator.stats["mismatches"] == 0

    @pytest.mark.asyncio
    async def test_missing_in_target_recorded(self, make_router, legacy, ledger):
        await legacy.upsert("expenses", "e1", {"amount": 10})
        router = make_router("shadow")

        await router.read(ReadDescriptor("expenses", record_id="e1"))
        await router.comparator.wait_idle()

        conflict = await ledger.find_open("expenses", "e1")
        assert conflict.client_snapshot is None

    @pytest.mark.asyncio
    async def test_caller_result_isolated_from_comparison(self, make_router, legacy, target):
        await legacy.upsert("expenses", "e1", {"tags": ["a"]})
        await target.upsert("expenses", "e1", {"tags": ["a"]})
        router = make_router("shadow")

        record = await router.read(ReadDescriptor("expenses", record_id="e1"))
        record["tags"].append("mutated by caller")
        await router.comparator.wait_idle()

        assert router.comparator.stats["mismatches"] == 0

    @pytest.mark.asyncio
    async def test_timeout_goes_to_error_queue(self, make_router, legacy, target, ledger):
        await legacy.upsert("expenses", "e1", {"amount": 10})
        target.set_delay(0.5)
        router = make_router("shadow", shadow_config=ShadowConfig(compare_timeout_ms=20))

        record = await router.read(ReadDescriptor("expenses", record_id="e1"))
        assert record["amount"] == 10

        await router.comparator.wait_idle()
        errors = router.comparator.drain_errors()
        assert len(errors) == 1
        assert "timed out" in errors[0].error
        assert errors[0].descriptor.record_id == "e1"
        assert await ledger.count_open() == 0

    @pytest.mark.asyncio
    async def test_error_queue_drops_oldest(self, make_router, legacy, target):
        await legacy.upsert("expenses", "e1", {"amount": 10})
        target.inject_failure(TransientStoreError("target down", store="target"), times=3)
        router = make_router("shadow", shadow_config=ShadowConfig(error_queue_size=2))

        for _ in range(3):
            await router.read(ReadDescriptor("expenses", record_id="e1"))
            await router.comparator.wait_idle()

        assert len(router.comparator.drain_errors()) == 2
        assert router.comparator.stats["errors"] == 3

    @pytest.mark.asyncio
    async def test_count_mismatch_logged(self, make_router, legacy, target, ledger, caplog):
        await legacy.upsert("expenses", "e1", {"amount": 10})
        await legacy.upsert("expenses", "e2", {"amount": 20})
        await target.upsert("expenses", "e1", {"amount": 10})
        router = make_router("shadow")

        with caplog.at_level(logging.WARNING):
            records = await router.read(ReadDescriptor("expenses"))
            await router.comparator.wait_idle()

        assert len(records) == 2
        assert any(r.getMessage() == "Shadow read count mismatch" for r in caplog.records)
        assert await ledger.count_open() == 0

    @pytest.mark.asyncio
    async def test_list_compares_shared_records(self, make_router, legacy, target, ledger):
        await legacy.upsert("expenses", "e1", {"amount": 10})
        await target.upsert("expenses", "e1", {"amount": 11})
        router = make_router("shadow")

        await router.read(ReadDescriptor("expenses"))
        await router.comparator.wait_idle()

        assert (await ledger.find_open("expenses", "e1")) is not None

    @pytest.mark.asyncio
    async def test_excess_comparisons_dropped(self, make_router, legacy, target):
        await legacy.upsert("expenses", "e1", {"amount": 10})
        target.set_delay(0.05)
        router = make_router("shadow", shadow_config=ShadowConfig(max_in_flight=1))

        await router.read(ReadDescriptor("expenses", record_id="e1"))
        await router.read(ReadDescriptor("expenses", record_id="e1"))

        assert router.comparator.stats["dropped"] == 1
        assert router.comparator.in_flight == 1
        await router.comparator.wait_idle()
        assert router.comparator.in_flight == 0

    @pytest.mark.asyncio
    async def test_cancel_all(self, make_router, legacy, target):
        await legacy.upsert("expenses", "e1", {"amount": 10})
        target.set_delay(10)
        router = make_router("shadow")

        await router.read(ReadDescriptor("expenses", record_id="e1"))
        assert router.comparator.in_flight == 1

        await router.comparator.cancel_all()
        assert router.comparator.in_flight == 0


class TestWriteRouting:
    """Tests for ModeRouter.write."""

    @pytest.mark.asyncio
    async def test_single_mode_enqueues_nothing(self, make_router, legacy, outbox):
        router = make_router("legacy", "single")

        result = await router.write(WriteDescriptor.upsert("expenses", "e1", {"amount": 5}))

        assert result.changed
        assert not result.mirrored
        assert await legacy.get("expenses", "e1") == {"id": "e1", "amount": 5}
        assert sum((await outbox.count_by_status()).values()) == 0

    @pytest.mark.asyncio
    async def test_dual_write_enqueues_one_entry(self, make_router, target, outbox):
        router = make_router("legacy", "dual")

        result = await router.write(WriteDescriptor.upsert("expenses", "e1", {"amount": 5}))

        assert result.mirrored
        entry = await outbox.get(result.idempotency_key)
        assert entry.destination is StoreRole.TARGET
        assert entry.operation is OutboxOperation.UPSERT
        assert entry.payload == {"id": "e1", "amount": 5}
        # Mirror is asynchronous
        assert await target.get("expenses", "e1") is None

    @pytest.mark.asyncio
    async def test_repeated_write_dedupes(self, make_router, outbox):
        router = make_router("legacy", "dual")
        write = WriteDescriptor.upsert("expenses", "e1", {"amount": 5}, write_version="v1")

        first = await router.write(write)
        second = await router.write(write)

        assert not second.changed
        assert first.idempotency_key == second.idempotency_key
        assert (await outbox.count_by_status())["pending"] == 1

    @pytest.mark.asyncio
    async def test_repeated_noop_writes_share_an_entry(self, make_router, outbox):
        router = make_router("legacy", "dual")
        write = WriteDescriptor.upsert("expenses", "e1", {"amount": 5})

        await router.write(write)
        second = await router.write(write)
        third = await router.write(write)

        assert not third.changed
        assert second.idempotency_key == third.idempotency_key
        assert (await outbox.count_by_status())["pending"] == 2

    @pytest.mark.asyncio
    async def test_recreate_after_delete_is_mirrored(self, make_router, outbox):
        router = make_router("legacy", "dual")
        create = WriteDescriptor.upsert("expenses", "e1", {"amount": 5})

        first = await router.write(create)
        await router.write(WriteDescriptor.delete("expenses", "e1"))
        again = await router.write(create)

        assert again.changed
        assert again.idempotency_key != first.idempotency_key
        assert (await outbox.get(again.idempotency_key)).status is OutboxStatus.PENDING

    @pytest.mark.asyncio
    async def test_target_mode_mirrors_to_legacy(self, make_router, target, outbox):
        router = make_router("target", "dual")

        result = await router.write(WriteDescriptor.delete("expenses", "e1"))

        assert not result.changed
        entry = await outbox.get(result.idempotency_key)
        assert entry.destination is StoreRole.LEGACY
        assert entry.operation is OutboxOperation.DELETE

    @pytest.mark.asyncio
    async def test_primary_failure_propagates(self, make_router, legacy, outbox):
        legacy.inject_failure(TransientStoreError("legacy down", store="legacy"))
        router = make_router("legacy", "dual")

        with pytest.raises(TransientStoreError):
            await router.write(WriteDescriptor.upsert("expenses", "e1", {"amount": 5}))

        assert sum((await outbox.count_by_status()).values()) == 0

    @pytest.mark.asyncio
    async def test_enqueue_failure_reports_gap(self, make_router, legacy, alert_sink):
        router = make_router("legacy", "dual", producer=FailingProducer())

        result = await router.write(WriteDescriptor.upsert("expenses", "e1", {"amount": 5}))

        assert result.changed
        assert result.mirror_gap
        assert not result.mirrored
        assert await legacy.get("expenses", "e1") is not None
        assert alert_sink.events() == [OUTBOX_ENQUEUE_GAP]
        assert alert_sink.alerts[0][1]["record_id"] == "e1"

    @pytest.mark.asyncio
    async def test_missing_payload_rejected(self, make_router, legacy):
        router = make_router("legacy", "dual")

        with pytest.raises(ValidationError):
            await router.write(WriteDescriptor("upsert", "expenses", "e1", None))  # type: ignore[arg-type]

        assert legacy.call_count == 0

    @pytest.mark.asyncio
    async def test_unknown_operation_rejected(self, make_router):
        router = make_router("legacy", "dual")
        with pytest.raises(ValidationError):
            await router.write(WriteDescriptor("patch", "expenses", "e1", {}))  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_write_result_serializes(self, make_router):
        router = make_router("legacy", "dual")
        result = await router.write(WriteDescriptor.upsert("expenses", "e1", {"amount": 5}))
        body = result.to_dict()
        assert body["record_id"] == "e1"
        assert body["mirrored"] is True
        assert body["mirror_gap"] is False


class TestPendingStatus:
    """Mirror entries stay pending until a drain."""

    @pytest.mark.asyncio
    async def test_entry_pending(self, make_router, outbox):
        router = make_router("legacy", "dual")
        result = await router.write(WriteDescriptor.upsert("expenses", "e1", {"amount": 5}))
        assert (await outbox.get(result.idempotency_key)).status is OutboxStatus.PENDING
