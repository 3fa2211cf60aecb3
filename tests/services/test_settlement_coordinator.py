"""
Tests for the Settlement Coordinator.

Covers:
- Create / update / delete protocol and entry state machine
- Version discipline (monotonic versions, stale updates rejected)
- Additive banking writes
- Batch partial results vs whole-batch rollback
- Rollback completeness on store failure and write timeout
- Lease contention
- Best-effort notifications
- Month workflow (settle_month) including banking carry-forward and reruns
"""

import threading
import time

import pytest

from energy_config import SettlementConfig
from energy_kernel.domain.entries import EntityKey, EntryId, EntryKind, EntrySource
from energy_kernel.domain.units import normalize_non_negative
from energy_kernel.exceptions import (
    EntryAlreadyExistsError,
    LockError,
    NotFoundError,
    StoreError,
    ValidationError,
    VersionConflictError,
)
from energy_services.ledger_store import InMemoryLedgerStore

MONTH = "042025"


def allocation(pid="P1", cid="C1", month=MONTH, **units):
    return {
        "kind": "ALLOCATION",
        "production_site_id": pid,
        "consumption_site_id": cid,
        "month": month,
        "allocated": units or {"c2": 10},
    }


def banking(pid="W1", month=MONTH, **units):
    return {"kind": "BANKING", "production_site_id": pid, "month": month, "credited": units}


def lapse(pid="S1", month=MONTH, **units):
    return {"kind": "LAPSE", "production_site_id": pid, "month": month, "lapsed": units or {"c2": 5}}


class FailingStore(InMemoryLedgerStore):
    """Raises StoreError on the n-th write (put or increment), once."""

    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on
        self.writes = 0
        self._count_lock = threading.Lock()

    def _tick(self):
        with self._count_lock:
            self.writes += 1
            return self.writes == self.fail_on

    def put(self, key, item, if_absent=False, if_version=None):
        if self._tick():
            raise StoreError("simulated outage", operation="put", entity_key=str(key))
        return super().put(key, item, if_absent=if_absent, if_version=if_version)

    def increment(self, key, deltas, defaults=None, updates=None, non_negative=()):
        if self._tick():
            raise StoreError("simulated outage", operation="increment", entity_key=str(key))
        return super().increment(key, deltas, defaults, updates, non_negative)


class SlowStore(InMemoryLedgerStore):
    """Every put takes ``delay`` seconds before landing."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    def put(self, key, item, if_absent=False, if_version=None):
        time.sleep(self.delay)
        return super().put(key, item, if_absent=if_absent, if_version=if_version)


class BrokenSink:
    def __init__(self):
        self.attempts = 0

    def publish(self, event_type, payload):
        self.attempts += 1
        raise ConnectionError("down")


# =============================================================================
# Creates
# =============================================================================


class TestCreateAllocation:
    def test_creates_version_one(self, coordinator, store, deterministic_clock):
        entry = coordinator.create_allocation(allocation(c2=80, c4=70))
        assert entry.version == 1
        assert entry.kind is EntryKind.ALLOCATION
        assert entry.created_at == deterministic_clock.now()
        assert entry.transaction_id.startswith("tr-")

        stored = store.get(entry.entry_id.entity_key)
        assert stored["allocated"] == {"c2": 80, "c4": 70}
        assert stored["transaction_id"] == entry.transaction_id

    def test_validation_error_never_reaches_store(self, coordinator, store, lease_lock):
        with pytest.raises(ValidationError):
            coordinator.create_allocation(allocation(c2=-1))
        assert len(store) == 0
        assert not lease_lock.is_locked("P1")

    def test_existing_allocation_not_overwritten(self, coordinator, store):
        first = coordinator.create_allocation(allocation(c2=10))
        with pytest.raises(EntryAlreadyExistsError) as exc_info:
            coordinator.create_allocation(allocation(c2=99))
        assert isinstance(exc_info.value, VersionConflictError)
        assert store.get(first.entry_id.entity_key)["allocated"] == {"c2": 10}

    def test_lapse_create(self, coordinator):
        entry = coordinator.create_allocation(lapse(c3=7))
        assert entry.kind is EntryKind.LAPSE
        assert entry.lapsed["c3"] == 7

    def test_releases_lease(self, coordinator, lease_lock):
        coordinator.create_allocation(allocation())
        assert not lease_lock.is_locked("P1")

    def test_publishes_created_event(self, coordinator, sink):
        entry = coordinator.create_allocation(allocation())
        (event,) = sink.buffered_events("allocation")
        assert event.event_type == "allocation.created"
        assert event.payload["entry_id"] == str(entry.entry_id)
        assert event.payload["transaction_id"] == entry.transaction_id

    def test_logs_carry_transaction_id(self, coordinator, captured_logs):
        entry = coordinator.create_allocation(allocation())
        created = [r for r in captured_logs() if r["message"] == "settlement_entry_created"]
        assert created[0]["transaction_id"] == entry.transaction_id
        assert created[0]["site_id"] == "P1"


class TestBankingWrites:
    def test_banking_create_is_additive(self, coordinator, store):
        coordinator.create_allocation(banking(c1=40))
        entry = coordinator.create_allocation(banking(c1=10, c2=5))
        assert entry.balance == normalize_non_negative({"c1": 50, "c2": 5})
        assert entry.version == 2

    def test_debit_adjustment(self, coordinator):
        coordinator.create_allocation(banking(c1=40))
        entry = coordinator.create_allocation(banking(c1=-15))
        assert entry.balance["c1"] == 25
        assert entry.credited["c1"] == 25

    def test_debit_beyond_balance_rejected(self, coordinator, store):
        coordinator.create_allocation(banking(c1=10))
        with pytest.raises(ValidationError):
            coordinator.create_allocation(banking(c1=-11))
        key = EntryId(EntryKind.BANKING, "W1", MONTH).entity_key
        assert store.get(key)["balance"]["c1"] == 10
        assert store.get(key)["version"] == 1


# =============================================================================
# Update / delete
# =============================================================================


class TestUpdateAllocation:
    def test_version_increments_by_one_per_update(self, coordinator, store):
        entry = coordinator.create_allocation(allocation(c2=10))
        for n in range(1, 4):
            entry = coordinator.update_allocation(
                entry.entry_id, {"allocated": {"c2": 10 + n}}, expected_version=entry.version
            )
        assert entry.version == 4
        stored = store.get(entry.entry_id.entity_key)
        assert stored["version"] == 4
        assert stored["allocated"] == {"c2": 13}

    def test_stale_version_rejected_and_entry_unchanged(self, coordinator, store):
        entry = coordinator.create_allocation(allocation(c2=10))
        coordinator.update_allocation(entry.entry_id, {"allocated": {"c2": 20}}, expected_version=1)

        with pytest.raises(VersionConflictError) as exc_info:
            coordinator.update_allocation(entry.entry_id, {"allocated": {"c2": 30}}, expected_version=1)
        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2

        stored = store.get(entry.entry_id.entity_key)
        assert stored["allocated"] == {"c2": 20}
        assert stored["version"] == 2

    def test_accepts_rendered_entry_id(self, coordinator):
        coordinator.create_allocation(lapse(c2=5))
        updated = coordinator.update_allocation("LAPSE|S1#042025", {"lapsed": {"c2": 6}}, 1)
        assert updated.lapsed["c2"] == 6

    def test_missing_entry(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.update_allocation("LAPSE|S9#042025", {"lapsed": {"c2": 6}}, 1)

    def test_patch_validation(self, coordinator):
        entry = coordinator.create_allocation(allocation())
        with pytest.raises(ValidationError):
            coordinator.update_allocation(entry.entry_id, {"lapsed": {"c2": 1}}, 1)
        with pytest.raises(ValidationError):
            coordinator.update_allocation(entry.entry_id, {"allocated": {"c2": -1}}, 1)
        with pytest.raises(ValidationError):
            coordinator.update_allocation(entry.entry_id, {"allocated": {"c2": 1}}, 0)

    def test_banking_balance_correction(self, coordinator):
        coordinator.create_allocation(banking(c1=40))
        updated = coordinator.update_allocation(
            "BANKING|W1#042025", {"balance": {"c1": 35}}, expected_version=1
        )
        assert updated.balance["c1"] == 35
        assert updated.credited["c1"] == 35
        assert updated.version == 2

    def test_publishes_updated_event(self, coordinator, sink):
        entry = coordinator.create_allocation(allocation())
        coordinator.update_allocation(entry.entry_id, {"allocated": {"c2": 3}}, 1)
        types = [e.event_type for e in sink.buffered_events("allocation")]
        assert types == ["allocation.created", "allocation.updated"]


class TestDeleteAllocation:
    def test_delete_then_recreate_starts_at_v1(self, coordinator, store):
        entry = coordinator.create_allocation(allocation())
        coordinator.update_allocation(entry.entry_id, {"allocated": {"c2": 3}}, 1)
        coordinator.delete_allocation(entry.entry_id)
        assert store.get(entry.entry_id.entity_key) is None

        recreated = coordinator.create_allocation(allocation())
        assert recreated.version == 1

    def test_delete_missing(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.delete_allocation("ALLOCATION|P1#042025#C1")

    def test_delete_does_not_cascade(self, coordinator, store):
        coordinator.create_allocation(allocation(cid="C1"))
        coordinator.create_allocation(allocation(cid="C2"))
        coordinator.delete_allocation("ALLOCATION|P1#042025#C1")
        assert len(store) == 1

    def test_publishes_deleted_event(self, coordinator, sink):
        coordinator.create_allocation(lapse())
        coordinator.delete_allocation("LAPSE|S1#042025")
        assert sink.buffered_events("lapse")[-1].event_type == "lapse.deleted"


# =============================================================================
# Batches and rollback
# =============================================================================


class TestCreateBatch:
    def test_all_succeed(self, coordinator, store):
        result = coordinator.create_batch([
            allocation(cid="C1"),
            allocation(cid="C2"),
            lapse(),
            banking(c1=4),
        ])
        assert not result.is_partial
        assert len(result.succeeded) == 4
        assert {e.transaction_id for e in result.succeeded} == {result.transaction_id}
        assert len(store) == 4

    def test_validation_rejections_are_partial(self, coordinator, store):
        result = coordinator.create_batch([
            allocation(cid="C1"),
            {"production_site_id": "P1"},
            allocation(cid="C2"),
        ])
        assert result.is_partial
        assert list(result.rejected) == [1]
        assert isinstance(result.rejected[1], ValidationError)
        assert [e.consumption_site_id for e in result.succeeded] == ["C1", "C2"]
        assert len(store) == 2

    def test_duplicates_within_batch_rejected(self, coordinator):
        result = coordinator.create_batch([allocation(), allocation(c2=3)])
        assert list(result.rejected) == [1]
        assert len(result.succeeded) == 1

    def test_nothing_valid(self, coordinator, store):
        result = coordinator.create_batch([{"kind": "LAPSE"}])
        assert result.succeeded == ()
        assert result.transaction_id is None
        assert len(store) == 0

    def test_store_failure_on_third_of_five_rolls_back_everything(
        self, make_coordinator, lease_lock, captured_logs
    ):
        failing = FailingStore(fail_on=3)
        coordinator = make_coordinator(store=failing)
        candidates = [allocation(pid=f"P{i}", cid="C1") for i in range(5)]

        with pytest.raises(StoreError):
            coordinator.create_batch(candidates)

        assert len(failing) == 0
        assert not any(lease_lock.is_locked(f"P{i}") for i in range(5))
        assert any(r["message"] == "transaction_rolled_back" for r in captured_logs())

    def test_rollback_restores_prior_banking_balance(self, make_coordinator):
        failing = FailingStore(fail_on=0)
        coordinator = make_coordinator(store=failing)
        coordinator.create_allocation(banking(c1=40))
        key = EntryId(EntryKind.BANKING, "W1", MONTH).entity_key
        before = failing.get(key)

        failing.fail_on = failing.writes + 3
        with pytest.raises(StoreError):
            coordinator.create_batch([
                banking(c1=10),
                allocation(pid="P1"),
                allocation(pid="P2"),
                allocation(pid="P3"),
            ])

        assert failing.get(key) == before
        assert len(failing) == 1

    def test_conflict_during_batch_fails_whole_batch(self, coordinator, store):
        coordinator.create_allocation(allocation(cid="C2"))
        with pytest.raises(EntryAlreadyExistsError):
            coordinator.create_batch([allocation(cid="C1"), allocation(cid="C2"), lapse()])
        assert len(store) == 1

    def test_write_timeout_is_store_error_and_rolled_back(self, make_coordinator, lease_lock):
        slow = SlowStore(delay=0.3)
        coordinator = make_coordinator(
            store=slow,
            config=SettlementConfig(write_timeout_seconds=0.05),
        )
        with pytest.raises(StoreError) as exc_info:
            coordinator.create_batch([allocation(cid="C1"), allocation(cid="C2")])
        assert exc_info.value.operation == "write"
        assert len(slow) == 0
        assert not lease_lock.is_locked("P1")


# =============================================================================
# Leases and notifications
# =============================================================================


class TestLeaseContention:
    def test_locked_site_fails_fast(self, coordinator, lease_lock, store):
        lease_lock.acquire("P1", "someone-else")
        with pytest.raises(LockError):
            coordinator.create_allocation(allocation())
        assert len(store) == 0
        assert lease_lock.holder_of("P1") == "someone-else"

    def test_batch_lock_failure_before_any_write(self, coordinator, lease_lock, store):
        lease_lock.acquire("P3", "someone-else")
        with pytest.raises(LockError):
            coordinator.create_batch([allocation(pid="P1"), allocation(pid="P3"), allocation(pid="P5")])
        assert len(store) == 0
        assert not lease_lock.is_locked("P1")

    def test_abandoned_lease_is_reclaimed(self, coordinator, lease_lock, deterministic_clock):
        lease_lock.acquire("P1", "crashed-caller")
        deterministic_clock.advance(31)
        assert coordinator.create_allocation(allocation()).version == 1


class TestNotifications:
    def test_sink_failure_does_not_fail_call(self, make_coordinator, sleeps, captured_logs):
        broken = BrokenSink()
        coordinator = make_coordinator(notifier=broken)
        entry = coordinator.create_allocation(allocation())
        assert entry.version == 1
        assert broken.attempts == 4
        assert len(sleeps) == 3
        assert any(r["message"] == "notification_failed" for r in captured_logs())


# =============================================================================
# Month workflow
# =============================================================================


class TestSettleMonth:
    def test_reference_scenario_persisted(self, coordinator, store, solar, demand):
        result = coordinator.settle_month(
            "2025-04",
            [solar("A", c2=100, c4=50)],
            [demand("X", c2=80, c4=70)],
            banking_balances=[],
        )
        (entry,) = result.entries
        assert entry.allocated == normalize_non_negative({"c2": 80, "c4": 70})
        assert entry.transaction_id == result.transaction_id
        stored = store.get(EntityKey("ALLOCATION#042025", "A#042025#X"))
        assert stored["allocated"] == {"c2": 80, "c4": 70}

    def test_banking_carries_into_next_month(self, coordinator, wind, demand):
        first = coordinator.settle_month("042025", [wind("B", banking=True, c1=40)], [])
        (bank,) = first.of_kind(EntryKind.BANKING)
        assert bank.balance["c1"] == 40

        second = coordinator.settle_month("052025", [], [demand("X", month="052025", c1=10)])
        (used,) = second.of_kind(EntryKind.ALLOCATION)
        assert used.production_site_id == "B"
        assert used.source is EntrySource.BANKING
        (rest,) = second.of_kind(EntryKind.BANKING)
        assert rest.balance["c1"] == 30
        assert rest.credited["c1"] == -10

    def test_rerun_of_same_month_rolls_back(self, coordinator, store, solar, wind, demand):
        production = [solar("A", c2=50), wind("B", banking=True, c1=40)]
        consumption = [demand("X", c2=20)]
        coordinator.settle_month(MONTH, production, consumption, banking_balances=[])
        snapshot = {k: store.get(k) for k in store.keys()}

        with pytest.raises(EntryAlreadyExistsError):
            coordinator.settle_month(MONTH, production, consumption, banking_balances=[])

        assert {k: store.get(k) for k in store.keys()} == snapshot

    def test_rerun_of_banking_only_month_rolls_back(self, coordinator, store, wind):
        production = [wind("B", banking=True, c1=40)]
        coordinator.settle_month(MONTH, production, [], banking_balances=[])
        snapshot = {k: store.get(k) for k in store.keys()}

        with pytest.raises(EntryAlreadyExistsError):
            coordinator.settle_month(MONTH, production, [], banking_balances=[])

        assert {k: store.get(k) for k in store.keys()} == snapshot
        stored = store.get(EntityKey("BANKING#042025", "B#042025"))
        assert stored["balance"]["c1"] == 40

    def test_rerun_of_carried_only_month_rolls_back(self, coordinator, store, wind):
        coordinator.settle_month("042025", [wind("B", banking=True, c1=40)], [])
        carried = coordinator.settle_month("052025", [], [])
        (rest,) = carried.of_kind(EntryKind.BANKING)
        assert rest.balance["c1"] == 40
        snapshot = {k: store.get(k) for k in store.keys()}

        with pytest.raises(EntryAlreadyExistsError):
            coordinator.settle_month("052025", [], [])

        assert {k: store.get(k) for k in store.keys()} == snapshot
        stored = store.get(EntityKey("BANKING#052025", "B#052025"))
        assert stored["balance"]["c1"] == 40

    def test_manual_banking_credit_blocks_settlement_of_that_month(self, coordinator, store, wind):
        coordinator.create_allocation(banking(pid="B", c1=5))
        with pytest.raises(EntryAlreadyExistsError):
            coordinator.settle_month(
                MONTH, [wind("B", banking=True, c1=40)], [], banking_balances=[]
            )
        assert store.get(EntityKey("BANKING#042025", "B#042025"))["balance"]["c1"] == 5

    def test_first_supported_month_has_no_carry_over(self, coordinator, wind):
        result = coordinator.settle_month(
            "012000", [wind("B", month="012000", banking=True, c1=40)], []
        )
        (bank,) = result.of_kind(EntryKind.BANKING)
        assert bank.balance["c1"] == 40
        assert bank.credited["c1"] == 40

    def test_store_failure_leaves_nothing(self, make_coordinator, solar, demand):
        failing = FailingStore(fail_on=2)
        coordinator = make_coordinator(store=failing)
        with pytest.raises(StoreError):
            coordinator.settle_month(
                MONTH,
                [solar("A", c2=100), solar("B", c2=100), solar("C", c3=30)],
                [demand("X", c2=150), demand("Y", c5=10)],
                banking_balances=[],
            )
        assert len(failing) == 0

    def test_locked_site_blocks_month(self, coordinator, lease_lock, store, solar, demand):
        lease_lock.acquire("A", "someone-else")
        with pytest.raises(LockError):
            coordinator.settle_month(MONTH, [solar("A", c2=10)], [demand("X", c2=10)], [])
        assert len(store) == 0

    def test_empty_month(self, coordinator, store):
        result = coordinator.settle_month(MONTH, [], [], banking_balances=[])
        assert result.entries == ()
        assert len(store) == 0
