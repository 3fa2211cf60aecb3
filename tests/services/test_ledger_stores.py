"""
Contract tests for the ledger store adapters.

Every test runs against the in-memory store and the SQLAlchemy store on a
SQLite file database.
"""

import pytest

from energy_kernel.db.engine import create_ledger_engine, create_session_factory, create_tables
from energy_kernel.domain.entries import EntityKey
from energy_kernel.exceptions import ConditionFailedError
from energy_services.ledger_store import InMemoryLedgerStore, LedgerStore
from energy_services.sql_ledger_store import SqlLedgerStore

KEY = EntityKey("ALLOCATION#042025", "P1#042025#C1")


@pytest.fixture(params=["memory", "sql"])
def ledger_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryLedgerStore()
        return
    engine = create_ledger_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    create_tables(engine)
    yield SqlLedgerStore(create_session_factory(engine))
    engine.dispose()


def item(version=1, **fields):
    return {"kind": "ALLOCATION", "version": version, "transaction_id": "tr-x-1", **fields}


class TestLedgerStoreContract:
    def test_satisfies_protocol(self, ledger_store):
        assert isinstance(ledger_store, LedgerStore)

    def test_get_absent(self, ledger_store):
        assert ledger_store.get(KEY) is None

    def test_put_and_get(self, ledger_store):
        ledger_store.put(KEY, item(allocated={"c2": 80}))
        stored = ledger_store.get(KEY)
        assert stored["allocated"] == {"c2": 80}
        assert stored["version"] == 1

    def test_if_absent_rejects_existing(self, ledger_store):
        ledger_store.put(KEY, item(), if_absent=True)
        with pytest.raises(ConditionFailedError) as exc_info:
            ledger_store.put(KEY, item(note="second"), if_absent=True)
        assert exc_info.value.actual_version == 1
        assert "note" not in ledger_store.get(KEY)

    def test_if_version_matches(self, ledger_store):
        ledger_store.put(KEY, item())
        ledger_store.put(KEY, item(version=2, note="updated"), if_version=1)
        assert ledger_store.get(KEY)["version"] == 2

    def test_if_version_mismatch(self, ledger_store):
        ledger_store.put(KEY, item(version=3))
        with pytest.raises(ConditionFailedError) as exc_info:
            ledger_store.put(KEY, item(version=3), if_version=2)
        assert exc_info.value.actual_version == 3

    def test_if_version_on_absent_key(self, ledger_store):
        with pytest.raises(ConditionFailedError):
            ledger_store.put(KEY, item(version=2), if_version=1)

    def test_query_by_prefix(self, ledger_store):
        partition = "ALLOCATION#042025"
        ledger_store.put(EntityKey(partition, "P2#042025#C1"), item(site="P2"))
        ledger_store.put(EntityKey(partition, "P1#042025#C2"), item(site="P1-C2"))
        ledger_store.put(EntityKey(partition, "P1#042025#C1"), item(site="P1-C1"))
        ledger_store.put(EntityKey("ALLOCATION#052025", "P1#052025#C1"), item(site="other"))

        everything = ledger_store.query_by_prefix(partition)
        assert [i["site"] for i in everything] == ["P1-C1", "P1-C2", "P2"]

        p1_only = ledger_store.query_by_prefix(partition, "P1#")
        assert [i["site"] for i in p1_only] == ["P1-C1", "P1-C2"]

    def test_prefix_treats_wildcards_literally(self, ledger_store):
        partition = "LAPSE#042025"
        ledger_store.put(EntityKey(partition, "S_1#042025"), item(site="underscore"))
        ledger_store.put(EntityKey(partition, "SX1#042025"), item(site="x"))
        assert [i["site"] for i in ledger_store.query_by_prefix(partition, "S_")] == ["underscore"]

    def test_delete_returns_removed_item(self, ledger_store):
        ledger_store.put(KEY, item(note="gone"))
        removed = ledger_store.delete(KEY)
        assert removed["note"] == "gone"
        assert ledger_store.get(KEY) is None
        assert ledger_store.delete(KEY) is None

    def test_returned_items_are_copies(self, ledger_store):
        ledger_store.put(KEY, item(allocated={"c2": 1}))
        fetched = ledger_store.get(KEY)
        fetched["allocated"]["c2"] = 999
        assert ledger_store.get(KEY)["allocated"]["c2"] == 1


class TestIncrement:
    BANKING_KEY = EntityKey("BANKING#042025", "W1#042025")

    def test_creates_from_defaults(self, ledger_store):
        result = ledger_store.increment(
            self.BANKING_KEY,
            deltas={"balance": {"c1": 40}, "total": 40},
            defaults={"kind": "BANKING", "balance": {"c1": 0, "c2": 0}, "total": 0},
        )
        assert result["version"] == 1
        assert result["balance"] == {"c1": 40, "c2": 0}
        assert result["total"] == 40

    def test_adds_to_existing(self, ledger_store):
        ledger_store.increment(self.BANKING_KEY, deltas={"balance": {"c1": 40}})
        result = ledger_store.increment(
            self.BANKING_KEY,
            deltas={"balance": {"c1": -10, "c3": 5}},
            updates={"transaction_id": "tr-y-2"},
        )
        assert result["version"] == 2
        assert result["balance"] == {"c1": 30, "c3": 5}
        assert ledger_store.get(self.BANKING_KEY)["transaction_id"] == "tr-y-2"

    def test_non_negative_guard(self, ledger_store):
        ledger_store.increment(self.BANKING_KEY, deltas={"balance": {"c1": 5}})
        with pytest.raises(ConditionFailedError):
            ledger_store.increment(
                self.BANKING_KEY,
                deltas={"balance": {"c1": -6}},
                non_negative=("balance",),
            )
        assert ledger_store.get(self.BANKING_KEY)["balance"] == {"c1": 5}
