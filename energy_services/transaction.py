"""
TransactionRecord -- write journal for one settlement transaction.

Responsibility:
    Records, for every key a transaction is about to write, the item that
    was stored there before (or ``None``), so the coordinator can undo the
    whole set after a failure.

Architecture position:
    Services -- used only by SettlementCoordinator. Ephemeral: lives for a
    single mutating call and is never persisted.

Invariants enforced:
    - Only the first prior image per key is kept; later writes to the same
      key inside the transaction cannot hide the original state.
    - Rollback walks the journal in reverse write order: keys that did not
      exist are deleted, keys that did are restored to their prior image.

Failure modes:
    - Rollback never raises. Keys that could not be reverted are logged
      (``transaction_rollback_incomplete``) and returned to the caller.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

from energy_kernel.domain.entries import EntityKey
from energy_kernel.logging_config import get_logger
from energy_services.ledger_store import LedgerStore

logger = get_logger("services.transaction")


@dataclass(frozen=True)
class JournalEntry:
    key: EntityKey
    prior: dict[str, Any] | None


class TransactionRecord:
    """Thread-safe journal; batch writes record from worker threads."""

    def __init__(self, transaction_id: str, store: LedgerStore):
        self.transaction_id = transaction_id
        self._store = store
        self._journal: dict[EntityKey, JournalEntry] = {}
        self._lock = threading.Lock()

    def record(self, key: EntityKey, prior: dict[str, Any] | None) -> None:
        with self._lock:
            if key not in self._journal:
                self._journal[key] = JournalEntry(key, prior)

    def discard(self, key: EntityKey) -> None:
        """Forget a key whose write was rejected before touching the store."""
        with self._lock:
            self._journal.pop(key, None)

    @property
    def keys(self) -> list[EntityKey]:
        with self._lock:
            return list(self._journal)

    def __len__(self) -> int:
        with self._lock:
            return len(self._journal)

    def rollback(self) -> list[EntityKey]:
        """Undo every journaled write. Returns the keys that could not be reverted."""
        with self._lock:
            entries = list(reversed(self._journal.values()))

        unreverted: list[EntityKey] = []
        for entry in entries:
            try:
                if entry.prior is None:
                    self._store.delete(entry.key)
                else:
                    self._store.put(entry.key, entry.prior)
            except Exception:
                logger.exception("rollback_write_failed", extra={
                    "transaction_id": self.transaction_id,
                    "entity_key": str(entry.key),
                })
                unreverted.append(entry.key)

        if unreverted:
            logger.error("transaction_rollback_incomplete", extra={
                "transaction_id": self.transaction_id,
                "unreverted_keys": [str(k) for k in unreverted],
            })
        else:
            logger.warning("transaction_rolled_back", extra={
                "transaction_id": self.transaction_id,
                "reverted_count": len(entries),
            })
        return unreverted
