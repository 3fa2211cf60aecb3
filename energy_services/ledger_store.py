"""
LedgerStore -- key-value store contract for settlement entries.

Responsibility:
    Defines the store operations the settlement coordinator depends on and
    ships the in-process reference adapter. Items are plain dicts (see
    ``LedgerEntry.to_item``) keyed by ``EntityKey(partition, sort_key)``.

Architecture position:
    Services -- imperative shell. Consumed by SettlementCoordinator and
    SettlementQueryService. The SQL adapter lives in sql_ledger_store.py.

Invariants enforced:
    - Conditional writes are atomic with respect to other store calls:
      ``if_absent`` and ``if_version`` are checked and applied under one
      lock acquisition.
    - ``increment`` adds per-field deltas atomically and bumps the stored
      version by exactly one (new items start at version 1).
    - Returned items are copies; callers can never mutate stored state.

Failure modes:
    - ConditionFailedError: ``if_absent`` on an existing key, ``if_version``
      mismatch (or absent key), or an increment that would drive a
      ``non_negative`` field below zero.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

from energy_kernel.domain.entries import EntityKey
from energy_kernel.exceptions import ConditionFailedError

Item = dict[str, Any]
Delta = int | Mapping[str, int]


@runtime_checkable
class LedgerStore(Protocol):
    """Operations the settlement workflow needs from a ledger store."""

    def get(self, key: EntityKey) -> Item | None: ...

    def put(
        self,
        key: EntityKey,
        item: Mapping[str, Any],
        if_absent: bool = False,
        if_version: int | None = None,
    ) -> Item: ...

    def query_by_prefix(self, partition: str, prefix: str = "") -> list[Item]: ...

    def delete(self, key: EntityKey) -> Item | None: ...

    def increment(
        self,
        key: EntityKey,
        deltas: Mapping[str, Delta],
        defaults: Mapping[str, Any] | None = None,
        updates: Mapping[str, Any] | None = None,
        non_negative: Sequence[str] = (),
    ) -> Item: ...


def apply_increment(
    key: EntityKey,
    current: Mapping[str, Any] | None,
    deltas: Mapping[str, Delta],
    defaults: Mapping[str, Any] | None,
    updates: Mapping[str, Any] | None,
    non_negative: Sequence[str],
) -> Item:
    """
    Compute the item produced by an increment. Shared by every adapter.

    Scalar deltas add to scalar fields; mapping deltas add key-wise to
    nested mapping fields. Missing fields start at zero.
    """
    if current is None:
        item: Item = copy.deepcopy(dict(defaults or {}))
        item["version"] = 1
    else:
        item = copy.deepcopy(dict(current))
        item["version"] = int(item.get("version") or 0) + 1

    for field_name, delta in deltas.items():
        if isinstance(delta, Mapping):
            nested = dict(item.get(field_name) or {})
            for sub_key, amount in delta.items():
                nested[sub_key] = int(nested.get(sub_key, 0)) + int(amount)
            item[field_name] = nested
        else:
            item[field_name] = int(item.get(field_name) or 0) + int(delta)

    for field_name in non_negative:
        value = item.get(field_name)
        values = value.values() if isinstance(value, Mapping) else [value or 0]
        if any(v < 0 for v in values):
            raise ConditionFailedError(
                str(key),
                operation="increment",
                actual_version=current.get("version") if current else None,
            )

    item.update(updates or {})
    return item


class InMemoryLedgerStore:
    """
    Thread-safe dict-backed ledger store.

    Contract:
        Implements LedgerStore for a single process. Used as the default
        adapter for local runs and as the test double.
    Non-goals:
        - No persistence across process restarts.
    """

    def __init__(self) -> None:
        self._items: dict[EntityKey, Item] = {}
        self._lock = threading.Lock()

    def get(self, key: EntityKey) -> Item | None:
        with self._lock:
            item = self._items.get(key)
            return copy.deepcopy(item) if item is not None else None

    def put(
        self,
        key: EntityKey,
        item: Mapping[str, Any],
        if_absent: bool = False,
        if_version: int | None = None,
    ) -> Item:
        with self._lock:
            existing = self._items.get(key)
            actual = existing.get("version") if existing else None
            if if_absent and existing is not None:
                raise ConditionFailedError(str(key), operation="put", actual_version=actual)
            if if_version is not None and actual != if_version:
                raise ConditionFailedError(str(key), operation="put", actual_version=actual)
            stored = copy.deepcopy(dict(item))
            self._items[key] = stored
            return copy.deepcopy(stored)

    def query_by_prefix(self, partition: str, prefix: str = "") -> list[Item]:
        with self._lock:
            matches = sorted(
                (k for k in self._items if k.partition == partition and k.sort_key.startswith(prefix)),
            )
            return [copy.deepcopy(self._items[k]) for k in matches]

    def delete(self, key: EntityKey) -> Item | None:
        with self._lock:
            return self._items.pop(key, None)

    def increment(
        self,
        key: EntityKey,
        deltas: Mapping[str, Delta],
        defaults: Mapping[str, Any] | None = None,
        updates: Mapping[str, Any] | None = None,
        non_negative: Sequence[str] = (),
    ) -> Item:
        with self._lock:
            item = apply_increment(
                key, self._items.get(key), deltas, defaults, updates, non_negative
            )
            self._items[key] = item
            return copy.deepcopy(item)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def keys(self) -> list[EntityKey]:
        with self._lock:
            return sorted(self._items)
