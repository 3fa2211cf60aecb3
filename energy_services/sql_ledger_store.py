"""
SqlLedgerStore -- SQLAlchemy adapter for the LedgerStore contract.

Responsibility:
    Persists entry items as JSON rows of the ``ledger_items`` table keyed by
    ``(partition, sort_key)``. Every operation runs in its own short
    transaction via ``session_scope``.

Architecture position:
    Services -- imperative shell. Uses energy_kernel.db and
    energy_kernel.models; never imported by the kernel or the engines.

Invariants enforced:
    - ``if_absent`` put is an INSERT; a unique-key violation means the row
      already exists.
    - ``if_version`` put is ``UPDATE ... WHERE version = :expected``; zero
      rows updated means the condition failed. No read-modify-write race.
    - The ``version`` column always mirrors ``payload["version"]``.

Failure modes:
    - ConditionFailedError for rejected conditional writes.
    - StoreError wrapping any other SQLAlchemyError (with operation and key).
"""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from energy_kernel.db.engine import session_scope
from energy_kernel.domain.entries import EntityKey
from energy_kernel.exceptions import ConditionFailedError, StoreError
from energy_kernel.logging_config import get_logger
from energy_kernel.models.ledger_item import LedgerItem
from energy_services.ledger_store import Delta, Item, apply_increment

logger = get_logger("services.sql_ledger_store")


def _key_filter(key: EntityKey):
    return (LedgerItem.partition == key.partition) & (LedgerItem.sort_key == key.sort_key)


class SqlLedgerStore:
    """
    LedgerStore backed by a relational database.

    Contract:
        Same semantics as InMemoryLedgerStore; the database enforces the
        key uniqueness and the version condition.
    Non-goals:
        - Does not share a session with callers; each call commits on its own.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory
        # Serializes read-modify-write increments for backends without
        # row locks (SQLite ignores FOR UPDATE).
        self._increment_lock = threading.Lock()

    def get(self, key: EntityKey) -> Item | None:
        with self._guard("get", key):
            with session_scope(self._session_factory) as session:
                row = session.execute(select(LedgerItem).where(_key_filter(key))).scalar_one_or_none()
                return dict(row.payload) if row is not None else None

    def put(
        self,
        key: EntityKey,
        item: Mapping[str, Any],
        if_absent: bool = False,
        if_version: int | None = None,
    ) -> Item:
        payload = dict(item)
        version = int(payload.get("version") or 1)
        payload["version"] = version
        transaction_id = payload.get("transaction_id")

        if if_absent:
            try:
                with session_scope(self._session_factory) as session:
                    session.add(LedgerItem(
                        partition=key.partition,
                        sort_key=key.sort_key,
                        version=version,
                        transaction_id=transaction_id,
                        payload=payload,
                    ))
            except IntegrityError:
                raise ConditionFailedError(
                    str(key), operation="put", actual_version=self._current_version(key)
                ) from None
            except SQLAlchemyError as exc:
                raise StoreError(f"put failed for {key}: {exc}", "put", str(key)) from exc
            return dict(payload)

        if if_version is not None:
            with self._guard("put", key):
                with session_scope(self._session_factory) as session:
                    result = session.execute(
                        update(LedgerItem)
                        .where(_key_filter(key) & (LedgerItem.version == if_version))
                        .values(version=version, transaction_id=transaction_id, payload=payload)
                    )
                    updated = result.rowcount
            if updated == 0:
                raise ConditionFailedError(
                    str(key), operation="put", actual_version=self._current_version(key)
                )
            return dict(payload)

        with self._guard("put", key):
            with session_scope(self._session_factory) as session:
                self._upsert(session, key, payload)
        return dict(payload)

    def query_by_prefix(self, partition: str, prefix: str = "") -> list[Item]:
        stmt = select(LedgerItem).where(LedgerItem.partition == partition)
        if prefix:
            stmt = stmt.where(LedgerItem.sort_key.startswith(prefix, autoescape=True))
        stmt = stmt.order_by(LedgerItem.sort_key)
        with self._guard("query_by_prefix", EntityKey(partition, prefix)):
            with session_scope(self._session_factory) as session:
                return [dict(row.payload) for row in session.execute(stmt).scalars()]

    def delete(self, key: EntityKey) -> Item | None:
        with self._guard("delete", key):
            with session_scope(self._session_factory) as session:
                row = session.execute(select(LedgerItem).where(_key_filter(key))).scalar_one_or_none()
                if row is None:
                    return None
                removed = dict(row.payload)
                session.execute(delete(LedgerItem).where(_key_filter(key)))
                return removed

    def increment(
        self,
        key: EntityKey,
        deltas: Mapping[str, Delta],
        defaults: Mapping[str, Any] | None = None,
        updates: Mapping[str, Any] | None = None,
        non_negative: Sequence[str] = (),
    ) -> Item:
        with self._increment_lock, self._guard("increment", key):
            with session_scope(self._session_factory) as session:
                row = session.execute(
                    select(LedgerItem).where(_key_filter(key)).with_for_update()
                ).scalar_one_or_none()
                current = dict(row.payload) if row is not None else None
                item = apply_increment(key, current, deltas, defaults, updates, non_negative)
                self._upsert(session, key, item, row)
                return item

    # -- internals -----------------------------------------------------------

    @staticmethod
    def _upsert(
        session: Session,
        key: EntityKey,
        payload: dict[str, Any],
        row: LedgerItem | None = None,
    ) -> None:
        if row is None:
            row = session.execute(select(LedgerItem).where(_key_filter(key))).scalar_one_or_none()
        if row is None:
            session.add(LedgerItem(
                partition=key.partition,
                sort_key=key.sort_key,
                version=int(payload["version"]),
                transaction_id=payload.get("transaction_id"),
                payload=payload,
            ))
        else:
            row.version = int(payload["version"])
            row.transaction_id = payload.get("transaction_id")
            row.payload = payload

    def _current_version(self, key: EntityKey) -> int | None:
        with session_scope(self._session_factory) as session:
            return session.execute(
                select(LedgerItem.version).where(_key_filter(key))
            ).scalar_one_or_none()

    def _guard(self, operation: str, key: EntityKey) -> _StoreErrorGuard:
        return _StoreErrorGuard(operation, key)


class _StoreErrorGuard:
    """Translate driver errors into StoreError; domain errors pass through."""

    def __init__(self, operation: str, key: EntityKey):
        self._operation = operation
        self._key = key

    def __enter__(self) -> None:
        return None

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is not None and isinstance(exc, SQLAlchemyError):
            logger.error("ledger_store_failed", extra={
                "operation": self._operation,
                "entity_key": str(self._key),
                "error_type": type(exc).__name__,
            })
            raise StoreError(
                f"{self._operation} failed for {self._key}: {exc}",
                operation=self._operation,
                entity_key=str(self._key),
            ) from exc
        return False
