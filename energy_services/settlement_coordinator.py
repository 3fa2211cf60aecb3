"""
SettlementCoordinator -- transactional persistence of settlement entries.

Responsibility:
    Orchestrates every mutating settlement call as one logical
    transaction: generate a transaction id, take the production-site
    lease(s), write to the ledger store, publish domain events, release
    the lease(s). Runs the month workflow: calculate, then persist every
    proposal under a single transaction id.

Architecture position:
    Services -- imperative shell. Composes the AllocationCalculator
    (pure engine), a LedgerStore, a LeaseLock and a NotificationPublisher,
    all injected at construction.

Invariants enforced:
    - Validation happens before any lease or store interaction.
    - Leases are taken in sorted site order, all or nothing, and released
      in a ``finally`` block.
    - Any failure after the first write rolls back every write of the
      transaction (prior images restored) before the original error is
      re-raised. Callers never observe a half-committed set.
    - Allocation and lapse creates never overwrite: they are conditional
      ``if_absent`` puts. Banking candidate creates are additive increments;
      the month workflow writes its banking rows as ``if_absent`` puts, since
      their balance already carries the prior month forward.
    - Updates are conditioned on the caller's version and bump it by
      exactly one; a stale version never overwrites (no lost update).
    - Notifications are best-effort and never fail a call.

Failure modes:
    - ValidationError: malformed candidate or patch (no store interaction).
    - LockError: a production site is leased by another transaction.
    - EntryAlreadyExistsError: create of an existing allocation/lapse, or
      a month workflow over entries that were already settled.
    - VersionConflictError: stale ``expected_version``.
    - NotFoundError: update or delete of an absent entry.
    - StoreError: store failure or write timeout (after rollback).

Audit relevance:
    Every write carries the transaction id; ``settlement_committed`` and
    ``transaction_rolled_back`` log records bracket each transaction.
"""

from __future__ import annotations

import contextvars
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any

from energy_config.schema import SettlementConfig
from energy_engines.allocation_calculator import AllocationCalculator, CalculationResult
from energy_kernel.domain.candidates import (
    AllocationCandidate,
    BankingCandidate,
    Candidate,
    LapseCandidate,
    validate_candidate,
)
from energy_kernel.domain.clock import Clock, SystemClock
from energy_kernel.domain.entries import (
    AllocationEntry,
    BankingEntry,
    EntryId,
    EntryKind,
    LapseEntry,
    LedgerEntry,
    bump_version,
    entry_from_item,
    partition_for,
)
from energy_kernel.domain.month_key import previous_month_key, to_month_key
from energy_kernel.domain.records import BankingBalance, ConsumptionRecord, ProductionRecord
from energy_kernel.domain.units import (
    bucket_total,
    is_zero,
    normalize_non_negative,
    normalize_signed,
    subtract_buckets,
    validate_buckets,
)
from energy_kernel.exceptions import (
    ConditionFailedError,
    EntryAlreadyExistsError,
    NotFoundError,
    StoreError,
    ValidationError,
    VersionConflictError,
)
from energy_kernel.logging_config import LogContext, get_logger
from energy_kernel.utils.transaction_id import generate_transaction_id
from energy_services.lease_lock import LeaseLock
from energy_services.ledger_store import LedgerStore
from energy_services.notification_sink import NotificationPublisher, NotificationSink
from energy_services.transaction import TransactionRecord

logger = get_logger("services.settlement_coordinator")

_PATCH_FIELDS = {
    EntryKind.ALLOCATION: frozenset({"allocated", "drawn"}),
    EntryKind.BANKING: frozenset({"credited", "balance"}),
    EntryKind.LAPSE: frozenset({"lapsed"}),
}


@dataclass(frozen=True)
class BatchResult:
    """
    Outcome of ``create_batch``.

    ``succeeded`` holds the created entries in input order; ``rejected``
    maps input index to the ValidationError that kept a candidate from
    reaching the store.
    """

    succeeded: tuple[LedgerEntry, ...] = ()
    rejected: Mapping[int, ValidationError] = field(default_factory=dict)
    transaction_id: str | None = None

    @property
    def is_partial(self) -> bool:
        return bool(self.rejected)


@dataclass(frozen=True)
class SettlementResult:
    """Persisted outcome of one ``settle_month`` run."""

    month: str
    transaction_id: str
    calculation: CalculationResult
    entries: tuple[LedgerEntry, ...] = ()

    def of_kind(self, kind: EntryKind) -> tuple[LedgerEntry, ...]:
        return tuple(e for e in self.entries if e.kind is kind)


class SettlementCoordinator:
    """
    Sole writer and rollback authority for settlement entries.

    Contract:
        Constructed explicitly with its collaborators; holds no
        process-wide state of its own. Safe to call from several threads:
        concurrent calls on different production sites proceed in
        parallel, calls on the same site fail fast with LockError.

    Non-goals:
        - Does not cache entries; the ledger store is the source of truth.
        - Does not retry on LockError; callers do.
    """

    def __init__(
        self,
        store: LedgerStore,
        lock: LeaseLock,
        notifier: NotificationSink,
        clock: Clock | None = None,
        config: SettlementConfig | None = None,
        calculator: AllocationCalculator | None = None,
    ):
        self._store = store
        self._lock = lock
        self._clock = clock or SystemClock()
        self._config = config or SettlementConfig()
        self._calculator = calculator or AllocationCalculator()
        if isinstance(notifier, NotificationPublisher):
            self._publisher = notifier
        else:
            self._publisher = NotificationPublisher(
                notifier,
                critical_events=self._config.critical_events,
                max_retries=self._config.notification_max_retries,
                backoff_seconds=self._config.notification_backoff_seconds,
            )

    # ------------------------------------------------------------------
    # Creates
    # ------------------------------------------------------------------

    def create_allocation(self, candidate: Candidate | Mapping[str, Any]) -> LedgerEntry:
        """
        Persist one allocation, banking or lapse candidate.

        Raises:
            ValidationError, LockError, EntryAlreadyExistsError, StoreError.
        """
        parsed = validate_candidate(candidate)
        transaction_id = generate_transaction_id()

        with LogContext.bind(
            transaction_id=transaction_id,
            site_id=parsed.production_site_id,
            month=parsed.month,
        ):
            entries = self._run_transaction(
                transaction_id,
                [parsed.production_site_id],
                [self._create_writer(parsed, transaction_id)],
            )
            entry = entries[0]
            self._notify(entry, "created", transaction_id)
            logger.info("settlement_entry_created", extra={
                "entry_id": str(entry.entry_id),
                "kind": entry.kind.value,
                "version": entry.version,
            })
            return entry

    def create_batch(
        self, candidates: Sequence[Candidate | Mapping[str, Any]]
    ) -> BatchResult:
        """
        Persist several candidates as one transaction.

        Candidates that fail validation are reported in ``rejected`` and
        never reach the store. The rest are written concurrently; if any
        write fails, every write of the batch is rolled back and the
        error propagates (the whole batch fails).
        """
        accepted: list[tuple[int, Candidate]] = []
        rejected: dict[int, ValidationError] = {}
        seen: dict[EntryId, int] = {}

        for index, raw in enumerate(candidates):
            try:
                parsed = validate_candidate(raw)
            except ValidationError as exc:
                rejected[index] = exc
                continue
            entry_id = parsed.entry_id
            if entry_id in seen:
                rejected[index] = ValidationError.for_field(
                    "entry_id", f"duplicate of batch item {seen[entry_id]}: {entry_id}"
                )
                continue
            seen[entry_id] = index
            accepted.append((index, parsed))

        if rejected:
            logger.warning("batch_candidates_rejected", extra={
                "rejected_count": len(rejected),
                "accepted_count": len(accepted),
            })
        if not accepted:
            return BatchResult(rejected=rejected)

        transaction_id = generate_transaction_id()
        with LogContext.bind(transaction_id=transaction_id):
            entries = self._run_transaction(
                transaction_id,
                [c.production_site_id for _, c in accepted],
                [self._create_writer(c, transaction_id) for _, c in accepted],
            )
            for entry in entries:
                self._notify(entry, "created", transaction_id)
            logger.info("settlement_batch_created", extra={
                "entry_count": len(entries),
                "rejected_count": len(rejected),
            })
            return BatchResult(
                succeeded=tuple(entries),
                rejected=rejected,
                transaction_id=transaction_id,
            )

    # ------------------------------------------------------------------
    # Update / delete
    # ------------------------------------------------------------------

    def update_allocation(
        self,
        entry_id: EntryId | str,
        patch: Mapping[str, Any],
        expected_version: int,
    ) -> LedgerEntry:
        """
        Replace the buckets of an existing entry (manual correction).

        The write is conditioned on ``expected_version`` and produces
        version ``expected_version + 1``.

        Raises:
            ValidationError, NotFoundError, VersionConflictError, LockError,
            StoreError.
        """
        entry_id = EntryId.parse(entry_id)
        changes = self._validate_patch(entry_id.kind, patch)
        if isinstance(expected_version, bool) or not isinstance(expected_version, int) or expected_version < 1:
            raise ValidationError.for_field("expected_version", "must be a positive integer")

        transaction_id = generate_transaction_id()
        key = entry_id.entity_key

        def write(txn: TransactionRecord) -> LedgerEntry:
            prior = self._store.get(key)
            if prior is None:
                raise NotFoundError(str(entry_id))
            current = entry_from_item(prior)
            if current.version != expected_version:
                raise VersionConflictError(str(entry_id), expected_version, current.version)

            updated = bump_version(
                current,
                self._clock.now(),
                transaction_id=transaction_id,
                **self._apply_patch(current, changes),
            )
            txn.record(key, prior)
            try:
                self._store.put(key, updated.to_item(), if_version=expected_version)
            except ConditionFailedError as exc:
                txn.discard(key)
                raise VersionConflictError(
                    str(entry_id), expected_version, exc.actual_version
                ) from exc
            return updated

        with LogContext.bind(
            transaction_id=transaction_id,
            site_id=entry_id.production_site_id,
            month=entry_id.month,
        ):
            entry = self._run_transaction(
                transaction_id, [entry_id.production_site_id], [write]
            )[0]
            self._notify(entry, "updated", transaction_id)
            logger.info("settlement_entry_updated", extra={
                "entry_id": str(entry_id),
                "version": entry.version,
            })
            return entry

    def delete_allocation(self, entry_id: EntryId | str) -> None:
        """
        Remove an entry. Cascades nothing.

        Raises:
            NotFoundError, LockError, StoreError.
        """
        entry_id = EntryId.parse(entry_id)
        transaction_id = generate_transaction_id()
        key = entry_id.entity_key
        removed: list[LedgerEntry] = []

        def write(txn: TransactionRecord) -> LedgerEntry:
            prior = self._store.get(key)
            if prior is None:
                raise NotFoundError(str(entry_id))
            txn.record(key, prior)
            self._store.delete(key)
            entry = entry_from_item(prior)
            removed.append(entry)
            return entry

        with LogContext.bind(
            transaction_id=transaction_id,
            site_id=entry_id.production_site_id,
            month=entry_id.month,
        ):
            self._run_transaction(transaction_id, [entry_id.production_site_id], [write])
            self._notify(removed[0], "deleted", transaction_id)
            logger.info("settlement_entry_deleted", extra={"entry_id": str(entry_id)})

    # ------------------------------------------------------------------
    # Month workflow
    # ------------------------------------------------------------------

    def settle_month(
        self,
        month: Any,
        production: Sequence[ProductionRecord],
        consumption: Sequence[ConsumptionRecord],
        banking_balances: Iterable[BankingBalance] | None = None,
    ) -> SettlementResult:
        """
        Calculate one month and persist every proposal as one transaction.

        When ``banking_balances`` is None the carried balances are read
        from the previous month's banking entries.
        """
        month_key = to_month_key(month)
        if banking_balances is None:
            prior_month = previous_month_key(month_key)
            banking_balances = self.load_banking_balances(prior_month) if prior_month else []
        else:
            banking_balances = list(banking_balances)

        calculation = self._calculator.calculate(
            production, consumption, banking_balances, month=month_key
        )

        transaction_id = generate_transaction_id()
        now = self._clock.now()
        stamp = dict(transaction_id=transaction_id, created_at=now, updated_at=now)

        entries: list[LedgerEntry] = []
        for proposal in calculation.allocations:
            entries.append(AllocationEntry(
                production_site_id=proposal.production_site_id,
                consumption_site_id=proposal.consumption_site_id,
                month=month_key,
                allocated=proposal.allocated,
                drawn=proposal.drawn,
                source=proposal.source,
                **stamp,
            ))
        for proposal in calculation.banking_entries:
            entries.append(BankingEntry(
                production_site_id=proposal.production_site_id,
                month=month_key,
                credited=proposal.credited,
                balance=proposal.balance,
                **stamp,
            ))
        for proposal in calculation.lapse_entries:
            entries.append(LapseEntry(
                production_site_id=proposal.production_site_id,
                month=month_key,
                lapsed=proposal.lapsed,
                **stamp,
            ))

        with LogContext.bind(transaction_id=transaction_id, month=month_key):
            if not entries:
                logger.info("settlement_month_empty", extra={"month": month_key})
                return SettlementResult(month_key, transaction_id, calculation)

            site_ids = {e.production_site_id for e in entries}
            site_ids.update(r.production_site_id for r in production)
            written = self._run_transaction(
                transaction_id,
                site_ids,
                [self._entry_writer(e, additive=False) for e in entries],
            )
            for entry in written:
                self._notify(entry, "created", transaction_id)
            logger.info("settlement_committed", extra={
                "month": month_key,
                "entry_count": len(written),
                "total_allocated": calculation.total_allocated,
                "total_banked": calculation.total_banked,
                "total_lapsed": calculation.total_lapsed,
            })
            return SettlementResult(month_key, transaction_id, calculation, tuple(written))

    def load_banking_balances(self, month: Any) -> list[BankingBalance]:
        """Resting banking balances stored for ``month``."""
        items = self._store.query_by_prefix(partition_for(EntryKind.BANKING, month))
        balances = []
        for item in items:
            entry = entry_from_item(item)
            if bucket_total(entry.buckets) > 0:
                balances.append(BankingBalance(entry.production_site_id, entry.buckets))
        return balances

    # ------------------------------------------------------------------
    # Transaction machinery
    # ------------------------------------------------------------------

    def _run_transaction(
        self,
        transaction_id: str,
        site_ids: Iterable[str],
        writers: Sequence[Callable[[TransactionRecord], LedgerEntry]],
    ) -> list[LedgerEntry]:
        """Lease the sites, run the writers, roll back on any failure."""
        acquired = self._lock.acquire_all(site_ids, transaction_id)
        try:
            txn = TransactionRecord(transaction_id, self._store)
            try:
                return self._execute_writes(writers, txn)
            except Exception as exc:
                logger.error("settlement_transaction_failed", extra={
                    "error_type": type(exc).__name__,
                    "error_code": getattr(exc, "code", None),
                    "journaled_writes": len(txn),
                })
                if len(txn):
                    txn.rollback()
                raise
        finally:
            self._lock.release_all(acquired, transaction_id)

    def _execute_writes(
        self,
        writers: Sequence[Callable[[TransactionRecord], LedgerEntry]],
        txn: TransactionRecord,
    ) -> list[LedgerEntry]:
        """
        Run writers on a thread pool, each bounded by the write timeout.

        On the first failure, writers that have not started are cancelled;
        the pool is drained before returning so that rollback never races
        an in-flight write.
        """
        timeout = self._config.write_timeout_seconds
        workers = max(1, min(len(writers), self._config.batch_max_workers))
        results: list[LedgerEntry] = []
        error: BaseException | None = None

        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="settlement-write")
        try:
            futures: list[Future] = [
                pool.submit(contextvars.copy_context().run, writer, txn)
                for writer in writers
            ]
            for future in futures:
                if error is not None:
                    future.cancel()
                    continue
                try:
                    results.append(future.result(timeout=timeout))
                except FutureTimeoutError:
                    error = StoreError(
                        f"Store write exceeded {timeout}s",
                        operation="write",
                    )
                except Exception as exc:
                    error = exc
        finally:
            pool.shutdown(wait=True)

        if error is not None:
            raise error
        return results

    def _create_writer(
        self, candidate: Candidate, transaction_id: str
    ) -> Callable[[TransactionRecord], LedgerEntry]:
        now = self._clock.now()
        stamp = dict(transaction_id=transaction_id, created_at=now, updated_at=now)
        if isinstance(candidate, AllocationCandidate):
            entry: LedgerEntry = AllocationEntry(
                production_site_id=candidate.production_site_id,
                consumption_site_id=candidate.consumption_site_id,
                month=candidate.month,
                allocated=candidate.allocated,
                drawn=candidate.allocated,
                **stamp,
            )
        elif isinstance(candidate, BankingCandidate):
            entry = BankingEntry(
                production_site_id=candidate.production_site_id,
                month=candidate.month,
                credited=candidate.credited,
                balance=candidate.credited,
                **stamp,
            )
        elif isinstance(candidate, LapseCandidate):
            entry = LapseEntry(
                production_site_id=candidate.production_site_id,
                month=candidate.month,
                lapsed=candidate.lapsed,
                **stamp,
            )
        else:
            raise ValidationError.for_field("candidate", f"unsupported type {type(candidate).__name__}")
        return self._entry_writer(entry)

    def _entry_writer(
        self, entry: LedgerEntry, additive: bool = True
    ) -> Callable[[TransactionRecord], LedgerEntry]:
        if additive and isinstance(entry, BankingEntry):
            return lambda txn: self._write_banking(entry, txn)
        return lambda txn: self._write_new(entry, txn)

    def _write_new(self, entry: LedgerEntry, txn: TransactionRecord) -> LedgerEntry:
        """Conditional create; the only write path for a settled month."""
        key = entry.entry_id.entity_key
        existing = self._store.get(key)
        if existing is not None:
            raise EntryAlreadyExistsError(str(entry.entry_id), existing.get("version"))
        txn.record(key, None)
        try:
            self._store.put(key, entry.to_item(), if_absent=True)
        except ConditionFailedError as exc:
            txn.discard(key)
            raise EntryAlreadyExistsError(str(entry.entry_id), exc.actual_version) from exc
        return entry

    def _write_banking(self, entry: BankingEntry, txn: TransactionRecord) -> LedgerEntry:
        """
        Additive banking write.

        The entry's ``credited`` delta is added to the stored credited
        buckets; its ``balance`` is added to the stored resting balance.
        A debit that would leave a negative resting balance is rejected.
        """
        key = entry.entry_id.entity_key
        txn.record(key, self._store.get(key))
        defaults = BankingEntry(
            production_site_id=entry.production_site_id,
            month=entry.month,
            transaction_id=entry.transaction_id,
            created_at=entry.created_at,
            updated_at=entry.updated_at,
        ).to_item()
        try:
            item = self._store.increment(
                key,
                deltas={
                    "credited": entry.credited,
                    "balance": entry.balance,
                    "buckets": entry.balance,
                    "total": bucket_total(entry.balance),
                },
                defaults=defaults,
                updates={
                    "transaction_id": entry.transaction_id,
                    "updated_at": entry.updated_at.isoformat() if entry.updated_at else None,
                },
                non_negative=("balance",),
            )
        except ConditionFailedError as exc:
            txn.discard(key)
            raise ValidationError.for_field(
                "credited", f"debit exceeds the banking balance of {entry.entry_id}"
            ) from exc
        return entry_from_item(item)

    # ------------------------------------------------------------------
    # Patches and events
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_patch(kind: EntryKind, patch: Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(patch, Mapping) or not patch:
            raise ValidationError.for_field("patch", "must be a non-empty mapping")
        allowed = _PATCH_FIELDS[kind]
        errors: list[dict[str, Any]] = []
        changes: dict[str, Any] = {}
        for name, value in patch.items():
            if name not in allowed:
                errors.append({
                    "field": f"patch.{name}",
                    "message": f"not patchable on {kind.value} entries",
                })
                continue
            signed = name == "credited"
            try:
                validate_buckets(value, field=f"patch.{name}", allow_negative=signed)
            except ValidationError as exc:
                errors.extend(exc.field_errors)
                continue
            changes[name] = normalize_signed(value) if signed else normalize_non_negative(value)
        if kind is EntryKind.LAPSE and "lapsed" in changes and is_zero(changes["lapsed"]):
            errors.append({"field": "patch.lapsed", "message": "at least one period must have units"})
        if kind is EntryKind.ALLOCATION and "allocated" in changes and is_zero(changes["allocated"]):
            errors.append({"field": "patch.allocated", "message": "at least one period must have units"})
        if errors:
            raise ValidationError(
                "Invalid patch: " + ", ".join(e["field"] for e in errors), errors
            )
        return changes

    @staticmethod
    def _apply_patch(current: LedgerEntry, changes: Mapping[str, Any]) -> dict[str, Any]:
        applied = dict(changes)
        if isinstance(current, AllocationEntry) and "allocated" in applied and "drawn" not in applied:
            applied["drawn"] = applied["allocated"]
        if isinstance(current, BankingEntry):
            # Moving the balance without an explicit credit records the
            # difference as this run's credit.
            if "balance" in applied and "credited" not in applied:
                delta = subtract_buckets(applied["balance"], current.balance)
                applied["credited"] = {
                    p: current.credited.get(p, 0) + delta[p] for p in delta
                }
            elif "credited" in applied and "balance" not in applied:
                delta = subtract_buckets(applied["credited"], current.credited)
                balance = {p: current.balance.get(p, 0) + delta[p] for p in delta}
                if any(v < 0 for v in balance.values()):
                    raise ValidationError.for_field(
                        "patch.credited", "debit exceeds the banking balance"
                    )
                applied["balance"] = balance
        return applied

    def _notify(self, entry: LedgerEntry, action: str, transaction_id: str) -> None:
        payload = entry.to_item()
        payload["transaction_id"] = transaction_id
        self._publisher.publish(f"{entry.kind.event_prefix}.{action}", payload)
