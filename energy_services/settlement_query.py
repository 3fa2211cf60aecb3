"""
SettlementQueryService -- read side of the settlement ledger.

Responsibility:
    Serves the month view consumed by the HTTP layer: the allocation,
    banking and lapse collections of one month (optionally one kind) and
    the derived summary.

Architecture position:
    Services -- read-only. Never writes, never takes leases.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from energy_engines.summary import summarize
from energy_kernel.domain.entries import (
    AllocationEntry,
    BankingEntry,
    EntryKind,
    LapseEntry,
    entry_from_item,
    partition_for,
)
from energy_kernel.domain.month_key import to_month_key
from energy_kernel.logging_config import get_logger
from energy_services.ledger_store import LedgerStore

logger = get_logger("services.settlement_query")


@dataclass(frozen=True)
class MonthSettlement:
    month: str
    allocations: tuple[AllocationEntry, ...] = ()
    banking: tuple[BankingEntry, ...] = ()
    lapse: tuple[LapseEntry, ...] = ()
    summary: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "month": self.month,
            "allocations": [e.to_item() for e in self.allocations],
            "banking": [e.to_item() for e in self.banking],
            "lapse": [e.to_item() for e in self.lapse],
            "summary": self.summary,
        }


class SettlementQueryService:
    """Month view over a LedgerStore."""

    def __init__(self, store: LedgerStore):
        self._store = store

    def get_month(self, month: Any, kind: EntryKind | str | None = None) -> MonthSettlement:
        """
        Entries of one month, optionally filtered to one kind.

        Raises:
            ValidationError: unrecognizable month or kind.
        """
        month_key = to_month_key(month)
        kinds = [EntryKind.parse(kind)] if kind is not None else list(EntryKind)

        collected: dict[EntryKind, list] = {k: [] for k in EntryKind}
        for entry_kind in kinds:
            for item in self._store.query_by_prefix(partition_for(entry_kind, month_key)):
                collected[entry_kind].append(entry_from_item(item))

        entries = [e for k in EntryKind for e in collected[k]]
        result = MonthSettlement(
            month=month_key,
            allocations=tuple(collected[EntryKind.ALLOCATION]),
            banking=tuple(collected[EntryKind.BANKING]),
            lapse=tuple(collected[EntryKind.LAPSE]),
            summary=summarize(entries),
        )
        logger.debug("settlement_month_read", extra={
            "month": month_key,
            "kind": kind.value if isinstance(kind, EntryKind) else kind,
            "entry_count": len(entries),
        })
        return result
