"""
Entries -- persisted allocation, banking and lapse records.

Responsibility:
    Immutable value objects for the three settlement entry kinds, their
    identity (EntryId), the composite store key they live under
    (EntityKey), and the item <-> entry mapping used by store adapters.

Architecture position:
    Kernel > Domain -- pure data, zero I/O.

Invariants enforced:
    - Allocation and lapse buckets are non-negative integers.
    - Banking ``balance`` (resting) is never negative; ``credited`` is the
      signed delta of the run that wrote it.
    - Versions start at 1 and only ever increase by one per update.

Key layout:
    partition = ``{KIND}#{MMYYYY}``
    sort_key  = ``{production_site}#{MMYYYY}[#{consumption_site}]``
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from energy_kernel.domain.month_key import to_month_key
from energy_kernel.domain.units import (
    Buckets,
    bucket_total,
    normalize_non_negative,
    normalize_signed,
    sparse,
    zero_buckets,
)
from energy_kernel.exceptions import ValidationError

KEY_SEPARATOR = "#"
ID_SEPARATOR = "|"


class EntryKind(str, Enum):
    """Discriminator for entries and candidates."""

    ALLOCATION = "ALLOCATION"
    BANKING = "BANKING"
    LAPSE = "LAPSE"

    @classmethod
    def parse(cls, value: Any) -> EntryKind:
        if isinstance(value, EntryKind):
            return value
        text = str(value or "").strip().upper()
        try:
            return cls(text)
        except ValueError:
            raise ValidationError.for_field(
                "kind", f"Unknown kind {value!r}; expected ALLOCATION, BANKING or LAPSE"
            ) from None

    @property
    def event_prefix(self) -> str:
        return self.value.lower()


class EntrySource(str, Enum):
    """Where an allocation's units came from."""

    PRODUCTION = "PRODUCTION"
    BANKING = "BANKING"
    # Same pair served from both this month's production and a carried balance.
    MIXED = "MIXED"


@dataclass(frozen=True, slots=True, order=True)
class EntityKey:
    """Composite ledger store key."""

    partition: str
    sort_key: str

    def __str__(self) -> str:
        return f"{self.partition}/{self.sort_key}"


@dataclass(frozen=True, slots=True)
class EntryId:
    """
    Identity of an entry: kind + production site + month (+ consumption site).

    Renders as ``KIND|site#MMYYYY[#counterpart]`` and parses back.
    """

    kind: EntryKind
    production_site_id: str
    month: str
    consumption_site_id: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", EntryKind.parse(self.kind))
        object.__setattr__(self, "month", to_month_key(self.month))
        if not self.production_site_id:
            raise ValidationError.for_field("production_site_id", "is required")
        if self.kind is EntryKind.ALLOCATION and not self.consumption_site_id:
            raise ValidationError.for_field(
                "consumption_site_id", "is required for ALLOCATION entries"
            )
        if self.kind is not EntryKind.ALLOCATION and self.consumption_site_id:
            raise ValidationError.for_field(
                "consumption_site_id", f"not allowed for {self.kind.value} entries"
            )
        for part in (self.production_site_id, self.consumption_site_id or ""):
            if KEY_SEPARATOR in part or ID_SEPARATOR in part:
                raise ValidationError.for_field(
                    "site_id", f"site identifiers may not contain {KEY_SEPARATOR!r} or {ID_SEPARATOR!r}"
                )

    @property
    def entity_key(self) -> EntityKey:
        parts = [self.production_site_id, self.month]
        if self.consumption_site_id:
            parts.append(self.consumption_site_id)
        return EntityKey(
            partition=partition_for(self.kind, self.month),
            sort_key=KEY_SEPARATOR.join(parts),
        )

    def __str__(self) -> str:
        return f"{self.kind.value}{ID_SEPARATOR}{self.entity_key.sort_key}"

    @classmethod
    def parse(cls, value: str | EntryId) -> EntryId:
        if isinstance(value, EntryId):
            return value
        try:
            kind, rest = str(value).split(ID_SEPARATOR, 1)
        except ValueError:
            raise ValidationError.for_field("entry_id", f"Malformed entry id {value!r}") from None
        parts = rest.split(KEY_SEPARATOR)
        if len(parts) not in (2, 3):
            raise ValidationError.for_field("entry_id", f"Malformed entry id {value!r}")
        return cls(
            kind=kind,
            production_site_id=parts[0],
            month=parts[1],
            consumption_site_id=parts[2] if len(parts) == 3 else None,
        )


def partition_for(kind: EntryKind, month: str) -> str:
    return f"{EntryKind.parse(kind).value}{KEY_SEPARATOR}{to_month_key(month)}"


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


@dataclass(frozen=True, kw_only=True)
class LedgerEntry:
    """Fields shared by every persisted entry."""

    production_site_id: str
    month: str
    version: int = 1
    transaction_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    kind: EntryKind = field(init=False, default=EntryKind.ALLOCATION)

    @property
    def entry_id(self) -> EntryId:
        return EntryId(self.kind, self.production_site_id, self.month)

    @property
    def buckets(self) -> Buckets:
        """The buckets that count toward month summaries."""
        raise NotImplementedError

    @property
    def total(self) -> int:
        return bucket_total(self.buckets)

    def to_item(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "entry_id": str(self.entry_id),
            "production_site_id": self.production_site_id,
            "month": self.month,
            "buckets": dict(self.buckets),
            "total": self.total,
            "version": self.version,
            "transaction_id": self.transaction_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True, kw_only=True)
class AllocationEntry(LedgerEntry):
    """Units flowing from one production site to one consumption site."""

    consumption_site_id: str
    allocated: Buckets = field(default_factory=zero_buckets)
    drawn: Buckets = field(default_factory=zero_buckets)
    source: EntrySource = EntrySource.PRODUCTION

    kind: EntryKind = field(init=False, default=EntryKind.ALLOCATION)

    @property
    def entry_id(self) -> EntryId:
        return EntryId(self.kind, self.production_site_id, self.month, self.consumption_site_id)

    @property
    def buckets(self) -> Buckets:
        return self.allocated

    def to_item(self) -> dict[str, Any]:
        item = super().to_item()
        item.update(
            consumption_site_id=self.consumption_site_id,
            allocated=sparse(self.allocated),
            drawn=sparse(self.drawn),
            source=self.source.value,
        )
        return item


@dataclass(frozen=True, kw_only=True)
class BankingEntry(LedgerEntry):
    """Carried-forward units of a banking-eligible site for one month."""

    credited: Buckets = field(default_factory=zero_buckets)
    balance: Buckets = field(default_factory=zero_buckets)

    kind: EntryKind = field(init=False, default=EntryKind.BANKING)

    @property
    def buckets(self) -> Buckets:
        return self.balance

    @property
    def total_banking(self) -> int:
        return bucket_total(self.balance)

    def to_item(self) -> dict[str, Any]:
        item = super().to_item()
        item.update(credited=dict(self.credited), balance=dict(self.balance))
        return item


@dataclass(frozen=True, kw_only=True)
class LapseEntry(LedgerEntry):
    """Units neither allocated nor banked; forfeited for the month."""

    lapsed: Buckets = field(default_factory=zero_buckets)

    kind: EntryKind = field(init=False, default=EntryKind.LAPSE)

    @property
    def buckets(self) -> Buckets:
        return self.lapsed

    def to_item(self) -> dict[str, Any]:
        item = super().to_item()
        item.update(lapsed=sparse(self.lapsed))
        return item


def _parse_ts(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def entry_from_item(item: Mapping[str, Any]) -> LedgerEntry:
    """Rebuild an entry from a stored item."""
    kind = EntryKind.parse(item.get("kind"))
    common = dict(
        production_site_id=str(item["production_site_id"]),
        month=to_month_key(item["month"]),
        version=int(item.get("version") or 1),
        transaction_id=item.get("transaction_id"),
        created_at=_parse_ts(item.get("created_at")),
        updated_at=_parse_ts(item.get("updated_at")),
    )
    if kind is EntryKind.ALLOCATION:
        return AllocationEntry(
            consumption_site_id=str(item["consumption_site_id"]),
            allocated=normalize_non_negative(item.get("allocated") or item.get("buckets")),
            drawn=normalize_non_negative(item.get("drawn") or item.get("allocated")),
            source=EntrySource(item.get("source") or EntrySource.PRODUCTION.value),
            **common,
        )
    if kind is EntryKind.BANKING:
        return BankingEntry(
            credited=normalize_signed(item.get("credited")),
            balance=normalize_non_negative(item.get("balance") or item.get("buckets")),
            **common,
        )
    return LapseEntry(
        lapsed=normalize_non_negative(item.get("lapsed") or item.get("buckets")),
        **common,
    )


def bump_version(entry: LedgerEntry, updated_at: datetime, **changes: Any) -> LedgerEntry:
    """Return a copy of entry with version + 1 and the given changes."""
    return replace(entry, version=entry.version + 1, updated_at=updated_at, **changes)
