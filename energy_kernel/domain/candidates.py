"""
Candidates -- validated requests to create a settlement entry.

Responsibility:
    A tagged variant ``Candidate = AllocationCandidate | BankingCandidate |
    LapseCandidate`` discriminated by an explicit ``kind``. Raw input is
    validated here, at the boundary, before it reaches the coordinator;
    candidates that exist are always well-formed.

Architecture position:
    Kernel > Domain -- pure validation, zero I/O.

Invariants enforced:
    - Allocation and lapse buckets are non-negative with at least one
      non-zero period.
    - Banking buckets may be negative (debit adjustment) but not all zero.
    - Month is canonical ``MMYYYY``.

Failure modes:
    - ValidationError with one ``field_errors`` item per problem found.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from energy_kernel.domain.entries import EntryId, EntryKind
from energy_kernel.domain.month_key import to_month_key
from energy_kernel.domain.units import (
    Buckets,
    is_zero,
    normalize_non_negative,
    normalize_signed,
    validate_buckets,
)
from energy_kernel.exceptions import ValidationError


@dataclass(frozen=True)
class AllocationCandidate:
    production_site_id: str
    consumption_site_id: str
    month: str
    allocated: Buckets

    kind = EntryKind.ALLOCATION

    @property
    def entry_id(self) -> EntryId:
        return EntryId(self.kind, self.production_site_id, self.month, self.consumption_site_id)


@dataclass(frozen=True)
class BankingCandidate:
    production_site_id: str
    month: str
    credited: Buckets

    kind = EntryKind.BANKING

    @property
    def entry_id(self) -> EntryId:
        return EntryId(self.kind, self.production_site_id, self.month)


@dataclass(frozen=True)
class LapseCandidate:
    production_site_id: str
    month: str
    lapsed: Buckets

    kind = EntryKind.LAPSE

    @property
    def entry_id(self) -> EntryId:
        return EntryId(self.kind, self.production_site_id, self.month)


Candidate = Union[AllocationCandidate, BankingCandidate, LapseCandidate]

_BUCKET_FIELD = {
    EntryKind.ALLOCATION: "allocated",
    EntryKind.BANKING: "credited",
    EntryKind.LAPSE: "lapsed",
}


def _first(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = data.get(name)
        if value not in (None, ""):
            return value
    return None


def parse_candidate(data: Mapping[str, Any]) -> Candidate:
    """
    Validate a raw mapping and build the matching candidate.

    Accepts snake_case or the camelCase keys used by the HTTP layer.
    Bucket values may be given nested (``allocated`` / ``credited`` /
    ``lapsed``) or flat (``c1``..``c5``). Unknown extra fields are ignored.
    """
    if not isinstance(data, Mapping):
        raise ValidationError.for_field("candidate", "must be a mapping")

    errors: list[dict[str, Any]] = []

    raw_kind = data.get("kind")
    if raw_kind in (None, ""):
        raise ValidationError.for_field("kind", "is required")
    kind = EntryKind.parse(raw_kind)
    bucket_field = _BUCKET_FIELD[kind]

    production_site_id = _first(data, "production_site_id", "productionSiteId")
    if production_site_id is None:
        errors.append({"field": "production_site_id", "message": "is required"})

    consumption_site_id = _first(data, "consumption_site_id", "consumptionSiteId")
    if kind is EntryKind.ALLOCATION and consumption_site_id is None:
        errors.append({"field": "consumption_site_id", "message": "is required"})

    month = None
    raw_month = _first(data, "month", "sk")
    try:
        month = to_month_key(raw_month)
    except ValidationError as exc:
        errors.extend(exc.field_errors)

    raw_buckets = data.get(bucket_field)
    if raw_buckets is None:
        flat = {k: data[k] for k in ("c1", "c2", "c3", "c4", "c5") if k in data}
        raw_buckets = flat or None
    buckets: Buckets | None = None
    if raw_buckets is None:
        errors.append({"field": bucket_field, "message": "is required"})
    else:
        try:
            validate_buckets(raw_buckets, field=bucket_field, allow_negative=kind is EntryKind.BANKING)
        except ValidationError as exc:
            errors.extend(exc.field_errors)
        else:
            if kind is EntryKind.BANKING:
                buckets = normalize_signed(raw_buckets)
            else:
                buckets = normalize_non_negative(raw_buckets)
            if is_zero(buckets):
                errors.append({
                    "field": bucket_field,
                    "message": "at least one period must have units",
                })

    if errors:
        raise ValidationError(
            "Invalid candidate: " + ", ".join(e["field"] for e in errors),
            errors,
        )

    if kind is EntryKind.ALLOCATION:
        candidate: Candidate = AllocationCandidate(
            production_site_id=str(production_site_id),
            consumption_site_id=str(consumption_site_id),
            month=month,
            allocated=buckets,
        )
    elif kind is EntryKind.BANKING:
        candidate = BankingCandidate(
            production_site_id=str(production_site_id), month=month, credited=buckets
        )
    else:
        candidate = LapseCandidate(
            production_site_id=str(production_site_id), month=month, lapsed=buckets
        )

    # EntryId construction checks site identifiers for separator characters.
    candidate.entry_id
    return candidate


def validate_candidate(candidate: Candidate | Mapping[str, Any]) -> Candidate:
    """Accept either a raw mapping or an already-built candidate and re-check it."""
    if isinstance(candidate, Mapping):
        return parse_candidate(candidate)
    if not isinstance(candidate, (AllocationCandidate, BankingCandidate, LapseCandidate)):
        raise ValidationError.for_field(
            "candidate", f"unsupported candidate type {type(candidate).__name__}"
        )
    bucket_field = _BUCKET_FIELD[candidate.kind]
    data = {
        "kind": candidate.kind.value,
        "production_site_id": candidate.production_site_id,
        "month": candidate.month,
        bucket_field: getattr(candidate, bucket_field),
    }
    if isinstance(candidate, AllocationCandidate):
        data["consumption_site_id"] = candidate.consumption_site_id
    return parse_candidate(data)
