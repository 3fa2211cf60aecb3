"""
Units -- normalization of raw period bucket values.

Responsibility:
    Coerces raw per-period values into integer unit counts with exactly
    five keys in canonical order, and provides the small bucket arithmetic
    every other component relies on.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Output of both normalizers always has the five keys of ALL_PERIODS,
      in canonical order.
    - Rounding is half-up to the nearest integer; no fractional unit ever
      leaves this module.
    - ``normalize_non_negative`` never yields a negative bucket;
      ``normalize_signed`` preserves debits.

Failure modes:
    - The normalizers never raise: missing, None, non-numeric and
      non-finite values become 0.
    - ``validate_buckets`` is the strict boundary check and raises
      ValidationError listing every offending period.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from energy_kernel.domain.periods import ALL_PERIODS, NON_PEAK_PERIODS, PEAK_PERIODS
from energy_kernel.exceptions import ValidationError

Buckets = dict[str, int]


def _coerce(value: Any) -> Decimal | None:
    """Return value as a finite Decimal, or None if it is not a number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not number.is_finite():
        return None
    return number


def _round(number: Decimal) -> int:
    return int(number.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_signed(buckets: Mapping[str, Any] | None) -> Buckets:
    """Normalize to integers, keeping negative values (banking debits)."""
    buckets = buckets or {}
    result: Buckets = {}
    for period in ALL_PERIODS:
        number = _coerce(buckets.get(period))
        result[period] = _round(number) if number is not None else 0
    return result


def normalize_non_negative(buckets: Mapping[str, Any] | None) -> Buckets:
    """Normalize to integers, clamping negative values to zero."""
    return {period: max(0, value) for period, value in normalize_signed(buckets).items()}


def validate_buckets(
    buckets: Mapping[str, Any] | None,
    field: str = "buckets",
    allow_negative: bool = False,
) -> None:
    """
    Strict check for values that are present.

    Absent or None periods are fine (they normalize to 0). Present values
    must be numeric and, unless ``allow_negative``, not negative. Unknown
    period keys are rejected.
    """
    if buckets is None:
        return
    if not isinstance(buckets, Mapping):
        raise ValidationError.for_field(field, "must be a mapping of period -> units")

    errors: list[dict[str, Any]] = []
    for key in buckets:
        if key not in ALL_PERIODS:
            errors.append({"field": f"{field}.{key}", "message": "unknown period key"})
    for period in ALL_PERIODS:
        raw = buckets.get(period)
        if raw is None:
            continue
        number = _coerce(raw)
        if number is None:
            errors.append({"field": f"{field}.{period}", "message": f"non-numeric value {raw!r}"})
        elif number < 0 and not allow_negative:
            errors.append({"field": f"{field}.{period}", "message": f"negative value {raw!r}"})

    if errors:
        raise ValidationError(
            f"Invalid {field}: " + ", ".join(e["field"] for e in errors),
            errors,
        )


def zero_buckets() -> Buckets:
    return {period: 0 for period in ALL_PERIODS}


def bucket_total(buckets: Mapping[str, int]) -> int:
    return sum(buckets.get(period, 0) for period in ALL_PERIODS)


def peak_total(buckets: Mapping[str, int]) -> int:
    return sum(buckets.get(period, 0) for period in PEAK_PERIODS)


def non_peak_total(buckets: Mapping[str, int]) -> int:
    return sum(buckets.get(period, 0) for period in NON_PEAK_PERIODS)


def has_units(buckets: Mapping[str, int]) -> bool:
    """True if any period holds a positive amount."""
    return any(buckets.get(period, 0) > 0 for period in ALL_PERIODS)


def is_zero(buckets: Mapping[str, int]) -> bool:
    return all(buckets.get(period, 0) == 0 for period in ALL_PERIODS)


def add_buckets(left: Mapping[str, int], right: Mapping[str, int]) -> Buckets:
    return {period: left.get(period, 0) + right.get(period, 0) for period in ALL_PERIODS}


def subtract_buckets(left: Mapping[str, int], right: Mapping[str, int]) -> Buckets:
    return {period: left.get(period, 0) - right.get(period, 0) for period in ALL_PERIODS}


def sparse(buckets: Mapping[str, int]) -> Buckets:
    """Drop zero periods, keeping canonical order."""
    return {period: buckets[period] for period in ALL_PERIODS if buckets.get(period, 0) != 0}
