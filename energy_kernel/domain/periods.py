"""
Periods -- the five sub-daily accounting buckets.

Responsibility:
    Defines the period keys ``c1``..``c5``, their canonical order, and the
    peak / non-peak classification used by the allocation rules.

Architecture position:
    Kernel > Domain -- pure lookup, zero I/O, no state.

Invariants enforced:
    - PEAK_PERIODS and NON_PEAK_PERIODS partition ALL_PERIODS with no
      overlap (checked at import time).
    - Peak units may satisfy non-peak demand; never the reverse.

Failure modes:
    - ValidationError for an unknown period key.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from energy_kernel.exceptions import ValidationError


class PeriodType(str, Enum):
    """Classification of a period key."""

    PEAK = "peak"
    NON_PEAK = "non-peak"


PEAK_PERIODS: tuple[str, ...] = ("c2", "c3")
NON_PEAK_PERIODS: tuple[str, ...] = ("c1", "c4", "c5")
ALL_PERIODS: tuple[str, ...] = ("c1", "c2", "c3", "c4", "c5")


@dataclass(frozen=True, slots=True)
class PeriodMetadata:
    """Display metadata for one period key."""

    key: str
    period_type: PeriodType
    label: str
    description: str
    order: int


_METADATA: dict[str, PeriodMetadata] = {
    key: PeriodMetadata(
        key=key,
        period_type=PeriodType.PEAK if key in PEAK_PERIODS else PeriodType.NON_PEAK,
        label=key.upper(),
        description="Peak Period" if key in PEAK_PERIODS else "Non-Peak Period",
        order=index + 1,
    )
    for index, key in enumerate(ALL_PERIODS)
}

assert set(PEAK_PERIODS).isdisjoint(NON_PEAK_PERIODS)
assert set(PEAK_PERIODS) | set(NON_PEAK_PERIODS) == set(ALL_PERIODS)


def _require_period(period: str) -> str:
    if period not in _METADATA:
        raise ValidationError.for_field(
            "period", f"Unknown period key {period!r}; expected one of {ALL_PERIODS}"
        )
    return period


def classify(period: str) -> PeriodType:
    """Return PEAK or NON_PEAK for a period key."""
    return _METADATA[_require_period(period)].period_type


def is_peak(period: str) -> bool:
    return classify(period) is PeriodType.PEAK


def is_non_peak(period: str) -> bool:
    return classify(period) is PeriodType.NON_PEAK


def period_metadata(period: str) -> PeriodMetadata:
    return _METADATA[_require_period(period)]


def period_label(period: str) -> str:
    """Human label, e.g. ``"C2 (Peak)"``."""
    meta = period_metadata(period)
    kind = "Peak" if meta.period_type is PeriodType.PEAK else "Non-Peak"
    return f"{meta.label} ({kind})"
