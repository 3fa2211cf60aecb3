"""
Module: energy_engines.summary
Responsibility:
    Derive the month summary returned alongside the entry collections:
    ``{total, peak, nonPeak, regular, banking, lapse}``.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - ``total == peak + nonPeak``.
    - ``total == regular.total + banking.total + lapse.total``.
    - Banking entries count with their resting balance, never a debit.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from energy_kernel.domain.entries import EntryKind, LedgerEntry
from energy_kernel.domain.units import (
    bucket_total,
    non_peak_total,
    normalize_non_negative,
    peak_total,
)

_SECTION = {
    EntryKind.ALLOCATION: "regular",
    EntryKind.BANKING: "banking",
    EntryKind.LAPSE: "lapse",
}


def empty_summary() -> dict[str, Any]:
    return {
        "total": 0,
        "peak": 0,
        "nonPeak": 0,
        "regular": {"count": 0, "total": 0},
        "banking": {"count": 0, "total": 0},
        "lapse": {"count": 0, "total": 0},
    }


def summarize(entries: Iterable[LedgerEntry]) -> dict[str, Any]:
    """Sum each entry's normalized buckets into the month summary."""
    summary = empty_summary()
    for entry in entries:
        buckets = normalize_non_negative(entry.buckets)
        section = summary[_SECTION[entry.kind]]
        section["count"] += 1
        section["total"] += bucket_total(buckets)
        summary["peak"] += peak_total(buckets)
        summary["nonPeak"] += non_peak_total(buckets)
    summary["total"] = summary["peak"] + summary["nonPeak"]
    return summary
