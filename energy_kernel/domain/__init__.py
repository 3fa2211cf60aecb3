"""
Pure domain layer.

Data carriers and rules with NO dependencies on the ORM, the ledger store,
the clock (except the Clock abstraction itself) or any other I/O.
"""

from energy_kernel.domain.candidates import (
    AllocationCandidate,
    BankingCandidate,
    Candidate,
    LapseCandidate,
    parse_candidate,
    validate_candidate,
)
from energy_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from energy_kernel.domain.entries import (
    AllocationEntry,
    BankingEntry,
    EntityKey,
    EntryId,
    EntryKind,
    EntrySource,
    LapseEntry,
    LedgerEntry,
    entry_from_item,
)
from energy_kernel.domain.month_key import previous_month_key, to_month_key
from energy_kernel.domain.periods import (
    ALL_PERIODS,
    NON_PEAK_PERIODS,
    PEAK_PERIODS,
    PeriodType,
    classify,
    is_non_peak,
    is_peak,
)
from energy_kernel.domain.records import (
    BankingBalance,
    ConsumptionRecord,
    ProductionRecord,
    SiteCategory,
)
from energy_kernel.domain.units import (
    Buckets,
    normalize_non_negative,
    normalize_signed,
    validate_buckets,
)

__all__ = [
    "ALL_PERIODS",
    "AllocationCandidate",
    "AllocationEntry",
    "BankingBalance",
    "BankingCandidate",
    "BankingEntry",
    "Buckets",
    "Candidate",
    "Clock",
    "ConsumptionRecord",
    "DeterministicClock",
    "EntityKey",
    "EntryId",
    "EntryKind",
    "EntrySource",
    "LapseCandidate",
    "LapseEntry",
    "LedgerEntry",
    "NON_PEAK_PERIODS",
    "PEAK_PERIODS",
    "PeriodType",
    "ProductionRecord",
    "SiteCategory",
    "SystemClock",
    "classify",
    "entry_from_item",
    "is_non_peak",
    "is_peak",
    "normalize_non_negative",
    "normalize_signed",
    "parse_candidate",
    "previous_month_key",
    "to_month_key",
    "validate_buckets",
    "validate_candidate",
]
