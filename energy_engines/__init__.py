"""
Module: energy_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines. This is
    the import surface for energy_services.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import energy_kernel.domain, energy_kernel.exceptions and
    energy_kernel.logging_config. MUST NOT import energy_services or
    energy_config.

Invariants enforced:
    - Purity: engines never read the clock or touch the ledger store.
    - Determinism: identical inputs always produce identical outputs.
    - Integer-only arithmetic on unit buckets.

Usage:
    from energy_engines import AllocationCalculator, summarize
"""

from energy_engines.allocation_calculator import (
    AllocationCalculator,
    AllocationProposal,
    BankingProposal,
    CalculationResult,
    LapseProposal,
    MatchResult,
    match,
)
from energy_engines.summary import empty_summary, summarize
from energy_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    "AllocationCalculator",
    "AllocationProposal",
    "BankingProposal",
    "CalculationResult",
    "LapseProposal",
    "MatchResult",
    "compute_input_fingerprint",
    "empty_summary",
    "match",
    "summarize",
    "traced_engine",
]
