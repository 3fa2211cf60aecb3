"""
Module: energy_engines.allocation_calculator
Responsibility:
    Distribute one month of renewable production across consumption demand,
    carry eligible leftovers into banking and forfeit the rest as lapse.

Architecture position:
    Engines -- pure calculation layer, zero I/O, no clock.
    May only import energy_kernel.domain and energy_kernel.exceptions.

Algorithm (single deterministic pass per category):
    1. Validate and normalize every record.
    2. Outstanding demand per consumption site = normalized demand
       (working copy, decremented as allocations are made).
    3. Solar sites, in input order: match against consumption sites in
       priority order; any remainder lapses (solar never banks).
    4. Banking-eligible wind sites: the whole available set goes into the
       banking pool (added to the carried balance); no direct matching.
    5. Other wind sites: match like solar; remainder lapses.
    6. Remaining demand is served from the banking pool, in pool order.
       Pool entries whose balance reaches zero are spent and dropped.

Invariants enforced:
    - Conservation: allocated + resting banking + lapsed ==
      production + carried balances, in total; and per source period,
      drawn + resting banking + lapsed == production + carried balances.
    - Asymmetric substitution: peak units may cover non-peak demand;
      non-peak units never cover peak demand.
    - A non-peak credit borrows from at most one peak period.
    - No zero-unit allocation or lapse proposal is ever emitted.
    - Every quantity is an integer.

Failure modes:
    - ValidationError for missing site identifiers, duplicate sites,
      negative or non-numeric buckets, or records from different months.

Usage:
    from energy_engines.allocation_calculator import AllocationCalculator

    result = AllocationCalculator().calculate(
        production=[ProductionRecord("P1", SiteCategory.SOLAR, "042025", {"c2": 100})],
        consumption=[ConsumptionRecord("C1", "042025", {"c2": 80})],
    )
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from energy_engines.tracer import traced_engine
from energy_kernel.domain.entries import EntrySource
from energy_kernel.domain.month_key import to_month_key
from energy_kernel.domain.periods import ALL_PERIODS, NON_PEAK_PERIODS, PEAK_PERIODS
from energy_kernel.domain.records import (
    BankingBalance,
    ConsumptionRecord,
    ProductionRecord,
    SiteCategory,
)
from energy_kernel.domain.units import (
    Buckets,
    add_buckets,
    bucket_total,
    has_units,
    normalize_non_negative,
    subtract_buckets,
    validate_buckets,
    zero_buckets,
)
from energy_kernel.exceptions import ValidationError
from energy_kernel.logging_config import get_logger

logger = get_logger("engines.allocation_calculator")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MatchResult:
    """
    Outcome of matching one source against one site's demand.

    ``allocated`` is credited to the consumption site's periods;
    ``drawn`` is what left the source's periods. They differ when leftover
    peak units are borrowed into non-peak demand.
    """

    allocated: Buckets
    drawn: Buckets

    @property
    def total(self) -> int:
        return bucket_total(self.allocated)


@dataclass(frozen=True)
class AllocationProposal:
    """Proposed units from one production site to one consumption site."""

    production_site_id: str
    consumption_site_id: str
    month: str
    allocated: Buckets
    drawn: Buckets
    source: EntrySource = EntrySource.PRODUCTION

    @property
    def total(self) -> int:
        return bucket_total(self.allocated)


@dataclass(frozen=True)
class BankingProposal:
    """
    Proposed banking state of one site after the month.

    ``prior`` is the carried balance, ``credited`` the signed change made by
    this run (new production minus what was drawn), ``balance`` the resting
    balance: ``prior + credited``.
    """

    production_site_id: str
    month: str
    prior: Buckets
    credited: Buckets
    balance: Buckets

    @property
    def total(self) -> int:
        return bucket_total(self.balance)


@dataclass(frozen=True)
class LapseProposal:
    """Units of one site forfeited for the month."""

    production_site_id: str
    month: str
    lapsed: Buckets

    @property
    def total(self) -> int:
        return bucket_total(self.lapsed)


@dataclass(frozen=True)
class CalculationResult:
    """
    Complete proposal set for one month.

    Guarantees:
        - The conservation invariant holds (checked before construction).
    Non-goals:
        - Does not persist anything; the settlement coordinator does.
    """

    month: str | None
    allocations: tuple[AllocationProposal, ...] = ()
    banking_entries: tuple[BankingProposal, ...] = ()
    lapse_entries: tuple[LapseProposal, ...] = ()
    remaining_demand: Mapping[str, Buckets] = field(default_factory=dict)

    @property
    def total_allocated(self) -> int:
        return sum(a.total for a in self.allocations)

    @property
    def total_banked(self) -> int:
        return sum(b.total for b in self.banking_entries)

    @property
    def total_lapsed(self) -> int:
        return sum(lapse.total for lapse in self.lapse_entries)

    @property
    def has_unmet_demand(self) -> bool:
        return any(has_units(b) for b in self.remaining_demand.values())

    @property
    def production_site_ids(self) -> frozenset[str]:
        ids = {a.production_site_id for a in self.allocations}
        ids.update(b.production_site_id for b in self.banking_entries)
        ids.update(lapse.production_site_id for lapse in self.lapse_entries)
        return frozenset(ids)


# ---------------------------------------------------------------------------
# Match sub-algorithm
# ---------------------------------------------------------------------------


def match(available: Mapping[str, int], demand: Mapping[str, int]) -> MatchResult | None:
    """
    Match available units against one site's outstanding demand.

    First pass: each peak period takes ``min(available, demand)``.
    Second pass: each non-peak period with demand first takes its own
    non-peak units, then, if still short, borrows from the first peak
    period (in ``PEAK_PERIODS`` order) with leftover units. The borrowed
    units are credited to the non-peak period and drawn from the peak one.
    Peak demand is never met with non-peak units.

    Returns None when nothing can be allocated.
    """
    allocated = zero_buckets()
    drawn = zero_buckets()

    for period in PEAK_PERIODS:
        take = min(available.get(period, 0), demand.get(period, 0))
        if take > 0:
            allocated[period] += take
            drawn[period] += take

    leftover_peak = {
        period: available.get(period, 0) - drawn[period] for period in PEAK_PERIODS
    }

    for period in NON_PEAK_PERIODS:
        required = demand.get(period, 0)
        if required <= 0:
            continue

        take = min(available.get(period, 0), required)
        if take > 0:
            allocated[period] += take
            drawn[period] += take

        short = required - max(take, 0)
        if short > 0:
            for peak_period in PEAK_PERIODS:
                spare = leftover_peak[peak_period]
                if spare > 0:
                    borrow = min(spare, short)
                    allocated[period] += borrow
                    drawn[peak_period] += borrow
                    leftover_peak[peak_period] -= borrow
                    break

    if bucket_total(allocated) <= 0:
        return None
    return MatchResult(allocated=allocated, drawn=drawn)


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------


@dataclass
class _PoolEntry:
    prior: Buckets
    credited: Buckets
    balance: Buckets


class AllocationCalculator:
    """
    Deterministic rules-based distributor for one accounting month.

    Contract:
        Pure function of its inputs. No I/O, no clock, no randomness.
        Identical inputs always produce identical proposals.
    Non-goals:
        - Does not read or write the ledger; see SettlementCoordinator.
        - Does not price units.
    """

    @traced_engine(
        "allocation_calculator",
        "1.0",
        fingerprint_fields=("production", "consumption", "banking_balances"),
    )
    def calculate(
        self,
        production: Sequence[ProductionRecord],
        consumption: Sequence[ConsumptionRecord],
        banking_balances: Iterable[BankingBalance] = (),
        month: str | None = None,
    ) -> CalculationResult:
        """
        Compute allocations, banking and lapse proposals for one month.

        Args:
            production: Production records, in file order.
            consumption: Consumption records, in input order (tie-break order).
            banking_balances: Resting balances carried into the month.
            month: Optional month selector; records must all belong to it.

        Returns:
            CalculationResult with the three proposal collections.

        Raises:
            ValidationError: on structurally invalid input.
        """
        banking_balances = list(banking_balances)
        month_key = self._validate(production, consumption, banking_balances, month)

        logger.info("allocation_calculation_started", extra={
            "month": month_key,
            "production_sites": len(production),
            "consumption_sites": len(consumption),
            "carried_balances": len(banking_balances),
        })

        outstanding: dict[str, Buckets] = {
            record.consumption_site_id: normalize_non_negative(record.demand)
            for record in consumption
        }
        percentages = self._allocation_percentages(consumption, outstanding)
        allocations: dict[tuple[str, str], AllocationProposal] = {}
        lapses: list[LapseProposal] = []

        # Solar first (never banks), then wind with banking, then plain wind.
        solar = [r for r in production if r.category is SiteCategory.SOLAR]
        banking_wind = [r for r in production if r.can_bank]
        plain_wind = [
            r for r in production
            if r.category is SiteCategory.WIND and not r.can_bank
        ]

        for record in solar:
            self._match_and_lapse(record, month_key, outstanding, percentages, allocations, lapses)

        carried = {
            b.production_site_id: normalize_non_negative(b.balance) for b in banking_balances
        }
        pool: dict[str, _PoolEntry] = {}
        for record in banking_wind:
            units = normalize_non_negative(record.units)
            if not has_units(units):
                continue
            prior = carried.get(record.production_site_id, zero_buckets())
            pool[record.production_site_id] = _PoolEntry(
                prior=prior, credited=units, balance=add_buckets(prior, units),
            )
        for site_id, prior in carried.items():
            if site_id not in pool and has_units(prior):
                pool[site_id] = _PoolEntry(prior=prior, credited=zero_buckets(), balance=dict(prior))

        for record in plain_wind:
            self._match_and_lapse(record, month_key, outstanding, percentages, allocations, lapses)

        if pool and any(has_units(need) for need in outstanding.values()):
            for site_id, entry in pool.items():
                if not has_units(entry.balance):
                    continue
                remaining = self._distribute(
                    site_id, entry.balance, month_key, EntrySource.BANKING,
                    outstanding, percentages, allocations,
                )
                drawn = subtract_buckets(entry.balance, remaining)
                entry.credited = subtract_buckets(entry.credited, drawn)
                entry.balance = remaining
                if has_units(drawn):
                    logger.debug("banking_units_drawn", extra={
                        "production_site_id": site_id,
                        "drawn_total": bucket_total(drawn),
                    })

        banking = tuple(
            BankingProposal(
                production_site_id=site_id,
                month=month_key,
                prior=entry.prior,
                credited=entry.credited,
                balance=entry.balance,
            )
            for site_id, entry in pool.items()
            if has_units(entry.balance)
        )

        result = CalculationResult(
            month=month_key,
            allocations=tuple(allocations.values()),
            banking_entries=banking,
            lapse_entries=tuple(lapses),
            remaining_demand=outstanding,
        )

        self._check_conservation(production, carried, result)

        logger.info("allocation_calculation_completed", extra={
            "month": month_key,
            "allocation_count": len(result.allocations),
            "banking_count": len(result.banking_entries),
            "lapse_count": len(result.lapse_entries),
            "total_allocated": result.total_allocated,
            "total_banked": result.total_banked,
            "total_lapsed": result.total_lapsed,
            "unmet_demand": result.has_unmet_demand,
        })
        return result

    # -- steps ---------------------------------------------------------------

    def _match_and_lapse(
        self,
        record: ProductionRecord,
        month: str,
        outstanding: dict[str, Buckets],
        percentages: Mapping[str, float],
        allocations: dict[tuple[str, str], AllocationProposal],
        lapses: list[LapseProposal],
    ) -> None:
        units = normalize_non_negative(record.units)
        if not has_units(units):
            logger.debug("production_site_skipped", extra={
                "production_site_id": record.production_site_id,
                "reason": "no_available_units",
            })
            return

        remaining = self._distribute(
            record.production_site_id, units, month, EntrySource.PRODUCTION,
            outstanding, percentages, allocations,
        )
        if has_units(remaining):
            lapses.append(LapseProposal(
                production_site_id=record.production_site_id,
                month=month,
                lapsed=remaining,
            ))

    def _distribute(
        self,
        production_site_id: str,
        available: Buckets,
        month: str,
        source: EntrySource,
        outstanding: dict[str, Buckets],
        percentages: Mapping[str, float],
        allocations: dict[tuple[str, str], AllocationProposal],
    ) -> Buckets:
        """Run match against every site in priority order; return what is left."""
        units = dict(available)
        for site_id in self._priority_order(outstanding, percentages):
            need = outstanding[site_id]
            if not has_units(need):
                continue
            if not has_units(units):
                break

            result = match(units, need)
            if result is None:
                continue

            key = (production_site_id, site_id)
            existing = allocations.get(key)
            if existing is None:
                allocations[key] = AllocationProposal(
                    production_site_id=production_site_id,
                    consumption_site_id=site_id,
                    month=month,
                    allocated=result.allocated,
                    drawn=result.drawn,
                    source=source,
                )
            else:
                allocations[key] = AllocationProposal(
                    production_site_id=production_site_id,
                    consumption_site_id=site_id,
                    month=month,
                    allocated=add_buckets(existing.allocated, result.allocated),
                    drawn=add_buckets(existing.drawn, result.drawn),
                    source=existing.source if existing.source is source else EntrySource.MIXED,
                )

            outstanding[site_id] = subtract_buckets(need, result.allocated)
            units = subtract_buckets(units, result.drawn)
        return units

    @staticmethod
    def _allocation_percentages(
        consumption: Sequence[ConsumptionRecord],
        demand: Mapping[str, Buckets],
    ) -> dict[str, float]:
        """Explicit percentage, else the site's share of total demand (x100)."""
        grand_total = sum(bucket_total(b) for b in demand.values())
        percentages: dict[str, float] = {}
        for record in consumption:
            if record.allocation_percentage is not None:
                percentages[record.consumption_site_id] = float(record.allocation_percentage)
            elif grand_total > 0:
                share = bucket_total(demand[record.consumption_site_id]) / grand_total
                percentages[record.consumption_site_id] = share * 100
            else:
                percentages[record.consumption_site_id] = 0.0
        return percentages

    @staticmethod
    def _priority_order(
        outstanding: Mapping[str, Buckets],
        percentages: Mapping[str, float],
    ) -> list[str]:
        """
        Sites with outstanding demand first, by ``outstanding * percentage``
        descending; satisfied sites after, by percentage descending. The sort
        is stable, so equal keys keep input order.
        """

        def key(site_id: str) -> tuple[int, float]:
            total = bucket_total(outstanding[site_id])
            pct = percentages.get(site_id, 0.0)
            if total > 0:
                return (0, -(total * pct))
            return (1, -pct)

        return sorted(outstanding, key=key)

    # -- validation / invariants --------------------------------------------

    @staticmethod
    def _validate(
        production: Sequence[ProductionRecord],
        consumption: Sequence[ConsumptionRecord],
        banking_balances: Sequence[BankingBalance],
        month: str | None,
    ) -> str | None:
        errors: list[dict[str, Any]] = []
        months: set[str] = set()

        def collect(fn, *args, **kwargs) -> Any:
            try:
                return fn(*args, **kwargs)
            except ValidationError as exc:
                errors.extend(exc.field_errors or [{"field": "input", "message": str(exc)}])
                return None

        seen_production: set[str] = set()
        for index, record in enumerate(production):
            prefix = f"production[{index}]"
            if not record.production_site_id:
                errors.append({"field": f"{prefix}.production_site_id", "message": "is required"})
            elif record.production_site_id in seen_production:
                errors.append({"field": f"{prefix}.production_site_id",
                               "message": f"duplicate site {record.production_site_id}"})
            seen_production.add(record.production_site_id)
            collect(validate_buckets, record.units, field=f"{prefix}.units")
            key = collect(to_month_key, record.month)
            if key:
                months.add(key)

        seen_consumption: set[str] = set()
        for index, record in enumerate(consumption):
            prefix = f"consumption[{index}]"
            if not record.consumption_site_id:
                errors.append({"field": f"{prefix}.consumption_site_id", "message": "is required"})
            elif record.consumption_site_id in seen_consumption:
                errors.append({"field": f"{prefix}.consumption_site_id",
                               "message": f"duplicate site {record.consumption_site_id}"})
            seen_consumption.add(record.consumption_site_id)
            collect(validate_buckets, record.demand, field=f"{prefix}.demand")
            if record.allocation_percentage is not None and record.allocation_percentage < 0:
                errors.append({"field": f"{prefix}.allocation_percentage", "message": "negative value"})
            key = collect(to_month_key, record.month)
            if key:
                months.add(key)

        seen_banking: set[str] = set()
        for index, balance in enumerate(banking_balances):
            prefix = f"banking_balances[{index}]"
            if not balance.production_site_id:
                errors.append({"field": f"{prefix}.production_site_id", "message": "is required"})
            elif balance.production_site_id in seen_banking:
                errors.append({"field": f"{prefix}.production_site_id",
                               "message": f"duplicate site {balance.production_site_id}"})
            seen_banking.add(balance.production_site_id)
            collect(validate_buckets, balance.balance, field=f"{prefix}.balance")

        expected = collect(to_month_key, month) if month is not None else None
        if expected is not None:
            months.add(expected)
        if len(months) > 1:
            errors.append({"field": "month", "message": f"records span several months: {sorted(months)}"})

        if errors:
            logger.warning("allocation_input_rejected", extra={"error_count": len(errors)})
            raise ValidationError(
                "Invalid allocation input: " + ", ".join(e["field"] for e in errors),
                errors,
            )
        return next(iter(months)) if months else None

    @staticmethod
    def _check_conservation(
        production: Sequence[ProductionRecord],
        carried: Mapping[str, Buckets],
        result: CalculationResult,
    ) -> None:
        supplied = zero_buckets()
        for record in production:
            supplied = add_buckets(supplied, normalize_non_negative(record.units))
        for prior in carried.values():
            supplied = add_buckets(supplied, prior)

        accounted = zero_buckets()
        for allocation in result.allocations:
            accounted = add_buckets(accounted, allocation.drawn)
        for banking in result.banking_entries:
            accounted = add_buckets(accounted, banking.balance)
        for lapse in result.lapse_entries:
            accounted = add_buckets(accounted, lapse.lapsed)

        # INVARIANT: conservation per source period, hence in total
        assert all(supplied[p] == accounted[p] for p in ALL_PERIODS), (
            f"Allocation conservation violated: supplied {supplied} != accounted {accounted}"
        )
        assert bucket_total(supplied) == (
            result.total_allocated + result.total_banked + result.total_lapsed
        ), "Allocation conservation violated in total"
