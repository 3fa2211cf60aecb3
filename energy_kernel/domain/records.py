"""
Records -- read-only production and consumption inputs for one month.

Responsibility:
    Typed carriers for metered production, consumption demand and carried
    banking balances. Produced upstream (metering import) and never mutated
    by the engine; the calculator derives remainders from normalized copies.

Architecture position:
    Kernel > Domain -- pure data, zero I/O.

Non-goals:
    - Records hold raw bucket values. Strict validation and normalization
      happen in the calculator (see energy_kernel.domain.units).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from energy_kernel.domain.periods import ALL_PERIODS
from energy_kernel.exceptions import ValidationError


class SiteCategory(str, Enum):
    """Production site technology."""

    SOLAR = "solar"
    WIND = "wind"

    @classmethod
    def parse(cls, value: Any) -> SiteCategory:
        if isinstance(value, SiteCategory):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value == text:
                return member
        raise ValidationError.for_field(
            "category", f"Unknown site category {value!r}; expected solar or wind"
        )


def _truthy_flag(value: Any) -> bool:
    # The metering feed encodes banking as 1/0, "1"/"0" or booleans.
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y")
    return bool(value) and value != 0


def _extract_buckets(data: Mapping[str, Any], nested_key: str) -> dict[str, Any]:
    nested = data.get(nested_key)
    if isinstance(nested, Mapping):
        return dict(nested)
    return {period: data[period] for period in ALL_PERIODS if period in data}


@dataclass(frozen=True)
class ProductionRecord:
    """Metered production of one site for one month."""

    production_site_id: str
    category: SiteCategory
    month: str
    units: Mapping[str, Any] = field(default_factory=dict)
    banking_eligible: bool = False
    site_name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "category", SiteCategory.parse(self.category))

    @property
    def can_bank(self) -> bool:
        """Only wind sites flagged for banking may carry units forward."""
        return self.category is SiteCategory.WIND and self.banking_eligible

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ProductionRecord:
        """Build from a feed row (``productionSiteId``, ``type``, ``banking``, ``c1``..)."""
        return cls(
            production_site_id=str(data.get("productionSiteId") or data.get("production_site_id") or ""),
            category=data.get("type") or data.get("category"),
            month=str(data.get("month") or data.get("sk") or ""),
            units=_extract_buckets(data, "units"),
            banking_eligible=_truthy_flag(data.get("banking", data.get("banking_eligible", False))),
            site_name=str(data.get("siteName") or data.get("site_name") or ""),
        )


@dataclass(frozen=True)
class ConsumptionRecord:
    """Demand of one consumption site for one month."""

    consumption_site_id: str
    month: str
    demand: Mapping[str, Any] = field(default_factory=dict)
    allocation_percentage: float | None = None
    site_name: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ConsumptionRecord:
        percentage = data.get("allocationPercentage", data.get("allocation_percentage"))
        return cls(
            consumption_site_id=str(data.get("consumptionSiteId") or data.get("consumption_site_id") or ""),
            month=str(data.get("month") or data.get("sk") or ""),
            demand=_extract_buckets(data, "demand"),
            allocation_percentage=float(percentage) if percentage is not None else None,
            site_name=str(data.get("siteName") or data.get("site_name") or ""),
        )


@dataclass(frozen=True)
class BankingBalance:
    """Resting banking balance of one site carried into the month."""

    production_site_id: str
    balance: Mapping[str, Any] = field(default_factory=dict)
