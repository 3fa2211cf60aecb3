"""
Month keys -- canonical ``MMYYYY`` accounting month identifiers.

Every store operation uses the 6-character canonical form (``"042025"``
for April 2025). Inputs in ``"YYYY-MM"`` / ``"YYYY-MM-DD"`` form, ``date``
objects, and ``(year, month)`` pairs are accepted and normalized here
before anything touches the store.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from energy_kernel.exceptions import ValidationError

MIN_YEAR = 2000
MAX_YEAR = 2100

_CANONICAL = re.compile(r"^(\d{2})(\d{4})$")
_ISO_MONTH = re.compile(r"^(\d{4})-(\d{1,2})(?:-(\d{1,2}))?$")


def _build(year: int, month: int, raw: Any) -> str:
    if not 1 <= month <= 12:
        raise ValidationError.for_field(
            "month", f"Invalid month {month} in {raw!r}; must be between 1 and 12"
        )
    if not MIN_YEAR <= year <= MAX_YEAR:
        raise ValidationError.for_field(
            "month", f"Invalid year {year} in {raw!r}; must be between {MIN_YEAR} and {MAX_YEAR}"
        )
    return f"{month:02d}{year:04d}"


def to_month_key(value: Any) -> str:
    """
    Normalize a month selector to ``MMYYYY``.

    Raises:
        ValidationError: if the value is missing or not a recognizable month.
    """
    if value is None or value == "":
        raise ValidationError.for_field("month", "Month is required")

    if isinstance(value, (date, datetime)):
        return _build(value.year, value.month, value)

    if isinstance(value, tuple) and len(value) == 2:
        year, month = value
        try:
            return _build(int(year), int(month), value)
        except (TypeError, ValueError) as exc:
            raise ValidationError.for_field("month", f"Invalid month {value!r}") from exc

    if isinstance(value, str):
        text = value.strip()
        match = _CANONICAL.match(text)
        if match:
            return _build(int(match.group(2)), int(match.group(1)), value)
        match = _ISO_MONTH.match(text)
        if match:
            return _build(int(match.group(1)), int(match.group(2)), value)

    raise ValidationError.for_field(
        "month", f"Unrecognized month {value!r}; expected MMYYYY or YYYY-MM"
    )


def is_valid_month_key(value: Any) -> bool:
    """True if value is already a canonical, in-range ``MMYYYY`` key."""
    if not isinstance(value, str) or not _CANONICAL.match(value):
        return False
    try:
        return to_month_key(value) == value
    except ValidationError:
        return False


def month_key_to_date(key: str) -> date:
    """First day of the month named by a key."""
    canonical = to_month_key(key)
    return date(int(canonical[2:]), int(canonical[:2]), 1)


def previous_month_key(key: str) -> str | None:
    """The month before ``key``; None for the first supported month."""
    first = month_key_to_date(key)
    if first.month == 1:
        if first.year == MIN_YEAR:
            return None
        return _build(first.year - 1, 12, key)
    return _build(first.year, first.month - 1, key)
