"""Tests for canonical MMYYYY month keys."""

from datetime import date

import pytest

from energy_kernel.domain.month_key import (
    is_valid_month_key,
    month_key_to_date,
    previous_month_key,
    to_month_key,
)
from energy_kernel.exceptions import ValidationError


class TestToMonthKey:
    @pytest.mark.parametrize(
        "value",
        ["042025", "2025-04", "2025-4", "2025-04-17", date(2025, 4, 30), (2025, 4)],
    )
    def test_accepted_forms(self, value):
        assert to_month_key(value) == "042025"

    @pytest.mark.parametrize("value", ["132025", "002025", "041999", "042101", "April", None, ""])
    def test_rejected_forms(self, value):
        with pytest.raises(ValidationError):
            to_month_key(value)

    def test_canonical_detection(self):
        assert is_valid_month_key("122024")
        assert not is_valid_month_key("2024-12")
        assert not is_valid_month_key("132024")


class TestMonthArithmetic:
    def test_to_date(self):
        assert month_key_to_date("042025") == date(2025, 4, 1)

    def test_previous_month(self):
        assert previous_month_key("042025") == "032025"

    def test_previous_month_wraps_year(self):
        assert previous_month_key("012025") == "122024"

    def test_previous_month_at_lower_bound(self):
        assert previous_month_key("012000") is None
