"""
Tests for the period model.

Covers:
- Peak / non-peak partition of the five period keys
- Classification is total and idempotent
- Unknown keys are rejected
"""

import pytest

from energy_kernel.domain.periods import (
    ALL_PERIODS,
    NON_PEAK_PERIODS,
    PEAK_PERIODS,
    PeriodType,
    classify,
    is_non_peak,
    is_peak,
    period_label,
    period_metadata,
)
from energy_kernel.exceptions import ValidationError


class TestPartition:
    def test_two_peak_three_non_peak(self):
        assert PEAK_PERIODS == ("c2", "c3")
        assert NON_PEAK_PERIODS == ("c1", "c4", "c5")

    def test_sets_partition_all_periods(self):
        assert set(PEAK_PERIODS).isdisjoint(NON_PEAK_PERIODS)
        assert set(PEAK_PERIODS) | set(NON_PEAK_PERIODS) == set(ALL_PERIODS)

    def test_canonical_order(self):
        assert ALL_PERIODS == ("c1", "c2", "c3", "c4", "c5")
        assert [period_metadata(p).order for p in ALL_PERIODS] == [1, 2, 3, 4, 5]


class TestClassify:
    @pytest.mark.parametrize("period", ALL_PERIODS)
    def test_classify_is_total_and_exclusive(self, period):
        result = classify(period)
        assert result in (PeriodType.PEAK, PeriodType.NON_PEAK)
        assert is_peak(period) != is_non_peak(period)

    @pytest.mark.parametrize("period", ALL_PERIODS)
    def test_classify_is_idempotent(self, period):
        assert classify(period) is classify(period)

    def test_peak_membership(self):
        assert is_peak("c2")
        assert is_peak("c3")
        assert not is_peak("c1")
        assert is_non_peak("c5")

    def test_unknown_period_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            classify("c6")
        assert exc_info.value.field_errors[0]["field"] == "period"

    def test_labels(self):
        assert period_label("c2") == "C2 (Peak)"
        assert period_label("c4") == "C4 (Non-Peak)"
