"""Tests for time slot resolution."""

from datetime import date, datetime, time

import pytest

from carebase.scheduling.errors import InvalidTimeRange
from carebase.scheduling.time_slots import Occurrence, parse_time_of_day, resolve


class TestParseTimeOfDay:
    def test_valid_time(self):
        assert parse_time_of_day("09:30") == time(9, 30)

    def test_time_passthrough(self):
        assert parse_time_of_day(time(7, 0)) == time(7, 0)

    @pytest.mark.parametrize("value", ["9:30", "24:00", "12:60", "noon", ""])
    def test_rejects_malformed_time(self, value):
        with pytest.raises(InvalidTimeRange):
            parse_time_of_day(value)


class TestResolve:
    def test_same_day_shift(self):
        occurrences = resolve([date(2024, 1, 1), date(2024, 1, 3)], "09:00", "13:00")
        assert occurrences == [
            Occurrence(date(2024, 1, 1), datetime(2024, 1, 1, 9), datetime(2024, 1, 1, 13)),
            Occurrence(date(2024, 1, 3), datetime(2024, 1, 3, 9), datetime(2024, 1, 3, 13)),
        ]
        assert occurrences[0].duration_minutes == 240

    def test_end_before_start_rejected_without_overnight(self):
        with pytest.raises(InvalidTimeRange):
            resolve([date(2024, 1, 1)], "22:00", "06:00")

    def test_equal_times_rejected_without_overnight(self):
        with pytest.raises(InvalidTimeRange):
            resolve([date(2024, 1, 1)], "08:00", "08:00")

    def test_bad_range_rejected_even_without_dates(self):
        with pytest.raises(InvalidTimeRange):
            resolve([], "22:00", "06:00")

    def test_overnight_ends_next_day(self):
        (occurrence,) = resolve([date(2024, 1, 31)], "22:00", "06:00", allow_overnight=True)
        assert occurrence.date == date(2024, 1, 31)
        assert occurrence.start == datetime(2024, 1, 31, 22)
        assert occurrence.end == datetime(2024, 2, 1, 6)
        assert occurrence.duration_minutes == 480

    def test_empty_dates(self):
        assert resolve([], "09:00", "10:00") == []
