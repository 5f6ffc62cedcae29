from datetime import date

import pytest

from src.core.exceptions import InvalidFrequency, ValidationError
from src.modules.schedule_items.recurrence import add_months, advance, occurrence_dates


def _dates(occurrences):
    return [o.due_date for o in occurrences]


class TestAddMonths:
    def test_plain(self):
        assert add_months(date(2024, 1, 15), 1) == date(2024, 2, 15)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)

    def test_clamps_to_month_end(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 1, 31), 3) == date(2024, 4, 30)

    def test_leap_day_annual(self):
        assert add_months(date(2024, 2, 29), 12) == date(2025, 2, 28)


class TestAdvance:
    def test_weekly(self):
        assert advance(date(2024, 1, 15), "weekly", 2) == date(2024, 1, 29)

    def test_quarterly(self):
        assert advance(date(2024, 1, 15), "quarterly", 1) == date(2024, 4, 15)

    def test_unknown_frequency(self):
        with pytest.raises(InvalidFrequency):
            advance(date(2024, 1, 15), "fortnightly", 1)


class TestOccurrenceDates:
    """Tests for the recurring expansion."""

    def test_monthly_by_count(self):
        result = occurrence_dates(date(2024, 1, 15), "monthly", occurrences=3)
        assert _dates(result) == [date(2024, 2, 15), date(2024, 3, 15), date(2024, 4, 15)]
        assert [o.index for o in result] == [1, 2, 3]

    def test_month_end_is_not_accumulated(self):
        """Jan 31 -> Feb 29 must not drag March back to the 29th."""
        result = occurrence_dates(date(2024, 1, 31), "monthly", occurrences=3)
        assert _dates(result) == [date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)]

    def test_end_date_is_inclusive(self):
        result = occurrence_dates(date(2024, 1, 1), "weekly", end_date=date(2024, 1, 22))
        assert _dates(result) == [date(2024, 1, 8), date(2024, 1, 15), date(2024, 1, 22)]

    def test_first_bound_wins(self):
        result = occurrence_dates(
            date(2024, 1, 15), "monthly", end_date=date(2024, 12, 31), occurrences=2
        )
        assert len(result) == 2

        result = occurrence_dates(
            date(2024, 1, 15), "annually", end_date=date(2025, 6, 1), occurrences=5
        )
        assert _dates(result) == [date(2025, 1, 15)]

    def test_end_date_before_first_child(self):
        assert occurrence_dates(date(2024, 1, 15), "monthly", end_date=date(2024, 2, 1)) == []

    def test_generate_until_narrows(self):
        result = occurrence_dates(
            date(2024, 1, 15), "monthly", occurrences=12, generate_until=date(2024, 3, 31)
        )
        assert _dates(result) == [date(2024, 2, 15), date(2024, 3, 15)]

    def test_unknown_frequency(self):
        with pytest.raises(InvalidFrequency):
            occurrence_dates(date(2024, 1, 15), "daily", occurrences=3)

    def test_requires_a_bound(self):
        with pytest.raises(ValidationError):
            occurrence_dates(date(2024, 1, 15), "monthly")

    def test_requires_frequency(self):
        with pytest.raises(ValidationError):
            occurrence_dates(date(2024, 1, 15), None, occurrences=2)

    def test_safety_cap(self):
        with pytest.raises(ValidationError):
            occurrence_dates(
                date(2024, 1, 1), "weekly", end_date=date(2030, 1, 1), max_occurrences=10
            )
