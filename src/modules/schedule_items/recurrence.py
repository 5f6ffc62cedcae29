"""Expansion of a recurring schedule item into dated children."""

import calendar
from dataclasses import dataclass
from datetime import date, timedelta

from src.core.exceptions import InvalidFrequency, ValidationError
from src.modules.schedule_items.models import RecurringFrequency

MONTHS_PER_PERIOD = {
    RecurringFrequency.MONTHLY: 1,
    RecurringFrequency.QUARTERLY: 3,
    RecurringFrequency.ANNUALLY: 12,
}


@dataclass(frozen=True)
class Occurrence:
    index: int
    due_date: date


def add_months(start: date, months: int) -> date:
    """Calendar month arithmetic, clamped to the last day of the target month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def advance(start: date, frequency: RecurringFrequency | str, periods: int) -> date:
    """`start` moved forward by `periods` whole periods of `frequency`."""
    try:
        frequency = RecurringFrequency(frequency)
    except ValueError:
        raise InvalidFrequency(frequency)

    if frequency == RecurringFrequency.WEEKLY:
        return start + timedelta(weeks=periods)
    return add_months(start, MONTHS_PER_PERIOD[frequency] * periods)


def occurrence_dates(
    start: date,
    frequency: RecurringFrequency | str | None,
    end_date: date | None = None,
    occurrences: int | None = None,
    generate_until: date | None = None,
    max_occurrences: int = 520,
) -> list[Occurrence]:
    """
    Due dates of the children of a recurring item due on `start`.

    Child n is due `start + n periods`, each computed from `start` so that a
    31st keeps landing on month ends. Generation stops when the next date is
    past the end date (a child on exactly the end date is kept) or when
    `occurrences` children exist, whichever comes first. `generate_until`
    narrows the end date for a partial expansion.
    """
    if frequency is None:
        raise ValidationError("Recurring items require a frequency", field="recurring_frequency")
    # Validates the frequency before any bound checks
    advance(start, frequency, 0)

    if occurrences is not None and occurrences < 1:
        raise ValidationError("Occurrences must be at least 1", field="recurring_occurrences")
    if end_date is None and occurrences is None:
        raise ValidationError(
            "Recurring items require an end date or a number of occurrences",
            field="recurring_end_date",
        )

    boundary = end_date
    if generate_until is not None:
        boundary = generate_until if boundary is None else min(boundary, generate_until)

    result: list[Occurrence] = []
    n = 1
    while True:
        if occurrences is not None and len(result) >= occurrences:
            break
        due = advance(start, frequency, n)
        if boundary is not None and due > boundary:
            break
        if len(result) >= max_occurrences:
            raise ValidationError(
                f"Recurring rule would create more than {max_occurrences} items",
                field="recurring_end_date",
            )
        result.append(Occurrence(index=n, due_date=due))
        n += 1
    return result
