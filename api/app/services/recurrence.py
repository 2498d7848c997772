"""Recurrence expansion for weekly and monthly booking series.

Pure calculation module. ``expand`` is a generator over its arguments only,
so calling it again with the same inputs restarts the same sequence.

Each occurrence is computed from the original start rather than from the
previous occurrence. For monthly series that means the day of month is
clamped to the end of shorter months without drifting afterwards:
Jan 31 -> Feb 28 (29 in leap years) -> Mar 31 -> Apr 30.
"""

from collections.abc import Iterator
from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

from app.models.reservation import RecurrenceFrequency
from app.services.intervals import TimeInterval


def occurrence_start(start: datetime, frequency: RecurrenceFrequency, index: int) -> datetime:
    """Start of the ``index``-th occurrence (0 is ``start`` itself)."""
    if frequency == RecurrenceFrequency.WEEKLY:
        return start + timedelta(weeks=index)
    if frequency == RecurrenceFrequency.MONTHLY:
        return start + relativedelta(months=index)
    raise ValueError(f"Unsupported frequency: {frequency}")


def expand(
    start: datetime,
    frequency: RecurrenceFrequency,
    until: datetime,
    duration: timedelta,
) -> Iterator[TimeInterval]:
    """Yield candidate intervals in chronological order while their start is <= ``until``.

    Empty when ``until`` is before ``start``. Occurrences never overlap one
    another as long as ``duration`` is shorter than a week. The sequence also
    ends at the last occurrence ``datetime`` can represent.
    """
    occurrence_start(start, frequency, 0)  # unsupported frequencies raise here
    index = 0
    while True:
        try:
            occurrence = occurrence_start(start, frequency, index)
            end = occurrence + duration
        except (OverflowError, ValueError):
            return
        if occurrence > until:
            return
        yield TimeInterval(occurrence, end)
        index += 1
