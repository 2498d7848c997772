"""Half-open time intervals and the one overlap rule used everywhere.

Pure calculation module: no database, no async, no FastAPI dependencies.
``overlaps`` answers the question for two in-memory intervals and
``overlap_clause`` asks the same question of SQL columns, so the conflict
checker and any in-memory check agree by construction.
"""

import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import and_
from sqlalchemy.sql.elements import ColumnElement

from app.core.errors import ValidationFailed

MIN_DURATION_HOURS = 0.5
MAX_DURATION_HOURS = 12.0


@dataclass(frozen=True)
class TimeInterval:
    """``[start, end)``: includes its start instant, excludes its end instant."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("Interval bounds must be timezone-aware")
        if not self.start < self.end:
            raise ValueError("Interval start must be before its end")

    @classmethod
    def from_duration(cls, start: datetime, duration_hours: float) -> "TimeInterval":
        """Build ``[start, start + duration)`` after validating the duration."""
        hours = validate_duration(duration_hours)
        return cls(start, _end_after(start, timedelta(hours=hours)))

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def shifted_to(self, start: datetime) -> "TimeInterval":
        """Same length, new start."""
        return TimeInterval(start, _end_after(start, self.duration))


def _end_after(start: datetime, length: timedelta) -> datetime:
    try:
        return start + length
    except OverflowError:
        raise ValidationFailed("Start time is out of range", code="invalid_start_time") from None


def overlaps(a: TimeInterval, b: TimeInterval) -> bool:
    """True iff the intervals share at least one instant. Touching endpoints do not."""
    return a.start < b.end and b.start < a.end


def overlap_clause(start_column, end_column, interval: TimeInterval) -> ColumnElement[bool]:
    """SQL form of ``overlaps(row_interval, interval)``."""
    return and_(start_column < interval.end, interval.start < end_column)


def validate_duration(value) -> float:
    """Return the duration in hours, or raise ValidationFailed outside 0.5-12 inclusive."""
    if isinstance(value, bool):
        raise ValidationFailed("Duration must be a number of hours", code="invalid_duration")
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise ValidationFailed("Duration must be a number of hours", code="invalid_duration") from None

    if math.isnan(hours) or hours < MIN_DURATION_HOURS or hours > MAX_DURATION_HOURS:
        raise ValidationFailed(
            f"Invalid duration. Must be between {MIN_DURATION_HOURS:g} and {MAX_DURATION_HOURS:g} hours",
            code="invalid_duration",
            duration_hours=value if isinstance(value, int | float) and not math.isnan(value) else None,
        )
    return hours


def as_utc(value: datetime) -> datetime:
    """Tag naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
