"""Time slot resolution.

Combines generated dates with a start/end time-of-day into concrete
occurrences. Instants are naive wall-clock datetimes in the agency's local
time.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from carebase.scheduling.errors import InvalidTimeRange

_TIME_PATTERN = re.compile(r"^(\d{2}):(\d{2})$")


@dataclass(frozen=True)
class Occurrence:
    """One concrete shift instance produced by a generation call.

    Attributes:
        date: Calendar date the shift is scheduled on
        start: Start instant
        end: End instant (next day for overnight shifts)
    """

    date: date
    start: datetime
    end: datetime

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


def parse_time_of_day(value: str | time) -> time:
    """Parse an "HH:MM" string into a time.

    Raises:
        InvalidTimeRange: If the string is not a valid 24h HH:MM time
    """
    if isinstance(value, time):
        return value
    match = _TIME_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise InvalidTimeRange(f"Invalid time format {value!r}; expected HH:MM")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise InvalidTimeRange(f"Invalid time {value!r}; expected HH:MM between 00:00 and 23:59")
    return time(hour, minute)


def shift_bounds(day: date, start_time: time, end_time: time, *, allow_overnight: bool = False) -> tuple[datetime, datetime]:
    """Return the start/end instants of a shift on `day`.

    An end time at or before the start time is only accepted with
    `allow_overnight`, in which case the shift ends on the following day.

    Raises:
        InvalidTimeRange: If end is not after start and overnight was not requested
    """
    start = datetime.combine(day, start_time)
    end = datetime.combine(day, end_time)
    if end <= start:
        if not allow_overnight:
            raise InvalidTimeRange(
                f"End time {end_time:%H:%M} must be after start time {start_time:%H:%M}; "
                "set allow_overnight to schedule a shift ending the next day"
            )
        end += timedelta(days=1)
    return start, end


def resolve(
    dates: Iterable[date],
    start_time: str | time,
    end_time: str | time,
    *,
    allow_overnight: bool = False,
) -> list[Occurrence]:
    """Resolve dates into occurrences with concrete instants.

    The time range is validated even when `dates` is empty.

    Args:
        dates: Ascending dates from the recurrence engine
        start_time: Shift start time of day ("HH:MM" or time)
        end_time: Shift end time of day ("HH:MM" or time)
        allow_overnight: Treat end <= start as ending the next day

    Returns:
        Occurrences in the same order as `dates`

    Raises:
        InvalidTimeRange: On a malformed time or an unaccepted end-before-start range
    """
    start_tod = parse_time_of_day(start_time)
    end_tod = parse_time_of_day(end_time)

    # Validate once up front so an empty date list still reports a bad range
    shift_bounds(date.min, start_tod, end_tod, allow_overnight=allow_overnight)

    occurrences = []
    for day in dates:
        start, end = shift_bounds(day, start_tod, end_tod, allow_overnight=allow_overnight)
        occurrences.append(Occurrence(date=day, start=start, end=end))
    return occurrences
