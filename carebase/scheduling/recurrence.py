"""Calendar rule engine for recurring shifts.

Expands a RecurrenceSpec into an ascending, duplicate-free list of dates.
Pure functions only: no I/O, no clock reads.

Expansion is delegated to `dateutil.rrule`:
- DAILY / WEEKLY map directly onto rrule frequencies
- MONTHLY / YEARLY day-of-month use BYMONTHDAY, so a day number the month does
  not have (31 in April, 30 in February) is skipped, never clamped
- nth-weekday forms give each listed weekday its own ordinal (TU(+2), FR(-1)),
  so {TU, TH} with nth=2 is the 2nd Tuesday and the 2nd Thursday
- a weekday group (DAY / WEEKDAY / WEEKEND) uses BYSETPOS instead: the nth
  matching day among the group
- YEARLY nth forms build one rule per month so the ordinal is counted inside
  that month
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import IntEnum, StrEnum
from itertools import islice

from dateutil.relativedelta import relativedelta
from dateutil.rrule import DAILY, MO, MONTHLY, WEEKLY, YEARLY, rrule, rruleset
from dateutil.rrule import weekday as rrule_weekday
from loguru import logger

from carebase.core.settings import settings
from carebase.scheduling.errors import InvalidRecurrenceSpec

LAST = -1
VALID_NTH = frozenset({1, 2, 3, 4, 5, LAST})
MAX_BULK_WEEKS = 12

# Upper bound on how far past range_start a count-only rule may search
SEARCH_LIMIT_YEARS = 100


class Pattern(StrEnum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Weekday(IntEnum):
    """Weekday numbering matches `date.weekday()` (Monday = 0)."""

    MO = 0
    TU = 1
    WE = 2
    TH = 3
    FR = 4
    SA = 5
    SU = 6


WEEKDAYS = frozenset({Weekday.MO, Weekday.TU, Weekday.WE, Weekday.TH, Weekday.FR})
WEEKEND = frozenset({Weekday.SA, Weekday.SU})
ALL_DAYS = WEEKDAYS | WEEKEND

# Group names usable wherever a weekday is expected, e.g. "last WEEKDAY of the month"
WEEKDAY_GROUPS = {"DAY": ALL_DAYS, "WEEKDAY": WEEKDAYS, "WEEKEND": WEEKEND}


def _as_weekdays(values: Iterable[int | str | Weekday]) -> frozenset[Weekday]:
    result = set()
    for value in values:
        if isinstance(value, str) and value.upper() in WEEKDAY_GROUPS:
            result.update(WEEKDAY_GROUPS[value.upper()])
            continue
        try:
            result.add(Weekday[value.upper()] if isinstance(value, str) else Weekday(int(value)))
        except (KeyError, ValueError) as e:
            raise InvalidRecurrenceSpec("weekdays", f"unknown weekday {value!r}") from e
    return frozenset(result)


def _group_name(values: list[int | str | Weekday]) -> str | None:
    groups = [v.upper() for v in values if isinstance(v, str) and v.upper() in WEEKDAY_GROUPS]
    if not groups:
        return None
    if len(values) > 1:
        raise InvalidRecurrenceSpec("weekdays", f"weekday group {groups[0]} must be used on its own")
    return groups[0]


@dataclass(frozen=True)
class RecurrenceSpec:
    """How a shift repeats.

    Attributes:
        pattern: Recurrence pattern
        range_start: First eligible date (inclusive)
        interval: Step in days/weeks/months/years, ignored for ONCE
        weekdays: Weekday set for WEEKLY, DAILY business-day shorthand and nth forms
        weekday_group: DAY, WEEKDAY or WEEKEND when `weekdays` was given as a group
        month_days: Day-of-month numbers for MONTHLY/YEARLY day-of-month mode
        nth: Ordinal (1..5, or LAST) for MONTHLY/YEARLY nth-weekday mode
        months: Months (1..12) for YEARLY
        range_end: Optional last eligible date (inclusive)
        occurrence_count: Optional maximum number of dates
    """

    pattern: Pattern
    range_start: date
    interval: int = 1
    weekdays: frozenset[Weekday] = field(default_factory=frozenset)
    month_days: frozenset[int] = field(default_factory=frozenset)
    nth: int | None = None
    months: frozenset[int] = field(default_factory=frozenset)
    range_end: date | None = None
    occurrence_count: int | None = None
    weekday_group: str | None = None

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "pattern", Pattern(self.pattern))
        except ValueError as e:
            raise InvalidRecurrenceSpec("pattern", f"unknown pattern {self.pattern!r}") from e
        # Accept any iterable from callers, store immutable sets
        raw_weekdays = list(self.weekdays)
        object.__setattr__(self, "weekday_group", _group_name(raw_weekdays) or self.weekday_group)
        object.__setattr__(self, "weekdays", _as_weekdays(raw_weekdays))
        object.__setattr__(self, "month_days", frozenset(int(d) for d in self.month_days))
        object.__setattr__(self, "months", frozenset(int(m) for m in self.months))

    @classmethod
    def for_weeks(cls, start: date, weeks: int, weekdays: Iterable[int | str | Weekday]) -> RecurrenceSpec:
        """Bulk-form shorthand: the selected weekdays over the next N weeks, starting at `start`."""
        if not 1 <= weeks <= MAX_BULK_WEEKS:
            raise InvalidRecurrenceSpec("number_of_weeks", f"must be between 1 and {MAX_BULK_WEEKS}, got {weeks}")
        selected = _as_weekdays(weekdays)
        if not selected:
            raise InvalidRecurrenceSpec("weekdays", "select at least one day")
        return cls(
            pattern=Pattern.DAILY,
            range_start=start,
            weekdays=selected,
            range_end=start + timedelta(weeks=weeks) - timedelta(days=1),
        )


def validate_spec(spec: RecurrenceSpec) -> None:
    """Reject malformed specs, naming the offending field.

    ONCE ignores every field except range_start, so it is never rejected.

    Raises:
        InvalidRecurrenceSpec: On any malformed field or field combination
    """
    if spec.pattern is Pattern.ONCE:
        return

    if not isinstance(spec.interval, int) or isinstance(spec.interval, bool) or spec.interval <= 0:
        raise InvalidRecurrenceSpec("interval", f"must be a positive integer, got {spec.interval!r}")

    if spec.occurrence_count is not None and spec.occurrence_count < 1:
        raise InvalidRecurrenceSpec("occurrence_count", f"must be at least 1, got {spec.occurrence_count}")

    if spec.range_end is not None and spec.range_end < spec.range_start:
        raise InvalidRecurrenceSpec("range_end", "must not be before range_start")

    bad_days = sorted(d for d in spec.month_days if not 1 <= d <= 31)
    if bad_days:
        raise InvalidRecurrenceSpec("month_days", f"day numbers must be 1..31, got {bad_days}")

    bad_months = sorted(m for m in spec.months if not 1 <= m <= 12)
    if bad_months:
        raise InvalidRecurrenceSpec("months", f"month numbers must be 1..12, got {bad_months}")

    if spec.nth is not None and spec.nth not in VALID_NTH:
        raise InvalidRecurrenceSpec("nth", f"must be 1..5 or {LAST} (last), got {spec.nth}")

    if spec.pattern in {Pattern.DAILY, Pattern.WEEKLY}:
        if spec.month_days:
            raise InvalidRecurrenceSpec("month_days", f"not used by {spec.pattern} patterns")
        if spec.nth is not None:
            raise InvalidRecurrenceSpec("nth", f"not used by {spec.pattern} patterns")

    if spec.months and spec.pattern is not Pattern.YEARLY:
        raise InvalidRecurrenceSpec("months", "only yearly patterns select months")

    if spec.pattern in {Pattern.MONTHLY, Pattern.YEARLY}:
        if spec.month_days and spec.nth is not None:
            raise InvalidRecurrenceSpec("month_days", "day-of-month and nth-weekday modes are mutually exclusive")
        if spec.nth is not None and not spec.weekdays:
            raise InvalidRecurrenceSpec("weekdays", "nth-weekday mode needs at least one weekday")
        if spec.weekdays and spec.nth is None:
            raise InvalidRecurrenceSpec("nth", "weekdays in a monthly or yearly pattern need an ordinal")


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min)


def _nth_weekday_options(spec: RecurrenceSpec, weekdays: list[Weekday]) -> dict:
    if spec.weekday_group is not None:
        return {"byweekday": weekdays, "bysetpos": spec.nth}
    return {"byweekday": [rrule_weekday(day, spec.nth) for day in weekdays]}


def _build_ruleset(spec: RecurrenceSpec, until: date | None) -> rruleset:
    """Translate a validated spec into an rruleset bounded by `until`."""
    common = {
        "dtstart": _midnight(spec.range_start),
        "until": _midnight(until) if until is not None else None,
        "interval": spec.interval,
        "wkst": MO,
    }
    weekdays = sorted(spec.weekdays)
    rules: list[rrule] = []

    if spec.pattern is Pattern.DAILY:
        if weekdays:
            # "Every weekday" style: listed weekdays, interval ignored
            rules.append(rrule(DAILY, **{**common, "interval": 1}, byweekday=weekdays))
        else:
            rules.append(rrule(DAILY, **common))

    elif spec.pattern is Pattern.WEEKLY:
        rules.append(rrule(WEEKLY, **common, byweekday=weekdays or [spec.range_start.weekday()]))

    elif spec.pattern is Pattern.MONTHLY:
        if spec.nth is not None:
            rules.append(rrule(MONTHLY, **common, **_nth_weekday_options(spec, weekdays)))
        else:
            rules.append(rrule(MONTHLY, **common, bymonthday=sorted(spec.month_days or {spec.range_start.day})))

    elif spec.pattern is Pattern.YEARLY:
        months = sorted(spec.months or {spec.range_start.month})
        if spec.nth is not None:
            # One rule per month so the ordinal counts within that month, not the whole year
            for month in months:
                rules.append(rrule(YEARLY, **common, bymonth=month, **_nth_weekday_options(spec, weekdays)))
        else:
            rules.append(
                rrule(YEARLY, **common, bymonth=months, bymonthday=sorted(spec.month_days or {spec.range_start.day}))
            )

    ruleset = rruleset()
    for rule in rules:
        ruleset.rrule(rule)
    return ruleset


def generate(
    spec: RecurrenceSpec,
    *,
    max_occurrences: int | None = None,
    default_horizon_days: int | None = None,
) -> list[date]:
    """Expand a recurrence spec into concrete dates.

    Termination: stops at range_end or occurrence_count, whichever comes first.
    The hard cap (`max_occurrences`, default from settings) always applies; when
    neither bound is given, generation is also limited to the default horizon.

    Args:
        spec: Recurrence description
        max_occurrences: Override for the hard safety cap
        default_horizon_days: Override for the horizon used when the spec is unbounded

    Returns:
        Ascending, duplicate-free dates (possibly empty)

    Raises:
        InvalidRecurrenceSpec: If the spec is malformed
    """
    validate_spec(spec)

    if spec.pattern is Pattern.ONCE:
        return [spec.range_start]

    cap = max_occurrences if max_occurrences is not None else settings.scheduling_max_occurrences
    limit = cap if spec.occurrence_count is None else min(spec.occurrence_count, cap)

    until = spec.range_end
    if until is None:
        if spec.occurrence_count is None:
            horizon = default_horizon_days or settings.scheduling_default_horizon_days
            until = spec.range_start + timedelta(days=horizon - 1)
        else:
            until = spec.range_start + relativedelta(years=SEARCH_LIMIT_YEARS)

    # rruleset merges the per-month rules in order and drops repeated instants
    dates = [dt.date() for dt in islice(_build_ruleset(spec, until), limit)]

    if spec.occurrence_count is None and spec.range_end is None and len(dates) == cap:
        logger.warning(
            "[RECURRENCE] Unbounded spec truncated at hard cap",
            pattern=str(spec.pattern),
            cap=cap,
        )

    return dates
