"""Authorization unit accounting.

Converts shift durations into billable units and checks a batch against a
client's authorization budget. Rounding rules here are billing rules:

- HOURLY: duration_minutes / 60, never rounded
- QUARTER_HOURLY: partial quarter-hours round up, ceil(minutes / 15) * 0.25
- DAILY: one unit per occurrence regardless of duration
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import StrEnum

from carebase.scheduling.time_slots import Occurrence

QUARTER_HOUR_MINUTES = 15
QUARTER_UNIT = Decimal("0.25")
MINUTES_PER_HOUR = Decimal(60)
# Scale of the consumed_units column, Numeric(14, 6)
UNIT_SCALE = Decimal("0.000001")


class UnitType(StrEnum):
    HOURLY = "hourly"
    QUARTER_HOURLY = "quarter_hourly"
    DAILY = "daily"


@dataclass(frozen=True)
class AuthorizationSnapshot:
    """A client's unit grant as read from the authorization store.

    Attributes:
        id: Authorization ID
        client_id: Client the grant belongs to
        unit_type: Billing granularity
        authorized_units: Unit ceiling for the period
        consumed_units: Units already committed
        valid_from: First covered date (inclusive)
        valid_to: Last covered date (inclusive)
    """

    id: str
    client_id: str
    unit_type: UnitType
    authorized_units: Decimal
    consumed_units: Decimal
    valid_from: date
    valid_to: date

    @property
    def remaining_units(self) -> Decimal:
        return self.authorized_units - self.consumed_units

    def covers(self, day: date) -> bool:
        return self.valid_from <= day <= self.valid_to

    def with_consumed(self, consumed_units: Decimal) -> AuthorizationSnapshot:
        return AuthorizationSnapshot(
            id=self.id,
            client_id=self.client_id,
            unit_type=self.unit_type,
            authorized_units=self.authorized_units,
            consumed_units=consumed_units,
            valid_from=self.valid_from,
            valid_to=self.valid_to,
        )


@dataclass(frozen=True)
class UnitAssessment:
    """Marginal unit cost of a batch against one authorization.

    Attributes:
        units_requested: Units the in-period occurrences would consume
        units_after_commit: consumed_units + units_requested
        has_insufficient_units: units_after_commit exceeds authorized_units
        assessed: Occurrences inside the authorization period
        out_of_period: Occurrences outside it, excluded from the cost
    """

    units_requested: Decimal
    units_after_commit: Decimal
    has_insufficient_units: bool
    assessed: tuple[Occurrence, ...] = field(default_factory=tuple)
    out_of_period: tuple[Occurrence, ...] = field(default_factory=tuple)


def unit_cost(duration_minutes: int, unit_type: UnitType) -> Decimal:
    """Billable units for a single occurrence.

    Examples:
        46 minutes HOURLY → 46/60 (≈ 0.7667)
        46 minutes QUARTER_HOURLY → 4 quarters → 1.00
    """
    if duration_minutes < 0:
        raise ValueError(f"duration_minutes must not be negative, got {duration_minutes}")

    if unit_type is UnitType.HOURLY:
        return Decimal(duration_minutes) / MINUTES_PER_HOUR
    if unit_type is UnitType.QUARTER_HOURLY:
        quarters = -(-duration_minutes // QUARTER_HOUR_MINUTES)  # ceil on ints
        return quarters * QUARTER_UNIT
    if unit_type is UnitType.DAILY:
        return Decimal(1)
    raise ValueError(f"Unknown unit type: {unit_type}")


def batch_cost(occurrences: Sequence[Occurrence], unit_type: UnitType) -> Decimal:
    """Total units for a batch.

    HOURLY divides the summed minutes once so the total stays exact.
    """
    if unit_type is UnitType.HOURLY:
        return Decimal(sum(o.duration_minutes for o in occurrences)) / MINUTES_PER_HOUR
    return sum((unit_cost(o.duration_minutes, unit_type) for o in occurrences), Decimal(0))


def assess(occurrences: Sequence[Occurrence], authorization: AuthorizationSnapshot) -> UnitAssessment:
    """Assess a batch against an authorization budget.

    Occurrences outside [valid_from, valid_to] are excluded from the cost and
    reported in `out_of_period`.
    """
    assessed = tuple(o for o in occurrences if authorization.covers(o.date))
    out_of_period = tuple(o for o in occurrences if not authorization.covers(o.date))

    units_requested = batch_cost(assessed, authorization.unit_type)
    units_after_commit = authorization.consumed_units + units_requested

    return UnitAssessment(
        units_requested=units_requested,
        units_after_commit=units_after_commit,
        has_insufficient_units=units_after_commit > authorization.authorized_units,
        assessed=assessed,
        out_of_period=out_of_period,
    )


def stored_total(units: Decimal) -> Decimal:
    """`units` rounded to the precision consumed_units is stored at."""
    return units.quantize(UNIT_SCALE)


def stepwise_increments(occurrences: Sequence[Occurrence], unit_type: UnitType) -> list[Decimal]:
    """Per-occurrence increments for a batch written one occurrence at a time.

    Each increment is the step between consecutive running totals rounded to
    UNIT_SCALE, so after every write the stored value is the batch cost so far
    rounded once, and the increments add up to stored_total(batch_cost(...)).

    Example:
        three 20-minute HOURLY occurrences → 0.333333, 0.333334, 0.333333
    """
    increments: list[Decimal] = []
    minutes = 0
    exact = Decimal(0)
    stored = Decimal(0)
    for occurrence in occurrences:
        if unit_type is UnitType.HOURLY:
            minutes += occurrence.duration_minutes
            exact = Decimal(minutes) / MINUTES_PER_HOUR
        else:
            exact += unit_cost(occurrence.duration_minutes, unit_type)
        running = stored_total(exact)
        increments.append(running - stored)
        stored = running
    return increments
