"""Bulk scheduling contracts.

Request and report shapes shared by the bulk service, the stores and the API.
Requests are immutable inputs; reports are pydantic models so they can be
returned over HTTP and stored for idempotent replays unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date as date_type
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from carebase.scheduling.conflicts import OccurrenceConflict
from carebase.scheduling.recurrence import RecurrenceSpec
from carebase.scheduling.units import AuthorizationSnapshot, UnitType

OccurrenceStatus = Literal["ok", "conflict"]
ReportPhase = Literal["previewed", "committed"]


@dataclass(frozen=True)
class BulkScheduleRequest:
    """Input shared by preview and commit.

    Attributes:
        client_id: Client receiving care
        caregiver_id: Caregiver being scheduled
        recurrence: Recurrence description
        start_time: Shift start time of day ("HH:MM")
        end_time: Shift end time of day ("HH:MM")
        skip_conflicts: Drop conflicting occurrences instead of failing the batch
        allow_overnight: Accept end_time <= start_time as ending the next day
        allow_over_authorization: Commit even if the batch exceeds the unit budget
        snapshot_token: Token from a previous preview; commit fails if data changed since
        idempotency_key: Makes commit replay-safe
    """

    client_id: str
    caregiver_id: str
    recurrence: RecurrenceSpec
    start_time: str
    end_time: str
    skip_conflicts: bool = False
    allow_overnight: bool = False
    allow_over_authorization: bool = False
    snapshot_token: str | None = None
    idempotency_key: str | None = None


class OccurrenceEntry(BaseModel):
    """One proposed occurrence and its validation outcome."""

    date: date_type
    start: datetime
    end: datetime
    duration_minutes: int
    status: OccurrenceStatus
    conflicts: list[OccurrenceConflict] = Field(default_factory=list)
    in_authorization_period: bool = True
    unit_cost: Decimal | None = None


class AuthorizationView(BaseModel):
    """Authorization state as shown in a report."""

    id: str
    unit_type: UnitType
    authorized_units: Decimal
    consumed_units: Decimal
    remaining_units: Decimal
    valid_from: date_type
    valid_to: date_type

    @classmethod
    def from_snapshot(cls, snapshot: AuthorizationSnapshot) -> AuthorizationView:
        return cls(
            id=snapshot.id,
            unit_type=snapshot.unit_type,
            authorized_units=snapshot.authorized_units,
            consumed_units=snapshot.consumed_units,
            remaining_units=snapshot.remaining_units,
            valid_from=snapshot.valid_from,
            valid_to=snapshot.valid_to,
        )


class ReportWarning(BaseModel):
    code: str
    message: str


class BatchReport(BaseModel):
    """Result of validating a proposed batch.

    `shifts_to_create` and the unit totals cover the occurrences the commit
    policy would accept: all of them for all-or-nothing, the non-conflicting
    ones when skip_conflicts is set.
    """

    phase: ReportPhase = "previewed"
    client_id: str
    caregiver_id: str
    skip_conflicts: bool
    occurrences: list[OccurrenceEntry]
    total_occurrences: int
    shifts_to_create: int
    total_duration_minutes: int
    conflicts: list[OccurrenceConflict] = Field(default_factory=list)
    out_of_authorization_period: list[date_type] = Field(default_factory=list)
    units_requested: Decimal | None = None
    units_after_commit: Decimal | None = None
    has_insufficient_units: bool = False
    authorization_before: AuthorizationView | None = None
    authorization_after: AuthorizationView | None = None
    warnings: list[ReportWarning] = Field(default_factory=list)
    can_commit: bool
    snapshot_token: str

    @property
    def accepted_dates(self) -> list[date_type]:
        if not self.skip_conflicts:
            return [entry.date for entry in self.occurrences]
        return [entry.date for entry in self.occurrences if entry.status == "ok"]


class CommitResult(BaseModel):
    """Outcome of a successful commit."""

    created: int
    skipped: int
    booking_ids: list[str]
    report: BatchReport
    replayed: bool = False
