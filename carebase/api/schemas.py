"""Request bodies for the bulk scheduling API.

A batch is described either by a full recurrence or by the bulk-form
shorthand (start date, number of weeks, selected days).
"""

from datetime import date as date_type

from pydantic import BaseModel, Field

from carebase.scheduling.contracts import BulkScheduleRequest
from carebase.scheduling.errors import InvalidRecurrenceSpec
from carebase.scheduling.recurrence import Pattern, RecurrenceSpec


class RecurrenceIn(BaseModel):
    """Full recurrence description."""

    pattern: Pattern = Field(..., description="once, daily, weekly, monthly or yearly")
    range_start: date_type = Field(..., description="First eligible date (inclusive)")
    interval: int = Field(1, description="Step in days/weeks/months/years")
    weekdays: list[str | int] = Field(
        default_factory=list,
        description="Weekday codes (MO..SU, 0=Monday) or groups DAY / WEEKDAY / WEEKEND",
    )
    month_days: list[int] = Field(default_factory=list, description="Days of month (1..31)")
    nth: int | None = Field(None, description="Ordinal 1..5, or -1 for last")
    months: list[int] = Field(default_factory=list, description="Months (1..12) for yearly patterns")
    range_end: date_type | None = Field(None, description="Last eligible date (inclusive)")
    occurrence_count: int | None = Field(None, description="Maximum number of dates")

    def to_spec(self) -> RecurrenceSpec:
        return RecurrenceSpec(
            pattern=self.pattern,
            range_start=self.range_start,
            interval=self.interval,
            weekdays=self.weekdays,
            month_days=self.month_days,
            nth=self.nth,
            months=self.months,
            range_end=self.range_end,
            occurrence_count=self.occurrence_count,
        )


class BulkScheduleIn(BaseModel):
    """Body shared by the preview and commit endpoints."""

    client_id: str
    caregiver_id: str
    start_time: str = Field(..., description="Shift start, HH:MM")
    end_time: str = Field(..., description="Shift end, HH:MM")
    recurrence: RecurrenceIn | None = None
    start_date: date_type | None = Field(None, description="Bulk-form start date")
    number_of_weeks: int | None = Field(None, description="Bulk-form number of weeks (1..12)")
    selected_days: list[str | int] = Field(default_factory=list, description="Bulk-form weekdays")
    skip_conflicts: bool = False
    allow_overnight: bool = False
    allow_over_authorization: bool = False
    snapshot_token: str | None = None
    idempotency_key: str | None = None

    def to_request(self) -> BulkScheduleRequest:
        """Build the service request.

        Raises:
            InvalidRecurrenceSpec: If neither form is given or the recurrence is malformed
        """
        if self.recurrence is not None:
            spec = self.recurrence.to_spec()
        elif self.start_date is not None and self.number_of_weeks is not None:
            spec = RecurrenceSpec.for_weeks(self.start_date, self.number_of_weeks, self.selected_days)
        else:
            raise InvalidRecurrenceSpec(
                "recurrence", "provide a recurrence or start_date with number_of_weeks and selected_days"
            )

        return BulkScheduleRequest(
            client_id=self.client_id,
            caregiver_id=self.caregiver_id,
            recurrence=spec,
            start_time=self.start_time,
            end_time=self.end_time,
            skip_conflicts=self.skip_conflicts,
            allow_overnight=self.allow_overnight,
            allow_over_authorization=self.allow_over_authorization,
            snapshot_token=self.snapshot_token,
            idempotency_key=self.idempotency_key,
        )
