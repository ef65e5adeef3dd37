"""Canonical Scheduling Error Types.

All bulk scheduling failures are raised as one of these types so the API
layer can map them without inspecting messages.

Standard error codes:
- INVALID_RECURRENCE_SPEC: Malformed recurrence input (bad field combination, non-positive interval)
- INVALID_TIME_RANGE: End time not after start time without overnight opt-in
- NO_AUTHORIZATION_FOUND: Client has no active authorization (preview warning only)
- CONFLICT_DETECTED: Proposed occurrence overlaps an existing booking
- INSUFFICIENT_UNITS: Batch would exceed the authorization's unit budget
- CONCURRENT_MODIFICATION: Data changed since preview; caller must re-preview
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from carebase.scheduling.conflicts import OccurrenceConflict
    from carebase.scheduling.units import UnitAssessment


class SchedulingError(Exception):
    """Base exception for scheduling failures.

    Attributes:
        code: Stable error code (e.g., "CONFLICT_DETECTED")
        message: Human readable message
    """

    code: str = "SCHEDULING_ERROR"
    retryable: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidRecurrenceSpec(SchedulingError):
    """Raised when a RecurrenceSpec is malformed. Names the offending field."""

    code = "INVALID_RECURRENCE_SPEC"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "field": self.field}


class InvalidTimeRange(SchedulingError):
    """Raised when end time is not after start time and overnight was not requested."""

    code = "INVALID_TIME_RANGE"


class NoAuthorizationFound(SchedulingError):
    """Client has no active authorization covering the requested range."""

    code = "NO_AUTHORIZATION_FOUND"

    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"No active authorization found for client {client_id}; shifts will be unbudgeted")


class ConflictDetected(SchedulingError):
    """Raised at commit under the all-or-nothing policy when any occurrence conflicts."""

    code = "CONFLICT_DETECTED"

    def __init__(self, conflicts: list[OccurrenceConflict], report: Any = None):
        self.conflicts = conflicts
        self.report = report
        dates = sorted({c.date.isoformat() for c in conflicts})
        super().__init__(f"{len(conflicts)} conflict(s) on {', '.join(dates)}; nothing was created")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "conflicts": [c.model_dump(mode="json") for c in self.conflicts]}


class InsufficientUnits(SchedulingError):
    """Raised at commit when the batch exceeds the authorization budget without an override."""

    code = "INSUFFICIENT_UNITS"

    def __init__(self, assessment: UnitAssessment, authorized_units: Any, report: Any = None):
        self.assessment = assessment
        self.report = report
        super().__init__(
            f"Batch requires {assessment.units_requested} units; "
            f"{assessment.units_after_commit} would exceed the {authorized_units} authorized"
        )


class ConcurrentModification(SchedulingError):
    """Raised when commit re-validation finds the preview snapshot is stale."""

    code = "CONCURRENT_MODIFICATION"
    retryable = True

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Schedule changed since preview ({reason}); re-run preview before committing")
