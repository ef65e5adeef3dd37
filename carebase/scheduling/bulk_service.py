"""Bulk shift scheduling service.

Two-phase workflow over the pure scheduling core:

- preview: expand the recurrence, resolve time slots, check conflicts and
  authorization units against current data. Never writes.
- commit: under per-resource locks, re-run every check against the latest
  data (a stale preview is never trusted), apply the conflict policy and
  write.

Policies:
- skip_conflicts=False (all-or-nothing): any conflict fails the commit; all
  bookings and the unit increment share one transaction.
- skip_conflicts=True (skip): conflicting occurrences are dropped; each
  accepted occurrence is its own transaction.
Insufficient units fail the commit under both policies unless
allow_over_authorization is set.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from loguru import logger

from carebase.core.settings import settings
from carebase.scheduling.conflicts import OccurrenceConflict, conflict_dates, detect_conflicts
from carebase.scheduling.contracts import (
    AuthorizationView,
    BatchReport,
    BulkScheduleRequest,
    CommitResult,
    OccurrenceEntry,
    ReportWarning,
)
from carebase.scheduling.errors import (
    ConcurrentModification,
    ConflictDetected,
    InsufficientUnits,
    InvalidRecurrenceSpec,
    NoAuthorizationFound,
)
from carebase.scheduling.locks import (
    ResourceLockRegistry,
    authorization_key,
    caregiver_key,
    client_key,
    default_lock_registry,
)
from carebase.scheduling.recurrence import generate
from carebase.scheduling.stores import StoreBundle, UnitOfWork, sql_unit_of_work
from carebase.scheduling.time_slots import Occurrence, resolve
from carebase.scheduling.units import (
    AuthorizationSnapshot,
    UnitAssessment,
    assess,
    stepwise_increments,
    stored_total,
    unit_cost,
)

BULK_AUDIT_ACTION = "BULK_SHIFTS_CREATED"


@dataclass(frozen=True)
class _Evaluation:
    """Everything a commit needs besides the report itself."""

    report: BatchReport
    occurrences: tuple[Occurrence, ...]
    accepted: tuple[Occurrence, ...]
    conflicts: tuple[OccurrenceConflict, ...]
    authorization: AuthorizationSnapshot | None
    assessment: UnitAssessment | None


def _normalized(value: Decimal) -> str:
    return format(value.normalize(), "f")


def _snapshot_token(
    occurrences: Sequence[Occurrence],
    conflicts: Sequence[OccurrenceConflict],
    authorization: AuthorizationSnapshot | None,
) -> str:
    """Fingerprint of the data a preview decision depends on."""
    payload = {
        "occurrences": [[o.start.isoformat(), o.end.isoformat()] for o in occurrences],
        "conflicts": sorted([c.date.isoformat(), c.party, c.existing_booking_id] for c in conflicts),
        "authorization": (
            [authorization.id, _normalized(authorization.consumed_units), _normalized(authorization.authorized_units)]
            if authorization
            else None
        ),
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


class BulkScheduleService:
    """Preview and commit bulk shift batches for one caregiver-client pair."""

    def __init__(
        self,
        unit_of_work: UnitOfWork = sql_unit_of_work,
        *,
        locks: ResourceLockRegistry | None = None,
        today: Callable[[], date] = date.today,
    ):
        self._unit_of_work = unit_of_work
        self._locks = locks if locks is not None else default_lock_registry
        self._today = today

    def _occurrences_for(self, request: BulkScheduleRequest) -> list[Occurrence]:
        """Expand and resolve the request. Raises on malformed input."""
        spec = request.recurrence
        if not settings.scheduling_allow_past_start and spec.range_start < self._today():
            raise InvalidRecurrenceSpec("range_start", "start date cannot be in the past")

        dates = generate(spec)
        return resolve(dates, request.start_time, request.end_time, allow_overnight=request.allow_overnight)

    def _evaluate(
        self,
        stores: StoreBundle,
        request: BulkScheduleRequest,
        occurrences: list[Occurrence],
        *,
        for_update: bool = False,
    ) -> _Evaluation:
        """Run conflict and unit checks against the stores' current data."""
        conflicts: list[OccurrenceConflict] = []
        if occurrences:
            bookings = stores.schedule.find_bookings(
                request.caregiver_id,
                request.client_id,
                min(o.start for o in occurrences),
                max(o.end for o in occurrences),
            )
            conflicts = detect_conflicts(
                occurrences, bookings, caregiver_id=request.caregiver_id, client_id=request.client_id
            )

        blocked = conflict_dates(conflicts)
        accepted = [o for o in occurrences if o.date not in blocked] if request.skip_conflicts else list(occurrences)

        on_date = occurrences[0].date if occurrences else request.recurrence.range_start
        authorization = stores.authorizations.get_active_authorization(
            request.client_id, on_date, for_update=for_update
        )

        warnings: list[ReportWarning] = []
        assessment: UnitAssessment | None = None
        if authorization is None:
            warning = NoAuthorizationFound(request.client_id)
            warnings.append(ReportWarning(code=warning.code, message=warning.message))
        else:
            assessment = assess(accepted, authorization)
            if assessment.out_of_period:
                warnings.append(
                    ReportWarning(
                        code="OUT_OF_AUTHORIZATION_PERIOD",
                        message=(
                            f"{len(assessment.out_of_period)} occurrence(s) fall outside the authorization period "
                            f"{authorization.valid_from.isoformat()} to {authorization.valid_to.isoformat()}"
                        ),
                    )
                )
            if assessment.has_insufficient_units:
                warnings.append(
                    ReportWarning(
                        code=InsufficientUnits.code,
                        message=(
                            f"Batch needs {assessment.units_requested} units; only "
                            f"{authorization.remaining_units} of {authorization.authorized_units} remain"
                        ),
                    )
                )

        if not occurrences:
            warnings.append(ReportWarning(code="NO_OCCURRENCES", message="No dates match the selected criteria"))
        if conflicts:
            warnings.append(
                ReportWarning(
                    code=ConflictDetected.code,
                    message=f"{len(blocked)} of {len(occurrences)} occurrence(s) conflict with existing shifts",
                )
            )

        entries = []
        for occurrence in occurrences:
            own_conflicts = [c for c in conflicts if c.date == occurrence.date]
            in_period = authorization.covers(occurrence.date) if authorization else True
            entries.append(
                OccurrenceEntry(
                    date=occurrence.date,
                    start=occurrence.start,
                    end=occurrence.end,
                    duration_minutes=occurrence.duration_minutes,
                    status="conflict" if own_conflicts else "ok",
                    conflicts=own_conflicts,
                    in_authorization_period=in_period,
                    unit_cost=(
                        unit_cost(occurrence.duration_minutes, authorization.unit_type)
                        if authorization and in_period
                        else None
                    ),
                )
            )

        conflict_ok = not conflicts or request.skip_conflicts
        units_ok = assessment is None or not assessment.has_insufficient_units or request.allow_over_authorization

        report = BatchReport(
            client_id=request.client_id,
            caregiver_id=request.caregiver_id,
            skip_conflicts=request.skip_conflicts,
            occurrences=entries,
            total_occurrences=len(occurrences),
            shifts_to_create=len(accepted),
            total_duration_minutes=sum(o.duration_minutes for o in accepted),
            conflicts=conflicts,
            out_of_authorization_period=[o.date for o in assessment.out_of_period] if assessment else [],
            units_requested=assessment.units_requested if assessment else None,
            units_after_commit=assessment.units_after_commit if assessment else None,
            has_insufficient_units=assessment.has_insufficient_units if assessment else False,
            authorization_before=AuthorizationView.from_snapshot(authorization) if authorization else None,
            authorization_after=(
                AuthorizationView.from_snapshot(authorization.with_consumed(assessment.units_after_commit))
                if authorization and assessment
                else None
            ),
            warnings=warnings,
            can_commit=conflict_ok and units_ok,
            snapshot_token=_snapshot_token(occurrences, conflicts, authorization),
        )
        return _Evaluation(
            report=report,
            occurrences=tuple(occurrences),
            accepted=tuple(accepted),
            conflicts=tuple(conflicts),
            authorization=authorization,
            assessment=assessment,
        )

    def preview(self, request: BulkScheduleRequest) -> BatchReport:
        """Validate a proposed batch without writing anything.

        Always returns a full report, even when occurrences conflict or the
        budget is exceeded, so callers can render diagnostics before committing.

        Raises:
            InvalidRecurrenceSpec: If the recurrence is malformed or starts in the past
            InvalidTimeRange: If the time range is malformed
        """
        occurrences = self._occurrences_for(request)
        with self._unit_of_work() as stores:
            evaluation = self._evaluate(stores, request, occurrences)

        report = evaluation.report
        logger.info(
            "[BULK] Preview computed",
            client_id=request.client_id,
            caregiver_id=request.caregiver_id,
            total_occurrences=report.total_occurrences,
            conflicts=len(report.conflicts),
            can_commit=report.can_commit,
        )
        return report

    def _enforce(self, evaluation: _Evaluation, request: BulkScheduleRequest) -> None:
        """Raise if the latest evaluation does not allow this commit."""
        report = evaluation.report
        if request.snapshot_token is not None and request.snapshot_token != report.snapshot_token:
            raise ConcurrentModification("conflicts or authorization usage differ from the preview")

        if evaluation.conflicts and not request.skip_conflicts:
            raise ConflictDetected(list(evaluation.conflicts), report=report)

        assessment = evaluation.assessment
        if assessment is not None and assessment.has_insufficient_units:
            if not request.allow_over_authorization:
                raise InsufficientUnits(assessment, evaluation.authorization.authorized_units, report=report)
            logger.warning(
                "[BULK] Committing over authorization by explicit override",
                client_id=request.client_id,
                authorization_id=evaluation.authorization.id,
                units_after_commit=str(assessment.units_after_commit),
            )

    def _lock_keys(self, request: BulkScheduleRequest, occurrences: list[Occurrence]) -> list[str]:
        keys = [caregiver_key(request.caregiver_id), client_key(request.client_id)]
        on_date = occurrences[0].date if occurrences else request.recurrence.range_start
        with self._unit_of_work() as stores:
            authorization = stores.authorizations.get_active_authorization(request.client_id, on_date)
        if authorization is not None:
            keys.append(authorization_key(authorization.id))
        return keys

    def commit(self, request: BulkScheduleRequest) -> CommitResult:
        """Re-validate against the latest data and create the accepted occurrences.

        Returns:
            CommitResult with created/skipped counts and the committed report

        Raises:
            InvalidRecurrenceSpec / InvalidTimeRange: On malformed input
            ConcurrentModification: If snapshot_token no longer matches the data
            ConflictDetected: On any conflict under the all-or-nothing policy
            InsufficientUnits: If the batch exceeds the budget without override
        """
        if request.idempotency_key:
            with self._unit_of_work() as stores:
                previous = stores.schedule.get_commit_record(request.idempotency_key)
            if previous is not None:
                logger.info("[BULK] Commit replayed from idempotency key", idempotency_key=request.idempotency_key)
                return previous

        occurrences = self._occurrences_for(request)
        lock_keys = self._lock_keys(request, occurrences)

        logger.info(
            "[BULK] Commit started",
            client_id=request.client_id,
            caregiver_id=request.caregiver_id,
            occurrences=len(occurrences),
            skip_conflicts=request.skip_conflicts,
        )

        with self._locks.hold(lock_keys):
            if request.idempotency_key:
                with self._unit_of_work() as stores:
                    previous = stores.schedule.get_commit_record(request.idempotency_key)
                if previous is not None:
                    return previous

            if request.skip_conflicts:
                result = self._commit_skipping(request, occurrences, lock_keys)
            else:
                result = self._commit_all_or_nothing(request, occurrences, lock_keys)

        logger.info(
            "[BULK] Commit finished",
            client_id=request.client_id,
            caregiver_id=request.caregiver_id,
            created=result.created,
            skipped=result.skipped,
        )
        return result

    def _check_locked_authorization(self, evaluation: _Evaluation, lock_keys: list[str]) -> None:
        # The authorization resolved before locking must still be the one in force
        if evaluation.authorization is not None and authorization_key(evaluation.authorization.id) not in lock_keys:
            raise ConcurrentModification("active authorization changed")

    def _commit_all_or_nothing(
        self, request: BulkScheduleRequest, occurrences: list[Occurrence], lock_keys: list[str]
    ) -> CommitResult:
        with self._unit_of_work() as stores:
            evaluation = self._evaluate(stores, request, occurrences, for_update=True)
            self._check_locked_authorization(evaluation, lock_keys)
            self._enforce(evaluation, request)

            booking_ids = [
                stores.schedule.create_booking(o, caregiver_id=request.caregiver_id, client_id=request.client_id)
                for o in evaluation.accepted
            ]
            if evaluation.authorization is not None and evaluation.assessment.units_requested:
                stores.authorizations.increment_consumed_units(
                    evaluation.authorization.id, stored_total(evaluation.assessment.units_requested)
                )

            result = self._result(evaluation, booking_ids)
            self._record(stores, request, result)
        return result

    def _commit_skipping(
        self, request: BulkScheduleRequest, occurrences: list[Occurrence], lock_keys: list[str]
    ) -> CommitResult:
        with self._unit_of_work() as stores:
            evaluation = self._evaluate(stores, request, occurrences, for_update=True)
            self._check_locked_authorization(evaluation, lock_keys)
        self._enforce(evaluation, request)

        authorization = evaluation.authorization
        increments: dict[date, Decimal] = {}
        if authorization is not None:
            in_period = [o for o in evaluation.accepted if authorization.covers(o.date)]
            increments = dict(
                zip((o.date for o in in_period), stepwise_increments(in_period, authorization.unit_type), strict=True)
            )
        booking_ids: list[str] = []
        try:
            for occurrence in evaluation.accepted:
                with self._unit_of_work() as stores:
                    booking_id = stores.schedule.create_booking(
                        occurrence, caregiver_id=request.caregiver_id, client_id=request.client_id
                    )
                    if occurrence.date in increments:
                        stores.authorizations.increment_consumed_units(authorization.id, increments[occurrence.date])
                booking_ids.append(booking_id)
        except Exception:
            logger.error(
                "[BULK] Skip-policy commit interrupted; earlier occurrences stay committed",
                client_id=request.client_id,
                caregiver_id=request.caregiver_id,
                created=len(booking_ids),
            )
            if booking_ids:
                with self._unit_of_work() as stores:
                    partial = self._result(evaluation, booking_ids)
                    stores.schedule.record_audit(
                        BULK_AUDIT_ACTION, "Shift", booking_ids[0], self._audit_changes(request, partial)
                    )
            raise

        result = self._result(evaluation, booking_ids)
        with self._unit_of_work() as stores:
            self._record(stores, request, result)
        return result

    @staticmethod
    def _result(evaluation: _Evaluation, booking_ids: list[str]) -> CommitResult:
        return CommitResult(
            created=len(booking_ids),
            skipped=len(evaluation.occurrences) - len(evaluation.accepted),
            booking_ids=booking_ids,
            report=evaluation.report.model_copy(update={"phase": "committed"}),
        )

    @staticmethod
    def _audit_changes(request: BulkScheduleRequest, result: CommitResult) -> dict:
        spec = request.recurrence
        return {
            "count": result.created,
            "skipped": result.skipped,
            "client_id": request.client_id,
            "caregiver_id": request.caregiver_id,
            "pattern": str(spec.pattern),
            "range_start": spec.range_start.isoformat(),
            "range_end": spec.range_end.isoformat() if spec.range_end else None,
            "start_time": request.start_time,
            "end_time": request.end_time,
            "units_requested": str(result.report.units_requested) if result.report.units_requested is not None else None,
            "over_authorization": result.report.has_insufficient_units,
            "shift_ids": result.booking_ids,
        }

    def _record(self, stores: StoreBundle, request: BulkScheduleRequest, result: CommitResult) -> None:
        if result.booking_ids:
            stores.schedule.record_audit(
                BULK_AUDIT_ACTION, "Shift", result.booking_ids[0], self._audit_changes(request, result)
            )
        if request.idempotency_key:
            stores.schedule.save_commit_record(request.idempotency_key, result)
