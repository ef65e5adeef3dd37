"""Schedule and authorization store collaborators.

The bulk service only talks to these protocols. Each unit of work yields
both stores bound to one transaction: leaving the block cleanly commits it,
an exception rolls it back.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Protocol

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from carebase.db.models import AuditLog, Authorization, BulkCommitRecord, Shift
from carebase.db.session import get_session
from carebase.scheduling.conflicts import ExistingBooking
from carebase.scheduling.contracts import BatchReport, CommitResult
from carebase.scheduling.time_slots import Occurrence
from carebase.scheduling.units import AuthorizationSnapshot, UnitType

# Shift statuses that occupy a caregiver's or client's time
ACTIVE_SHIFT_STATUSES = ("scheduled", "in_progress")


class ScheduleStore(Protocol):
    def find_bookings(self, caregiver_id: str, client_id: str, start: datetime, end: datetime) -> list[ExistingBooking]:
        """Active bookings of the caregiver or the client overlapping [start, end)."""
        ...

    def create_booking(self, occurrence: Occurrence, *, caregiver_id: str, client_id: str) -> str:
        """Persist one occurrence as a shift and return its id."""
        ...

    def record_audit(self, action: str, entity_type: str, entity_id: str, changes: dict[str, Any]) -> None: ...

    def get_commit_record(self, idempotency_key: str) -> CommitResult | None: ...

    def save_commit_record(self, idempotency_key: str, result: CommitResult) -> None: ...


class AuthorizationStore(Protocol):
    def get_active_authorization(
        self, client_id: str, on_date: date, *, for_update: bool = False
    ) -> AuthorizationSnapshot | None:
        """The client's active authorization covering `on_date`, if any."""
        ...

    def increment_consumed_units(self, authorization_id: str, delta: Decimal) -> None: ...


@dataclass(frozen=True)
class StoreBundle:
    schedule: ScheduleStore
    authorizations: AuthorizationStore


UnitOfWork = Callable[[], AbstractContextManager[StoreBundle]]


def _to_booking(shift: Shift) -> ExistingBooking:
    return ExistingBooking(
        id=shift.id,
        date=shift.scheduled_start.date(),
        start=shift.scheduled_start,
        end=shift.scheduled_end,
        caregiver_id=shift.caregiver_id,
        client_id=shift.client_id,
    )


def _to_snapshot(row: Authorization) -> AuthorizationSnapshot:
    return AuthorizationSnapshot(
        id=row.id,
        client_id=row.client_id,
        unit_type=UnitType(row.unit_type),
        authorized_units=Decimal(row.authorized_units),
        consumed_units=Decimal(row.consumed_units or 0),
        valid_from=row.start_date,
        valid_to=row.end_date,
    )


class SqlScheduleStore:
    """ScheduleStore backed by the shifts, audit_logs and bulk_commit_records tables."""

    def __init__(self, session: Session):
        self._session = session

    def find_bookings(self, caregiver_id: str, client_id: str, start: datetime, end: datetime) -> list[ExistingBooking]:
        shifts = self._session.execute(
            select(Shift)
            .where(
                or_(Shift.caregiver_id == caregiver_id, Shift.client_id == client_id),
                Shift.status.in_(ACTIVE_SHIFT_STATUSES),
                Shift.scheduled_start < end,
                Shift.scheduled_end > start,
            )
            .order_by(Shift.scheduled_start)
        ).scalars()
        return [_to_booking(shift) for shift in shifts]

    def create_booking(self, occurrence: Occurrence, *, caregiver_id: str, client_id: str) -> str:
        shift = Shift(
            caregiver_id=caregiver_id,
            client_id=client_id,
            scheduled_start=occurrence.start,
            scheduled_end=occurrence.end,
            status="scheduled",
            source="bulk",
        )
        self._session.add(shift)
        self._session.flush()
        return shift.id

    def record_audit(self, action: str, entity_type: str, entity_id: str, changes: dict[str, Any]) -> None:
        self._session.add(AuditLog(action=action, entity_type=entity_type, entity_id=entity_id, changes=changes))

    def get_commit_record(self, idempotency_key: str) -> CommitResult | None:
        record = self._session.get(BulkCommitRecord, idempotency_key)
        if record is None:
            return None
        return CommitResult(
            created=record.created,
            skipped=record.skipped,
            booking_ids=list(record.booking_ids),
            report=BatchReport.model_validate(record.report),
            replayed=True,
        )

    def save_commit_record(self, idempotency_key: str, result: CommitResult) -> None:
        self._session.add(
            BulkCommitRecord(
                idempotency_key=idempotency_key,
                client_id=result.report.client_id,
                caregiver_id=result.report.caregiver_id,
                created=result.created,
                skipped=result.skipped,
                booking_ids=result.booking_ids,
                report=result.report.model_dump(mode="json"),
            )
        )


class SqlAuthorizationStore:
    """AuthorizationStore backed by the authorizations table."""

    def __init__(self, session: Session):
        self._session = session

    def get_active_authorization(
        self, client_id: str, on_date: date, *, for_update: bool = False
    ) -> AuthorizationSnapshot | None:
        stmt = (
            select(Authorization)
            .where(
                Authorization.client_id == client_id,
                Authorization.status == "active",
                Authorization.start_date <= on_date,
                Authorization.end_date >= on_date,
            )
            .order_by(Authorization.end_date.asc(), Authorization.id)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        if for_update:
            # Row lock on PostgreSQL; SQLite ignores FOR UPDATE
            stmt = stmt.with_for_update()
        row = self._session.execute(stmt).scalars().first()
        return _to_snapshot(row) if row is not None else None

    def list_active_authorizations(self, client_id: str) -> list[AuthorizationSnapshot]:
        rows = self._session.execute(
            select(Authorization)
            .where(Authorization.client_id == client_id, Authorization.status == "active")
            .order_by(Authorization.end_date.asc())
        ).scalars()
        return [_to_snapshot(row) for row in rows]

    def increment_consumed_units(self, authorization_id: str, delta: Decimal) -> None:
        result = self._session.execute(
            update(Authorization)
            .where(Authorization.id == authorization_id)
            .values(consumed_units=Authorization.consumed_units + delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ValueError(f"Authorization not found: {authorization_id}")
        logger.debug("[AUTHORIZATION] Consumed units incremented", authorization_id=authorization_id, delta=str(delta))


@contextmanager
def sql_unit_of_work() -> Iterator[StoreBundle]:
    """Open one database transaction and bind both SQL stores to it."""
    with get_session() as session:
        yield StoreBundle(
            schedule=SqlScheduleStore(session),
            authorizations=SqlAuthorizationStore(session),
        )
