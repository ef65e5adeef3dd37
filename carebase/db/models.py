from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import JSON, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""


class Client(Base):
    """Client receiving home care."""

    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    first_name: Mapped[str] = mapped_column(String, nullable=False)
    last_name: Mapped[str] = mapped_column(String, nullable=False)
    medicaid_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)


class Caregiver(Base):
    """Caregiver (carer) who can be scheduled on shifts."""

    __tablename__ = "caregivers"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    first_name: Mapped[str] = mapped_column(String, nullable=False)
    last_name: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)


class Shift(Base):
    """A scheduled visit of one caregiver to one client.

    scheduled_start / scheduled_end are naive local wall-clock times.
    Status workflow: scheduled → in_progress → completed, or cancelled / missed.
    Only scheduled and in_progress shifts block new bookings.
    """

    __tablename__ = "shifts"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("clients.id"), nullable=False)
    caregiver_id: Mapped[str] = mapped_column(String, ForeignKey("caregivers.id"), nullable=False)
    scheduled_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    scheduled_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="scheduled")
    source: Mapped[str] = mapped_column(String, nullable=False, default="manual")  # manual | bulk
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_shifts_caregiver_start", "caregiver_id", "scheduled_start"),
        Index("idx_shifts_client_start", "client_id", "scheduled_start"),
    )


class Authorization(Base):
    """A client's approved service units for a coverage period.

    consumed_units only ever grows as shifts are committed against it.
    """

    __tablename__ = "authorizations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    client_id: Mapped[str] = mapped_column(String, ForeignKey("clients.id"), nullable=False, index=True)
    unit_type: Mapped[str] = mapped_column(String, nullable=False)  # hourly | quarter_hourly | daily
    authorized_units: Mapped[Decimal] = mapped_column(Numeric(14, 6), nullable=False)
    consumed_units: Mapped[Decimal] = mapped_column(Numeric(14, 6), nullable=False, default=Decimal(0))
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class AuditLog(Base):
    """Append-only record of scheduling mutations."""

    __tablename__ = "audit_logs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    action: Mapped[str] = mapped_column(String, nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[str] = mapped_column(String, nullable=False)
    changes: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)


class BulkCommitRecord(Base):
    """Stored outcome of a bulk commit, keyed by the caller's idempotency key."""

    __tablename__ = "bulk_commit_records"

    idempotency_key: Mapped[str] = mapped_column(String, primary_key=True)
    client_id: Mapped[str] = mapped_column(String, nullable=False)
    caregiver_id: Mapped[str] = mapped_column(String, nullable=False)
    created: Mapped[int] = mapped_column(Integer, nullable=False)
    skipped: Mapped[int] = mapped_column(Integer, nullable=False)
    booking_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    report: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=_utcnow)
