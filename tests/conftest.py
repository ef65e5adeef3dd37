"""Root conftest for all tests.

This file makes shared fixtures available across all test modules.
"""

import os

# Keep the application engine off the local development database file
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from carebase.scheduling.conflicts import ExistingBooking
from carebase.scheduling.contracts import CommitResult
from carebase.scheduling.stores import StoreBundle
from carebase.scheduling.time_slots import Occurrence
from carebase.scheduling.units import AuthorizationSnapshot, UnitType


# Enable foreign key constraints for SQLite
@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Enable foreign key constraints in SQLite connections."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest.fixture(scope="function")
def db_session(monkeypatch):
    """
    Provides a transactional in-memory SQLite DB session for tests.

    This fixture:
    - Creates an isolated in-memory SQLite database per test
    - Patches the engine getters to use it
    - Patches get_session() everywhere it is imported to yield the test session
    - Rolls the outer transaction back afterwards

    Usage:
        def test_something(db_session):
            db_session.add(Client(first_name="Ada", last_name="Lovelace"))
            db_session.flush()
    """
    engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        connect_args={"check_same_thread": False},
    )

    def mock_get_engine():
        return engine

    monkeypatch.setattr("carebase.db.session.get_engine", mock_get_engine)

    from carebase.db.models import Base

    Base.metadata.create_all(engine)

    connection = engine.connect()
    transaction = connection.begin()

    test_session_local = sessionmaker(bind=connection, autocommit=False, autoflush=False)
    session = test_session_local()

    @contextmanager
    def mock_get_session():
        yield session
        session.flush()

    # Patch where it's defined and where it's imported
    import carebase.api.authorizations as authorizations_api
    import carebase.db.session as session_module
    import carebase.scheduling.stores as stores_module

    monkeypatch.setattr(session_module, "get_session", mock_get_session)
    monkeypatch.setattr(stores_module, "get_session", mock_get_session)
    monkeypatch.setattr(authorizations_api, "get_session", mock_get_session)

    try:
        yield session
    finally:
        session.rollback()
        if transaction.is_active:
            transaction.rollback()
        session.close()
        connection.close()


@dataclass
class MemoryDatabase:
    """In-memory schedule and authorization data with transactional units of work.

    Each unit of work works on a copy of the data and publishes it only when
    the block exits cleanly, so an exception discards every write made inside it.
    Set `fail_on_create` to make the nth create_booking call (1-based, counted
    across units of work) raise RuntimeError.
    """

    bookings: list[ExistingBooking] = field(default_factory=list)
    authorizations: dict[str, AuthorizationSnapshot] = field(default_factory=dict)
    audits: list[dict[str, Any]] = field(default_factory=list)
    commit_records: dict[str, CommitResult] = field(default_factory=dict)
    fail_on_create: int | None = None
    create_calls: int = 0
    units_of_work: int = 0

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def add_booking(self, booking_id: str, start: datetime, end: datetime, *, caregiver_id: str, client_id: str) -> None:
        self.bookings.append(
            ExistingBooking(
                id=booking_id,
                date=start.date(),
                start=start,
                end=end,
                caregiver_id=caregiver_id,
                client_id=client_id,
            )
        )

    def add_authorization(
        self,
        authorization_id: str,
        *,
        client_id: str,
        unit_type: UnitType = UnitType.HOURLY,
        authorized_units: Decimal | int = Decimal(100),
        consumed_units: Decimal | int = Decimal(0),
        valid_from: date = date(2024, 1, 1),
        valid_to: date = date(2024, 12, 31),
    ) -> None:
        self.authorizations[authorization_id] = AuthorizationSnapshot(
            id=authorization_id,
            client_id=client_id,
            unit_type=unit_type,
            authorized_units=Decimal(authorized_units),
            consumed_units=Decimal(consumed_units),
            valid_from=valid_from,
            valid_to=valid_to,
        )

    @contextmanager
    def unit_of_work(self) -> Iterator[StoreBundle]:
        with self._lock:
            self.units_of_work += 1
            tx = _MemoryTransaction(self)
            yield StoreBundle(schedule=tx, authorizations=tx)
            tx.publish()


class _MemoryTransaction:
    """Implements both store protocols over a private copy of the data."""

    def __init__(self, db: MemoryDatabase):
        self._db = db
        self.bookings = list(db.bookings)
        self.authorizations = dict(db.authorizations)
        self.audits = list(db.audits)
        self.commit_records = dict(db.commit_records)

    def publish(self) -> None:
        self._db.bookings = self.bookings
        self._db.authorizations = self.authorizations
        self._db.audits = self.audits
        self._db.commit_records = self.commit_records

    def find_bookings(self, caregiver_id, client_id, start, end):
        return [
            b
            for b in self.bookings
            if (b.caregiver_id == caregiver_id or b.client_id == client_id) and b.start < end and b.end > start
        ]

    def create_booking(self, occurrence: Occurrence, *, caregiver_id, client_id):
        self._db.create_calls += 1
        if self._db.fail_on_create is not None and self._db.create_calls >= self._db.fail_on_create:
            raise RuntimeError("storage unavailable")
        booking_id = f"shift-{len(self.bookings) + 1}"
        self.bookings.append(
            ExistingBooking(
                id=booking_id,
                date=occurrence.date,
                start=occurrence.start,
                end=occurrence.end,
                caregiver_id=caregiver_id,
                client_id=client_id,
            )
        )
        return booking_id

    def record_audit(self, action, entity_type, entity_id, changes):
        self.audits.append({"action": action, "entity_type": entity_type, "entity_id": entity_id, "changes": changes})

    def get_commit_record(self, idempotency_key):
        record = self.commit_records.get(idempotency_key)
        return record.model_copy(update={"replayed": True}) if record else None

    def save_commit_record(self, idempotency_key, result):
        self.commit_records[idempotency_key] = result

    def get_active_authorization(self, client_id, on_date, *, for_update=False):
        candidates = [
            a for a in self.authorizations.values() if a.client_id == client_id and a.covers(on_date)
        ]
        candidates.sort(key=lambda a: (a.valid_to, a.id))
        return candidates[0] if candidates else None

    def increment_consumed_units(self, authorization_id, delta):
        current = self.authorizations[authorization_id]
        self.authorizations[authorization_id] = replace(current, consumed_units=current.consumed_units + delta)


@pytest.fixture
def memory_db() -> MemoryDatabase:
    return MemoryDatabase()
