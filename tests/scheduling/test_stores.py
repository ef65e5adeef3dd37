"""Tests for the SQLAlchemy-backed stores and the bulk service on top of them."""

from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import select

from carebase.db.models import AuditLog, Authorization, BulkCommitRecord, Caregiver, Client, Shift
from carebase.scheduling.bulk_service import BulkScheduleService
from carebase.scheduling.contracts import BulkScheduleRequest
from carebase.scheduling.errors import ConflictDetected
from carebase.scheduling.locks import ResourceLockRegistry
from carebase.scheduling.recurrence import Pattern, RecurrenceSpec
from carebase.scheduling.stores import SqlAuthorizationStore, SqlScheduleStore, sql_unit_of_work
from carebase.scheduling.time_slots import Occurrence


@pytest.fixture
def people(db_session):
    client = Client(id="client-1", first_name="Ada", last_name="Lovelace")
    other_client = Client(id="client-2", first_name="Grace", last_name="Hopper")
    caregiver = Caregiver(id="caregiver-1", first_name="Mary", last_name="Seacole")
    other_caregiver = Caregiver(id="caregiver-2", first_name="Clara", last_name="Barton")
    db_session.add_all([client, other_client, caregiver, other_caregiver])
    db_session.flush()
    return client, caregiver


@pytest.fixture
def authorization(db_session, people):
    row = Authorization(
        id="auth-1",
        client_id="client-1",
        unit_type="hourly",
        authorized_units=Decimal(100),
        consumed_units=Decimal(0),
        start_date=date(2024, 1, 1),
        end_date=date(2024, 6, 30),
    )
    db_session.add(row)
    db_session.flush()
    return row


def _shift(start, end, status="scheduled", caregiver_id="caregiver-1", client_id="client-2"):
    return Shift(
        client_id=client_id,
        caregiver_id=caregiver_id,
        scheduled_start=start,
        scheduled_end=end,
        status=status,
    )


class TestSqlScheduleStore:
    def test_find_bookings_ignores_inactive_statuses(self, db_session, people):
        db_session.add_all(
            [
                _shift(datetime(2024, 1, 2, 9), datetime(2024, 1, 2, 11)),
                _shift(datetime(2024, 1, 3, 9), datetime(2024, 1, 3, 11), status="cancelled"),
                _shift(datetime(2024, 1, 4, 9), datetime(2024, 1, 4, 11), status="in_progress"),
                _shift(datetime(2024, 1, 5, 9), datetime(2024, 1, 5, 11), status="completed"),
            ]
        )
        db_session.flush()

        bookings = SqlScheduleStore(db_session).find_bookings(
            "caregiver-1", "client-1", datetime(2024, 1, 1), datetime(2024, 1, 31)
        )

        assert [b.date for b in bookings] == [date(2024, 1, 2), date(2024, 1, 4)]

    def test_find_bookings_matches_client_or_caregiver_in_window(self, db_session, people):
        db_session.add_all(
            [
                _shift(datetime(2024, 1, 2, 9), datetime(2024, 1, 2, 11), caregiver_id="caregiver-2", client_id="client-1"),
                _shift(datetime(2024, 1, 2, 9), datetime(2024, 1, 2, 11), caregiver_id="caregiver-2", client_id="client-2"),
                _shift(datetime(2024, 2, 2, 9), datetime(2024, 2, 2, 11), caregiver_id="caregiver-1", client_id="client-2"),
            ]
        )
        db_session.flush()

        bookings = SqlScheduleStore(db_session).find_bookings(
            "caregiver-1", "client-1", datetime(2024, 1, 1), datetime(2024, 1, 31)
        )

        assert [(b.caregiver_id, b.client_id) for b in bookings] == [("caregiver-2", "client-1")]

    def test_create_booking_persists_bulk_shift(self, db_session, people):
        occurrence = Occurrence(date(2024, 1, 8), datetime(2024, 1, 8, 9), datetime(2024, 1, 8, 13))

        shift_id = SqlScheduleStore(db_session).create_booking(
            occurrence, caregiver_id="caregiver-1", client_id="client-1"
        )

        shift = db_session.get(Shift, shift_id)
        assert shift.source == "bulk"
        assert shift.status == "scheduled"
        assert shift.scheduled_end == datetime(2024, 1, 8, 13)


class TestSqlAuthorizationStore:
    def test_active_authorization_covering_date(self, db_session, authorization):
        store = SqlAuthorizationStore(db_session)

        snapshot = store.get_active_authorization("client-1", date(2024, 3, 1), for_update=True)

        assert snapshot.id == "auth-1"
        assert snapshot.remaining_units == Decimal(100)
        assert store.get_active_authorization("client-1", date(2024, 7, 1)) is None

    def test_earliest_ending_authorization_wins(self, db_session, authorization):
        db_session.add(
            Authorization(
                id="auth-2",
                client_id="client-1",
                unit_type="daily",
                authorized_units=Decimal(10),
                start_date=date(2024, 1, 1),
                end_date=date(2024, 3, 31),
            )
        )
        db_session.flush()

        snapshot = SqlAuthorizationStore(db_session).get_active_authorization("client-1", date(2024, 2, 1))

        assert snapshot.id == "auth-2"

    def test_increment_consumed_units(self, db_session, authorization):
        store = SqlAuthorizationStore(db_session)

        store.increment_consumed_units("auth-1", Decimal("12.5"))
        store.increment_consumed_units("auth-1", Decimal("2.5"))
        db_session.expire_all()

        assert db_session.get(Authorization, "auth-1").consumed_units == Decimal(15)

    def test_increment_unknown_authorization(self, db_session, people):
        with pytest.raises(ValueError):
            SqlAuthorizationStore(db_session).increment_consumed_units("missing", Decimal(1))


class TestBulkServiceWithSql:
    def _request(self, **overrides):
        fields = {
            "client_id": "client-1",
            "caregiver_id": "caregiver-1",
            "recurrence": RecurrenceSpec(pattern=Pattern.DAILY, range_start=date(2024, 1, 1), range_end=date(2024, 1, 10)),
            "start_time": "09:00",
            "end_time": "13:00",
        }
        fields.update(overrides)
        return BulkScheduleRequest(**fields)

    def _service(self):
        return BulkScheduleService(sql_unit_of_work, locks=ResourceLockRegistry(), today=lambda: date(2024, 1, 1))

    def test_commit_creates_shifts_audit_and_units(self, db_session, authorization):
        result = self._service().commit(self._request(idempotency_key="k-1"))
        db_session.expire_all()

        shifts = db_session.execute(select(Shift).where(Shift.source == "bulk")).scalars().all()
        assert len(shifts) == result.created == 10
        assert db_session.get(Authorization, "auth-1").consumed_units == Decimal(40)

        audit = db_session.execute(select(AuditLog)).scalars().one()
        assert audit.action == "BULK_SHIFTS_CREATED"
        assert audit.changes["count"] == 10
        assert db_session.get(BulkCommitRecord, "k-1").created == 10

    def test_replay_reads_stored_result(self, db_session, authorization):
        service = self._service()
        first = service.commit(self._request(idempotency_key="k-2"))

        second = service.commit(self._request(idempotency_key="k-2"))

        assert second.replayed is True
        assert second.booking_ids == first.booking_ids
        assert second.report.units_requested == Decimal(40)

    def test_skip_policy_with_existing_shift(self, db_session, authorization):
        db_session.add(_shift(datetime(2024, 1, 3, 12), datetime(2024, 1, 3, 15)))
        db_session.flush()

        result = self._service().commit(self._request(skip_conflicts=True))
        db_session.expire_all()

        assert result.created == 9
        assert result.skipped == 1
        assert db_session.get(Authorization, "auth-1").consumed_units == Decimal(36)

    def test_all_or_nothing_conflict(self, db_session, authorization):
        db_session.add(_shift(datetime(2024, 1, 3, 12), datetime(2024, 1, 3, 15)))
        db_session.flush()

        with pytest.raises(ConflictDetected):
            self._service().commit(self._request())

        assert db_session.execute(select(Shift).where(Shift.source == "bulk")).scalars().all() == []
