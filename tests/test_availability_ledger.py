"""
Tests for the per-day availability ledger.

Ranges are inclusive on both ends; writes only ever overwrite the
statuses they are allowed to.
"""

import os
import sys
from datetime import date, timedelta

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from booking_orchestrator.exceptions import DatesUnavailableError
from booking_orchestrator.models.availability_day import AvailabilityDay, AvailabilityStatus
from booking_orchestrator.services.availability_ledger import AvailabilityLedger, date_range

CAR = "car-ledger"
START = date(2030, 6, 1)
END = date(2030, 6, 4)


class TestDateRange:
    def test_inclusive(self):
        days = date_range(START, END)
        assert days[0] == START
        assert days[-1] == END
        assert len(days) == 4

    def test_single_day(self):
        assert date_range(START, START) == [START]

    def test_reversed_is_empty(self):
        assert date_range(END, START) == []


class TestReadAvailability:
    def test_missing_rows_are_available(self, db):
        days = AvailabilityLedger(db).get_availability(CAR, START, END)
        assert len(days) == 4
        assert set(days.values()) == {"available"}

    def test_other_cars_do_not_leak(self, db):
        ledger = AvailabilityLedger(db)
        ledger.hold("other-car", START, END, "b-1")
        db.commit()

        assert set(ledger.get_availability(CAR, START, END).values()) == {"available"}


class TestReserve:
    def test_reserve_creates_pending_rows(self, db):
        ledger = AvailabilityLedger(db)
        result = ledger.reserve(CAR, START, END, "b-1")
        db.commit()

        assert result.applied == date_range(START, END)
        rows = db.query(AvailabilityDay).filter(AvailabilityDay.car_id == CAR).all()
        assert len(rows) == 4
        assert {r.status for r in rows} == {"pending_confirmation"}
        assert {r.booking_id for r in rows} == {"b-1"}

    def test_reserve_conflict_writes_nothing(self, db):
        ledger = AvailabilityLedger(db)
        ledger.reserve(CAR, START, START + timedelta(days=1), "b-1")
        db.commit()

        with pytest.raises(DatesUnavailableError) as exc_info:
            ledger.reserve(CAR, START + timedelta(days=1), END, "b-2")
        db.rollback()

        assert exc_info.value.conflicting_dates == [START + timedelta(days=1)]
        assert db.query(AvailabilityDay).filter(AvailabilityDay.booking_id == "b-2").count() == 0

    def test_reserve_blocked_by_maintenance(self, db):
        ledger = AvailabilityLedger(db)
        ledger.block_for_maintenance(CAR, END, END)
        db.commit()

        with pytest.raises(DatesUnavailableError) as exc_info:
            ledger.reserve(CAR, START, END, "b-1")

        assert exc_info.value.conflicting_dates == [END]

    def test_reserve_again_for_same_booking(self, db):
        ledger = AvailabilityLedger(db)
        ledger.reserve(CAR, START, END, "b-1")
        db.commit()

        result = ledger.reserve(CAR, START, END, "b-1")
        assert result.fully_applied


class TestHold:
    def test_booked_upgrades_own_pending_days(self, db):
        ledger = AvailabilityLedger(db)
        ledger.reserve(CAR, START, END, "b-1")
        result = ledger.hold(CAR, START, END, "b-1", AvailabilityStatus.BOOKED)
        db.commit()

        assert result.fully_applied
        assert set(ledger.get_availability(CAR, START, END).values()) == {"booked"}

    def test_hold_is_idempotent(self, db):
        ledger = AvailabilityLedger(db)
        ledger.hold(CAR, START, END, "b-1")
        result = ledger.hold(CAR, START, END, "b-1")
        db.commit()

        assert result.applied == date_range(START, END)
        assert db.query(AvailabilityDay).filter(AvailabilityDay.car_id == CAR).count() == 4

    def test_hold_skips_other_bookings_days(self, db):
        ledger = AvailabilityLedger(db)
        ledger.reserve(CAR, START, START, "b-1")
        result = ledger.hold(CAR, START, END, "b-2")
        db.commit()

        assert result.skipped == {START: "pending_confirmation"}
        days = ledger.get_availability(CAR, START, END)
        assert days[START] == "pending_confirmation"
        assert days[END] == "booked"

    def test_pending_never_downgrades_booked(self, db):
        ledger = AvailabilityLedger(db)
        ledger.hold(CAR, START, END, "b-1", AvailabilityStatus.BOOKED)
        result = ledger.hold(CAR, START, END, "b-1", AvailabilityStatus.PENDING_CONFIRMATION)

        assert len(result.skipped) == 4
        assert set(ledger.get_availability(CAR, START, END).values()) == {"booked"}

    def test_hold_never_overrides_maintenance(self, db):
        ledger = AvailabilityLedger(db)
        ledger.block_for_maintenance(CAR, START, START)
        result = ledger.hold(CAR, START, END, "b-1")

        assert result.skipped == {START: "maintenance"}

    def test_hold_rejects_non_hold_status(self, db):
        with pytest.raises(ValueError):
            AvailabilityLedger(db).hold(CAR, START, END, "b-1", AvailabilityStatus.MAINTENANCE)


class TestRelease:
    def test_release_only_own_days(self, db):
        ledger = AvailabilityLedger(db)
        ledger.hold(CAR, START, START + timedelta(days=1), "b-1")
        ledger.hold(CAR, END - timedelta(days=1), END, "b-2")
        db.commit()

        result = ledger.release(CAR, START, END, "b-1")
        db.commit()

        assert result.applied == [START, START + timedelta(days=1)]
        days = ledger.get_availability(CAR, START, END)
        assert days[START] == "available"
        assert days[END] == "booked"

    def test_release_filtered_by_status(self, db):
        ledger = AvailabilityLedger(db)
        ledger.reserve(CAR, START, END, "b-1")
        ledger.hold(CAR, START, START, "b-1", AvailabilityStatus.BOOKED)
        db.commit()

        ledger.release(CAR, START, END, "b-1", from_statuses=[AvailabilityStatus.PENDING_CONFIRMATION])
        db.commit()

        days = ledger.get_availability(CAR, START, END)
        assert days[START] == "booked"
        assert days[END] == "available"

    def test_released_days_can_be_held_again(self, db):
        ledger = AvailabilityLedger(db)
        ledger.hold(CAR, START, END, "b-1")
        ledger.release(CAR, START, END, "b-1")
        result = ledger.reserve(CAR, START, END, "b-2")
        db.commit()

        assert result.fully_applied
        row = db.query(AvailabilityDay).filter(
            AvailabilityDay.car_id == CAR, AvailabilityDay.date == START
        ).one()
        assert row.booking_id == "b-2"


class TestMaintenance:
    def test_block_skips_held_days(self, db):
        ledger = AvailabilityLedger(db)
        ledger.hold(CAR, START, START, "b-1")
        result = ledger.block_for_maintenance(CAR, START, END)
        db.commit()

        assert result.skipped == {START: "booked"}
        assert len(result.applied) == 3
        assert result.as_dict()["skipped"] == {START.isoformat(): "booked"}

    def test_clear_maintenance(self, db):
        ledger = AvailabilityLedger(db)
        ledger.hold(CAR, START, START, "b-1")
        ledger.block_for_maintenance(CAR, START, END)
        db.commit()

        cleared = ledger.clear_maintenance(CAR, START, END)
        db.commit()

        assert cleared == 3
        days = ledger.get_availability(CAR, START, END)
        assert days[START] == "booked"
        assert days[END] == "available"
