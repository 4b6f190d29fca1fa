"""
Availability Ledger

Per-car, per-day occupancy. Every write is a conditional UPDATE whose WHERE
clause names the statuses it may overwrite, so a stale or re-ordered side
effect can never clobber a maintenance block or another booking's hold.
Missing rows mean "available" and are inserted on demand; the
(car_id, date) unique constraint settles insert races.

Date ranges are inclusive on both ends.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session

from ..models.availability_day import AvailabilityDay, AvailabilityStatus
from ..exceptions import DatesUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class LedgerWriteResult:
    """Outcome of a bulk hold/release"""
    applied: List[date] = field(default_factory=list)
    skipped: Dict[date, str] = field(default_factory=dict)

    @property
    def fully_applied(self) -> bool:
        return not self.skipped

    def as_dict(self) -> dict:
        return {
            "applied": [d.isoformat() for d in self.applied],
            "skipped": {d.isoformat(): s for d, s in self.skipped.items()},
        }


def date_range(start: date, end: date) -> List[date]:
    """All dates from start to end inclusive"""
    if end < start:
        return []
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


class AvailabilityLedger:
    def __init__(self, db: Session):
        self.db = db

    # ==================
    # Reads
    # ==================

    def _rows(self, car_id: str, dates: List[date]) -> Dict[date, AvailabilityDay]:
        if not dates:
            return {}
        rows = (
            self.db.query(AvailabilityDay)
            .filter(
                AvailabilityDay.car_id == car_id,
                AvailabilityDay.date.in_(dates),
            )
            .execution_options(populate_existing=True)
            .all()
        )
        return {row.date: row for row in rows}

    def get_availability(self, car_id: str, start: date, end: date) -> Dict[date, str]:
        """Status for every day in the range; days without a row are available"""
        dates = date_range(start, end)
        rows = self._rows(car_id, dates)
        return {
            d: rows[d].status if d in rows else AvailabilityStatus.AVAILABLE.value
            for d in dates
        }

    def find_conflicts(self, car_id: str, start: date, end: date, booking_id: str) -> Dict[date, str]:
        """Days in the range that `booking_id` could not hold"""
        conflicts = {}
        for d, row in self._rows(car_id, date_range(start, end)).items():
            if row.status == AvailabilityStatus.AVAILABLE.value:
                continue
            if row.booking_id == booking_id and row.status != AvailabilityStatus.MAINTENANCE.value:
                continue
            conflicts[d] = row.status
        return conflicts

    # ==================
    # Writes
    # ==================

    def _hold_condition(self, target: AvailabilityStatus, booking_id: str):
        available = AvailabilityDay.status == AvailabilityStatus.AVAILABLE.value
        own_pending = and_(
            AvailabilityDay.status == AvailabilityStatus.PENDING_CONFIRMATION.value,
            or_(AvailabilityDay.booking_id == booking_id, AvailabilityDay.booking_id.is_(None)),
        )
        if target == AvailabilityStatus.BOOKED:
            own_booked = and_(
                AvailabilityDay.status == AvailabilityStatus.BOOKED.value,
                AvailabilityDay.booking_id == booking_id,
            )
            return or_(available, own_pending, own_booked)
        return or_(available, own_pending)

    def hold(
        self,
        car_id: str,
        start: date,
        end: date,
        booking_id: str,
        status: AvailabilityStatus = AvailabilityStatus.BOOKED,
    ) -> LedgerWriteResult:
        """
        Mark every day in the range as held by `booking_id`.

        `booked` may only replace available or pending_confirmation days;
        `pending_confirmation` only replaces available days. Days held by
        someone else or under maintenance are reported in `skipped`.
        Re-running a hold for the same booking is a no-op.
        """
        if status not in (AvailabilityStatus.BOOKED, AvailabilityStatus.PENDING_CONFIRMATION):
            raise ValueError(f"Cannot hold dates as {status.value}")

        dates = date_range(start, end)
        result = LedgerWriteResult()
        if not dates:
            return result

        self.db.execute(
            update(AvailabilityDay)
            .where(
                AvailabilityDay.car_id == car_id,
                AvailabilityDay.date.in_(dates),
                self._hold_condition(status, booking_id),
            )
            .values(status=status.value, booking_id=booking_id)
            .execution_options(synchronize_session=False)
        )

        rows = self._rows(car_id, dates)
        for d in dates:
            row = rows.get(d)
            if row is None:
                self.db.add(AvailabilityDay(
                    car_id=car_id,
                    date=d,
                    status=status.value,
                    booking_id=booking_id,
                ))
                result.applied.append(d)
            elif row.status == status.value and row.booking_id == booking_id:
                result.applied.append(d)
            else:
                result.skipped[d] = row.status

        self.db.flush()

        if result.skipped:
            logger.warning(
                f"Hold for booking {booking_id} on car {car_id} skipped "
                f"{len(result.skipped)} day(s): {sorted(result.skipped)}"
            )
        return result

    def reserve(self, car_id: str, start: date, end: date, booking_id: str) -> LedgerWriteResult:
        """
        All-or-nothing pending_confirmation hold used at booking creation.

        Raises DatesUnavailableError (writing nothing) when any day is held
        by another booking or under maintenance.
        """
        conflicts = self.find_conflicts(car_id, start, end, booking_id)
        if conflicts:
            raise DatesUnavailableError(car_id, conflicts.keys())

        result = self.hold(car_id, start, end, booking_id, AvailabilityStatus.PENDING_CONFIRMATION)
        if result.skipped:
            # Lost a race between the check and the write
            raise DatesUnavailableError(car_id, result.skipped.keys())
        return result

    def release(
        self,
        car_id: str,
        start: date,
        end: date,
        booking_id: str,
        from_statuses: Optional[List[AvailabilityStatus]] = None,
    ) -> LedgerWriteResult:
        """
        Return this booking's held days in the range to `available`.

        Only overwrites rows owned by `booking_id` whose status is in
        `from_statuses` (booked/pending_confirmation by default); maintenance
        blocks and other bookings' days are never touched.
        """
        if from_statuses is None:
            from_statuses = [AvailabilityStatus.BOOKED, AvailabilityStatus.PENDING_CONFIRMATION]

        dates = date_range(start, end)
        result = LedgerWriteResult()
        if not dates:
            return result

        rows = self._rows(car_id, dates)
        owned = [
            d for d, row in rows.items()
            if row.booking_id == booking_id and row.status in [s.value for s in from_statuses]
        ]

        self.db.execute(
            update(AvailabilityDay)
            .where(
                AvailabilityDay.car_id == car_id,
                AvailabilityDay.date.in_(dates),
                AvailabilityDay.booking_id == booking_id,
                AvailabilityDay.status.in_([s.value for s in from_statuses]),
            )
            .values(status=AvailabilityStatus.AVAILABLE.value, booking_id=None)
            .execution_options(synchronize_session=False)
        )
        self.db.flush()

        result.applied = sorted(owned)
        return result

    def block_for_maintenance(self, car_id: str, start: date, end: date) -> LedgerWriteResult:
        """Operator maintenance block; never overrides held or booked days"""
        dates = date_range(start, end)
        result = LedgerWriteResult()
        if not dates:
            return result

        self.db.execute(
            update(AvailabilityDay)
            .where(
                AvailabilityDay.car_id == car_id,
                AvailabilityDay.date.in_(dates),
                AvailabilityDay.status == AvailabilityStatus.AVAILABLE.value,
            )
            .values(status=AvailabilityStatus.MAINTENANCE.value, booking_id=None)
            .execution_options(synchronize_session=False)
        )

        rows = self._rows(car_id, dates)
        for d in dates:
            row = rows.get(d)
            if row is None:
                self.db.add(AvailabilityDay(
                    car_id=car_id,
                    date=d,
                    status=AvailabilityStatus.MAINTENANCE.value,
                ))
                result.applied.append(d)
            elif row.status == AvailabilityStatus.MAINTENANCE.value:
                result.applied.append(d)
            else:
                result.skipped[d] = row.status

        self.db.flush()
        return result

    def clear_maintenance(self, car_id: str, start: date, end: date) -> int:
        dates = date_range(start, end)
        if not dates:
            return 0
        outcome = self.db.execute(
            update(AvailabilityDay)
            .where(
                AvailabilityDay.car_id == car_id,
                AvailabilityDay.date.in_(dates),
                AvailabilityDay.status == AvailabilityStatus.MAINTENANCE.value,
            )
            .values(status=AvailabilityStatus.AVAILABLE.value)
            .execution_options(synchronize_session=False)
        )
        self.db.flush()
        return outcome.rowcount
