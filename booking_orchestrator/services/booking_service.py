"""
Booking Service

Creation, payment capture and voiding. Creation is the one synchronous
provider call in the request path: the order is created inline with a short
tenacity retry, everything else reaches providers through webhooks, the
retry engine, admin calls and the worker's capture batch.
"""

import logging
import uuid
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import settings
from ..exceptions import (
    AdapterError,
    AdapterNotConfiguredError,
    BookingNotFoundError,
    DatesUnavailableError,
    NonRetryableError,
    RetryableAdapterError,
)
from ..models.booking import Booking, BookingStatus, ContractStatus, PaymentStatus
from ..models.booking_event import BookingEventType, EventActor
from .availability_cache import availability_cache
from .availability_ledger import AvailabilityLedger
from .booking_state_machine import BookingStateMachine
from .event_log import EventLog

logger = logging.getLogger(__name__)

DEPOSIT_RATE = Decimal("0.30")
ORDER_ATTEMPTS = 3


def calculate_deposit(total_price: Decimal) -> Decimal:
    return (Decimal(total_price) * DEPOSIT_RATE).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class BookingService:
    def __init__(self, db: Session, payment_adapter=None, order_retry_wait=None):
        self.db = db
        self.payment_adapter = payment_adapter
        self.order_retry_wait = order_retry_wait or wait_exponential(multiplier=0.5, max=4)
        self.events = EventLog(db)

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.db.get(Booking, booking_id)
        if booking is None:
            raise BookingNotFoundError(booking_id)
        return booking

    def create_booking(
        self,
        car_id: str,
        start_date: date,
        end_date: date,
        customer_email: str,
        total_price: Decimal,
        currency: str = "USD",
        customer_name: Optional[str] = None,
        customer_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Booking:
        """
        Reserve the dates and create the booking in pending_payment.

        The pending_confirmation hold and the booking row commit together;
        if any day is taken, DatesUnavailableError is raised and nothing is
        written.
        """
        if start_date >= end_date:
            raise ValueError("start_date must be before end_date")
        if Decimal(total_price) <= 0:
            raise ValueError("total_price must be positive")

        booking_id = str(uuid.uuid4())
        total = Decimal(total_price).quantize(Decimal("0.01"))
        deposit = calculate_deposit(total)

        try:
            AvailabilityLedger(self.db).reserve(car_id, start_date, end_date, booking_id)
            booking = Booking(
                id=booking_id,
                car_id=car_id,
                customer_id=customer_id,
                customer_name=customer_name,
                customer_email=customer_email,
                start_date=start_date,
                end_date=end_date,
                overall_status=BookingStatus.PENDING_PAYMENT.value,
                payment_status=PaymentStatus.PENDING.value,
                contract_status=ContractStatus.NOT_SENT.value,
                total_price=total,
                currency=currency.upper(),
                deposit_amount=deposit,
                notes=notes,
            )
            self.db.add(booking)
            self.events.append(
                booking_id,
                BookingEventType.BOOKING_CREATED,
                actor_type=EventActor.CUSTOMER,
                actor_id=customer_id or customer_email,
                details={
                    "car_id": car_id,
                    "start_date": start_date,
                    "end_date": end_date,
                    "total_price": total,
                    "deposit_amount": deposit,
                    "currency": currency.upper(),
                },
            )
            self.db.commit()
        except DatesUnavailableError:
            self.db.rollback()
            raise
        except IntegrityError:
            # Another booking inserted a row for one of these days first
            self.db.rollback()
            conflicts = AvailabilityLedger(self.db).find_conflicts(car_id, start_date, end_date, booking_id)
            raise DatesUnavailableError(car_id, conflicts.keys() or [start_date])

        availability_cache.invalidate_car(car_id)
        logger.info(f"Booking {booking_id} created for car {car_id} ({start_date}..{end_date})")

        if self.payment_adapter is not None:
            self._create_payment_order(booking)

        self.db.refresh(booking)
        return booking

    def _create_payment_order(self, booking: Booking) -> Optional[str]:
        """Create the provider order; a failure leaves the booking awaiting payment"""
        booking_id = booking.id
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(ORDER_ATTEMPTS),
                wait=self.order_retry_wait,
                retry=retry_if_exception_type(RetryableAdapterError),
                reraise=True,
            ):
                with attempt:
                    order_id = self.payment_adapter.create_order(
                        booking_id, booking.deposit_amount, booking.currency
                    )
        except AdapterError as e:
            logger.error(f"Payment order creation failed for booking {booking_id}: {e}")
            self.events.record(
                booking_id,
                BookingEventType.SIDE_EFFECT_FAILED,
                details={"side_effect": "create_payment_order", "error": str(e)},
            )
            return None

        self.db.execute(
            update(Booking)
            .where(Booking.id == booking_id)
            .values(payment_order_id=order_id, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        self.events.append(
            booking_id,
            BookingEventType.PAYMENT_ORDER_CREATED,
            details={"order_id": order_id, "amount": booking.deposit_amount},
        )
        self.db.commit()
        return order_id

    def capture_payment(
        self,
        booking_id: str,
        actor_id: Optional[str] = None,
        actor_type: EventActor = EventActor.ADMIN,
    ) -> Dict[str, Any]:
        """
        Capture the authorized payment of a booking.

        A declined capture marks the payment failed; it does not move the
        booking. A captured payment on a signed, upcoming booking activates it.
        """
        if self.payment_adapter is None:
            raise AdapterNotConfiguredError("paypal")

        booking = self.get_booking(booking_id)
        if booking.payment_status == PaymentStatus.CAPTURED.value:
            return {"captured": True, "capture_id": booking.payment_capture_id, "already_captured": True}
        if booking.payment_status != PaymentStatus.AUTHORIZED.value or not booking.payment_authorization_id:
            raise NonRetryableError(
                f"Booking {booking_id} has no authorized payment (payment_status={booking.payment_status})"
            )

        result = self.payment_adapter.capture(booking.payment_authorization_id)

        if not result.approved:
            self.db.execute(
                update(Booking)
                .where(Booking.id == booking_id, Booking.payment_status == PaymentStatus.AUTHORIZED.value)
                .values(payment_status=PaymentStatus.FAILED.value, updated_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            self.events.append(
                booking_id,
                BookingEventType.PAYMENT_CAPTURE_FAILED,
                actor_type=actor_type,
                actor_id=actor_id,
                details={"status": result.status},
            )
            self.db.commit()
            return {"captured": False, "status": result.status}

        self.db.execute(
            update(Booking)
            .where(Booking.id == booking_id)
            .values(
                payment_status=PaymentStatus.CAPTURED.value,
                payment_capture_id=result.provider_txn_id,
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        self.events.append(
            booking_id,
            BookingEventType.PAYMENT_CAPTURED,
            actor_type=actor_type,
            actor_id=actor_id,
            details={"capture_id": result.provider_txn_id, "status": result.status},
        )
        self.db.commit()

        booking = self.db.get(Booking, booking_id, populate_existing=True)
        activated = False
        if (
            booking.contract_status == ContractStatus.SIGNED.value
            and booking.overall_status == BookingStatus.UPCOMING.value
        ):
            BookingStateMachine(self.db).request_transition(
                booking_id,
                BookingStatus.ACTIVE.value,
                reason="Payment captured and contract signed",
                actor_id=actor_id,
                actor_type=actor_type,
                expected_status=BookingStatus.UPCOMING.value,
            )
            activated = True

        return {
            "captured": True,
            "capture_id": result.provider_txn_id,
            "status": result.status,
            "activated": activated,
        }

    def void_payment(self, booking_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
        """Release an authorization that will not be captured (cancelled or failed bookings)"""
        if self.payment_adapter is None:
            raise AdapterNotConfiguredError("paypal")

        booking = self.get_booking(booking_id)
        if booking.payment_status == PaymentStatus.VOIDED.value:
            return {"voided": True, "already_voided": True}
        if booking.payment_status != PaymentStatus.AUTHORIZED.value or not booking.payment_authorization_id:
            raise NonRetryableError(
                f"Booking {booking_id} has no authorization to void (payment_status={booking.payment_status})"
            )

        provider_status = self.payment_adapter.void(booking.payment_authorization_id)

        self.db.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.payment_status == PaymentStatus.AUTHORIZED.value)
            .values(payment_status=PaymentStatus.VOIDED.value, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        self.events.append(
            booking_id,
            BookingEventType.PAYMENT_VOIDED,
            actor_type=EventActor.ADMIN,
            actor_id=actor_id,
            details={"authorization_id": booking.payment_authorization_id, "status": provider_status},
        )
        self.db.commit()
        logger.info(f"Authorization for booking {booking_id} voided by {actor_id}")
        return {"voided": True, "status": provider_status}

    def get_due_captures(self, limit: int, lead_days: Optional[int] = None) -> List[Booking]:
        """
        Authorized payments that should be captured now: active bookings, and
        signed upcoming bookings starting within `lead_days`. Earliest start first.
        """
        if lead_days is None:
            lead_days = settings.capture_lead_days
        horizon = datetime.utcnow().date() + timedelta(days=lead_days)
        return (
            self.db.query(Booking)
            .filter(
                Booking.payment_status == PaymentStatus.AUTHORIZED.value,
                Booking.payment_authorization_id.isnot(None),
                or_(
                    Booking.overall_status == BookingStatus.ACTIVE.value,
                    and_(
                        Booking.overall_status == BookingStatus.UPCOMING.value,
                        Booking.contract_status == ContractStatus.SIGNED.value,
                        Booking.start_date <= horizon,
                    ),
                ),
            )
            .order_by(Booking.start_date, Booking.created_at)
            .limit(limit)
            .all()
        )

    def capture_due_payments(self, limit: Optional[int] = None) -> Dict[str, int]:
        """One bounded capture batch; provider errors are counted and left for the next run"""
        if limit is None:
            limit = settings.capture_batch_limit
        if self.payment_adapter is None:
            raise AdapterNotConfiguredError("paypal")
        counts = {"checked": 0, "captured": 0, "declined": 0, "errors": 0}

        booking_ids = [booking.id for booking in self.get_due_captures(limit)]
        for booking_id in booking_ids:
            counts["checked"] += 1
            try:
                outcome = self.capture_payment(booking_id, actor_id="capture-batch", actor_type=EventActor.SYSTEM)
            except (AdapterError, NonRetryableError) as e:
                self.db.rollback()
                counts["errors"] += 1
                logger.error(f"Capture for booking {booking_id} failed: {e}")
                continue
            if outcome["captured"]:
                counts["captured"] += 1
            else:
                counts["declined"] += 1

        if counts["checked"]:
            logger.info(
                f"Capture batch: {counts['captured']} captured, {counts['declined']} declined, "
                f"{counts['errors']} errors"
            )
        return counts
