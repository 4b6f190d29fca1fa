"""
Notification Service

Fire-and-forget transactional email through Resend. Sends are throttled by
a shared per-sender counter (NotificationRateCounter) so the limit holds
across every API and worker process. Outcomes are written to the event
log; failures never touch booking state.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import AdapterNotConfiguredError, OrchestratorError, RateLimitedError
from ..models.booking import Booking
from ..models.booking_event import BookingEventType, EventActor
from ..models.rate_state import NotificationRateCounter
from ..utils.db_helpers import AtomicCounter
from .event_log import EventLog
from .provider_client import BaseProviderClient

logger = logging.getLogger(__name__)


# Subject lines only; HTML templating lives with the storefront
TEMPLATES: Dict[str, str] = {
    "booking_confirmed": "Booking confirmed - {start_date} to {end_date}",
    "booking_cancelled": "Booking cancelled - {start_date} to {end_date}",
}

SENT_EVENTS: Dict[str, BookingEventType] = {
    "booking_confirmed": BookingEventType.CONFIRMATION_EMAIL_SENT,
    "booking_cancelled": BookingEventType.CANCELLATION_EMAIL_SENT,
}


class ResendClient(BaseProviderClient):
    provider = "resend"

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        super().__init__(base_url or settings.resend_api_url, **kwargs)
        self.api_key = api_key if api_key is not None else settings.resend_api_key

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def send_email(self, sender: str, recipient: str, subject: str, text: str) -> str:
        if not self.api_key:
            raise AdapterNotConfiguredError(self.provider)
        data = self._request(
            "POST",
            "/emails",
            json_body={"from": sender, "to": [recipient], "subject": subject, "text": text},
        )
        return str(data.get("id", ""))


class NotificationService:
    def __init__(self, db: Session, client: Optional[ResendClient] = None, sender: Optional[str] = None):
        self.db = db
        self.client = client or ResendClient()
        self.sender = sender or settings.email_from
        self.limit_per_minute = settings.email_rate_limit_per_minute

    def _acquire_send_slot(self) -> int:
        """Count this send in the shared per-minute bucket; raises when over the limit"""
        window = NotificationRateCounter.window_for(datetime.utcnow())
        condition = (
            (NotificationRateCounter.sender == self.sender)
            & (NotificationRateCounter.window_start == window)
        )

        exists = self.db.query(NotificationRateCounter.id).filter(condition).first()
        if exists is None:
            try:
                self.db.add(NotificationRateCounter(sender=self.sender, window_start=window, count=0))
                self.db.commit()
            except IntegrityError:
                # Another process created the bucket first
                self.db.rollback()

        count = AtomicCounter.increment(self.db, NotificationRateCounter, condition, "count")
        self.db.commit()

        if count > self.limit_per_minute:
            raise RateLimitedError(self.sender, self.limit_per_minute)
        return count

    def send(self, template_id: str, recipient: str, data: Dict[str, Any]) -> str:
        """Send one templated email; returns the provider message id"""
        if template_id not in TEMPLATES:
            raise ValueError(f"Unknown notification template: {template_id}")
        if not recipient:
            raise ValueError("Recipient is required")

        self._acquire_send_slot()

        subject = TEMPLATES[template_id].format(**data)
        text = "\n".join(f"{key}: {value}" for key, value in data.items())
        message_id = self.client.send_email(self.sender, recipient, subject, text)
        logger.info(f"Sent {template_id} to {recipient} (message {message_id})")
        return message_id

    def purge_old_counters(self, older_than_minutes: int = 60) -> int:
        cutoff = datetime.utcnow() - timedelta(minutes=older_than_minutes)
        deleted = self.db.query(NotificationRateCounter).filter(
            NotificationRateCounter.window_start < cutoff
        ).delete(synchronize_session=False)
        self.db.commit()
        return deleted


def booking_template_data(booking: Booking) -> Dict[str, Any]:
    return {
        "booking_id": booking.id,
        "customer_name": booking.customer_name or "",
        "start_date": booking.start_date.isoformat(),
        "end_date": booking.end_date.isoformat(),
        "total_price": str(booking.total_price),
        "currency": booking.currency,
    }


def dispatch_booking_notifications(
    db: Session,
    booking_id: str,
    template_ids: Iterable[str],
    service: Optional[NotificationService] = None,
) -> Dict[str, bool]:
    """
    Send each template for a booking and record the outcome as its own
    BookingEvent. Never raises for send failures.
    """
    template_ids = list(template_ids)
    if not template_ids:
        return {}

    booking = db.get(Booking, booking_id)
    if booking is None:
        logger.warning(f"Skipping notifications for missing booking {booking_id}")
        return {}

    service = service or NotificationService(db)
    events = EventLog(db)
    results = {}

    for template_id in template_ids:
        try:
            message_id = service.send(template_id, booking.customer_email, booking_template_data(booking))
        except (OrchestratorError, ValueError) as e:
            logger.warning(f"Notification {template_id} for booking {booking_id} failed: {e}")
            events.record(
                booking_id,
                BookingEventType.EMAIL_SEND_FAILED,
                actor_type=EventActor.SYSTEM,
                details={"template_id": template_id, "error": str(e)},
            )
            results[template_id] = False
        else:
            events.record(
                booking_id,
                SENT_EVENTS.get(template_id, BookingEventType.CONFIRMATION_EMAIL_SENT),
                actor_type=EventActor.SYSTEM,
                details={"template_id": template_id, "message_id": message_id},
            )
            results[template_id] = True

    return results


def dispatch_in_new_session(booking_id: str, template_ids: Iterable[str]) -> None:
    """BackgroundTasks entry point: runs after the response with its own session"""
    from ..database import SessionLocal

    db = SessionLocal()
    try:
        dispatch_booking_notifications(db, booking_id, template_ids)
    finally:
        db.close()
