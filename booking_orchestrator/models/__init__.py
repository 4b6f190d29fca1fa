# Models package
from .booking import Booking, BookingStatus, PaymentStatus, ContractStatus, Dispute, DisputeStatus
from .booking_event import BookingEvent, BookingEventType, EventActor
from .availability_day import AvailabilityDay, AvailabilityStatus
from .webhook_retry import (
    WebhookRetryRecord,
    WebhookRetryStatus,
    WebhookType,
    DeadLetterItem,
    DeadLetterStatus,
    ProcessedWebhookEvent
)
from .transition_intent import TransitionIntent, IntentStatus
from .rate_state import NotificationRateCounter

__all__ = [
    "Booking", "BookingStatus", "PaymentStatus", "ContractStatus", "Dispute", "DisputeStatus",
    "BookingEvent", "BookingEventType", "EventActor",
    "AvailabilityDay", "AvailabilityStatus",
    "WebhookRetryRecord", "WebhookRetryStatus", "WebhookType",
    "DeadLetterItem", "DeadLetterStatus", "ProcessedWebhookEvent",
    "TransitionIntent", "IntentStatus",
    "NotificationRateCounter"
]
