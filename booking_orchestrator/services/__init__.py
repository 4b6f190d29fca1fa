# Services package
from .availability_cache import availability_cache
from .availability_ledger import AvailabilityLedger, LedgerWriteResult, date_range
from .event_log import EventLog
from .booking_state_machine import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    BookingStateMachine,
    TransitionResult,
    get_allowed_transitions,
)
from .booking_service import BookingService, calculate_deposit
from .dead_letter import DeadLetterStore
from .webhook_handlers import HANDLERS, DocuSealEventHandler, PayPalEventHandler, get_handler
from .webhook_retry_engine import WebhookRetryEngine, process_record_in_new_session, run_retry_batch
from .payment_adapter import PayPalClient, CaptureResult, get_payment_adapter
from .contract_adapter import DocuSealClient, get_contract_adapter
from .notification_service import (
    NotificationService,
    ResendClient,
    dispatch_booking_notifications,
    dispatch_in_new_session,
)

__all__ = [
    "availability_cache",
    "AvailabilityLedger", "LedgerWriteResult", "date_range",
    "EventLog",
    "ALLOWED_TRANSITIONS", "TERMINAL_STATUSES", "BookingStateMachine",
    "TransitionResult", "get_allowed_transitions",
    "BookingService", "calculate_deposit",
    "DeadLetterStore",
    "HANDLERS", "DocuSealEventHandler", "PayPalEventHandler", "get_handler",
    "WebhookRetryEngine", "process_record_in_new_session", "run_retry_batch",
    "PayPalClient", "CaptureResult", "get_payment_adapter",
    "DocuSealClient", "get_contract_adapter",
    "NotificationService", "ResendClient",
    "dispatch_booking_notifications", "dispatch_in_new_session",
]
