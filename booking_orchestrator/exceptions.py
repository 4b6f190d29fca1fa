"""
Domain exceptions for the booking orchestrator.

Services raise these; routers translate them into HTTP responses and the
retry engine uses them to decide between rescheduling and dead-lettering.
"""

from typing import Iterable, List, Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(OrchestratorError):
    pass


class BookingNotFoundError(NotFoundError):
    def __init__(self, booking_id: str):
        super().__init__(f"Booking {booking_id} not found")
        self.booking_id = booking_id


class DeadLetterItemNotFoundError(NotFoundError):
    def __init__(self, item_id: str):
        super().__init__(f"Dead-letter item {item_id} not found")
        self.item_id = item_id


class InvalidTransitionError(OrchestratorError):
    """Requested status is not in the allowed-next set of the current status"""

    def __init__(self, current: str, target: str, allowed: Iterable[str]):
        self.current = current
        self.target = target
        self.allowed: List[str] = sorted(allowed)
        if self.allowed:
            hint = ", ".join(self.allowed)
        else:
            hint = "none (terminal state)"
        super().__init__(
            f"Invalid status transition from {current} to {target}. Allowed: {hint}"
        )


class ConcurrentModificationError(OrchestratorError):
    """The guarded status write lost a race; re-read the booking and retry"""

    def __init__(self, booking_id: str, expected_status: str):
        super().__init__(
            f"Booking {booking_id} is no longer in status {expected_status}"
        )
        self.booking_id = booking_id
        self.expected_status = expected_status


class DatesUnavailableError(OrchestratorError):
    def __init__(self, car_id: str, conflicting_dates: Iterable):
        self.car_id = car_id
        self.conflicting_dates = sorted(conflicting_dates)
        dates = ", ".join(d.isoformat() for d in self.conflicting_dates)
        super().__init__(f"Car {car_id} is not available on: {dates}")


class IncompleteSideEffectError(OrchestratorError):
    """A ledger side effect wrote some days but had to skip others"""

    def __init__(self, side_effect: str, booking_id: str, result: dict):
        skipped = result.get("skipped") or {}
        super().__init__(
            f"{side_effect} for booking {booking_id} skipped {len(skipped)} day(s): "
            f"{', '.join(sorted(skipped))}"
        )
        self.side_effect = side_effect
        self.booking_id = booking_id
        self.result = result


class AlreadyRequeuedError(OrchestratorError):
    def __init__(self, item_id: str, requeued_record_id: Optional[str]):
        super().__init__(
            f"Dead-letter item {item_id} was already requeued as {requeued_record_id}"
        )
        self.item_id = item_id
        self.requeued_record_id = requeued_record_id


class RateLimitedError(OrchestratorError):
    def __init__(self, sender: str, limit: int):
        super().__init__(f"Send rate limit of {limit}/min reached for {sender}")
        self.sender = sender
        self.limit = limit


# ==================
# Webhook processing classification
# ==================

class RetryableError(OrchestratorError):
    """Transient failure: the retry engine reschedules the record"""


class NonRetryableError(OrchestratorError):
    """Permanent failure: the record goes straight to the dead-letter store"""


# ==================
# External adapters
# ==================

class AdapterError(OrchestratorError):
    """
    Failure talking to an external provider.

    `retryable` follows the HTTP classification table in the adapters:
    timeouts, connection errors, 408/425/429 and 5xx are retryable.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable


class RetryableAdapterError(AdapterError):
    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(provider, message, status_code=status_code, retryable=True)


class NonRetryableAdapterError(AdapterError):
    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(provider, message, status_code=status_code, retryable=False)


class AdapterNotConfiguredError(NonRetryableAdapterError):
    def __init__(self, provider: str):
        super().__init__(provider, "credentials are not configured")
