"""
Provider Webhook Handlers

One handler per webhook_type. A handler reads the stored payload, resolves
the booking through the correlation id, and expresses its effects through
a HandlerContext:

- ctx.update_booking(...)   field changes (payment/contract status)
- ctx.stage_event(...)      BookingEvents describing the provider event
- ctx.transition(...)       overall_status change via the state machine

Staged writes plus the processed-webhook marker commit atomically, either
with the guarded status write or on their own in ctx.finish(). A second
delivery of the same (webhook_type, webhook_id) therefore fails on the
marker's unique constraint instead of applying its effects twice.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..exceptions import NonRetryableError, BookingNotFoundError, RetryableError
from ..models.booking import Booking, BookingStatus, ContractStatus, Dispute, DisputeStatus, PaymentStatus
from ..models.booking_event import BookingEventType, EventActor
from ..models.webhook_retry import ProcessedWebhookEvent, WebhookRetryRecord, WebhookType
from .booking_state_machine import BookingStateMachine, TransitionResult
from .event_log import EventLog

logger = logging.getLogger(__name__)


@dataclass
class HandlerOutcome:
    action: str
    booking_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class HandlerContext:
    def __init__(self, db: Session, machine: BookingStateMachine, record: WebhookRetryRecord, booking: Booking):
        self.db = db
        self.machine = machine
        self.record = record
        self.booking = booking
        self.transitions: List[TransitionResult] = []
        self._staged: List[Callable[[Session], None]] = []
        self._committed = False

    @property
    def actor_id(self) -> str:
        return f"{self.record.webhook_type}:{self.record.webhook_id}"

    def stage_event(self, event_type: BookingEventType, details: Optional[Dict[str, Any]] = None) -> None:
        booking_id = self.booking.id
        actor_id = self.actor_id
        payload = dict(details or {})
        payload.setdefault("webhook_id", self.record.webhook_id)

        def _write(db: Session):
            EventLog(db).append(
                booking_id, event_type,
                actor_type=EventActor.PROVIDER, actor_id=actor_id, details=payload,
            )
        self._staged.append(_write)

    def update_booking(self, expected_status: Optional[str] = None, **values) -> None:
        """
        Stage a field update. With `expected_status` the write only applies
        while the booking is still in that status; otherwise the attempt is
        retried so the handler re-reads the booking.
        """
        booking_id = self.booking.id
        values["updated_at"] = datetime.utcnow()
        conditions = [Booking.id == booking_id]
        if expected_status is not None:
            conditions.append(Booking.overall_status == expected_status)

        def _write(db: Session):
            result = db.execute(
                update(Booking)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if expected_status is not None and result.rowcount != 1:
                raise RetryableError(
                    f"Booking {booking_id} left status {expected_status} while the event was applied"
                )
        self._staged.append(_write)

    def stage(self, write: Callable[[Session], None]) -> None:
        self._staged.append(write)

    def write_staged(self, db: Session) -> None:
        db.add(ProcessedWebhookEvent(
            webhook_type=self.record.webhook_type,
            webhook_id=self.record.webhook_id,
            retry_record_id=self.record.id,
            booking_id=self.booking.id,
        ))
        for write in self._staged:
            write(db)
        db.flush()

    def transition(self, target_status: BookingStatus, reason: str, **kwargs) -> TransitionResult:
        """Apply a status change; everything staged so far commits with it"""
        result = self.machine.request_transition(
            self.booking.id,
            target_status.value,
            reason=reason,
            actor_id=self.actor_id,
            actor_type=EventActor.PROVIDER,
            expected_status=self.booking.overall_status,
            with_status_write=self.write_staged,
            **kwargs,
        )
        self._staged = []
        self._committed = True
        self.transitions.append(result)
        return result

    def finish(self) -> None:
        """Commit staged writes when no transition carried them"""
        if self._committed and not self._staged:
            return
        if self._committed:
            # Writes staged after a transition still need the marker-free path
            for write in self._staged:
                write(self.db)
        else:
            self.write_staged(self.db)
        self.db.commit()
        self._staged = []
        self._committed = True


class WebhookHandler:
    webhook_type: str = ""

    def validate(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            raise NonRetryableError("Webhook payload must be a JSON object")

    def extract_webhook_id(self, payload: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    def extract_event_type(self, payload: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    def resolve_booking_id(self, payload: Dict[str, Any]) -> Optional[str]:
        raise NotImplementedError

    def load_booking(self, db: Session, payload: Dict[str, Any]) -> Booking:
        booking_id = self.resolve_booking_id(payload)
        if not booking_id:
            raise NonRetryableError(f"{self.webhook_type} event carries no booking correlation id")
        booking = db.get(Booking, booking_id, populate_existing=True)
        if booking is None:
            raise BookingNotFoundError(booking_id)
        return booking

    def handle(self, ctx: HandlerContext) -> HandlerOutcome:
        raise NotImplementedError


# ==================
# PayPal
# ==================

class PayPalEventHandler(WebhookHandler):
    webhook_type = WebhookType.PAYPAL.value

    REQUIRED_FIELDS = ("id", "event_type", "resource")

    def validate(self, payload: Any) -> None:
        super().validate(payload)
        missing = [f for f in self.REQUIRED_FIELDS if not payload.get(f)]
        if missing:
            raise NonRetryableError(f"PayPal event missing fields: {', '.join(missing)}")
        if not isinstance(payload["resource"], dict):
            raise NonRetryableError("PayPal event resource must be an object")

    def extract_webhook_id(self, payload):
        return payload.get("id")

    def extract_event_type(self, payload):
        return payload.get("event_type")

    def resolve_booking_id(self, payload):
        resource = payload.get("resource") or {}
        if not isinstance(resource, dict):
            return None
        if resource.get("custom_id"):
            return resource["custom_id"]
        # Invoices are numbered "<prefix>-<booking_id>"
        invoice_number = resource.get("invoice_number")
        if invoice_number and "-" in invoice_number:
            return invoice_number.split("-", 1)[1]
        # Disputes reference the original transaction
        for txn in resource.get("disputed_transactions") or []:
            if isinstance(txn, dict) and txn.get("custom"):
                return txn["custom"]
        return None

    def handle(self, ctx: HandlerContext) -> HandlerOutcome:
        payload = ctx.record.payload
        event_type = payload["event_type"]
        handler = self.EVENT_HANDLERS.get(event_type)
        if handler is None:
            logger.info(f"PayPal event {event_type} acknowledged without action")
            return HandlerOutcome(action="ignored", booking_id=ctx.booking.id, details={"event_type": event_type})
        return handler(self, ctx, payload["resource"])

    def _authorization_created(self, ctx: HandlerContext, resource: Dict[str, Any]) -> HandlerOutcome:
        booking = ctx.booking
        if booking.payment_status == PaymentStatus.AUTHORIZED.value:
            return HandlerOutcome(action="already_authorized", booking_id=booking.id)

        ctx.update_booking(
            payment_status=PaymentStatus.AUTHORIZED.value,
            payment_authorization_id=resource.get("id"),
        )
        ctx.stage_event(BookingEventType.PAYMENT_AUTHORIZED, {
            "authorization_id": resource.get("id"),
            "amount": resource.get("amount"),
        })
        if booking.overall_status == BookingStatus.PENDING_PAYMENT.value:
            ctx.transition(BookingStatus.PENDING_CONTRACT, reason="Payment authorized")
        return HandlerOutcome(action="payment_authorized", booking_id=booking.id)

    def _authorization_voided(self, ctx: HandlerContext, resource: Dict[str, Any]) -> HandlerOutcome:
        ctx.update_booking(payment_status=PaymentStatus.VOIDED.value)
        ctx.stage_event(BookingEventType.PAYMENT_VOIDED, {"authorization_id": resource.get("id")})
        return HandlerOutcome(action="payment_voided", booking_id=ctx.booking.id)

    def _capture_completed(self, ctx: HandlerContext, resource: Dict[str, Any]) -> HandlerOutcome:
        booking = ctx.booking
        ctx.update_booking(
            payment_status=PaymentStatus.CAPTURED.value,
            payment_capture_id=resource.get("id"),
        )
        ctx.stage_event(BookingEventType.PAYMENT_CAPTURED, {
            "capture_id": resource.get("id"),
            "amount": resource.get("amount"),
        })
        if (
            booking.contract_status == ContractStatus.SIGNED.value
            and booking.overall_status == BookingStatus.UPCOMING.value
        ):
            ctx.transition(BookingStatus.ACTIVE, reason="Payment captured and contract signed")
        return HandlerOutcome(action="payment_captured", booking_id=booking.id)

    def _capture_denied(self, ctx: HandlerContext, resource: Dict[str, Any]) -> HandlerOutcome:
        booking = ctx.booking
        ctx.update_booking(payment_status=PaymentStatus.FAILED.value)
        ctx.stage_event(BookingEventType.PAYMENT_CAPTURE_FAILED, {
            "capture_id": resource.get("id"),
            "status": resource.get("status"),
        })
        if booking.overall_status == BookingStatus.PENDING_PAYMENT.value:
            ctx.transition(BookingStatus.FAILED, reason="Payment capture denied")
        return HandlerOutcome(action="payment_denied", booking_id=booking.id)

    def _capture_refunded(self, ctx: HandlerContext, resource: Dict[str, Any]) -> HandlerOutcome:
        ctx.update_booking(payment_status=PaymentStatus.REFUNDED.value)
        ctx.stage_event(BookingEventType.PAYMENT_REFUNDED, {
            "refund_id": resource.get("id"),
            "amount": resource.get("amount"),
        })
        return HandlerOutcome(action="payment_refunded", booking_id=ctx.booking.id)

    def _dispute_created(self, ctx: HandlerContext, resource: Dict[str, Any]) -> HandlerOutcome:
        booking = ctx.booking
        if booking.overall_status == BookingStatus.DISPUTED.value:
            return HandlerOutcome(action="already_disputed", booking_id=booking.id)
        ctx.transition(
            BookingStatus.DISPUTED,
            reason=resource.get("reason") or "Customer dispute opened",
            details={"provider_dispute_id": resource.get("dispute_id") or resource.get("id")},
        )
        return HandlerOutcome(action="dispute_opened", booking_id=booking.id)

    def _dispute_resolved(self, ctx: HandlerContext, resource: Dict[str, Any]) -> HandlerOutcome:
        booking_id = ctx.booking.id
        outcome = resource.get("dispute_outcome") or {}

        def _resolve(db: Session):
            db.execute(
                update(Dispute)
                .where(Dispute.booking_id == booking_id, Dispute.status == DisputeStatus.OPEN.value)
                .values(status=DisputeStatus.RESOLVED.value, resolved_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
        ctx.stage(_resolve)
        ctx.stage_event(BookingEventType.DISPUTE_RESOLVED, {
            "provider_dispute_id": resource.get("dispute_id") or resource.get("id"),
            "outcome": outcome.get("outcome_code") if isinstance(outcome, dict) else outcome,
        })
        return HandlerOutcome(action="dispute_resolved", booking_id=booking_id)

    EVENT_HANDLERS = {
        "PAYMENT.AUTHORIZATION.CREATED": _authorization_created,
        "PAYMENT.AUTHORIZATION.VOIDED": _authorization_voided,
        "PAYMENT.CAPTURE.COMPLETED": _capture_completed,
        "PAYMENT.CAPTURE.DENIED": _capture_denied,
        "PAYMENT.CAPTURE.REFUNDED": _capture_refunded,
        "CUSTOMER.DISPUTE.CREATED": _dispute_created,
        "CUSTOMER.DISPUTE.RESOLVED": _dispute_resolved,
        "INVOICING.INVOICE.PAID": _capture_completed,
    }


# ==================
# DocuSeal
# ==================

class DocuSealEventHandler(WebhookHandler):
    webhook_type = WebhookType.DOCUSEAL.value

    def validate(self, payload: Any) -> None:
        super().validate(payload)
        if not payload.get("event_type"):
            raise NonRetryableError("DocuSeal event missing event_type")
        if not isinstance(payload.get("data"), dict):
            raise NonRetryableError("DocuSeal event missing data object")

    def extract_webhook_id(self, payload):
        data = payload.get("data") or {}
        # DocuSeal has no event id; submitter id + event type + timestamp is unique per delivery
        submitter_id = data.get("id") or data.get("submission_id")
        timestamp = payload.get("timestamp") or data.get("completed_at") or data.get("updated_at")
        if submitter_id is None:
            return None
        return f"{submitter_id}:{payload.get('event_type')}:{timestamp}"

    def extract_event_type(self, payload):
        return payload.get("event_type")

    def resolve_booking_id(self, payload):
        data = payload.get("data") or {}
        metadata = data.get("metadata") or {}
        if isinstance(metadata, dict) and metadata.get("booking_id"):
            return metadata["booking_id"]
        return None

    def handle(self, ctx: HandlerContext) -> HandlerOutcome:
        payload = ctx.record.payload
        event_type = payload["event_type"]
        data = payload["data"]
        booking = ctx.booking

        if event_type in ("form.viewed", "form.started"):
            if booking.contract_status in (ContractStatus.NOT_SENT.value, ContractStatus.SENT.value):
                ctx.update_booking(contract_status=ContractStatus.VIEWED.value)
            ctx.stage_event(BookingEventType.CONTRACT_VIEWED, {"event_type": event_type})
            return HandlerOutcome(action="contract_viewed", booking_id=booking.id)

        if event_type == "form.completed":
            return self._completed(ctx, data)

        if event_type == "form.declined":
            ctx.update_booking(contract_status=ContractStatus.DECLINED.value)
            ctx.stage_event(BookingEventType.CONTRACT_DECLINED, {
                "decline_reason": data.get("decline_reason"),
            })
            return HandlerOutcome(action="contract_declined", booking_id=booking.id)

        logger.info(f"DocuSeal event {event_type} acknowledged without action")
        return HandlerOutcome(action="ignored", booking_id=booking.id, details={"event_type": event_type})

    def _completed(self, ctx: HandlerContext, data: Dict[str, Any]) -> HandlerOutcome:
        booking = ctx.booking
        if booking.contract_status == ContractStatus.SIGNED.value:
            return HandlerOutcome(action="already_signed", booking_id=booking.id)

        signed_fields = {
            "contract_status": ContractStatus.SIGNED.value,
            "contract_signed_at": datetime.utcnow(),
        }
        ctx.stage_event(BookingEventType.CONTRACT_SIGNED, {
            "submission_id": data.get("submission_id"),
            "documents": [d.get("url") for d in data.get("documents") or [] if isinstance(d, dict)],
        })

        if booking.overall_status == BookingStatus.CONTRACT_PENDING_SIGNATURE.value:
            ctx.transition(
                BookingStatus.UPCOMING,
                reason="Contract signed",
                field_updates=signed_fields,
            )
        else:
            ctx.update_booking(expected_status=booking.overall_status, **signed_fields)
        return HandlerOutcome(action="contract_signed", booking_id=booking.id)


HANDLERS: Dict[str, WebhookHandler] = {
    WebhookType.PAYPAL.value: PayPalEventHandler(),
    WebhookType.DOCUSEAL.value: DocuSealEventHandler(),
}


def get_handler(webhook_type: str) -> WebhookHandler:
    handler = HANDLERS.get(webhook_type)
    if handler is None:
        raise NonRetryableError(f"No handler for webhook type {webhook_type}")
    return handler
