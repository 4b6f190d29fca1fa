"""
Tests for the PayPal and DocuSeal webhook handlers.

Includes the full happy path: booking created -> payment authorized ->
contract sent -> contract signed -> upcoming with booked dates.
"""

import os
import sys
from datetime import date, datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import update

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from booking_orchestrator.exceptions import NonRetryableError
from booking_orchestrator.models.booking import Booking, Dispute
from booking_orchestrator.models.booking_event import BookingEvent, BookingEventType
from booking_orchestrator.models.transition_intent import IntentStatus, TransitionIntent
from booking_orchestrator.models.webhook_retry import WebhookRetryRecord
from booking_orchestrator.services.availability_ledger import AvailabilityLedger
from booking_orchestrator.services.booking_service import BookingService
from booking_orchestrator.services.booking_state_machine import BookingStateMachine
from booking_orchestrator.services.webhook_handlers import (
    DocuSealEventHandler,
    PayPalEventHandler,
    get_handler,
)
from booking_orchestrator.services.webhook_retry_engine import RETRYING, SUCCEEDED, WebhookRetryEngine


def paypal_event(event_id, event_type, resource):
    return {"id": event_id, "event_type": event_type, "resource": resource}


def docuseal_event(event_type, booking_id, submitter_id=77, timestamp="2030-05-01T09:30:00Z", **data):
    payload_data = {"id": submitter_id, "metadata": {"booking_id": booking_id}}
    payload_data.update(data)
    return {"event_type": event_type, "timestamp": timestamp, "data": payload_data}


def deliver(engine, webhook_type, payload):
    handler = get_handler(webhook_type)
    received = engine.record_incoming_event(webhook_type, handler.extract_webhook_id(payload), payload)
    assert received.created
    return engine.process_retry(received.record_id)


def _reload(db, booking_id):
    return db.get(Booking, booking_id, populate_existing=True)


def _event_types(db, booking_id):
    return [
        e.event_type for e in db.query(BookingEvent).filter(BookingEvent.booking_id == booking_id).all()
    ]


class TestPayPalCorrelation:
    """Resolving the booking id from PayPal resources"""

    def setup_method(self):
        self.handler = PayPalEventHandler()

    def test_custom_id(self):
        payload = paypal_event("WH-1", "PAYMENT.CAPTURE.COMPLETED", {"custom_id": "b-1"})
        assert self.handler.resolve_booking_id(payload) == "b-1"

    def test_invoice_number(self):
        payload = paypal_event("WH-1", "INVOICING.INVOICE.PAID", {"invoice_number": "INV-b-2"})
        assert self.handler.resolve_booking_id(payload) == "b-2"

    def test_disputed_transaction(self):
        payload = paypal_event("WH-1", "CUSTOMER.DISPUTE.CREATED", {
            "dispute_id": "PP-D-1",
            "disputed_transactions": [{"seller_transaction_id": "x", "custom": "b-3"}],
        })
        assert self.handler.resolve_booking_id(payload) == "b-3"

    def test_no_correlation(self):
        assert self.handler.resolve_booking_id(paypal_event("WH-1", "X", {"id": "y"})) is None

    def test_validate_requires_resource(self):
        with pytest.raises(NonRetryableError):
            self.handler.validate({"id": "WH-1", "event_type": "PAYMENT.CAPTURE.COMPLETED"})


class TestDocuSealIds:
    def setup_method(self):
        self.handler = DocuSealEventHandler()

    def test_webhook_id_combines_submitter_event_and_time(self):
        payload = docuseal_event("form.completed", "b-1", submitter_id=12, timestamp="2030-01-01T00:00:00Z")
        assert self.handler.extract_webhook_id(payload) == "12:form.completed:2030-01-01T00:00:00Z"

    def test_webhook_id_missing_without_submitter(self):
        assert self.handler.extract_webhook_id({"event_type": "form.viewed", "data": {}}) is None

    def test_booking_from_metadata(self):
        assert self.handler.resolve_booking_id(docuseal_event("form.viewed", "b-9")) == "b-9"

    def test_validate_requires_data(self):
        with pytest.raises(NonRetryableError):
            self.handler.validate({"event_type": "form.viewed"})

    def test_unknown_type_has_no_handler(self):
        with pytest.raises(NonRetryableError):
            get_handler("stripe")


class TestHappyPath:
    """Payment authorized -> contract sent -> contract signed"""

    def test_booking_reaches_upcoming(self, db):
        start = date.today() + timedelta(days=30)
        end = start + timedelta(days=4)
        booking = BookingService(db).create_booking(
            car_id="car-7",
            start_date=start,
            end_date=end,
            customer_email="dana@example.com",
            customer_name="Dana",
            total_price=Decimal("500.00"),
        )
        assert booking.overall_status == "pending_payment"

        contract_adapter = MagicMock()
        contract_adapter.send_for_signature.return_value = "sub-900"
        dispatcher = MagicMock()
        engine = WebhookRetryEngine(db, contract_adapter=contract_adapter, notification_dispatcher=dispatcher)

        outcome = deliver(engine, "paypal", paypal_event("WH-AUTH-1", "PAYMENT.AUTHORIZATION.CREATED", {
            "id": "AUTH-55",
            "custom_id": booking.id,
            "amount": {"currency_code": "USD", "value": "150.00"},
        }))
        assert outcome == SUCCEEDED

        booking = _reload(db, booking.id)
        assert booking.payment_status == "authorized"
        assert booking.payment_authorization_id == "AUTH-55"
        assert booking.overall_status == "contract_pending_signature"
        assert booking.contract_submission_id == "sub-900"
        dispatcher.assert_not_called()

        outcome = deliver(engine, "docuseal", docuseal_event(
            "form.completed", booking.id, submission_id="sub-900",
            documents=[{"name": "agreement", "url": "https://docs.example.com/a.pdf"}],
        ))
        assert outcome == SUCCEEDED

        booking = _reload(db, booking.id)
        assert booking.overall_status == "upcoming"
        assert booking.contract_status == "signed"
        assert booking.contract_signed_at is not None

        days = AvailabilityLedger(db).get_availability("car-7", start, end)
        assert len(days) == 5
        assert set(days.values()) == {"booked"}

        dispatcher.assert_called_once_with(booking.id, ["booking_confirmed"])

        transitions = [
            (e.details["from_status"], e.details["to_status"])
            for e in db.query(BookingEvent).filter(
                BookingEvent.booking_id == booking.id,
                BookingEvent.event_type == BookingEventType.BOOKING_STATUS_CHANGED.value,
            ).all()
        ]
        assert sorted(transitions) == sorted([
            ("pending_payment", "pending_contract"),
            ("pending_contract", "contract_pending_signature"),
            ("contract_pending_signature", "upcoming"),
        ])

        types = _event_types(db, booking.id)
        for expected in ("booking_created", "payment_authorized", "contract_sent", "contract_signed"):
            assert expected in types

    def test_redelivered_authorization_is_discarded(self, db, make_booking):
        booking = make_booking(status="pending_payment")
        engine = WebhookRetryEngine(db, contract_adapter=MagicMock(**{"send_for_signature.return_value": "s-1"}))
        payload = paypal_event("WH-AUTH-2", "PAYMENT.AUTHORIZATION.CREATED", {"id": "AUTH-1", "custom_id": booking.id})

        deliver(engine, "paypal", payload)
        again = engine.record_incoming_event("paypal", "WH-AUTH-2", payload)

        assert again.created is False
        assert again.duplicate is True
        assert _event_types(db, booking.id).count("payment_authorized") == 1


class TestPayPalEvents:
    def test_capture_completed_activates_signed_upcoming_booking(self, db, make_booking):
        booking = make_booking(status="upcoming", contract_status="signed", payment_status="authorized")
        engine = WebhookRetryEngine(db)

        deliver(engine, "paypal", paypal_event("WH-CAP-1", "PAYMENT.CAPTURE.COMPLETED", {
            "id": "CAP-1", "custom_id": booking.id,
        }))

        booking = _reload(db, booking.id)
        assert booking.payment_status == "captured"
        assert booking.payment_capture_id == "CAP-1"
        assert booking.overall_status == "active"

    def test_capture_completed_without_signature_does_not_activate(self, db, make_booking):
        booking = make_booking(status="upcoming", contract_status="sent", payment_status="authorized")

        deliver(WebhookRetryEngine(db), "paypal", paypal_event("WH-CAP-2", "PAYMENT.CAPTURE.COMPLETED", {
            "id": "CAP-2", "custom_id": booking.id,
        }))

        booking = _reload(db, booking.id)
        assert booking.payment_status == "captured"
        assert booking.overall_status == "upcoming"

    def test_capture_denied_fails_unpaid_booking(self, db, make_booking):
        booking = make_booking(status="pending_payment")
        AvailabilityLedger(db).reserve(booking.car_id, booking.start_date, booking.end_date, booking.id)
        db.commit()

        deliver(WebhookRetryEngine(db), "paypal", paypal_event("WH-DEN-1", "PAYMENT.CAPTURE.DENIED", {
            "id": "CAP-3", "custom_id": booking.id, "status": "DECLINED",
        }))

        booking = _reload(db, booking.id)
        assert booking.overall_status == "failed"
        assert booking.payment_status == "failed"
        days = AvailabilityLedger(db).get_availability(booking.car_id, booking.start_date, booking.end_date)
        assert set(days.values()) == {"available"}

    def test_dispute_created_opens_dispute(self, db, make_booking):
        booking = make_booking(status="active")

        deliver(WebhookRetryEngine(db), "paypal", paypal_event("WH-DSP-1", "CUSTOMER.DISPUTE.CREATED", {
            "dispute_id": "PP-D-7",
            "reason": "MERCHANDISE_OR_SERVICE_NOT_RECEIVED",
            "disputed_transactions": [{"custom": booking.id}],
        }))

        assert _reload(db, booking.id).overall_status == "disputed"
        dispute = db.query(Dispute).filter(Dispute.booking_id == booking.id).one()
        assert dispute.provider_dispute_id == "PP-D-7"
        assert dispute.reason == "MERCHANDISE_OR_SERVICE_NOT_RECEIVED"

    def test_dispute_resolved_closes_dispute(self, db, make_booking):
        booking = make_booking(status="disputed")
        db.add(Dispute(booking_id=booking.id, provider_dispute_id="PP-D-8", status="open"))
        db.commit()

        deliver(WebhookRetryEngine(db), "paypal", paypal_event("WH-DSP-2", "CUSTOMER.DISPUTE.RESOLVED", {
            "dispute_id": "PP-D-8",
            "dispute_outcome": {"outcome_code": "RESOLVED_SELLER_FAVOUR"},
            "disputed_transactions": [{"custom": booking.id}],
        }))

        dispute = db.query(Dispute).filter(Dispute.booking_id == booking.id).one()
        db.refresh(dispute)
        assert dispute.status == "resolved"
        assert dispute.resolved_at is not None
        # The booking itself stays disputed until an admin closes it
        assert _reload(db, booking.id).overall_status == "disputed"
        assert "dispute_resolved" in _event_types(db, booking.id)

    def test_refund_recorded(self, db, make_booking):
        booking = make_booking(status="cancelled", payment_status="captured")

        deliver(WebhookRetryEngine(db), "paypal", paypal_event("WH-REF-1", "PAYMENT.CAPTURE.REFUNDED", {
            "id": "REF-1", "custom_id": booking.id,
        }))

        assert _reload(db, booking.id).payment_status == "refunded"
        assert "payment_refunded" in _event_types(db, booking.id)

    def test_unhandled_event_type_is_acknowledged(self, db, make_booking):
        booking = make_booking()

        outcome = deliver(WebhookRetryEngine(db), "paypal", paypal_event("WH-OTHER", "CHECKOUT.ORDER.APPROVED", {
            "id": "ORDER-1", "custom_id": booking.id,
        }))

        assert outcome == SUCCEEDED
        processed = db.query(BookingEvent).filter(
            BookingEvent.booking_id == booking.id,
            BookingEvent.event_type == "webhook_processed",
        ).one()
        assert processed.details["action"] == "ignored"


class TestDocuSealEvents:
    def test_viewed_updates_contract_status(self, db, make_booking):
        booking = make_booking(status="contract_pending_signature", contract_status="sent")

        deliver(WebhookRetryEngine(db), "docuseal", docuseal_event("form.viewed", booking.id))

        booking = _reload(db, booking.id)
        assert booking.contract_status == "viewed"
        assert booking.overall_status == "contract_pending_signature"

    def test_declined_keeps_status(self, db, make_booking):
        booking = make_booking(status="contract_pending_signature", contract_status="viewed")

        deliver(WebhookRetryEngine(db), "docuseal", docuseal_event(
            "form.declined", booking.id, decline_reason="Wrong dates",
        ))

        booking = _reload(db, booking.id)
        assert booking.contract_status == "declined"
        assert booking.overall_status == "contract_pending_signature"
        declined = db.query(BookingEvent).filter(
            BookingEvent.booking_id == booking.id,
            BookingEvent.event_type == "contract_declined",
        ).one()
        assert declined.details["decline_reason"] == "Wrong dates"
        assert declined.actor_type == "provider"

    def test_completed_outside_signature_wait_only_records_signature(self, db, make_booking):
        booking = make_booking(status="cancelled", contract_status="sent")

        deliver(WebhookRetryEngine(db), "docuseal", docuseal_event("form.completed", booking.id))

        booking = _reload(db, booking.id)
        assert booking.contract_status == "signed"
        assert booking.overall_status == "cancelled"


class StatusMovesDuringHandling(DocuSealEventHandler):
    """Another writer advances the booking after the handler read it"""

    def handle(self, ctx):
        outcome = super().handle(ctx)
        ctx.db.execute(
            update(Booking)
            .where(Booking.id == ctx.booking.id)
            .values(overall_status="contract_pending_signature")
        )
        ctx.db.commit()
        return outcome


class TestSignedDuringPendingContract:
    """form.completed arriving before the booking reached contract_pending_signature"""

    def test_signature_recorded_then_replay_reaches_upcoming(self, db, make_booking):
        booking = make_booking(status="pending_contract", contract_submission_id="sub-5", contract_status="sent")
        db.add(TransitionIntent(
            booking_id=booking.id, from_status="pending_payment", to_status="pending_contract",
            status=IntentStatus.PENDING.value,
            created_at=datetime.utcnow() - timedelta(hours=1),
        ))
        db.commit()

        assert deliver(WebhookRetryEngine(db), "docuseal", docuseal_event("form.completed", booking.id)) == SUCCEEDED
        booking = _reload(db, booking.id)
        assert booking.contract_status == "signed"
        assert booking.overall_status == "pending_contract"

        dispatcher = MagicMock()
        counts = BookingStateMachine(db, notification_dispatcher=dispatcher).reconcile()

        assert counts["replayed"] == 1
        assert _reload(db, booking.id).overall_status == "upcoming"
        dispatcher.assert_called_once_with(booking.id, ["booking_confirmed"])

    def test_status_change_during_handling_is_retried(self, db, make_booking):
        booking = make_booking(status="pending_contract", contract_submission_id="sub-6", contract_status="sent")
        engine = WebhookRetryEngine(db, handlers={"docuseal": StatusMovesDuringHandling()})

        assert deliver(engine, "docuseal", docuseal_event("form.completed", booking.id)) == RETRYING
        booking = _reload(db, booking.id)
        assert booking.contract_status == "sent"
        assert booking.overall_status == "contract_pending_signature"

        record_id = db.query(WebhookRetryRecord).one().id
        assert WebhookRetryEngine(db).process_retry(record_id) == SUCCEEDED

        booking = _reload(db, booking.id)
        assert booking.contract_status == "signed"
        assert booking.overall_status == "upcoming"
