"""
HTTP-level tests for the public, webhook and admin routers.

Background tasks run inside TestClient before the response is returned,
so webhook processing results are visible right after the POST.
"""

import json
import os
import sys
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from booking_orchestrator.config import settings
from booking_orchestrator.exceptions import RetryableAdapterError
from booking_orchestrator.models.booking import Booking
from booking_orchestrator.models.webhook_retry import DeadLetterItem, WebhookRetryRecord
from booking_orchestrator.services.payment_adapter import CaptureResult
from booking_orchestrator.utils.security import compute_hmac_sha256, create_access_token

START = date.today() + timedelta(days=60)
END = START + timedelta(days=3)

PAYPAL_HEADERS = {
    "PAYPAL-TRANSMISSION-ID": "t-1",
    "PAYPAL-TRANSMISSION-TIME": "2030-01-01T00:00:00Z",
    "PAYPAL-TRANSMISSION-SIG": "sig",
    "PAYPAL-CERT-URL": "https://api.paypal.com/cert.pem",
    "PAYPAL-AUTH-ALGO": "SHA256withRSA",
}


def booking_payload(**overrides):
    payload = {
        "car_id": "car-1",
        "start_date": START.isoformat(),
        "end_date": END.isoformat(),
        "customer_email": "Dana@Example.com",
        "customer_name": "Dana",
        "total_price": "400.00",
    }
    payload.update(overrides)
    return payload


def _reload(db, booking_id):
    return db.get(Booking, booking_id, populate_existing=True)


@pytest.fixture
def paypal_verifier():
    from booking_orchestrator.main import app
    from booking_orchestrator.routers.webhooks import get_paypal_verifier

    verifier = MagicMock()
    verifier.webhook_id = "WH-ID"
    verifier.verify_webhook_signature.return_value = True
    app.dependency_overrides[get_paypal_verifier] = lambda: verifier
    return verifier


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["database"]["status"] == "up"
        assert response.json()["webhook_retries"] == {"pending": 0, "oldest_overdue_seconds": 0}

    def test_request_id_echoed(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestBookingEndpoints:
    def test_create_booking(self, client):
        response = client.post("/api/bookings", json=booking_payload())

        assert response.status_code == 201
        data = response.json()
        assert data["overall_status"] == "pending_payment"
        assert data["customer_email"] == "dana@example.com"
        assert Decimal(str(data["deposit_amount"])) == Decimal("120.00")

    def test_overlapping_booking_conflict(self, client):
        client.post("/api/bookings", json=booking_payload())

        response = client.post("/api/bookings", json=booking_payload(
            start_date=END.isoformat(), end_date=(END + timedelta(days=2)).isoformat(),
        ))

        assert response.status_code == 409
        assert response.json()["detail"]["conflicting_dates"] == [END.isoformat()]

    def test_invalid_payload(self, client):
        assert client.post("/api/bookings", json=booking_payload(customer_email="nope")).status_code == 422
        assert client.post("/api/bookings", json=booking_payload(end_date=START.isoformat())).status_code == 422

    def test_get_booking(self, client):
        created = client.post("/api/bookings", json=booking_payload()).json()

        response = client.get(f"/api/bookings/{created['id']}")

        assert response.status_code == 200
        assert response.json()["id"] == created["id"]

    def test_get_missing_booking(self, client):
        assert client.get("/api/bookings/missing").status_code == 404

    def test_availability(self, client):
        client.post("/api/bookings", json=booking_payload())

        response = client.get("/api/cars/car-1/availability", params={
            "start_date": (START - timedelta(days=1)).isoformat(),
            "end_date": END.isoformat(),
        })

        assert response.status_code == 200
        days = response.json()["days"]
        assert days[(START - timedelta(days=1)).isoformat()] == "available"
        assert days[START.isoformat()] == "pending_confirmation"
        assert len(days) == 5

    def test_availability_range_validation(self, client):
        reversed_range = client.get("/api/cars/car-1/availability", params={
            "start_date": END.isoformat(), "end_date": START.isoformat(),
        })
        too_long = client.get("/api/cars/car-1/availability", params={
            "start_date": START.isoformat(), "end_date": (START + timedelta(days=400)).isoformat(),
        })

        assert reversed_range.status_code == 400
        assert too_long.status_code == 400


class TestAdminAuth:
    def test_missing_token(self, client):
        assert client.get("/api/admin/webhooks/retries/metrics").status_code == 401

    def test_invalid_token(self, client):
        response = client.get("/api/admin/webhooks/retries/metrics", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401

    def test_non_admin_role(self, client):
        token = create_access_token({"sub": "customer-1", "role": "customer"})
        response = client.get("/api/admin/webhooks/retries/metrics", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 403

    def test_internal_api_key(self, client):
        response = client.get(
            "/api/admin/webhooks/retries/metrics",
            headers={"Authorization": f"Bearer {settings.internal_api_key}"},
        )
        assert response.status_code == 200
        assert response.json()["summary"]["total_active"] == 0


class TestAdminStatus:
    def test_valid_transition(self, client, db, make_booking, admin_headers):
        booking = make_booking(status="upcoming")

        response = client.patch(
            f"/api/admin/bookings/{booking.id}/status",
            json={"status": "cancelled", "reason": "Customer called"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["from_status"] == "upcoming"
        assert data["to_status"] == "cancelled"
        assert data["notifications"] == ["booking_cancelled"]
        assert _reload(db, booking.id).overall_status == "cancelled"

        events = client.get(f"/api/admin/bookings/{booking.id}/events", headers=admin_headers).json()
        types = [e["event_type"] for e in events]
        assert "booking_status_changed" in types
        # Resend is not configured in tests, so the background send fails and is recorded
        assert "email_send_failed" in types
        changed = next(e for e in events if e["event_type"] == "booking_status_changed")
        assert changed["actor_id"] == "admin-1"

    def test_invalid_transition_lists_allowed(self, client, make_booking, admin_headers):
        booking = make_booking(status="upcoming")

        response = client.patch(
            f"/api/admin/bookings/{booking.id}/status",
            json={"status": "completed", "reason": "skip ahead"},
            headers=admin_headers,
        )

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["current_status"] == "upcoming"
        assert detail["allowed_transitions"] == ["active", "cancelled"]

    def test_unknown_status_value(self, client, make_booking, admin_headers):
        booking = make_booking(status="upcoming")

        response = client.patch(
            f"/api/admin/bookings/{booking.id}/status",
            json={"status": "archived", "reason": "x"},
            headers=admin_headers,
        )

        assert response.status_code == 422

    def test_missing_booking(self, client, admin_headers):
        response = client.patch(
            "/api/admin/bookings/missing/status",
            json={"status": "cancelled", "reason": "x"},
            headers=admin_headers,
        )
        assert response.status_code == 404

    def test_stale_expected_status(self, client, make_booking, admin_headers):
        booking = make_booking(status="active")

        response = client.patch(
            f"/api/admin/bookings/{booking.id}/status",
            json={"status": "cancelled", "reason": "x", "expected_status": "upcoming"},
            headers=admin_headers,
        )

        assert response.status_code == 409

    def test_system_actor(self, client, db, make_booking):
        booking = make_booking(status="active")

        client.patch(
            f"/api/admin/bookings/{booking.id}/status",
            json={"status": "post_rental", "reason": "Returned"},
            headers={"Authorization": f"Bearer {settings.internal_api_key}"},
        )

        events = client.get(
            f"/api/admin/bookings/{booking.id}/events",
            headers={"Authorization": f"Bearer {settings.internal_api_key}"},
        ).json()
        assert events[0]["actor_type"] == "system"
        assert events[0]["actor_id"] == "system"

    def test_allowed_transitions(self, client, make_booking, admin_headers):
        booking = make_booking(status="cancelled")

        data = client.get(f"/api/admin/bookings/{booking.id}/transitions", headers=admin_headers).json()

        assert data["current_status"] == "cancelled"
        assert data["allowed_transitions"] == []
        assert data["is_terminal"] is True

    def test_reconcile(self, client, admin_headers):
        response = client.post("/api/admin/bookings/reconcile", headers=admin_headers)
        assert response.status_code == 200
        assert response.json() == {"checked": 0, "replayed": 0, "superseded": 0, "failed": 0}


class TestAdminCapture:
    def test_capture(self, client, db, make_booking, admin_headers):
        from booking_orchestrator.main import app
        from booking_orchestrator.services.payment_adapter import get_payment_adapter

        booking = make_booking(status="upcoming", payment_status="authorized", payment_authorization_id="AUTH-1")
        adapter = MagicMock()
        adapter.capture.return_value = CaptureResult(approved=True, provider_txn_id="CAP-1", status="COMPLETED")
        app.dependency_overrides[get_payment_adapter] = lambda: adapter

        response = client.post(f"/api/admin/bookings/{booking.id}/capture-payment", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["captured"] is True
        assert _reload(db, booking.id).payment_status == "captured"

    def test_capture_unavailable(self, client, make_booking, admin_headers):
        from booking_orchestrator.main import app
        from booking_orchestrator.services.payment_adapter import get_payment_adapter

        booking = make_booking(status="upcoming", payment_status="authorized", payment_authorization_id="AUTH-1")
        adapter = MagicMock()
        adapter.capture.side_effect = RetryableAdapterError("paypal", "timeout")
        app.dependency_overrides[get_payment_adapter] = lambda: adapter

        response = client.post(f"/api/admin/bookings/{booking.id}/capture-payment", headers=admin_headers)

        assert response.status_code == 503

    def test_capture_without_authorization(self, client, make_booking, admin_headers):
        from booking_orchestrator.main import app
        from booking_orchestrator.services.payment_adapter import get_payment_adapter

        booking = make_booking(status="pending_payment")
        app.dependency_overrides[get_payment_adapter] = lambda: MagicMock()

        response = client.post(f"/api/admin/bookings/{booking.id}/capture-payment", headers=admin_headers)

        assert response.status_code == 409

    def test_void_payment(self, client, db, make_booking, admin_headers):
        from booking_orchestrator.main import app
        from booking_orchestrator.services.payment_adapter import get_payment_adapter

        booking = make_booking(status="cancelled", payment_status="authorized", payment_authorization_id="AUTH-4")
        adapter = MagicMock()
        adapter.void.return_value = "VOIDED"
        app.dependency_overrides[get_payment_adapter] = lambda: adapter

        response = client.post(f"/api/admin/bookings/{booking.id}/void-payment", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {
            "booking_id": booking.id, "voided": True, "status": "VOIDED", "already_voided": False,
        }
        adapter.void.assert_called_once_with("AUTH-4")
        assert _reload(db, booking.id).payment_status == "voided"

    def test_void_captured_payment_conflicts(self, client, make_booking, admin_headers):
        from booking_orchestrator.main import app
        from booking_orchestrator.services.payment_adapter import get_payment_adapter

        booking = make_booking(status="active", payment_status="captured", payment_capture_id="CAP-1")
        app.dependency_overrides[get_payment_adapter] = lambda: MagicMock()

        response = client.post(f"/api/admin/bookings/{booking.id}/void-payment", headers=admin_headers)

        assert response.status_code == 409

    def test_void_requires_admin(self, client, make_booking):
        booking = make_booking(status="cancelled", payment_status="authorized", payment_authorization_id="AUTH-5")

        response = client.post(f"/api/admin/bookings/{booking.id}/void-payment")

        assert response.status_code == 401


class TestAdminRetries:
    def _dead_letter(self, client, db):
        """Queue an unprocessable PayPal event; the background attempt dead-letters it"""
        response = client.post(
            "/api/webhooks/paypal",
            content=json.dumps({"id": "WH-BAD", "event_type": "PAYMENT.CAPTURE.COMPLETED"}),
            headers={**PAYPAL_HEADERS, "Content-Type": "application/json"},
        )
        assert response.status_code == 200
        return db.query(DeadLetterItem).one()

    def test_dead_letter_list_and_requeue(self, client, db, admin_headers):
        item = self._dead_letter(client, db)

        listed = client.get("/api/admin/webhooks/dead-letter", headers=admin_headers).json()
        assert listed["total"] == 1
        assert listed["items"][0]["id"] == item.id

        response = client.post(f"/api/admin/webhooks/dead-letter/{item.id}/requeue", headers=admin_headers)
        assert response.status_code == 200
        record = response.json()
        assert record["status"] == "pending"
        assert record["attempt_count"] == 0
        assert record["requeued_from_id"] == item.retry_record_id

        again = client.post(f"/api/admin/webhooks/dead-letter/{item.id}/requeue", headers=admin_headers)
        assert again.status_code == 409
        assert again.json()["detail"]["requeued_record_id"] == record["id"]

    def test_requeue_unknown_item(self, client, admin_headers):
        response = client.post("/api/admin/webhooks/dead-letter/missing/requeue", headers=admin_headers)
        assert response.status_code == 404

    def test_process_batch(self, client, db, admin_headers):
        item = self._dead_letter(client, db)
        client.post(f"/api/admin/webhooks/dead-letter/{item.id}/requeue", headers=admin_headers)

        response = client.post("/api/admin/webhooks/retries/process", params={"limit": 5}, headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {"processed": 1, "succeeded": 0, "retrying": 0, "failed": 1, "errors": 0}


class TestAdminMaintenance:
    def test_block_and_clear(self, client, admin_headers):
        response = client.post(
            "/api/admin/cars/car-9/maintenance",
            json={"start_date": START.isoformat(), "end_date": END.isoformat()},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert len(response.json()["applied"]) == 4

        days = client.get("/api/cars/car-9/availability", params={
            "start_date": START.isoformat(), "end_date": END.isoformat(),
        }).json()["days"]
        assert set(days.values()) == {"maintenance"}

        cleared = client.delete("/api/admin/cars/car-9/maintenance", params={
            "start_date": START.isoformat(), "end_date": END.isoformat(),
        }, headers=admin_headers)
        assert cleared.json()["cleared"] == 4


class TestDocuSealWebhook:
    def _payload(self, booking_id):
        return {
            "event_type": "form.completed",
            "timestamp": "2030-05-01T09:30:00Z",
            "data": {"id": 31, "submission_id": 7, "metadata": {"booking_id": booking_id}},
        }

    def test_signed_contract_confirms_booking(self, client, db, make_booking, monkeypatch):
        monkeypatch.setattr(settings, "docuseal_webhook_secret", "whsec-test")
        booking = make_booking(status="contract_pending_signature", contract_status="sent")
        body = json.dumps(self._payload(booking.id)).encode()

        response = client.post(
            "/api/webhooks/docuseal",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-DocuSeal-Signature": "sha256=" + compute_hmac_sha256("whsec-test", body),
            },
        )

        assert response.status_code == 200
        assert response.json()["duplicate"] is False
        booking = _reload(db, booking.id)
        assert booking.overall_status == "upcoming"
        assert booking.contract_status == "signed"

        again = client.post(
            "/api/webhooks/docuseal",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-DocuSeal-Signature": "sha256=" + compute_hmac_sha256("whsec-test", body),
            },
        )
        assert again.status_code == 200
        assert again.json()["duplicate"] is True

    def test_bad_signature(self, client, make_booking, monkeypatch):
        monkeypatch.setattr(settings, "docuseal_webhook_secret", "whsec-test")
        booking = make_booking(status="contract_pending_signature")

        response = client.post(
            "/api/webhooks/docuseal",
            content=json.dumps(self._payload(booking.id)),
            headers={"Content-Type": "application/json", "X-DocuSeal-Signature": "sha256=deadbeef"},
        )

        assert response.status_code == 401

    def test_unverifiable_in_production(self, client, monkeypatch):
        monkeypatch.setattr(settings, "environment", "production")

        response = client.post("/api/webhooks/docuseal", json=self._payload("b-1"))

        assert response.status_code == 503

    def test_invalid_json(self, client):
        response = client.post(
            "/api/webhooks/docuseal", content=b"not json", headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_event_without_id(self, client):
        response = client.post("/api/webhooks/docuseal", json={"event_type": "form.viewed", "data": {}})
        assert response.status_code == 400


class TestPayPalWebhook:
    def _payload(self, booking_id, event_id="WH-100"):
        return {
            "id": event_id,
            "event_type": "PAYMENT.AUTHORIZATION.CREATED",
            "resource": {"id": "AUTH-100", "custom_id": booking_id},
        }

    def test_missing_signature_headers(self, client, paypal_verifier):
        response = client.post("/api/webhooks/paypal", json=self._payload("b-1"))
        assert response.status_code == 401
        paypal_verifier.verify_webhook_signature.assert_not_called()

    def test_rejected_signature(self, client, paypal_verifier):
        paypal_verifier.verify_webhook_signature.return_value = False

        response = client.post("/api/webhooks/paypal", json=self._payload("b-1"), headers=PAYPAL_HEADERS)

        assert response.status_code == 401

    def test_verification_unavailable(self, client, paypal_verifier):
        paypal_verifier.verify_webhook_signature.side_effect = RetryableAdapterError("paypal", "timeout")

        response = client.post("/api/webhooks/paypal", json=self._payload("b-1"), headers=PAYPAL_HEADERS)

        assert response.status_code == 503

    def test_authorization_processed(self, client, db, make_booking, paypal_verifier):
        booking = make_booking(status="pending_payment")

        response = client.post("/api/webhooks/paypal", json=self._payload(booking.id), headers=PAYPAL_HEADERS)

        assert response.status_code == 200
        record = db.query(WebhookRetryRecord).one()
        assert record.status == "succeeded"
        assert set(record.headers) == {h.lower() for h in PAYPAL_HEADERS}
        booking = _reload(db, booking.id)
        assert booking.payment_status == "authorized"
        # No contract adapter configured in tests: the saga leaves it in pending_contract
        assert booking.overall_status == "pending_contract"

    def test_unknown_booking_still_acknowledged(self, client, db, paypal_verifier):
        response = client.post("/api/webhooks/paypal", json=self._payload("missing"), headers=PAYPAL_HEADERS)

        assert response.status_code == 200
        assert db.query(DeadLetterItem).count() == 1
