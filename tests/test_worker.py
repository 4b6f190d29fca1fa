"""
Tests for the one-shot batch worker.
"""

import os
import sys
from datetime import datetime
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import worker
from booking_orchestrator.models.booking import Booking
from booking_orchestrator.models.webhook_retry import WebhookRetryRecord
from booking_orchestrator.services.payment_adapter import CaptureResult


class TestWorker:
    def test_parse_args_defaults(self):
        args = worker.parse_args([])
        assert args.limit == worker.settings.retry_batch_limit
        assert args.skip_retries is False
        assert args.skip_reconcile is False
        assert args.skip_captures is False
        assert args.capture_limit == worker.settings.capture_batch_limit

    def test_run_once_empty(self, session_factory, monkeypatch):
        monkeypatch.setattr(worker, "SessionLocal", session_factory)

        summary = worker.run_once(worker.parse_args([]))

        assert summary["retries"] == {"processed": 0, "succeeded": 0, "retrying": 0, "failed": 0, "errors": 0}
        assert summary["reconcile"] == {"checked": 0, "replayed": 0, "superseded": 0, "failed": 0}
        assert summary["purged_rate_buckets"] == 0

    def test_run_once_processes_due_records(self, db, session_factory, monkeypatch):
        from booking_orchestrator.services.webhook_retry_engine import WebhookRetryEngine

        monkeypatch.setattr(worker, "SessionLocal", session_factory)
        WebhookRetryEngine(db).record_incoming_event(
            "paypal", "WH-W1", {"id": "WH-W1", "event_type": "PAYMENT.CAPTURE.COMPLETED"},
        )

        summary = worker.run_once(worker.parse_args(["--skip-reconcile"]))

        assert summary["retries"]["processed"] == 1
        assert summary["retries"]["failed"] == 1
        assert "reconcile" not in summary
        record = db.query(WebhookRetryRecord).populate_existing().one()
        assert record.status == "dead_letter"

    def test_skip_everything(self, session_factory, monkeypatch):
        monkeypatch.setattr(worker, "SessionLocal", session_factory)

        summary = worker.run_once(worker.parse_args(["--skip-retries", "--skip-reconcile", "--skip-captures"]))

        assert summary == {"purged_rate_buckets": 0}

    def test_capture_batch_skipped_without_paypal(self, session_factory, monkeypatch):
        monkeypatch.setattr(worker, "SessionLocal", session_factory)
        monkeypatch.setattr(worker, "get_payment_adapter", lambda: None)

        summary = worker.run_once(worker.parse_args(["--skip-retries", "--skip-reconcile"]))

        assert "captures" not in summary

    def test_capture_batch_runs(self, db, session_factory, make_booking, monkeypatch):
        monkeypatch.setattr(worker, "SessionLocal", session_factory)
        adapter = MagicMock()
        adapter.capture.return_value = CaptureResult(approved=True, provider_txn_id="CAP-W1", status="COMPLETED")
        monkeypatch.setattr(worker, "get_payment_adapter", lambda: adapter)
        booking = make_booking(
            status="active", contract_status="signed", start=datetime.utcnow().date(),
            payment_status="authorized", payment_authorization_id="AUTH-W1",
        )

        summary = worker.run_once(worker.parse_args(["--skip-retries", "--skip-reconcile", "--capture-limit", "5"]))

        assert summary["captures"] == {"checked": 1, "captured": 1, "declined": 0, "errors": 0}
        assert db.get(Booking, booking.id, populate_existing=True).payment_status == "captured"

    def test_capture_errors_fail_the_run(self, monkeypatch):
        monkeypatch.setattr(worker, "run_once", lambda args: {"captures": {"errors": 2}})
        monkeypatch.setattr(worker, "setup_logging", lambda **kwargs: None)

        assert worker.main(["--skip-retries"]) == 1
