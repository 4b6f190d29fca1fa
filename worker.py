#!/usr/bin/env python
"""
Batch Worker

One-shot job for cron / systemd timers. Each run:
1. Processes one bounded batch of due webhook retries
2. Runs the transition reconciliation sweep
3. Captures authorized payments that are due (when PayPal is configured)
4. Purges old notification rate-limit buckets

Run with:
    python worker.py
    python worker.py --limit 20 --skip-reconcile
    python worker.py --capture-limit 5 --skip-retries

No loop; schedule it every few minutes.
"""

import argparse
import os
import sys
import time
import logging

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from booking_orchestrator.config import settings
from booking_orchestrator.database import SessionLocal
from booking_orchestrator.services.booking_service import BookingService
from booking_orchestrator.services.booking_state_machine import BookingStateMachine
from booking_orchestrator.services.contract_adapter import get_contract_adapter
from booking_orchestrator.services.notification_service import (
    NotificationService,
    dispatch_booking_notifications,
)
from booking_orchestrator.services.payment_adapter import get_payment_adapter
from booking_orchestrator.services.webhook_retry_engine import run_retry_batch
from booking_orchestrator.utils.logging_config import setup_logging

logger = logging.getLogger("worker")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run one retry/reconciliation batch")
    parser.add_argument("--limit", type=int, default=settings.retry_batch_limit,
                        help="maximum retry records to process")
    parser.add_argument("--reconcile-limit", type=int, default=50,
                        help="maximum transition intents to reconcile")
    parser.add_argument("--capture-limit", type=int, default=settings.capture_batch_limit,
                        help="maximum payments to capture")
    parser.add_argument("--skip-retries", action="store_true")
    parser.add_argument("--skip-reconcile", action="store_true")
    parser.add_argument("--skip-captures", action="store_true")
    return parser.parse_args(argv)


def run_once(args) -> dict:
    summary = {}
    db = SessionLocal()
    try:
        if not args.skip_retries:
            summary["retries"] = run_retry_batch(db, args.limit)

        if not args.skip_reconcile:
            machine = BookingStateMachine(
                db,
                contract_adapter=get_contract_adapter(),
                notification_dispatcher=lambda booking_id, templates: dispatch_booking_notifications(
                    db, booking_id, templates
                ),
            )
            summary["reconcile"] = machine.reconcile(limit=args.reconcile_limit)

        if not args.skip_captures:
            payment_adapter = get_payment_adapter()
            if payment_adapter is None:
                logger.info("PayPal is not configured, skipping the capture batch")
            else:
                service = BookingService(db, payment_adapter=payment_adapter)
                summary["captures"] = service.capture_due_payments(args.capture_limit)

        summary["purged_rate_buckets"] = NotificationService(db).purge_old_counters()
    finally:
        db.close()
    return summary


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(level=settings.log_level, json_format=settings.log_json, include_uvicorn=False)

    start_time = time.time()
    summary = run_once(args)
    duration = time.time() - start_time

    logger.info(f"Batch finished in {duration:.2f}s: {summary}")
    retries = summary.get("retries", {})
    captures = summary.get("captures", {})
    return 1 if retries.get("errors") or captures.get("errors") else 0


if __name__ == "__main__":
    sys.exit(main())
