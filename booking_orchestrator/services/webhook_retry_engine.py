"""
Webhook Retry Engine

Durable, bounded processing of inbound provider events:

1. Webhook router: verifies signature -> record_incoming_event() -> 200
2. Batch run (cron / admin / background task): process_retries(limit)
   - returns stale "processing" claims to "pending"
   - selects due records (pending, next_retry_at <= now), oldest first
     by creation time
   - claims each with a conditional UPDATE pending -> processing
   - runs the type-specific handler
   - succeeded | pending with backoff | dead_letter, written only while
     the claim (status processing, same locked_at) is still held

Every completed attempt increments attempt_count. A retryable failure that
reaches max_attempts, or any non-retryable failure, moves the record to
the dead-letter store. There is no in-process scheduler; batches are
triggered externally.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import (
    AdapterError,
    DatesUnavailableError,
    InvalidTransitionError,
    NonRetryableError,
    NotFoundError,
    RetryableError,
)
from ..models.booking import Booking
from ..models.booking_event import BookingEventType, EventActor
from ..models.webhook_retry import ProcessedWebhookEvent, WebhookRetryRecord, WebhookRetryStatus
from ..utils.db_helpers import get_pending_with_skip_locked
from ..utils.logging_config import get_logger
from .booking_state_machine import BookingStateMachine
from .dead_letter import DeadLetterStore
from .event_log import EventLog
from .webhook_handlers import HANDLERS, HandlerContext, HandlerOutcome, WebhookHandler

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

NotificationDispatcher = Callable[[str, List[str]], Any]


@dataclass
class ReceiveResult:
    """Result of recording an inbound webhook (fast path)"""
    record_id: Optional[str]
    created: bool
    duplicate: bool = False
    status: Optional[str] = None


# Outcomes of a single process_retry() call
SUCCEEDED = "succeeded"
RETRYING = "retrying"
DEAD_LETTERED = "dead_letter"
SKIPPED = "skipped"

# Errors that retrying can never fix
PERMANENT_ERRORS = (
    NonRetryableError,
    NotFoundError,
    InvalidTransitionError,
    DatesUnavailableError,
    KeyError,
    TypeError,
    ValueError,
)


def classify_failure(exc: BaseException) -> bool:
    """True when the failure is transient and the record should be retried"""
    if isinstance(exc, AdapterError):
        return exc.retryable
    if isinstance(exc, RetryableError):
        return True
    if isinstance(exc, PERMANENT_ERRORS):
        return False
    # Unknown failures (database hiccups, bugs fixed by a deploy) get retried
    return True


class WebhookRetryEngine:
    def __init__(
        self,
        db: Session,
        handlers: Optional[Dict[str, WebhookHandler]] = None,
        contract_adapter=None,
        notification_dispatcher: Optional[NotificationDispatcher] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.handlers = handlers if handlers is not None else HANDLERS
        self.contract_adapter = contract_adapter
        self.notification_dispatcher = notification_dispatcher
        self.rng = rng or random.Random()
        self.dead_letters = DeadLetterStore(db)

    # ==================
    # Fast path
    # ==================

    def record_incoming_event(
        self,
        webhook_type: str,
        webhook_id: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> ReceiveResult:
        """
        Durably queue a provider event for processing.

        De-duplicates on (webhook_type, webhook_id): an event that already
        succeeded is discarded, one that is pending or processing is
        returned as-is. A dead-lettered event stays dead until an admin
        requeues it.
        """
        handler = self.handlers.get(webhook_type)
        if handler is None:
            raise NonRetryableError(f"Unsupported webhook type {webhook_type}")
        if not webhook_id:
            raise NonRetryableError(f"{webhook_type} event has no id")

        already_applied = self.db.query(ProcessedWebhookEvent.id).filter(
            ProcessedWebhookEvent.webhook_type == webhook_type,
            ProcessedWebhookEvent.webhook_id == webhook_id,
        ).first()
        if already_applied:
            logger.info(f"Duplicate {webhook_type} event {webhook_id} already applied, discarding")
            return ReceiveResult(record_id=None, created=False, duplicate=True, status=SUCCEEDED)

        existing = (
            self.db.query(WebhookRetryRecord)
            .filter(
                WebhookRetryRecord.webhook_type == webhook_type,
                WebhookRetryRecord.webhook_id == webhook_id,
            )
            .order_by(WebhookRetryRecord.created_at.desc())
            .all()
        )
        for record in existing:
            if record.status == WebhookRetryStatus.SUCCEEDED.value:
                logger.info(f"Duplicate {webhook_type} event {webhook_id}, discarding")
                return ReceiveResult(record_id=record.id, created=False, duplicate=True, status=record.status)
        for record in existing:
            if record.status in (WebhookRetryStatus.PENDING.value, WebhookRetryStatus.PROCESSING.value):
                return ReceiveResult(record_id=record.id, created=False, duplicate=True, status=record.status)
        if existing:
            logger.warning(
                f"{webhook_type} event {webhook_id} re-delivered while dead-lettered; "
                f"requeue it from the admin surface to process it again"
            )
            return ReceiveResult(record_id=existing[0].id, created=False, duplicate=True, status=existing[0].status)

        event_type = None
        booking_id = None
        if isinstance(payload, dict):
            event_type = handler.extract_event_type(payload)
            booking_id = handler.resolve_booking_id(payload)

        now = datetime.utcnow()
        record = WebhookRetryRecord(
            webhook_type=webhook_type,
            webhook_id=webhook_id,
            event_type=event_type,
            payload=payload,
            headers=headers,
            status=WebhookRetryStatus.PENDING.value,
            attempt_count=0,
            max_attempts=settings.webhook_max_attempts,
            next_retry_at=now,
            booking_id=booking_id,
        )
        self.db.add(record)
        self.db.commit()
        self.db.refresh(record)

        logger.info(
            f"Recorded {webhook_type} event {webhook_id} ({event_type}) as retry record {record.id}"
        )
        return ReceiveResult(record_id=record.id, created=True, status=record.status)

    # ==================
    # Batch processing
    # ==================

    def get_due_retries(self, limit: int, now: Optional[datetime] = None) -> List[WebhookRetryRecord]:
        """Up to `limit` pending records whose next_retry_at has passed, oldest first"""
        now = now or datetime.utcnow()
        return get_pending_with_skip_locked(
            self.db,
            WebhookRetryRecord,
            (WebhookRetryRecord.status == WebhookRetryStatus.PENDING.value)
            & (WebhookRetryRecord.next_retry_at <= now),
            order_by=(WebhookRetryRecord.created_at, WebhookRetryRecord.next_retry_at),
            limit=limit,
        )

    def process_retries(self, limit: Optional[int] = None) -> Dict[str, int]:
        """Run one bounded batch; returns processed/succeeded/retrying/failed/errors counts"""
        if limit is None:
            limit = settings.retry_batch_limit
        counts = {"processed": 0, "succeeded": 0, "retrying": 0, "failed": 0, "errors": 0}

        self.release_stale_claims()
        record_ids = [record.id for record in self.get_due_retries(limit)]
        # Release skip-locked row locks before claiming
        self.db.commit()

        for record_id in record_ids:
            try:
                outcome = self.process_retry(record_id)
            except SQLAlchemyError as e:
                self.db.rollback()
                counts["errors"] += 1
                logger.error(f"Database error while processing retry record {record_id}: {e}")
                continue

            if outcome == SKIPPED:
                continue
            counts["processed"] += 1
            if outcome == SUCCEEDED:
                counts["succeeded"] += 1
            elif outcome == RETRYING:
                counts["retrying"] += 1
            else:
                counts["failed"] += 1

        if counts["processed"] or counts["errors"]:
            logger.info(
                f"Retry batch: {counts['processed']} processed, {counts['succeeded']} succeeded, "
                f"{counts['retrying']} retrying, {counts['failed']} dead-lettered, {counts['errors']} errors"
            )
        return counts

    def claim(self, record_id: str) -> bool:
        """pending -> processing; False when another worker got there first"""
        return self._claim(record_id) is not None

    def _claim(self, record_id: str) -> Optional[datetime]:
        """Claim a pending record; returns the claim stamp (locked_at) or None"""
        now = datetime.utcnow()
        result = self.db.execute(
            update(WebhookRetryRecord)
            .where(
                WebhookRetryRecord.id == record_id,
                WebhookRetryRecord.status == WebhookRetryStatus.PENDING.value,
            )
            .values(
                status=WebhookRetryStatus.PROCESSING.value,
                locked_at=now,
                last_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return now if result.rowcount == 1 else None

    def process_retry(self, record: Union[WebhookRetryRecord, str]) -> str:
        """
        Process one record. Returns "succeeded", "retrying", "dead_letter",
        or "skipped" when the record could not be claimed or the claim was
        released before the outcome was written.
        """
        record_id = record if isinstance(record, str) else record.id
        claimed_at = self._claim(record_id)
        if claimed_at is None:
            logger.debug(f"Retry record {record_id} already claimed or no longer pending")
            return SKIPPED

        record = self.db.get(WebhookRetryRecord, record_id, populate_existing=True)
        handler = self.handlers.get(record.webhook_type)
        ctx = None

        try:
            if handler is None:
                raise NonRetryableError(f"No handler for webhook type {record.webhook_type}")
            handler.validate(record.payload)
            booking = handler.load_booking(self.db, record.payload)
            machine = BookingStateMachine(self.db, contract_adapter=self.contract_adapter)
            ctx = HandlerContext(self.db, machine, record, booking)
            outcome = handler.handle(ctx)
            ctx.finish()
        except IntegrityError:
            # Processed marker already exists: another record applied this event
            self.db.rollback()
            outcome = HandlerOutcome(action="duplicate", booking_id=self._record_booking_id(record_id))
        except Exception as e:
            self.db.rollback()
            return self._handle_failure(record_id, e, claimed_at)

        if not self._mark_succeeded(record_id, outcome, claimed_at):
            return SKIPPED
        if ctx is not None:
            self._dispatch_notifications(ctx)
        return SUCCEEDED

    def compute_next_retry_at(self, attempt_count: int, now: Optional[datetime] = None) -> datetime:
        """Exponential backoff with jitter: base * 2^attempts + rand(0, base), capped"""
        now = now or datetime.utcnow()
        base = settings.webhook_retry_base_seconds
        delay = base * (2 ** attempt_count) + self.rng.uniform(0, base)
        delay = min(delay, settings.webhook_retry_max_delay_seconds)
        return now + timedelta(seconds=delay)

    def release_stale_claims(self) -> int:
        """
        Records left in "processing" by a crashed worker count as a failed
        attempt and go back through the normal failure path.
        """
        cutoff = datetime.utcnow() - timedelta(seconds=settings.webhook_processing_timeout_seconds)
        stale = self.db.query(WebhookRetryRecord.id, WebhookRetryRecord.locked_at).filter(
            WebhookRetryRecord.status == WebhookRetryStatus.PROCESSING.value,
            WebhookRetryRecord.locked_at < cutoff,
        ).all()
        released = 0
        for record_id, locked_at in stale:
            logger.warning(f"Retry record {record_id} stuck in processing, releasing claim")
            outcome = self._handle_failure(
                record_id, RetryableError("processing claim timed out"), claimed_at=locked_at
            )
            if outcome != SKIPPED:
                released += 1
        return released

    # ==================
    # Metrics
    # ==================

    def get_metrics(self) -> Dict[str, Any]:
        rows = (
            self.db.query(
                WebhookRetryRecord.webhook_type,
                WebhookRetryRecord.status,
                func.count(WebhookRetryRecord.id),
                func.avg(WebhookRetryRecord.attempt_count),
                func.max(WebhookRetryRecord.attempt_count),
            )
            .group_by(WebhookRetryRecord.webhook_type, WebhookRetryRecord.status)
            .all()
        )

        by_type: Dict[str, Dict[str, Any]] = {}
        totals: Dict[str, int] = {}
        for webhook_type, status, count, avg_attempts, max_attempts in rows:
            by_type.setdefault(webhook_type, {})[status] = {
                "count": count,
                "avg_attempts": round(float(avg_attempts or 0), 2),
                "max_attempts": max_attempts or 0,
            }
            totals[status] = totals.get(status, 0) + count

        pending = totals.get(WebhookRetryStatus.PENDING.value, 0)
        processing = totals.get(WebhookRetryStatus.PROCESSING.value, 0)
        return {
            "by_type": by_type,
            "summary": {
                "pending": pending,
                "processing": processing,
                "succeeded": totals.get(WebhookRetryStatus.SUCCEEDED.value, 0),
                "dead_letter": totals.get(WebhookRetryStatus.DEAD_LETTER.value, 0),
                "total_active": pending + processing,
            },
        }

    # ==================
    # Internals
    # ==================

    def _record_booking_id(self, record_id: str) -> Optional[str]:
        record = self.db.get(WebhookRetryRecord, record_id)
        return record.booking_id if record else None

    def _booking_exists(self, booking_id: Optional[str]) -> bool:
        return bool(booking_id) and self.db.get(Booking, booking_id) is not None

    def _release_claim(self, record_id: str, claimed_at: Optional[datetime]) -> bool:
        """
        Fence the outcome write: clear locked_at only while the record is still
        processing under this claim. The caller's writes join the same
        transaction, so a worker whose claim was released (stale sweep, another
        finisher) drops its result instead of overwriting the record.
        """
        conditions = [
            WebhookRetryRecord.id == record_id,
            WebhookRetryRecord.status == WebhookRetryStatus.PROCESSING.value,
        ]
        if claimed_at is not None:
            conditions.append(WebhookRetryRecord.locked_at == claimed_at)
        result = self.db.execute(
            update(WebhookRetryRecord)
            .where(*conditions)
            .values(locked_at=None, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return True
        self.db.rollback()
        logger.warning(
            f"Retry record {record_id} is no longer held by this claim, dropping attempt result"
        )
        return False

    def _mark_succeeded(
        self, record_id: str, outcome: HandlerOutcome, claimed_at: Optional[datetime] = None
    ) -> bool:
        if not self._release_claim(record_id, claimed_at):
            return False
        record = self.db.get(WebhookRetryRecord, record_id, populate_existing=True)
        now = datetime.utcnow()
        record.status = WebhookRetryStatus.SUCCEEDED.value
        record.attempt_count = (record.attempt_count or 0) + 1
        record.succeeded_at = now
        record.next_retry_at = None
        record.locked_at = None
        record.last_error = None
        if outcome.booking_id:
            record.booking_id = outcome.booking_id

        if self._booking_exists(record.booking_id):
            EventLog(self.db).append(
                record.booking_id,
                BookingEventType.WEBHOOK_PROCESSED,
                actor_type=EventActor.PROVIDER,
                actor_id=f"{record.webhook_type}:{record.webhook_id}",
                details={
                    "retry_record_id": record.id,
                    "event_type": record.event_type,
                    "action": outcome.action,
                    "attempt": record.attempt_count,
                    **outcome.details,
                },
            )
        self.db.commit()
        structured_logger.webhook_outcome(record.id, record.webhook_type, outcome.action, record.attempt_count)
        return True

    def _handle_failure(
        self, record_id: str, exc: BaseException, claimed_at: Optional[datetime] = None
    ) -> str:
        if not self._release_claim(record_id, claimed_at):
            return SKIPPED
        record = self.db.get(WebhookRetryRecord, record_id, populate_existing=True)
        error = f"{type(exc).__name__}: {exc}"[:2000]
        retryable = classify_failure(exc)

        record.attempt_count = (record.attempt_count or 0) + 1
        record.last_error = error
        record.locked_at = None

        if retryable and record.attempt_count < record.max_attempts:
            record.status = WebhookRetryStatus.PENDING.value
            record.next_retry_at = self.compute_next_retry_at(record.attempt_count)
            if self._booking_exists(record.booking_id):
                EventLog(self.db).append(
                    record.booking_id,
                    BookingEventType.WEBHOOK_RETRY_SCHEDULED,
                    actor_type=EventActor.SYSTEM,
                    details={
                        "retry_record_id": record.id,
                        "attempt": record.attempt_count,
                        "max_attempts": record.max_attempts,
                        "next_retry_at": record.next_retry_at,
                        "error": error,
                    },
                )
            self.db.commit()
            structured_logger.webhook_outcome(record.id, record.webhook_type, RETRYING, record.attempt_count, error)
            return RETRYING

        if not retryable:
            logger.warning(f"Non-retryable failure for retry record {record.id}: {error}")
        self.dead_letters.move_to_dead_letter(record, error)
        structured_logger.webhook_outcome(record.id, record.webhook_type, DEAD_LETTERED, record.attempt_count, error)
        return DEAD_LETTERED

    def _dispatch_notifications(self, ctx: HandlerContext) -> None:
        if self.notification_dispatcher is None:
            return
        for result in ctx.transitions:
            if result.notifications:
                self.notification_dispatcher(result.booking_id, list(result.notifications))


def process_record_in_new_session(record_id: str) -> None:
    """BackgroundTasks entry point: process one freshly recorded event"""
    from ..database import SessionLocal
    from .contract_adapter import get_contract_adapter
    from .notification_service import dispatch_in_new_session

    db = SessionLocal()
    try:
        engine = WebhookRetryEngine(
            db,
            contract_adapter=get_contract_adapter(),
            notification_dispatcher=dispatch_in_new_session,
        )
        engine.process_retry(record_id)
    finally:
        db.close()


def run_retry_batch(db: Session, limit: Optional[int] = None) -> Dict[str, int]:
    """Batch entry point shared by the admin endpoint and worker.py"""
    from .contract_adapter import get_contract_adapter
    from .notification_service import dispatch_booking_notifications

    engine = WebhookRetryEngine(
        db,
        contract_adapter=get_contract_adapter(),
        notification_dispatcher=lambda booking_id, templates: dispatch_booking_notifications(
            db, booking_id, templates
        ),
    )
    return engine.process_retries(limit)
