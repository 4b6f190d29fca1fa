"""
Dead-Letter Store

Snapshots of webhook retry records that failed permanently. Items are
never deleted; an admin requeue creates a fresh pending record and marks
the item as requeued, which is the only way an event re-enters the
retry cycle.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..config import settings
from ..exceptions import AlreadyRequeuedError, DeadLetterItemNotFoundError
from ..models.booking import Booking
from ..models.booking_event import BookingEventType, EventActor
from ..models.webhook_retry import (
    DeadLetterItem,
    DeadLetterStatus,
    WebhookRetryRecord,
    WebhookRetryStatus,
)
from .event_log import EventLog

logger = logging.getLogger(__name__)


class DeadLetterStore:
    def __init__(self, db: Session):
        self.db = db

    def move_to_dead_letter(self, record: WebhookRetryRecord, final_error: str) -> DeadLetterItem:
        """
        Snapshot `record` and mark it dead_letter. Joins the caller's
        transaction; commits.
        """
        now = datetime.utcnow()

        existing = self.db.query(DeadLetterItem).filter(
            DeadLetterItem.retry_record_id == record.id
        ).first()
        if existing:
            return existing

        item = DeadLetterItem(
            retry_record_id=record.id,
            webhook_type=record.webhook_type,
            webhook_id=record.webhook_id,
            event_type=record.event_type,
            payload=record.payload,
            headers=record.headers,
            attempt_count=record.attempt_count or 0,
            final_error=final_error,
            booking_id=record.booking_id,
            failed_permanently_at=now,
            status=DeadLetterStatus.DEAD.value,
        )
        self.db.add(item)

        record.status = WebhookRetryStatus.DEAD_LETTER.value
        record.next_retry_at = None
        record.locked_at = None
        record.last_error = final_error
        record.failed_permanently_at = now

        if record.booking_id and self.db.get(Booking, record.booking_id) is not None:
            EventLog(self.db).append(
                record.booking_id,
                BookingEventType.WEBHOOK_DEAD_LETTERED,
                actor_type=EventActor.SYSTEM,
                details={
                    "retry_record_id": record.id,
                    "webhook_type": record.webhook_type,
                    "webhook_id": record.webhook_id,
                    "attempt_count": record.attempt_count,
                    "error": final_error,
                },
            )

        self.db.commit()
        logger.error(
            f"Webhook {record.webhook_type}:{record.webhook_id} dead-lettered "
            f"after {record.attempt_count} attempt(s): {final_error}"
        )
        return item

    def get(self, item_id: str) -> DeadLetterItem:
        item = self.db.get(DeadLetterItem, item_id)
        if item is None:
            raise DeadLetterItemNotFoundError(item_id)
        return item

    def list_items(self, include_requeued: bool = False, limit: int = 100) -> List[DeadLetterItem]:
        query = self.db.query(DeadLetterItem)
        if not include_requeued:
            query = query.filter(DeadLetterItem.status == DeadLetterStatus.DEAD.value)
        return query.order_by(DeadLetterItem.failed_permanently_at.desc()).limit(limit).all()

    def requeue(self, item_id: str, actor_id: str, max_attempts: Optional[int] = None) -> WebhookRetryRecord:
        """
        Create a new pending record from the snapshot (attempt_count 0,
        due now) and mark the item requeued. Raises AlreadyRequeuedError
        when the item was requeued before.
        """
        item = self.get(item_id)
        if item.status == DeadLetterStatus.REQUEUED.value:
            raise AlreadyRequeuedError(item.id, item.requeued_record_id)

        now = datetime.utcnow()
        record = WebhookRetryRecord(
            webhook_type=item.webhook_type,
            webhook_id=item.webhook_id,
            event_type=item.event_type,
            payload=item.payload,
            headers=item.headers,
            status=WebhookRetryStatus.PENDING.value,
            attempt_count=0,
            max_attempts=max_attempts or settings.webhook_max_attempts,
            next_retry_at=now,
            booking_id=item.booking_id,
            requeued_from_id=item.retry_record_id,
        )
        self.db.add(record)
        self.db.flush()

        # Conditional so two admins cannot both requeue the same item
        claimed = self.db.execute(
            update(DeadLetterItem)
            .where(DeadLetterItem.id == item.id, DeadLetterItem.status == DeadLetterStatus.DEAD.value)
            .values(
                status=DeadLetterStatus.REQUEUED.value,
                requeued_at=now,
                requeued_by=actor_id,
                requeued_record_id=record.id,
            )
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            self.db.rollback()
            item = self.db.get(DeadLetterItem, item_id, populate_existing=True)
            raise AlreadyRequeuedError(item_id, item.requeued_record_id if item else None)

        if item.booking_id and self.db.get(Booking, item.booking_id) is not None:
            EventLog(self.db).append(
                item.booking_id,
                BookingEventType.DEAD_LETTER_REQUEUED,
                actor_type=EventActor.ADMIN,
                actor_id=actor_id,
                details={
                    "dead_letter_item_id": item.id,
                    "new_retry_record_id": record.id,
                    "webhook_type": item.webhook_type,
                    "webhook_id": item.webhook_id,
                },
            )

        self.db.commit()
        self.db.refresh(record)
        logger.info(
            f"Dead-letter item {item.id} requeued by {actor_id} as retry record {record.id}"
        )
        return record
