"""
Webhook Retry Models

WebhookRetryRecord is the durable queue of inbound provider events.
Lifecycle: pending -> processing -> succeeded | pending (retry) | dead_letter.

DeadLetterItem is an append-only snapshot of a record that exhausted its
attempts or failed permanently. The only way back into the queue is an
admin requeue, which creates a brand new pending record.

ProcessedWebhookEvent marks a (webhook_type, webhook_id) pair whose effects
have been applied; it is written in the same transaction as those effects.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Index, Integer, JSON, UniqueConstraint
from ..database import Base
import enum


class WebhookType(str, enum.Enum):
    PAYPAL = "paypal"
    DOCUSEAL = "docuseal"


class WebhookRetryStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class DeadLetterStatus(str, enum.Enum):
    DEAD = "dead"
    REQUEUED = "requeued"


class WebhookRetryRecord(Base):
    __tablename__ = "webhook_retries"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    
    # Provider identification; (webhook_type, webhook_id) is the dedup key
    webhook_type = Column(String(20), nullable=False)
    webhook_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=True)
    
    payload = Column(JSON, nullable=False)
    headers = Column(JSON, nullable=True)
    
    # Retry state
    status = Column(String(20), nullable=False, default=WebhookRetryStatus.PENDING.value)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    next_retry_at = Column(DateTime, nullable=True)
    last_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    locked_at = Column(DateTime, nullable=True)
    
    # Correlated booking, once resolved from the payload
    booking_id = Column(String(36), nullable=True)
    
    # Set when this record was created by a dead-letter requeue
    requeued_from_id = Column(String(36), nullable=True)
    
    succeeded_at = Column(DateTime, nullable=True)
    failed_permanently_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    
    __table_args__ = (
        Index("ix_webhook_retries_type_webhook", "webhook_type", "webhook_id"),
        Index("ix_webhook_retries_due", "status", "next_retry_at"),
        Index("ix_webhook_retries_booking", "booking_id"),
    )
    
    @property
    def is_terminal(self) -> bool:
        return self.status in (
            WebhookRetryStatus.SUCCEEDED.value,
            WebhookRetryStatus.DEAD_LETTER.value,
        )
    
    def __repr__(self):
        return f"<WebhookRetryRecord {self.webhook_type}:{self.webhook_id} status={self.status} attempts={self.attempt_count}>"


class DeadLetterItem(Base):
    __tablename__ = "webhook_dead_letters"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    retry_record_id = Column(String(36), nullable=False)
    
    webhook_type = Column(String(20), nullable=False)
    webhook_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=True)
    payload = Column(JSON, nullable=False)
    headers = Column(JSON, nullable=True)
    attempt_count = Column(Integer, nullable=False)
    final_error = Column(Text, nullable=True)
    booking_id = Column(String(36), nullable=True)
    failed_permanently_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    
    # Requeue bookkeeping; the snapshot columns above never change
    status = Column(String(20), nullable=False, default=DeadLetterStatus.DEAD.value)
    requeued_at = Column(DateTime, nullable=True)
    requeued_by = Column(String(100), nullable=True)
    requeued_record_id = Column(String(36), nullable=True)
    
    __table_args__ = (
        UniqueConstraint("retry_record_id", name="uq_dead_letter_retry_record"),
        Index("ix_dead_letters_status", "status", "failed_permanently_at"),
    )
    
    def __repr__(self):
        return f"<DeadLetterItem {self.webhook_type}:{self.webhook_id} status={self.status}>"


class ProcessedWebhookEvent(Base):
    __tablename__ = "processed_webhook_events"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    webhook_type = Column(String(20), nullable=False)
    webhook_id = Column(String(255), nullable=False)
    retry_record_id = Column(String(36), nullable=True)
    booking_id = Column(String(36), nullable=True)
    processed_at = Column(DateTime, default=datetime.utcnow)
    
    __table_args__ = (
        UniqueConstraint("webhook_type", "webhook_id", name="uq_processed_webhook"),
    )
