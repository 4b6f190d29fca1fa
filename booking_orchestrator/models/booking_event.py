"""
Booking Event Model

Append-only audit trail of everything that happened to a booking:
status transitions, provider events, side-effect outcomes and admin actions.
Rows are inserted through EventLog and never updated.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, String, DateTime, JSON, Index
from ..database import Base
import enum


def _serialize_for_json(obj):
    """Convert non-JSON-serializable types to serializable ones"""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return {k: _serialize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_serialize_for_json(i) for i in obj]
    if isinstance(obj, Decimal):
        return str(obj)
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    if isinstance(obj, enum.Enum):
        return obj.value
    return obj


class EventActor(str, enum.Enum):
    SYSTEM = "system"
    ADMIN = "admin"
    PROVIDER = "provider"
    CUSTOMER = "customer"


class BookingEventType(str, enum.Enum):
    BOOKING_CREATED = "booking_created"
    BOOKING_STATUS_CHANGED = "booking_status_changed"
    SIDE_EFFECT_FAILED = "side_effect_failed"
    SIDE_EFFECT_REPLAYED = "side_effect_replayed"
    
    # Payment
    PAYMENT_ORDER_CREATED = "payment_order_created"
    PAYMENT_AUTHORIZED = "payment_authorized"
    PAYMENT_CAPTURED = "payment_captured"
    PAYMENT_CAPTURE_FAILED = "payment_capture_failed"
    PAYMENT_VOIDED = "payment_voided"
    PAYMENT_REFUNDED = "payment_refunded"
    
    # Contract
    CONTRACT_SENT = "contract_sent"
    CONTRACT_SEND_FAILED = "contract_send_failed"
    CONTRACT_VIEWED = "contract_viewed"
    CONTRACT_SIGNED = "contract_signed"
    CONTRACT_DECLINED = "contract_declined"
    
    # Disputes
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_RESOLVED = "dispute_resolved"
    
    # Notifications
    CONFIRMATION_EMAIL_SENT = "confirmation_email_sent"
    CANCELLATION_EMAIL_SENT = "cancellation_email_sent"
    EMAIL_SEND_FAILED = "email_send_failed"
    
    # Webhook delivery
    WEBHOOK_PROCESSED = "webhook_processed"
    WEBHOOK_RETRY_SCHEDULED = "webhook_retry_scheduled"
    WEBHOOK_DEAD_LETTERED = "webhook_dead_lettered"
    DEAD_LETTER_REQUEUED = "dead_letter_requeued"


class BookingEvent(Base):
    __tablename__ = "booking_events"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), nullable=False)
    event_type = Column(String(50), nullable=False)
    actor_type = Column(String(20), nullable=False, default=EventActor.SYSTEM.value)
    actor_id = Column(String(100), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    
    __table_args__ = (
        Index("ix_booking_events_booking_created", "booking_id", "created_at"),
        Index("ix_booking_events_type", "event_type"),
    )
    
    def __repr__(self):
        return f"<BookingEvent {self.booking_id} {self.event_type}>"
