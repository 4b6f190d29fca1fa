"""
Transition Intent Model

Saga record written in the same transaction as a guarded status write.
It stays `pending`/`failed` until every side effect of the transition has
been applied; the reconciliation sweep replays whatever is left.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Index, Integer
from ..database import Base
import enum


class IntentStatus(str, enum.Enum):
    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"


class TransitionIntent(Base):
    __tablename__ = "transition_intents"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), nullable=False)
    from_status = Column(String(40), nullable=False)
    to_status = Column(String(40), nullable=False)
    status = Column(String(20), nullable=False, default=IntentStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    applied_at = Column(DateTime, nullable=True)
    
    __table_args__ = (
        Index("ix_transition_intents_status", "status", "created_at"),
        Index("ix_transition_intents_booking", "booking_id"),
    )
    
    def __repr__(self):
        return f"<TransitionIntent {self.booking_id} {self.from_status}->{self.to_status} {self.status}>"
