"""
Rate State Model

Shared send counter for outbound notifications. One row per
(sender, window_start) minute bucket, incremented with a single UPDATE so
every API and worker process sees the same count.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, UniqueConstraint
from ..database import Base


class NotificationRateCounter(Base):
    __tablename__ = "notification_rate_counters"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    sender = Column(String(255), nullable=False)
    window_start = Column(DateTime, nullable=False)
    count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("sender", "window_start", name="uq_rate_counter_sender_window"),
    )

    @staticmethod
    def window_for(moment: datetime) -> datetime:
        """Start of the one-minute bucket containing `moment`"""
        return moment.replace(second=0, microsecond=0)

    def __repr__(self):
        return f"<NotificationRateCounter {self.sender} {self.window_start} count={self.count}>"
