import uuid
from datetime import datetime
from sqlalchemy import Column, String, Date, DateTime, UniqueConstraint, Index
from ..database import Base
import enum


class AvailabilityStatus(str, enum.Enum):
    AVAILABLE = "available"
    PENDING_CONFIRMATION = "pending_confirmation"
    BOOKED = "booked"
    MAINTENANCE = "maintenance"


class AvailabilityDay(Base):
    """
    Per-car, per-day occupancy.
    
    A missing row means the day is available. booking_id identifies the
    booking holding a pending_confirmation/booked day.
    """
    __tablename__ = "availability_days"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    car_id = Column(String(36), nullable=False)
    date = Column(Date, nullable=False)
    status = Column(String(30), nullable=False, default=AvailabilityStatus.AVAILABLE.value)
    booking_id = Column(String(36), nullable=True)
    
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    
    __table_args__ = (
        UniqueConstraint("car_id", "date", name="uq_availability_car_date"),
        Index("ix_availability_booking", "booking_id"),
    )
    
    def __repr__(self):
        return f"<AvailabilityDay {self.car_id} {self.date} {self.status}>"
