import uuid
from datetime import datetime
from sqlalchemy import Column, String, Date, Numeric, Text, DateTime, Index, UniqueConstraint
from ..database import Base
import enum


class BookingStatus(str, enum.Enum):
    PENDING_CUSTOMER_ACTION = "pending_customer_action"
    PENDING_PAYMENT = "pending_payment"
    PENDING_CONTRACT = "pending_contract"
    CONTRACT_PENDING_SIGNATURE = "contract_pending_signature"
    UPCOMING = "upcoming"
    ACTIVE = "active"
    POST_RENTAL = "post_rental"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    DISPUTED = "disputed"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    VOIDED = "voided"
    FAILED = "failed"
    REFUNDED = "refunded"


class ContractStatus(str, enum.Enum):
    NOT_SENT = "not_sent"
    SENT = "sent"
    VIEWED = "viewed"
    SIGNED = "signed"
    DECLINED = "declined"
    VOIDED = "voided"


class DisputeStatus(str, enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class Booking(Base):
    """
    A reservation of a car for an inclusive date range.
    
    overall_status is only ever written by BookingStateMachine (guarded write);
    payment_status / contract_status move with provider events. Rows are never
    deleted, terminal bookings stay for audit.
    """
    __tablename__ = "bookings"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    car_id = Column(String(36), nullable=False, index=True)
    customer_id = Column(String(36), nullable=True, index=True)
    customer_name = Column(String(200), nullable=True)
    customer_email = Column(String(255), nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    
    # Status triple
    overall_status = Column(String(40), nullable=False, default=BookingStatus.PENDING_PAYMENT.value)
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    contract_status = Column(String(20), nullable=False, default=ContractStatus.NOT_SENT.value)
    
    # Money - frozen once payment is authorized
    total_price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    deposit_amount = Column(Numeric(10, 2), nullable=True)
    
    # Provider correlation
    payment_order_id = Column(String(100), nullable=True, index=True)
    payment_authorization_id = Column(String(100), nullable=True)
    payment_capture_id = Column(String(100), nullable=True)
    contract_submission_id = Column(String(100), nullable=True)
    contract_signed_at = Column(DateTime, nullable=True)
    
    notes = Column(Text, nullable=True)
    
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    
    __table_args__ = (
        Index("ix_booking_car_dates", "car_id", "start_date", "end_date"),
        Index("ix_booking_overall_status", "overall_status"),
    )
    
    @property
    def is_payment_locked(self) -> bool:
        """Monetary fields are immutable once payment is authorized"""
        return self.payment_status != PaymentStatus.PENDING.value
    
    def __repr__(self):
        return f"<Booking {self.id} {self.car_id} {self.start_date}..{self.end_date} {self.overall_status}>"


class Dispute(Base):
    """One open dispute per booking, created by the `disputed` side effect."""
    __tablename__ = "disputes"
    
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), nullable=False)
    provider_dispute_id = Column(String(100), nullable=True)
    reason = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=DisputeStatus.OPEN.value)
    opened_at = Column(DateTime, default=datetime.utcnow)
    resolved_at = Column(DateTime, nullable=True)
    
    __table_args__ = (
        UniqueConstraint("booking_id", name="uq_dispute_booking"),
    )
    
    def __repr__(self):
        return f"<Dispute {self.booking_id} {self.status}>"
