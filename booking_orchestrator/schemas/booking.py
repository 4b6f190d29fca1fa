from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, date
from decimal import Decimal
import re

from ..models.booking import BookingStatus


EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class BookingCreate(BaseModel):
    car_id: str = Field(..., min_length=1, max_length=36)
    start_date: date
    end_date: date
    customer_email: str = Field(..., max_length=255)
    customer_name: Optional[str] = Field(None, max_length=200)
    customer_id: Optional[str] = Field(None, max_length=36)
    total_price: Decimal = Field(..., gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator('customer_name', 'notes', mode='before')
    @classmethod
    def sanitize_text_fields(cls, v):
        """Strip script tags and inline event handlers"""
        if isinstance(v, str):
            v = re.sub(r'<script[^>]*>.*?</script>', '', v, flags=re.IGNORECASE | re.DOTALL)
            v = re.sub(r'on\w+\s*=', '', v, flags=re.IGNORECASE)
        return v

    @field_validator('customer_email')
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip()
        if not EMAIL_PATTERN.match(v):
            raise ValueError('customer_email is not a valid email address')
        return v.lower()

    @model_validator(mode='after')
    def validate_dates(self):
        """end_date must be after start_date"""
        if self.end_date <= self.start_date:
            raise ValueError('end_date must be after start_date')
        return self


class BookingResponse(BaseModel):
    id: str
    car_id: str
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    start_date: date
    end_date: date
    overall_status: str
    payment_status: str
    contract_status: str
    total_price: Decimal
    currency: str
    deposit_amount: Optional[Decimal] = None
    payment_order_id: Optional[str] = None
    contract_submission_id: Optional[str] = None
    contract_signed_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class BookingStatusUpdate(BaseModel):
    """Manual admin transition; validated against the transition table"""
    status: BookingStatus
    reason: str = Field(..., min_length=1, max_length=1000)
    expected_status: Optional[BookingStatus] = None


class TransitionResponse(BaseModel):
    booking_id: str
    from_status: str
    to_status: str
    side_effects: Dict[str, Any] = {}
    side_effects_ok: bool = True
    notifications: List[str] = []


class AllowedTransitionsResponse(BaseModel):
    booking_id: str
    current_status: str
    allowed_transitions: List[str]
    is_terminal: bool


class BookingEventResponse(BaseModel):
    id: str
    booking_id: str
    event_type: str
    actor_type: str
    actor_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AvailabilityResponse(BaseModel):
    car_id: str
    start_date: date
    end_date: date
    days: Dict[str, str]


class CapturePaymentResponse(BaseModel):
    booking_id: str
    captured: bool
    capture_id: Optional[str] = None
    status: Optional[str] = None
    activated: bool = False
    already_captured: bool = False


class VoidPaymentResponse(BaseModel):
    booking_id: str
    voided: bool
    status: Optional[str] = None
    already_voided: bool = False


class MaintenanceBlock(BaseModel):
    start_date: date
    end_date: date

    @model_validator(mode='after')
    def validate_dates(self):
        if self.end_date < self.start_date:
            raise ValueError('end_date must not be before start_date')
        return self
