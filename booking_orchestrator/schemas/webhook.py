from pydantic import BaseModel
from typing import Optional, Dict, Any, List
from datetime import datetime


class WebhookAck(BaseModel):
    """Returned to providers once the event is durably queued"""
    status: str = "ok"
    record_id: Optional[str] = None
    duplicate: bool = False


class RetryBatchResult(BaseModel):
    processed: int
    succeeded: int
    retrying: int
    failed: int
    errors: int = 0


class ReconcileResult(BaseModel):
    checked: int
    replayed: int
    superseded: int
    failed: int


class WebhookRetryRecordResponse(BaseModel):
    id: str
    webhook_type: str
    webhook_id: str
    event_type: Optional[str] = None
    status: str
    attempt_count: int
    max_attempts: int
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    booking_id: Optional[str] = None
    requeued_from_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class DeadLetterItemResponse(BaseModel):
    id: str
    retry_record_id: str
    webhook_type: str
    webhook_id: str
    event_type: Optional[str] = None
    payload: Any
    attempt_count: int
    final_error: Optional[str] = None
    booking_id: Optional[str] = None
    failed_permanently_at: datetime
    status: str
    requeued_at: Optional[datetime] = None
    requeued_by: Optional[str] = None
    requeued_record_id: Optional[str] = None

    class Config:
        from_attributes = True


class DeadLetterList(BaseModel):
    items: List[DeadLetterItemResponse]
    total: int


class RetryMetrics(BaseModel):
    by_type: Dict[str, Dict[str, Dict[str, Any]]]
    summary: Dict[str, int]
