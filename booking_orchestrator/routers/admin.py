"""
Admin control surface.

Retry batches, dead-letter requeue, manual status transitions, payment
capture and void, and the reconciliation sweep. Every endpoint requires an
admin JWT or the internal API key (cron jobs).
"""

import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..exceptions import (
    AdapterError,
    AlreadyRequeuedError,
    ConcurrentModificationError,
    InvalidTransitionError,
    NonRetryableError,
    NotFoundError,
)
from ..models.booking_event import EventActor
from ..schemas.booking import (
    AllowedTransitionsResponse,
    BookingEventResponse,
    CapturePaymentResponse,
    BookingStatusUpdate,
    MaintenanceBlock,
    TransitionResponse,
    VoidPaymentResponse,
)
from ..schemas.webhook import (
    DeadLetterList,
    ReconcileResult,
    RetryBatchResult,
    RetryMetrics,
    WebhookRetryRecordResponse,
)
from ..services.availability_cache import availability_cache
from ..services.availability_ledger import AvailabilityLedger
from ..services.booking_service import BookingService
from ..services.booking_state_machine import (
    BookingStateMachine,
    TERMINAL_STATUSES,
    get_allowed_transitions,
)
from ..services.contract_adapter import get_contract_adapter
from ..services.dead_letter import DeadLetterStore
from ..services.event_log import EventLog
from ..services.notification_service import dispatch_in_new_session
from ..services.payment_adapter import get_payment_adapter
from ..services.webhook_retry_engine import WebhookRetryEngine, run_retry_batch
from ..utils.dependencies import AdminIdentity, require_admin
from ..utils.rate_limiter import get_rate_limit, limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


def get_state_machine(db: Session = Depends(get_db)) -> BookingStateMachine:
    return BookingStateMachine(db, contract_adapter=get_contract_adapter())


# ==================
# Webhook retries
# ==================

@router.post("/webhooks/retries/process", response_model=RetryBatchResult)
@limiter.limit(get_rate_limit("admin"))
def process_retries(
    request: Request,
    limit: Optional[int] = Query(None, ge=1, le=100),
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(require_admin),
):
    """Run one bounded retry batch (called by cron or an operator)"""
    logger.info(f"Retry batch triggered by {admin.actor_id} (limit={limit})")
    return run_retry_batch(db, limit)


@router.get("/webhooks/retries/metrics", response_model=RetryMetrics)
def retry_metrics(
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(require_admin),
):
    return WebhookRetryEngine(db).get_metrics()


@router.get("/webhooks/dead-letter", response_model=DeadLetterList)
def list_dead_letters(
    include_requeued: bool = False,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(require_admin),
):
    items = DeadLetterStore(db).list_items(include_requeued=include_requeued, limit=limit)
    return DeadLetterList(items=items, total=len(items))


@router.post("/webhooks/dead-letter/{item_id}/requeue", response_model=WebhookRetryRecordResponse)
def requeue_dead_letter(
    item_id: str,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(require_admin),
):
    """Put a dead-lettered event back in the retry queue as a new record"""
    try:
        return DeadLetterStore(db).requeue(item_id, admin.actor_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except AlreadyRequeuedError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": e.message, "requeued_record_id": e.requeued_record_id},
        )


# ==================
# Bookings
# ==================

@router.patch("/bookings/{booking_id}/status", response_model=TransitionResponse)
def update_booking_status(
    booking_id: str,
    update: BookingStatusUpdate,
    background_tasks: BackgroundTasks,
    machine: BookingStateMachine = Depends(get_state_machine),
    admin: AdminIdentity = Depends(require_admin),
):
    """
    Force a status transition. The same transition table applies as for
    provider-driven changes; rejected requests list the allowed statuses.
    """
    try:
        result = machine.request_transition(
            booking_id,
            update.status.value,
            reason=update.reason,
            actor_id=admin.actor_id,
            actor_type=EventActor.SYSTEM if admin.is_system else EventActor.ADMIN,
            expected_status=update.expected_status.value if update.expected_status else None,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except InvalidTransitionError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "message": e.message,
                "current_status": e.current,
                "requested_status": e.target,
                "allowed_transitions": e.allowed,
            },
        )
    except ConcurrentModificationError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)

    if result.notifications:
        background_tasks.add_task(dispatch_in_new_session, booking_id, result.notifications)

    return TransitionResponse(
        booking_id=result.booking_id,
        from_status=result.from_status,
        to_status=result.to_status,
        side_effects=result.side_effects,
        side_effects_ok=result.side_effects_ok,
        notifications=result.notifications,
    )


@router.get("/bookings/{booking_id}/transitions", response_model=AllowedTransitionsResponse)
def get_booking_transitions(
    booking_id: str,
    machine: BookingStateMachine = Depends(get_state_machine),
    admin: AdminIdentity = Depends(require_admin),
):
    try:
        booking = machine.get_booking(booking_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)

    return AllowedTransitionsResponse(
        booking_id=booking.id,
        current_status=booking.overall_status,
        allowed_transitions=get_allowed_transitions(booking.overall_status),
        is_terminal=booking.overall_status in TERMINAL_STATUSES,
    )


@router.get("/bookings/{booking_id}/events", response_model=List[BookingEventResponse])
def get_booking_events(
    booking_id: str,
    event_type: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(require_admin),
):
    return EventLog(db).list_for_booking(booking_id, event_type=event_type, limit=limit)


@router.post("/bookings/{booking_id}/capture-payment", response_model=CapturePaymentResponse)
def capture_payment(
    booking_id: str,
    db: Session = Depends(get_db),
    payment_adapter=Depends(get_payment_adapter),
    admin: AdminIdentity = Depends(require_admin),
):
    service = BookingService(db, payment_adapter=payment_adapter)
    try:
        outcome = service.capture_payment(booking_id, actor_id=admin.actor_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except NonRetryableError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except AdapterError as e:
        code = status.HTTP_503_SERVICE_UNAVAILABLE if e.retryable else status.HTTP_502_BAD_GATEWAY
        raise HTTPException(status_code=code, detail=e.message)
    return CapturePaymentResponse(booking_id=booking_id, **outcome)


@router.post("/bookings/{booking_id}/void-payment", response_model=VoidPaymentResponse)
def void_payment(
    booking_id: str,
    db: Session = Depends(get_db),
    payment_adapter=Depends(get_payment_adapter),
    admin: AdminIdentity = Depends(require_admin),
):
    """Release the PayPal authorization of a booking that will not be captured"""
    service = BookingService(db, payment_adapter=payment_adapter)
    try:
        outcome = service.void_payment(booking_id, actor_id=admin.actor_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    except NonRetryableError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except AdapterError as e:
        code = status.HTTP_503_SERVICE_UNAVAILABLE if e.retryable else status.HTTP_502_BAD_GATEWAY
        raise HTTPException(status_code=code, detail=e.message)
    return VoidPaymentResponse(booking_id=booking_id, **outcome)


@router.post("/bookings/reconcile", response_model=ReconcileResult)
def reconcile_bookings(
    background_tasks: BackgroundTasks,
    limit: int = Query(50, ge=1, le=500),
    machine: BookingStateMachine = Depends(get_state_machine),
    admin: AdminIdentity = Depends(require_admin),
):
    """Replay side effects of transitions that never completed them"""
    machine.notification_dispatcher = lambda booking_id, templates: background_tasks.add_task(
        dispatch_in_new_session, booking_id, templates
    )
    return machine.reconcile(limit=limit)


# ==================
# Availability
# ==================

@router.post("/cars/{car_id}/maintenance")
def block_maintenance(
    car_id: str,
    block: MaintenanceBlock,
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(require_admin),
):
    """Block available days for maintenance; held or booked days are reported back"""
    result = AvailabilityLedger(db).block_for_maintenance(car_id, block.start_date, block.end_date)
    db.commit()
    availability_cache.invalidate_car(car_id)
    logger.info(f"Maintenance block on car {car_id} by {admin.actor_id}: {len(result.applied)} day(s)")
    return result.as_dict()


@router.delete("/cars/{car_id}/maintenance")
def clear_maintenance(
    car_id: str,
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: Session = Depends(get_db),
    admin: AdminIdentity = Depends(require_admin),
):
    if end_date < start_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end_date must not be before start_date")
    cleared = AvailabilityLedger(db).clear_maintenance(car_id, start_date, end_date)
    db.commit()
    availability_cache.invalidate_car(car_id)
    return {"car_id": car_id, "cleared": cleared}
