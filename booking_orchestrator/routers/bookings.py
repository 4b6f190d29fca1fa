from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..exceptions import BookingNotFoundError, DatesUnavailableError
from ..schemas.booking import AvailabilityResponse, BookingCreate, BookingResponse
from ..services.availability_cache import availability_cache
from ..services.availability_ledger import AvailabilityLedger
from ..services.booking_service import BookingService
from ..services.payment_adapter import PayPalClient, get_payment_adapter
from ..utils.rate_limiter import get_rate_limit, limiter

router = APIRouter(prefix="/api", tags=["Bookings"])

MAX_AVAILABILITY_DAYS = 366


def get_booking_service(
    db: Session = Depends(get_db),
    payment_adapter: Optional[PayPalClient] = Depends(get_payment_adapter),
) -> BookingService:
    return BookingService(db, payment_adapter=payment_adapter)


@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_rate_limit("booking_create"))
def create_booking(
    request: Request,
    booking_data: BookingCreate,
    service: BookingService = Depends(get_booking_service),
):
    """Create a booking in pending_payment and hold its dates"""
    try:
        return service.create_booking(
            car_id=booking_data.car_id,
            start_date=booking_data.start_date,
            end_date=booking_data.end_date,
            customer_email=booking_data.customer_email,
            total_price=booking_data.total_price,
            currency=booking_data.currency,
            customer_name=booking_data.customer_name,
            customer_id=booking_data.customer_id,
            notes=booking_data.notes,
        )
    except DatesUnavailableError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": e.message,
                "conflicting_dates": [d.isoformat() for d in e.conflicting_dates],
            },
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
@limiter.limit(get_rate_limit("public"))
def get_booking(
    request: Request,
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
):
    try:
        return service.get_booking(booking_id)
    except BookingNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


@router.get("/cars/{car_id}/availability", response_model=AvailabilityResponse)
@limiter.limit(get_rate_limit("public"))
def get_car_availability(
    request: Request,
    car_id: str,
    start_date: date = Query(...),
    end_date: date = Query(...),
    db: Session = Depends(get_db),
):
    """Per-day availability for an inclusive date range"""
    if end_date < start_date:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end_date must not be before start_date")
    if (end_date - start_date).days + 1 > MAX_AVAILABILITY_DAYS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Range may cover at most {MAX_AVAILABILITY_DAYS} days",
        )

    days = availability_cache.get(car_id, start_date, end_date)
    if days is None:
        days = AvailabilityLedger(db).get_availability(car_id, start_date, end_date)
        availability_cache.set(car_id, start_date, end_date, days)

    return AvailabilityResponse(
        car_id=car_id,
        start_date=start_date,
        end_date=end_date,
        days={d.isoformat(): s for d, s in days.items()},
    )
