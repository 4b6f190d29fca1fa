"""
Event Log Service

Append-only writer/reader for BookingEvent. Appends join the caller's
transaction; the caller decides when to commit.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models.booking_event import BookingEvent, BookingEventType, EventActor, _serialize_for_json

logger = logging.getLogger(__name__)


class EventLog:
    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        booking_id: str,
        event_type,
        actor_type=EventActor.SYSTEM,
        actor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> BookingEvent:
        """Add one event to the current transaction."""
        if isinstance(event_type, BookingEventType):
            event_type = event_type.value
        if isinstance(actor_type, EventActor):
            actor_type = actor_type.value

        event = BookingEvent(
            booking_id=booking_id,
            event_type=event_type,
            actor_type=actor_type,
            actor_id=actor_id,
            details=_serialize_for_json(details or {}),
        )
        self.db.add(event)
        logger.debug(f"Event {event_type} appended for booking {booking_id}")
        return event

    def record(self, booking_id: str, event_type, **kwargs) -> BookingEvent:
        """Append and commit on its own, for outcomes recorded after the main write."""
        event = self.append(booking_id, event_type, **kwargs)
        self.db.commit()
        return event

    def list_for_booking(
        self,
        booking_id: str,
        event_type: Optional[str] = None,
        limit: int = 200,
    ) -> List[BookingEvent]:
        query = self.db.query(BookingEvent).filter(BookingEvent.booking_id == booking_id)
        if event_type:
            query = query.filter(BookingEvent.event_type == event_type)
        return query.order_by(BookingEvent.created_at, BookingEvent.id).limit(limit).all()
