from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_management.errors import NotFound
from rental_management.models.rental_models import AuditLog, Booking, BookingEvent

LOGGER = logging.getLogger("rental_management.timeline")

_SUBSCRIBERS_LOCK = threading.Lock()
_SUBSCRIBERS: list[Callable[[dict], None]] = []


def subscribe(callback: Callable[[dict], None]) -> None:
    with _SUBSCRIBERS_LOCK:
        if callback not in _SUBSCRIBERS:
            _SUBSCRIBERS.append(callback)


def unsubscribe(callback: Callable[[dict], None]) -> None:
    with _SUBSCRIBERS_LOCK:
        if callback in _SUBSCRIBERS:
            _SUBSCRIBERS.remove(callback)


def record_event(
    db: Session,
    booking: Booking,
    event_type: str,
    description: str,
    when: datetime | None = None,
) -> BookingEvent:
    event = BookingEvent(
        BookingID=booking.BookingID,
        EventType=event_type,
        Description=description,
        CreatedAt=when or datetime.now(),
    )
    db.add(event)
    return event


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def dispatch(events: list[BookingEvent]) -> None:
    """Hand committed events to in-process subscribers; failures are only logged."""
    with _SUBSCRIBERS_LOCK:
        subscribers = list(_SUBSCRIBERS)
    if not subscribers:
        return
    for event in events:
        payload = serialize_event(event)
        for callback in subscribers:
            try:
                callback(payload)
            except Exception:
                LOGGER.exception("Timeline subscriber %r failed for event %s", callback, payload.get("eventID"))


def booking_timeline(db: Session, booking_id: int) -> list[BookingEvent]:
    return list(
        db.execute(
            select(BookingEvent)
            .where(BookingEvent.BookingID == booking_id)
            .order_by(BookingEvent.EventID)
        ).scalars().all()
    )


def last_event_id(db: Session, booking_id: int) -> int:
    latest = db.execute(
        select(BookingEvent.EventID)
        .where(BookingEvent.BookingID == booking_id)
        .order_by(BookingEvent.EventID.desc())
    ).scalars().first()
    return int(latest or 0)


def events_since(db: Session, booking_id: int, after_event_id: int) -> list[BookingEvent]:
    return list(
        db.execute(
            select(BookingEvent)
            .where(BookingEvent.BookingID == booking_id)
            .where(BookingEvent.EventID > after_event_id)
            .order_by(BookingEvent.EventID)
        ).scalars().all()
    )


def pending_events(db: Session, limit: int = 100) -> list[BookingEvent]:
    return list(
        db.execute(
            select(BookingEvent)
            .where(BookingEvent.DispatchedAt.is_(None))
            .order_by(BookingEvent.EventID)
            .limit(max(1, limit))
        ).scalars().all()
    )


def acknowledge(db: Session, event_id: int, when: datetime | None = None) -> BookingEvent:
    event = db.get(BookingEvent, event_id)
    if not event:
        raise NotFound(f"Event {event_id} not found", eventID=event_id)
    if event.DispatchedAt is None:
        event.DispatchedAt = when or datetime.now()
    return event


def serialize_event(event: BookingEvent) -> dict:
    return {
        "eventID": event.EventID,
        "bookingId": event.BookingID,
        "type": event.EventType,
        "timestamp": event.CreatedAt,
        "description": event.Description,
        "dispatchedAt": event.DispatchedAt,
    }
