from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_management.clock import as_local_naive
from rental_management.db.transaction import unit_of_work
from rental_management.errors import InvalidDuration, InvalidTransition, NotFound
from rental_management.models.rental_models import Booking, DeliveryRecord
from rental_management.services import timeline_service

LOGGER = logging.getLogger("rental_management.deliveries")

DELIVERY = "delivery"
PICKUP = "pickup"
RETURN_PICKUP = "return_pickup"
RETURN_DELIVERY = "return_delivery"
OUTBOUND_TYPES = {DELIVERY, PICKUP}
INBOUND_TYPES = {RETURN_PICKUP, RETURN_DELIVERY}

SCHEDULED = "scheduled"
IN_TRANSIT = "in_transit"
DELIVERED = "delivered"
FAILED = "failed"
CANCELLED = "cancelled"
OPEN_STATUSES = {SCHEDULED, IN_TRANSIT}
DELIVERY_TRANSITIONS = {
    SCHEDULED: {IN_TRANSIT, DELIVERED, FAILED, CANCELLED},
    IN_TRANSIT: {DELIVERED, FAILED},
    FAILED: {SCHEDULED, CANCELLED},
    DELIVERED: set(),
    CANCELLED: set(),
}


def _new_leg(booking: Booking, delivery_type: str, scheduled_at: datetime, now: datetime) -> DeliveryRecord:
    return DeliveryRecord(
        BookingID=booking.BookingID,
        DeliveryType=delivery_type,
        Status=SCHEDULED,
        ScheduledAt=scheduled_at,
        Address=booking.DeliveryAddress,
        ContactPerson=booking.Customer.CustomerName if booking.Customer else None,
        ContactPhone=booking.Customer.Phone if booking.Customer else None,
        CreatedAt=now,
        UpdatedAt=now,
    )


def schedule_for_booking(db: Session, booking: Booking, now: datetime) -> list[DeliveryRecord]:
    """Plan the outbound delivery and the return pickup a confirmed booking asked for."""
    legs = []
    if booking.DeliveryRequired:
        legs.append(_new_leg(booking, DELIVERY, booking.StartAt, now))
    if booking.PickupRequired:
        legs.append(_new_leg(booking, RETURN_PICKUP, booking.EndAt, now))
    for leg in legs:
        db.add(leg)
    if legs:
        LOGGER.info("Scheduled %s delivery leg(s) for booking %s", len(legs), booking.BookingID)
    return legs


def booking_deliveries(db: Session, booking_id: int) -> list[DeliveryRecord]:
    return list(
        db.execute(
            select(DeliveryRecord)
            .where(DeliveryRecord.BookingID == booking_id)
            .order_by(DeliveryRecord.ScheduledAt, DeliveryRecord.DeliveryID)
        ).scalars().all()
    )


def _open_legs(db: Session, booking_id: int, delivery_types: set[str]) -> list[DeliveryRecord]:
    return [
        leg for leg in booking_deliveries(db, booking_id)
        if leg.DeliveryType in delivery_types and leg.Status in OPEN_STATUSES
    ]


def complete_legs(db: Session, booking_id: int, delivery_types: set[str], when: datetime) -> int:
    legs = _open_legs(db, booking_id, delivery_types)
    for leg in legs:
        leg.Status = DELIVERED
        leg.ActualAt = when
        leg.UpdatedAt = when
    return len(legs)


def cancel_open_legs(db: Session, booking_id: int, now: datetime) -> int:
    legs = _open_legs(db, booking_id, OUTBOUND_TYPES | INBOUND_TYPES)
    for leg in legs:
        leg.Status = CANCELLED
        leg.UpdatedAt = now
    return len(legs)


def reschedule_return_legs(db: Session, booking_id: int, new_end: datetime, now: datetime) -> int:
    legs = [leg for leg in _open_legs(db, booking_id, INBOUND_TYPES) if leg.Status == SCHEDULED]
    for leg in legs:
        leg.ScheduledAt = new_end
        leg.UpdatedAt = now
    return len(legs)


def get_delivery(db: Session, delivery_id: int) -> DeliveryRecord:
    delivery = db.execute(
        select(DeliveryRecord)
        .where(DeliveryRecord.DeliveryID == delivery_id)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not delivery:
        raise NotFound(f"Delivery {delivery_id} not found", deliveryID=delivery_id)
    return delivery


def list_deliveries(
    db: Session,
    status: str | None = None,
    delivery_type: str | None = None,
    scheduled_from: datetime | None = None,
    scheduled_to: datetime | None = None,
) -> list[DeliveryRecord]:
    stmt = select(DeliveryRecord).order_by(DeliveryRecord.ScheduledAt, DeliveryRecord.DeliveryID)
    if status:
        stmt = stmt.where(DeliveryRecord.Status == status)
    if delivery_type:
        stmt = stmt.where(DeliveryRecord.DeliveryType == delivery_type)
    if scheduled_from is not None:
        stmt = stmt.where(DeliveryRecord.ScheduledAt >= as_local_naive(scheduled_from))
    if scheduled_to is not None:
        stmt = stmt.where(DeliveryRecord.ScheduledAt < as_local_naive(scheduled_to))
    return list(db.execute(stmt).scalars().all())


def update_status(
    db: Session,
    delivery_id: int,
    status: str,
    scheduled_at: datetime | None = None,
    vehicle_number: str | None = None,
    notes: str | None = None,
    now: datetime | None = None,
    user_id: int | None = None,
) -> DeliveryRecord:
    """Move a delivery leg along by hand: dispatch, hand over, report a failure or reschedule."""
    now = now or datetime.now()
    scheduled_at = as_local_naive(scheduled_at)
    with unit_of_work(db):
        delivery = get_delivery(db, delivery_id)
        current = delivery.Status
        if status not in DELIVERY_TRANSITIONS.get(current, set()):
            raise InvalidTransition(
                f"Invalid delivery transition: {current} -> {status}",
                deliveryID=delivery_id,
                current=current,
                target=status,
            )
        if status == SCHEDULED:
            if scheduled_at is None:
                raise InvalidDuration("A new scheduled time is required to reschedule.", deliveryID=delivery_id)
            delivery.ScheduledAt = scheduled_at
            delivery.ActualAt = None
        if status == DELIVERED:
            delivery.ActualAt = now
        delivery.Status = status
        if vehicle_number is not None:
            delivery.VehicleNumber = vehicle_number
        if notes is not None:
            delivery.Notes = notes
        delivery.UpdatedAt = now
        event = timeline_service.record_event(
            db,
            delivery.Booking,
            f"delivery_{status}",
            f"{delivery.DeliveryType.replace('_', ' ').capitalize()} {current} -> {status}",
            now,
        )
        timeline_service.log_audit(db, "DeliveryRecord", delivery_id, "UpdateStatus", f"{current} -> {status}", user_id=user_id)
    timeline_service.dispatch([event])
    LOGGER.info("Delivery %s of booking %s moved %s -> %s", delivery_id, delivery.BookingID, current, status)
    return delivery


def serialize_delivery(delivery: DeliveryRecord) -> dict:
    return {
        "deliveryID": delivery.DeliveryID,
        "bookingID": delivery.BookingID,
        "deliveryType": delivery.DeliveryType,
        "status": delivery.Status,
        "scheduledAt": delivery.ScheduledAt,
        "actualAt": delivery.ActualAt,
        "address": delivery.Address,
        "contactPerson": delivery.ContactPerson,
        "contactPhone": delivery.ContactPhone,
        "vehicleNumber": delivery.VehicleNumber,
        "notes": delivery.Notes,
    }
