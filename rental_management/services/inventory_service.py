from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_management.clock import as_local_naive
from rental_management.db.transaction import unit_of_work
from rental_management.errors import InsufficientInventory, InvalidDuration, InvalidQuantity, NotFound
from rental_management.models.rental_models import InventoryReservation, Product

LOGGER = logging.getLogger("rental_management.inventory")

RESERVATION_ACTIVE = "active"
RESERVATION_RELEASED = "released"

_PRODUCT_LOCKS_GUARD = threading.Lock()
_PRODUCT_LOCKS: dict[int, threading.RLock] = {}


def _product_lock(product_id: int) -> threading.RLock:
    with _PRODUCT_LOCKS_GUARD:
        lock = _PRODUCT_LOCKS.get(product_id)
        if lock is None:
            lock = threading.RLock()
            _PRODUCT_LOCKS[product_id] = lock
        return lock


@contextmanager
def product_locks(product_ids: Iterable[int]):
    """Serialize writers per product.

    Locks are taken in ascending id order so two multi-item bookings can never
    wait on each other. They are re-entrant: a caller holding the locks may
    call ``reserve``/``release`` with ``commit=False`` and commit once.
    """
    ordered = sorted({int(pid) for pid in product_ids})
    acquired: list[threading.RLock] = []
    try:
        for product_id in ordered:
            lock = _product_lock(product_id)
            lock.acquire()
            acquired.append(lock)
        yield ordered
    finally:
        for lock in reversed(acquired):
            lock.release()


def validate_window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    start, end = as_local_naive(start), as_local_naive(end)
    if start is None or end is None or end <= start:
        raise InvalidDuration("End of the rental window must be after its start.", start=str(start), end=str(end))
    return start, end


def _validate_quantity(quantity: int) -> None:
    if quantity is None or int(quantity) <= 0:
        raise InvalidQuantity("Quantity must be a positive integer.", quantity=quantity)


def get_product(db: Session, product_id: int, for_update: bool = False) -> Product:
    stmt = select(Product).where(Product.ProductID == product_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    product = db.execute(stmt).scalars().first()
    if not product:
        raise NotFound(f"Product {product_id} not found", productID=product_id)
    return product


def rentable_capacity(product: Product) -> int:
    return int(product.TotalUnits or 0) - int(product.MaintenanceUnits or 0)


def peak_load(
    reservations: Iterable[InventoryReservation],
    start: datetime | None = None,
    end: datetime | None = None,
) -> int:
    """Highest number of units held at the same instant, clipped to [start, end)."""
    events: list[tuple[datetime, int]] = []
    for reservation in reservations:
        s = reservation.StartAt if start is None else max(reservation.StartAt, start)
        e = reservation.EndAt if end is None else min(reservation.EndAt, end)
        if s >= e:
            continue
        quantity = int(reservation.Quantity or 0)
        events.append((s, quantity))
        events.append((e, -quantity))

    # releases sort before claims at the same instant: intervals are half-open
    events.sort(key=lambda event: (event[0], event[1]))
    load = 0
    peak = 0
    for _, delta in events:
        load += delta
        if load > peak:
            peak = load
    return peak


def _overlapping_reservations(
    db: Session,
    product_id: int,
    start: datetime | None = None,
    end: datetime | None = None,
    exclude_booking_id: int | None = None,
) -> list[InventoryReservation]:
    stmt = (
        select(InventoryReservation)
        .where(InventoryReservation.ProductID == product_id)
        .where(InventoryReservation.Status == RESERVATION_ACTIVE)
    )
    if start is not None and end is not None:
        stmt = stmt.where(InventoryReservation.StartAt < end).where(InventoryReservation.EndAt > start)
    if exclude_booking_id:
        stmt = stmt.where(
            (InventoryReservation.BookingID.is_(None)) | (InventoryReservation.BookingID != exclude_booking_id)
        )
    stmt = stmt.order_by(InventoryReservation.StartAt, InventoryReservation.ReservationID)
    return list(db.execute(stmt).scalars().all())


def free_units(
    db: Session,
    product: Product,
    start: datetime,
    end: datetime,
    exclude_booking_id: int | None = None,
) -> int:
    overlapping = _overlapping_reservations(db, product.ProductID, start, end, exclude_booking_id)
    return max(0, rentable_capacity(product) - peak_load(overlapping, start, end))


def check_availability(
    db: Session,
    product_id: int,
    start: datetime,
    end: datetime,
    quantity: int,
    exclude_booking_id: int | None = None,
) -> bool:
    start, end = validate_window(start, end)
    _validate_quantity(quantity)
    product = get_product(db, product_id)
    if not product.IsActive:
        return False
    return int(quantity) <= free_units(db, product, start, end, exclude_booking_id)


def availability_report(db: Session, product_id: int, start: datetime, end: datetime) -> dict:
    start, end = validate_window(start, end)
    product = get_product(db, product_id)
    overlapping = _overlapping_reservations(db, product_id, start, end)
    capacity = rentable_capacity(product)
    load = peak_load(overlapping, start, end)
    return {
        "productID": product.ProductID,
        "startAt": start,
        "endAt": end,
        "totalUnits": product.TotalUnits,
        "maintenanceUnits": product.MaintenanceUnits,
        "capacity": capacity,
        "peakReserved": load,
        "freeUnits": max(0, capacity - load) if product.IsActive else 0,
        "overlappingReservations": [serialize_reservation(r) for r in overlapping],
    }


def refresh_counters(db: Session, product: Product) -> None:
    """Recompute reserved/available from the active reservations of ``product``."""
    db.flush()
    reserved = peak_load(_overlapping_reservations(db, product.ProductID))
    maintenance = int(product.MaintenanceUnits or 0)
    product.ReservedUnits = reserved
    product.AvailableUnits = int(product.TotalUnits or 0) - maintenance - reserved
    product.UpdatedDate = datetime.now()


def reserve(
    db: Session,
    product_id: int,
    start: datetime,
    end: datetime,
    quantity: int,
    booking_id: int | None = None,
    booking_item_id: int | None = None,
    exclude_booking_id: int | None = None,
    commit: bool = True,
) -> InventoryReservation:
    start, end = validate_window(start, end)
    _validate_quantity(quantity)
    with product_locks([product_id]):
        with unit_of_work(db, commit=commit):
            product = get_product(db, product_id, for_update=True)
            available = free_units(db, product, start, end, exclude_booking_id) if product.IsActive else 0
            if int(quantity) > available:
                LOGGER.warning(
                    "Reservation rejected for product %s: requested %s, free %s in [%s, %s)",
                    product_id,
                    quantity,
                    available,
                    start,
                    end,
                )
                raise InsufficientInventory(
                    f"Only {available} unit(s) of product {product_id} free for the requested window.",
                    productID=product_id,
                    requested=int(quantity),
                    available=available,
                )
            reservation = InventoryReservation(
                ProductID=product_id,
                BookingID=booking_id,
                BookingItemID=booking_item_id,
                Quantity=int(quantity),
                StartAt=start,
                EndAt=end,
                Status=RESERVATION_ACTIVE,
                CreatedAt=datetime.now(),
            )
            db.add(reservation)
            refresh_counters(db, product)
    LOGGER.info(
        "Reserved %s unit(s) of product %s for [%s, %s) booking=%s",
        quantity,
        product_id,
        start,
        end,
        booking_id,
    )
    return reservation


def get_reservation(db: Session, reservation_id: int) -> InventoryReservation:
    reservation = db.execute(
        select(InventoryReservation)
        .where(InventoryReservation.ReservationID == reservation_id)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not reservation:
        raise NotFound(f"Reservation {reservation_id} not found", reservationID=reservation_id)
    return reservation


def release(db: Session, reservation_id: int, commit: bool = True) -> InventoryReservation:
    reservation = get_reservation(db, reservation_id)
    with product_locks([reservation.ProductID]):
        with unit_of_work(db, commit=commit):
            reservation = get_reservation(db, reservation_id)
            if reservation.Status == RESERVATION_RELEASED:
                return reservation
            product = get_product(db, reservation.ProductID, for_update=True)
            reservation.Status = RESERVATION_RELEASED
            reservation.ReleasedAt = datetime.now()
            refresh_counters(db, product)
    LOGGER.info("Released reservation %s (%s unit(s) of product %s)", reservation_id, reservation.Quantity, reservation.ProductID)
    return reservation


def release_for_booking(db: Session, booking_id: int, commit: bool = True) -> int:
    reservations = db.execute(
        select(InventoryReservation)
        .where(InventoryReservation.BookingID == booking_id)
        .where(InventoryReservation.Status == RESERVATION_ACTIVE)
    ).scalars().all()
    with product_locks(r.ProductID for r in reservations):
        with unit_of_work(db, commit=commit):
            for reservation in reservations:
                release(db, reservation.ReservationID, commit=False)
    return len(reservations)


def move_to_maintenance(db: Session, product_id: int, quantity: int, commit: bool = True) -> Product:
    _validate_quantity(quantity)
    with product_locks([product_id]):
        with unit_of_work(db, commit=commit):
            product = get_product(db, product_id, for_update=True)
            refresh_counters(db, product)
            if int(quantity) > int(product.AvailableUnits or 0):
                raise InvalidQuantity(
                    f"Only {product.AvailableUnits} unit(s) of product {product_id} can move to maintenance.",
                    productID=product_id,
                    requested=int(quantity),
                    available=product.AvailableUnits,
                )
            product.MaintenanceUnits = int(product.MaintenanceUnits or 0) + int(quantity)
            refresh_counters(db, product)
    LOGGER.info("Moved %s unit(s) of product %s to maintenance", quantity, product_id)
    return product


def return_from_maintenance(db: Session, product_id: int, quantity: int, commit: bool = True) -> Product:
    _validate_quantity(quantity)
    with product_locks([product_id]):
        with unit_of_work(db, commit=commit):
            product = get_product(db, product_id, for_update=True)
            if int(quantity) > int(product.MaintenanceUnits or 0):
                raise InvalidQuantity(
                    f"Only {product.MaintenanceUnits} unit(s) of product {product_id} are in maintenance.",
                    productID=product_id,
                    requested=int(quantity),
                    maintenance=product.MaintenanceUnits,
                )
            product.MaintenanceUnits = int(product.MaintenanceUnits) - int(quantity)
            refresh_counters(db, product)
    LOGGER.info("Returned %s unit(s) of product %s from maintenance", quantity, product_id)
    return product


def adjust_total_units(db: Session, product_id: int, total_units: int, commit: bool = True) -> Product:
    if total_units is None or int(total_units) < 0:
        raise InvalidQuantity("Total units must not be negative.", totalUnits=total_units)
    with product_locks([product_id]):
        with unit_of_work(db, commit=commit):
            product = get_product(db, product_id, for_update=True)
            refresh_counters(db, product)
            floor = int(product.ReservedUnits or 0) + int(product.MaintenanceUnits or 0)
            if int(total_units) < floor:
                raise InvalidQuantity(
                    f"Product {product_id} has {floor} unit(s) reserved or in maintenance.",
                    productID=product_id,
                    requested=int(total_units),
                    minimum=floor,
                )
            product.TotalUnits = int(total_units)
            refresh_counters(db, product)
    return product


def recompute_counters(db: Session, product_id: int, commit: bool = True) -> Product:
    with product_locks([product_id]):
        with unit_of_work(db, commit=commit):
            product = get_product(db, product_id, for_update=True)
            refresh_counters(db, product)
    return product


def counters_consistent(product: Product) -> bool:
    available = int(product.AvailableUnits or 0)
    reserved = int(product.ReservedUnits or 0)
    maintenance = int(product.MaintenanceUnits or 0)
    if min(available, reserved, maintenance) < 0:
        return False
    return available + reserved + maintenance == int(product.TotalUnits or 0)


def serialize_reservation(reservation: InventoryReservation) -> dict:
    return {
        "reservationID": reservation.ReservationID,
        "productID": reservation.ProductID,
        "bookingID": reservation.BookingID,
        "bookingItemID": reservation.BookingItemID,
        "quantity": reservation.Quantity,
        "startAt": reservation.StartAt,
        "endAt": reservation.EndAt,
        "status": reservation.Status,
        "releasedAt": reservation.ReleasedAt,
    }
