from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from rental_management.clock import as_local_naive
from rental_management.config import RentalSettings
from rental_management.db.transaction import unit_of_work
from rental_management.errors import (
    ConcurrencyConflict,
    InsufficientInventory,
    InvalidDuration,
    InvalidQuantity,
    InvalidTransition,
    NotFound,
)
from rental_management.models.rental_models import Booking, BookingItem, PaymentRecord
from rental_management.services import delivery_service, inventory_service, payment_service, timeline_service
from rental_management.services.pricing_service import (
    PricingContext,
    PricingItem,
    PricingResult,
    money,
    price_items,
    resolve_pricelist,
)
from rental_management.services.product_service import get_customer

LOGGER = logging.getLogger("rental_management.bookings")

DRAFT = "draft"
CONFIRMED = "confirmed"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
CANCELLED = "cancelled"
OVERDUE = "overdue"

BOOKING_STATES = {DRAFT, CONFIRMED, IN_PROGRESS, COMPLETED, CANCELLED}
TERMINAL_STATES = {COMPLETED, CANCELLED}
EDITABLE_STATES = {DRAFT, CONFIRMED}
EXTENDABLE_STATES = {CONFIRMED, IN_PROGRESS}
STATE_TRANSITIONS = {
    DRAFT: {CONFIRMED, CANCELLED},
    CONFIRMED: {IN_PROGRESS, CANCELLED},
    IN_PROGRESS: {COMPLETED},
    COMPLETED: set(),
    CANCELLED: set(),
}


def effective_status(booking: Booking, now: datetime | None = None) -> str:
    now = now or datetime.now()
    if booking.Status in TERMINAL_STATES:
        return booking.Status
    if booking.ActualReturn is None and booking.EndAt and now > booking.EndAt:
        return OVERDUE
    return booking.Status


def _ensure_transition(booking: Booking, target: str) -> None:
    current = booking.Status
    if target not in STATE_TRANSITIONS.get(current, set()):
        raise InvalidTransition(
            f"Invalid state transition: {current} -> {target}",
            bookingID=booking.BookingID,
            current=current,
            target=target,
        )


def _transition_state(booking: Booking, target: str, now: datetime) -> None:
    _ensure_transition(booking, target)
    booking.Status = target
    booking.UpdatedDate = now


def _check_version(booking: Booking, expected_version: int | None) -> None:
    if expected_version is not None and int(expected_version) != int(booking.Version):
        raise ConcurrencyConflict(
            f"Booking {booking.BookingID} is at version {booking.Version}, not {expected_version}.",
            bookingID=booking.BookingID,
            currentVersion=booking.Version,
        )


def generate_booking_number(db: Session, prefix: str = "BK", created_on: datetime | None = None) -> str:
    current = created_on or datetime.now()
    token = f"{(prefix or 'BK').upper()}-{current:%y%m}-"
    rows = db.execute(
        select(Booking.BookingNumber).where(Booking.BookingNumber.like(f"{token}%"))
    ).scalars().all()
    max_suffix = 0
    for number in rows:
        raw = (number or "")[len(token):]
        if raw.isdigit() and int(raw) > max_suffix:
            max_suffix = int(raw)
    return f"{token}{max_suffix + 1:04d}"


def load_booking(db: Session, booking_id: int, for_update: bool = False) -> Booking:
    stmt = (
        select(Booking)
        .options(selectinload(Booking.Items).selectinload(BookingItem.Product))
        .options(selectinload(Booking.ReturnCases))
        .options(selectinload(Booking.Customer))
        .where(Booking.BookingID == booking_id)
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    booking = db.execute(stmt).scalars().first()
    if not booking:
        raise NotFound(f"Booking {booking_id} not found", bookingID=booking_id)
    return booking


@contextmanager
def booking_locks(db: Session, booking_id: int, extra_product_ids=()):
    """Hold the product locks of a booking before its row is locked.

    Every writer takes the in-process product locks first and the booking row
    lock second, so the two kinds of lock are never waited on in opposite order.
    Yields the product ids of the booking as read before locking.
    """
    booking = load_booking(db, booking_id)
    product_ids = {item.ProductID for item in booking.Items}
    with inventory_service.product_locks(product_ids | {int(pid) for pid in extra_product_ids}):
        yield product_ids


def load_locked(db: Session, booking_id: int, product_ids: set[int]) -> Booking:
    booking = load_booking(db, booking_id, for_update=True)
    if {item.ProductID for item in booking.Items} != product_ids:
        raise ConcurrencyConflict("Booking items changed concurrently; retry.", bookingID=booking_id)
    return booking


def _line_product_id(line: dict) -> int:
    product_id = line.get("productID", line.get("productId"))
    if product_id is None:
        raise InvalidQuantity("Every item needs a productID.")
    return int(product_id)


def _pricing_items(db: Session, lines: list[dict]) -> list[PricingItem]:
    if not lines:
        raise InvalidQuantity("At least one item is required.")
    items: list[PricingItem] = []
    for line in lines:
        product = inventory_service.get_product(db, _line_product_id(line))
        items.append(
            PricingItem(
                product=product,
                quantity=int(line.get("quantity") or 0),
                rate_unit=line.get("rateUnit"),
                duration=line.get("duration"),
                duration_unit=line.get("durationUnit"),
            )
        )
    return items


def _price(db: Session, booking: Booking, lines: list[dict], settings: RentalSettings) -> PricingResult:
    pricelist = resolve_pricelist(db, booking.PricelistID)
    context = PricingContext(
        start=booking.StartAt,
        end=booking.EndAt,
        customer_segment=booking.Customer.Segment if booking.Customer else None,
        pricelist=pricelist,
        delivery_required=bool(booking.DeliveryRequired),
        pickup_required=bool(booking.PickupRequired),
    )
    result = price_items(_pricing_items(db, lines), context, settings)
    booking.PricelistID = pricelist.PricelistID if pricelist is not None else None
    booking.Subtotal = result.subtotal
    booking.DiscountAmount = result.discount_amount
    booking.TaxAmount = result.tax_amount
    booking.DeliveryCharges = result.delivery_charges
    booking.SecurityDeposit = result.security_deposit
    booking.FinalAmount = result.final_amount
    return result


def _replace_items(booking: Booking, result: PricingResult) -> None:
    booking.Items.clear()
    for line in result.lines:
        booking.Items.append(BookingItem(ProductID=line.product_id))
    _refresh_items(booking, result)


def _refresh_items(booking: Booking, result: PricingResult) -> None:
    for item, line in zip(booking.Items, result.lines):
        item.Quantity = line.quantity
        item.Duration = line.duration
        item.DurationUnit = line.rate_unit
        item.UnitRate = line.unit_rate
        item.LineTotal = line.line_total
        item.DiscountAmount = line.discount_amount
        item.SecurityDepositPerUnit = line.security_deposit_per_unit
        item.AppliedRules = ",".join(str(rule_id) for rule_id in line.applied_rules) or None


def _current_lines(booking: Booking) -> list[dict]:
    return [
        {"productID": item.ProductID, "quantity": item.Quantity, "rateUnit": item.DurationUnit}
        for item in booking.Items
    ]


def _reserve_items(db: Session, booking: Booking) -> None:
    for item in booking.Items:
        inventory_service.reserve(
            db,
            item.ProductID,
            booking.StartAt,
            booking.EndAt,
            item.Quantity,
            booking_id=booking.BookingID,
            booking_item_id=item.BookingItemID,
            commit=False,
        )


def _amount_owed(booking: Booking) -> Decimal:
    return money(money(booking.FinalAmount) + money(booking.SecurityDeposit))


def create_booking(
    db: Session,
    customer_id: int,
    start: datetime,
    end: datetime,
    items: list[dict],
    settings: RentalSettings,
    delivery_required: bool = False,
    pickup_required: bool = False,
    pricelist_id: int | None = None,
    notes: str | None = None,
    delivery_address: str | None = None,
    now: datetime | None = None,
    user_id: int | None = None,
) -> Booking:
    now = now or datetime.now()
    start, end = inventory_service.validate_window(start, end)
    customer = get_customer(db, customer_id)
    with unit_of_work(db):
        booking = Booking(
            BookingNumber=generate_booking_number(db, settings.booking_number_prefix, now),
            CustomerID=customer.CustomerID,
            PricelistID=pricelist_id,
            Status=DRAFT,
            StartAt=start,
            EndAt=end,
            DeliveryRequired=bool(delivery_required),
            PickupRequired=bool(pickup_required),
            DeliveryAddress=delivery_address,
            Notes=notes,
            CreatedDate=now,
            UpdatedDate=now,
        )
        booking.Customer = customer
        result = _price(db, booking, items, settings)
        _replace_items(booking, result)
        db.add(booking)
        db.flush()
        event = timeline_service.record_event(
            db,
            booking,
            "created",
            f"Booking {booking.BookingNumber} drafted for {start:%Y-%m-%d %H:%M} - {end:%Y-%m-%d %H:%M}",
            now,
        )
        timeline_service.log_audit(db, "Booking", booking.BookingID, "CreateBooking", f"Final amount {booking.FinalAmount}", user_id=user_id)
    timeline_service.dispatch([event])
    LOGGER.info("Created booking %s (%s) for customer %s", booking.BookingID, booking.BookingNumber, customer_id)
    return booking


def update_items(
    db: Session,
    booking_id: int,
    items: list[dict],
    settings: RentalSettings,
    expected_version: int | None = None,
    now: datetime | None = None,
    user_id: int | None = None,
) -> Booking:
    now = now or datetime.now()
    new_product_ids = [_line_product_id(line) for line in items]
    with booking_locks(db, booking_id, new_product_ids) as product_ids:
        with unit_of_work(db):
            booking = load_locked(db, booking_id, product_ids)
            _check_version(booking, expected_version)
            if booking.Status not in EDITABLE_STATES:
                raise InvalidTransition(
                    f"Items of a {booking.Status} booking cannot be changed.",
                    bookingID=booking_id,
                    current=booking.Status,
                )
            confirmed = booking.Status == CONFIRMED
            owed_before = _amount_owed(booking)
            if confirmed:
                inventory_service.release_for_booking(db, booking_id, commit=False)
            result = _price(db, booking, items, settings)
            _replace_items(booking, result)
            booking.UpdatedDate = now
            db.flush()
            if confirmed:
                _reserve_items(db, booking)
                difference = money(_amount_owed(booking) - owed_before)
                if difference > 0:
                    payment_service.record_charge(db, booking_id, difference, now, "adjustment", commit=False)
                elif difference < 0:
                    payment_service.credit_booking(db, booking_id, -difference, "item change", commit=False)
            event = timeline_service.record_event(
                db,
                booking,
                "items_updated",
                f"Items changed; final amount {booking.FinalAmount}",
                now,
            )
            timeline_service.log_audit(db, "Booking", booking_id, "UpdateItems", f"{len(items)} item(s)", user_id=user_id)
    timeline_service.dispatch([event])
    LOGGER.info("Updated items of booking %s", booking_id)
    return booking


def confirm_booking(
    db: Session,
    booking_id: int,
    settings: RentalSettings,
    expected_version: int | None = None,
    now: datetime | None = None,
    user_id: int | None = None,
) -> Booking:
    now = now or datetime.now()
    with booking_locks(db, booking_id) as product_ids:
        try:
            with unit_of_work(db):
                booking = load_locked(db, booking_id, product_ids)
                _check_version(booking, expected_version)
                _transition_state(booking, CONFIRMED, now)
                if not booking.Items:
                    raise InvalidQuantity("A booking needs at least one item to be confirmed.", bookingID=booking_id)
                _reserve_items(db, booking)
                payment_service.create_due_schedule(db, booking, settings, now, commit=False)
                delivery_service.schedule_for_booking(db, booking, now)
                event = timeline_service.record_event(
                    db,
                    booking,
                    "confirmed",
                    f"Booking {booking.BookingNumber} confirmed; inventory reserved",
                    now,
                )
                timeline_service.log_audit(db, "Booking", booking_id, "Confirm", None, user_id=user_id)
        except InsufficientInventory:
            LOGGER.warning("Booking %s left in draft: inventory unavailable", booking_id)
            raise
    timeline_service.dispatch([event])
    LOGGER.info("Confirmed booking %s", booking_id)
    return booking


def start_booking(
    db: Session,
    booking_id: int,
    settings: RentalSettings,
    expected_version: int | None = None,
    now: datetime | None = None,
    user_id: int | None = None,
) -> Booking:
    now = now or datetime.now()
    with unit_of_work(db):
        booking = load_booking(db, booking_id, for_update=True)
        _check_version(booking, expected_version)
        _ensure_transition(booking, IN_PROGRESS)
        earliest = booking.StartAt - timedelta(hours=settings.lead_window_hours)
        if now < earliest:
            raise InvalidTransition(
                f"Booking {booking.BookingNumber} cannot start before {earliest:%Y-%m-%d %H:%M}.",
                bookingID=booking_id,
                earliestStart=earliest.isoformat(),
            )
        _transition_state(booking, IN_PROGRESS, now)
        booking.ActualStart = now
        delivery_service.complete_legs(db, booking_id, delivery_service.OUTBOUND_TYPES, now)
        handover = "delivered to customer" if booking.DeliveryRequired else "picked up by customer"
        event = timeline_service.record_event(db, booking, "started", f"Items {handover}", now)
        timeline_service.log_audit(db, "Booking", booking_id, "Start", handover, user_id=user_id)
    timeline_service.dispatch([event])
    LOGGER.info("Started booking %s", booking_id)
    return booking


def complete_booking(
    db: Session,
    booking_id: int,
    settings: RentalSettings,
    expected_version: int | None = None,
    now: datetime | None = None,
    user_id: int | None = None,
    commit: bool = True,
) -> Booking:
    now = now or datetime.now()
    with booking_locks(db, booking_id) as product_ids, unit_of_work(db, commit=commit):
        booking = load_locked(db, booking_id, product_ids)
        _check_version(booking, expected_version)
        _ensure_transition(booking, COMPLETED)
        if booking.ActualReturn is None:
            raise InvalidTransition("Return has not been recorded.", bookingID=booking_id)
        if any(case.Status == "open" for case in booking.ReturnCases):
            raise InvalidTransition("Booking has an open return case.", bookingID=booking_id)
        inventory_service.release_for_booking(db, booking_id, commit=False)
        _transition_state(booking, COMPLETED, now)
        summary = payment_service.reconcile(db, booking_id, now)
        event = timeline_service.record_event(
            db,
            booking,
            "completed",
            f"Booking closed; paid {summary['paidAmount']} of {summary['amount']}",
            now,
        )
        timeline_service.log_audit(db, "Booking", booking_id, "Complete", f"paymentStatus={summary['paymentStatus']}", user_id=user_id)
    if commit:
        timeline_service.dispatch([event])
    LOGGER.info("Completed booking %s", booking_id)
    return booking


def cancel_booking(
    db: Session,
    booking_id: int,
    reason: str | None = None,
    expected_version: int | None = None,
    now: datetime | None = None,
    user_id: int | None = None,
) -> Booking:
    now = now or datetime.now()
    with booking_locks(db, booking_id) as product_ids, unit_of_work(db):
        booking = load_locked(db, booking_id, product_ids)
        _check_version(booking, expected_version)
        _transition_state(booking, CANCELLED, now)
        booking.CancellationReason = reason
        released = inventory_service.release_for_booking(db, booking_id, commit=False)
        payment_service.void_unpaid(db, booking_id, commit=False)
        delivery_service.cancel_open_legs(db, booking_id, now)
        event = timeline_service.record_event(
            db,
            booking,
            "cancelled",
            f"Booking cancelled{': ' + reason if reason else ''}",
            now,
        )
        timeline_service.log_audit(db, "Booking", booking_id, "Cancel", reason, user_id=user_id)
    timeline_service.dispatch([event])
    LOGGER.info("Cancelled booking %s (%s reservation(s) released)", booking_id, released)
    return booking


def extend_booking(
    db: Session,
    booking_id: int,
    new_end: datetime,
    settings: RentalSettings,
    expected_version: int | None = None,
    now: datetime | None = None,
    user_id: int | None = None,
) -> Booking:
    now = now or datetime.now()
    new_end = as_local_naive(new_end)
    with booking_locks(db, booking_id) as product_ids:
        with unit_of_work(db):
            booking = load_locked(db, booking_id, product_ids)
            _check_version(booking, expected_version)
            if booking.Status not in EXTENDABLE_STATES or booking.ActualReturn is not None:
                raise InvalidTransition(
                    f"A {booking.Status} booking cannot be extended.",
                    bookingID=booking_id,
                    current=booking.Status,
                )
            if new_end is None or new_end <= booking.EndAt:
                raise InvalidDuration("New end must be after the current end.", bookingID=booking_id)
            previous_end = booking.EndAt
            owed_before = _amount_owed(booking)
            lines = _current_lines(booking)
            inventory_service.release_for_booking(db, booking_id, commit=False)
            booking.EndAt = new_end
            result = _price(db, booking, lines, settings)
            _refresh_items(booking, result)
            booking.UpdatedDate = now
            db.flush()
            _reserve_items(db, booking)
            difference = money(_amount_owed(booking) - owed_before)
            if difference > 0:
                payment_service.record_charge(db, booking_id, difference, now, "extension", commit=False)
            delivery_service.reschedule_return_legs(db, booking_id, new_end, now)
            event = timeline_service.record_event(
                db,
                booking,
                "extended",
                f"Return moved from {previous_end:%Y-%m-%d %H:%M} to {new_end:%Y-%m-%d %H:%M}",
                now,
            )
            timeline_service.log_audit(db, "Booking", booking_id, "Extend", f"Extended to {new_end}", user_id=user_id)
    timeline_service.dispatch([event])
    LOGGER.info("Extended booking %s to %s", booking_id, new_end)
    return booking


def list_bookings(
    db: Session,
    status: str | None = None,
    customer_id: int | None = None,
    now: datetime | None = None,
) -> list[Booking]:
    stmt = (
        select(Booking)
        .options(selectinload(Booking.Items))
        .options(selectinload(Booking.Customer))
        .order_by(Booking.CreatedDate.desc(), Booking.BookingID.desc())
    )
    if customer_id:
        stmt = stmt.where(Booking.CustomerID == customer_id)
    if status and status != OVERDUE:
        stmt = stmt.where(Booking.Status == status)
    bookings = list(db.execute(stmt).scalars().all())
    if status == OVERDUE:
        bookings = [b for b in bookings if effective_status(b, now) == OVERDUE]
    return bookings


def booking_summary(db: Session, now: datetime | None = None) -> dict:
    now = now or datetime.now()
    bookings = db.execute(select(Booking)).scalars().all()
    records = {
        record.BookingID: record
        for record in db.execute(
            select(PaymentRecord).options(selectinload(PaymentRecord.Installments))
        ).scalars().all()
    }
    counts: dict[str, int] = defaultdict(int)
    revenue = Decimal("0.00")
    outstanding = Decimal("0.00")
    late_fees = Decimal("0.00")
    damage = Decimal("0.00")
    for booking in bookings:
        counts[effective_status(booking, now)] += 1
        if booking.Status == CANCELLED:
            continue
        if booking.Status != DRAFT:
            revenue += money(booking.FinalAmount)
        late_fees += money(booking.LateFees)
        damage += money(booking.DamageCharges)
        _, _, pending = payment_service.ledger_totals(records.get(booking.BookingID))
        outstanding += pending
    return {
        "total": len(bookings),
        "byStatus": {state: counts.get(state, 0) for state in sorted(BOOKING_STATES | {OVERDUE})},
        "bookedRevenue": money(revenue),
        "lateFees": money(late_fees),
        "damageCharges": money(damage),
        "outstanding": money(outstanding),
    }


def quote_preview(
    db: Session,
    start: datetime,
    end: datetime,
    items: list[dict],
    settings: RentalSettings,
    customer_id: int | None = None,
    delivery_required: bool = False,
    pickup_required: bool = False,
    pricelist_id: int | None = None,
) -> dict:
    start, end = inventory_service.validate_window(start, end)
    segment = get_customer(db, customer_id).Segment if customer_id else None
    pricing_items = _pricing_items(db, items)
    context = PricingContext(
        start=start,
        end=end,
        customer_segment=segment,
        pricelist=resolve_pricelist(db, pricelist_id),
        delivery_required=delivery_required,
        pickup_required=pickup_required,
    )
    result = price_items(pricing_items, context, settings)

    requested: dict[int, int] = defaultdict(int)
    for item in pricing_items:
        requested[item.product.ProductID] += int(item.quantity)
    availability = []
    for product_id, quantity in requested.items():
        product = inventory_service.get_product(db, product_id)
        free = inventory_service.free_units(db, product, start, end) if product.IsActive else 0
        availability.append(
            {"productID": product_id, "requested": quantity, "freeUnits": free, "available": quantity <= free}
        )
    payload = result.as_dict()
    payload["availability"] = availability
    payload["isAvailable"] = all(entry["available"] for entry in availability)
    return payload


def serialize_booking(booking: Booking, payment_record: PaymentRecord | None = None, now: datetime | None = None) -> dict:
    now = now or datetime.now()
    return {
        "bookingID": booking.BookingID,
        "bookingNumber": booking.BookingNumber,
        "customerID": booking.CustomerID,
        "customer": {
            "customerID": booking.Customer.CustomerID,
            "name": booking.Customer.CustomerName,
            "segment": booking.Customer.Segment,
        } if booking.Customer else None,
        "pricelistID": booking.PricelistID,
        "status": effective_status(booking, now),
        "lifecycleStatus": booking.Status,
        "paymentStatus": payment_service.derive_payment_status(payment_record, now),
        "startAt": booking.StartAt,
        "endAt": booking.EndAt,
        "deliveryRequired": bool(booking.DeliveryRequired),
        "pickupRequired": bool(booking.PickupRequired),
        "deliveryAddress": booking.DeliveryAddress,
        "subtotal": money(booking.Subtotal),
        "discountAmount": money(booking.DiscountAmount),
        "taxAmount": money(booking.TaxAmount),
        "deliveryCharges": money(booking.DeliveryCharges),
        "securityDeposit": money(booking.SecurityDeposit),
        "finalAmount": money(booking.FinalAmount),
        "lateFees": money(booking.LateFees),
        "damageCharges": money(booking.DamageCharges),
        "actualStart": booking.ActualStart,
        "actualReturn": booking.ActualReturn,
        "cancellationReason": booking.CancellationReason,
        "notes": booking.Notes,
        "version": booking.Version,
        "createdDate": booking.CreatedDate,
        "updatedDate": booking.UpdatedDate,
        "items": [
            {
                "bookingItemID": item.BookingItemID,
                "productID": item.ProductID,
                "quantity": item.Quantity,
                "duration": item.Duration,
                "durationUnit": item.DurationUnit,
                "unitRate": money(item.UnitRate),
                "lineTotal": money(item.LineTotal),
                "discountAmount": money(item.DiscountAmount),
                "securityDepositPerUnit": money(item.SecurityDepositPerUnit),
                "appliedRules": [int(r) for r in (item.AppliedRules or "").split(",") if r],
            }
            for item in booking.Items
        ],
    }


def build_confirmation(booking: Booking, payment_record: PaymentRecord | None = None, now: datetime | None = None) -> dict:
    installments = []
    if payment_record is not None:
        installments = [
            payment_service.serialize_installment(installment, now)
            for installment in sorted(payment_record.Installments, key=lambda i: (i.DueDate, i.InstallmentID or 0))
            if not installment.IsVoided
        ]
    return {
        "bookingId": booking.BookingID,
        "bookingNumber": booking.BookingNumber,
        "status": effective_status(booking, now),
        "version": booking.Version,
        "subtotal": money(booking.Subtotal),
        "taxAmount": money(booking.TaxAmount),
        "discountAmount": money(booking.DiscountAmount),
        "deliveryCharges": money(booking.DeliveryCharges),
        "securityDeposit": money(booking.SecurityDeposit),
        "finalAmount": money(booking.FinalAmount),
        "paymentDueSchedule": installments,
    }
