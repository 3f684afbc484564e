from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from rental_management.clock import as_local_naive
from rental_management.config import RentalSettings
from rental_management.db.transaction import unit_of_work
from rental_management.errors import InvalidDuration, InvalidQuantity, InvalidTransition, NotFound
from rental_management.models.rental_models import Booking, BookingItem, ReturnCase, ReturnCaseItem
from rental_management.services import booking_service, delivery_service, payment_service, timeline_service
from rental_management.services.pricing_service import UNIT_HOURS, money

LOGGER = logging.getLogger("rental_management.returns")

GOOD_CONDITIONS = {"excellent", "good", "fair"}
DAMAGED = "damaged"
MISSING_CONDITIONS = {"missing", "lost"}
ITEM_CONDITIONS = GOOD_CONDITIONS | {DAMAGED} | MISSING_CONDITIONS

CASE_OPEN = "open"
CASE_RESOLVED = "resolved"

ONE_DAY = timedelta(days=1)
ZERO = Decimal("0.00")


def days_overdue(due: datetime, returned_at: datetime) -> int:
    if returned_at <= due:
        return 0
    whole, remainder = divmod(returned_at - due, ONE_DAY)
    return max(1, int(whole) + (1 if remainder else 0))


def late_penalty(settings: RentalSettings, days: int, base_amount) -> Decimal:
    if days <= 0:
        return ZERO
    return money(settings.late_fee_rate * days * money(base_amount))


def assess_item(item: BookingItem, condition: str, quantity: int, assessed_cost=None) -> tuple[Decimal, Decimal, Decimal]:
    """Return (cost, charged against deposit, excess receivable) for one returned line."""
    if condition in GOOD_CONDITIONS:
        return ZERO, ZERO, ZERO
    if condition == DAMAGED:
        cost = money(assessed_cost)
    elif item.Product is not None and item.Product.ReplacementCost is not None:
        cost = money(money(item.Product.ReplacementCost) * quantity)
    else:
        cost = money(assessed_cost)
    cap = money(money(item.SecurityDepositPerUnit) * quantity)
    charged = min(cost, cap)
    return cost, charged, money(cost - charged)


def early_return_refund(booking: Booking, returned_at: datetime) -> Decimal:
    """Unused whole billing periods, at the booked unit rate."""
    if returned_at >= booking.EndAt:
        return ZERO
    used_from = max(returned_at, booking.StartAt)
    unused_seconds = int((booking.EndAt - used_from).total_seconds())
    total = ZERO
    for item in booking.Items:
        unit_seconds = UNIT_HOURS.get(item.DurationUnit, 24) * 3600
        unused_units = min(unused_seconds // unit_seconds, int(item.Duration or 0))
        if unused_units <= 0:
            continue
        refund = money(money(item.UnitRate) * int(item.Quantity) * unused_units)
        net_line = money(money(item.LineTotal) - money(item.DiscountAmount))
        total += min(refund, net_line)
    return money(total)


def _match_items(booking: Booking, item_conditions: list[dict]) -> list[tuple[BookingItem, str, int, Decimal | None, str | None]]:
    by_item_id = {item.BookingItemID: item for item in booking.Items}
    by_product: dict[int, list[BookingItem]] = {}
    for item in booking.Items:
        by_product.setdefault(item.ProductID, []).append(item)

    matched = []
    for entry in item_conditions or []:
        item = None
        if entry.get("bookingItemID") is not None:
            item = by_item_id.get(int(entry["bookingItemID"]))
        elif entry.get("productID") is not None:
            candidates = by_product.get(int(entry["productID"])) or []
            item = candidates[0] if candidates else None
        if item is None:
            raise NotFound("Returned item is not part of this booking.", bookingID=booking.BookingID, entry=str(entry))
        condition = (entry.get("condition") or "good").strip().lower()
        if condition not in ITEM_CONDITIONS:
            raise InvalidQuantity(f"Unknown item condition {condition!r}.", condition=condition)
        quantity = int(entry.get("quantity") or item.Quantity)
        if quantity <= 0 or quantity > int(item.Quantity):
            raise InvalidQuantity(
                f"Returned quantity must be between 1 and {item.Quantity}.",
                bookingItemID=item.BookingItemID,
                quantity=quantity,
            )
        matched.append((item, condition, quantity, entry.get("assessedCost"), entry.get("notes")))
    return matched


def record_return(
    db: Session,
    booking_id: int,
    settings: RentalSettings,
    returned_at: datetime | None = None,
    item_conditions: list[dict] | None = None,
    disputed: bool = False,
    notes: str | None = None,
    now: datetime | None = None,
    user_id: int | None = None,
) -> ReturnCase | None:
    now = now or datetime.now()
    returned_at = as_local_naive(returned_at) or now
    since = timeline_service.last_event_id(db, booking_id)
    with booking_service.booking_locks(db, booking_id) as product_ids, unit_of_work(db):
        booking = booking_service.load_locked(db, booking_id, product_ids)
        if booking.Status != booking_service.IN_PROGRESS or booking.ActualReturn is not None:
            raise InvalidTransition(
                f"A {booking.Status} booking cannot be returned.",
                bookingID=booking_id,
                current=booking.Status,
            )
        started = booking.ActualStart or booking.StartAt
        if returned_at < started:
            raise InvalidDuration("Return cannot precede the start of the rental.", bookingID=booking_id)

        lines = _match_items(booking, item_conditions or [])
        days = days_overdue(booking.EndAt, returned_at)
        penalty = late_penalty(settings, days, booking.Subtotal)
        refund = early_return_refund(booking, returned_at) if settings.early_return_prorate else ZERO

        assessed = []
        charged_total = ZERO
        excess_total = ZERO
        for item, condition, quantity, assessed_cost, item_notes in lines:
            cost, charged, excess = assess_item(item, condition, quantity, assessed_cost)
            charged_total += charged
            excess_total += excess
            assessed.append((item, condition, quantity, cost, charged, excess, item_notes))

        booking.ActualReturn = returned_at
        booking.UpdatedDate = now
        delivery_service.complete_legs(db, booking_id, delivery_service.INBOUND_TYPES, returned_at)
        irregular = any(condition not in GOOD_CONDITIONS for _, condition, *_ in assessed)
        deviates = days > 0 or refund > 0 or irregular or disputed

        case = None
        if not deviates:
            timeline_service.record_event(db, booking, "returned", "Items returned on time in good condition", now)
        else:
            deposit_held = money(booking.SecurityDeposit)
            retained = min(money(charged_total), deposit_held)
            case = ReturnCase(
                BookingID=booking_id,
                Status=CASE_OPEN,
                ReturnType="late" if days > 0 else ("early" if refund > 0 else "on_time"),
                ReturnedAt=returned_at,
                DaysLate=days,
                LateFee=penalty,
                DamageCharge=money(charged_total + excess_total),
                DepositHeld=deposit_held,
                DepositRetained=retained,
                DepositRefund=money(deposit_held - retained),
                Receivable=money(excess_total),
                EarlyReturnRefund=refund,
                IsDisputed=bool(disputed),
                Notes=notes,
                CreatedAt=now,
            )
            for item, condition, quantity, cost, charged, excess, item_notes in assessed:
                case.Items.append(
                    ReturnCaseItem(
                        BookingItemID=item.BookingItemID,
                        ProductID=item.ProductID,
                        Quantity=quantity,
                        Condition=condition,
                        AssessedCost=cost,
                        ChargedAmount=charged,
                        ExcessAmount=excess,
                        Notes=item_notes,
                    )
                )
            db.add(case)
            booking.LateFees = penalty
            booking.DamageCharges = money(charged_total + excess_total)
            if penalty > 0:
                payment_service.record_charge(db, booking_id, penalty, returned_at, "late fee", commit=False)
            if excess_total > 0:
                payment_service.record_charge(db, booking_id, excess_total, returned_at, "damage receivable", commit=False)
            if refund > 0:
                payment_service.credit_booking(db, booking_id, refund, "early return", commit=False)
            timeline_service.record_event(
                db,
                booking,
                "returned",
                f"Returned {days} day(s) late; penalty {penalty}, damage {case.DamageCharge}, early refund {refund}",
                now,
            )
            if disputed:
                timeline_service.record_event(db, booking, "return_disputed", "Return assessment disputed; case left open", now)
            else:
                case.Status = CASE_RESOLVED
                case.Resolution = "Settled at return"
                case.ResolvedAt = now

        timeline_service.log_audit(db, "Booking", booking_id, "Return", f"daysLate={days} disputed={bool(disputed)}", user_id=user_id)
        db.flush()
        if case is None or case.Status == CASE_RESOLVED:
            booking_service.complete_booking(db, booking_id, settings, now=now, user_id=user_id, commit=False)
    timeline_service.dispatch(timeline_service.events_since(db, booking_id, since))
    LOGGER.info(
        "Recorded return of booking %s: %s day(s) late, case=%s",
        booking_id,
        days,
        case.ReturnCaseID if case is not None else None,
    )
    return case


def get_return_case(db: Session, case_id: int) -> ReturnCase:
    case = db.execute(
        select(ReturnCase)
        .options(selectinload(ReturnCase.Items))
        .where(ReturnCase.ReturnCaseID == case_id)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if not case:
        raise NotFound(f"Return case {case_id} not found", returnCaseID=case_id)
    return case


def resolve_return_case(
    db: Session,
    case_id: int,
    settings: RentalSettings,
    resolution: str,
    additional_charge=None,
    credit_amount=None,
    now: datetime | None = None,
    user_id: int | None = None,
) -> ReturnCase:
    now = now or datetime.now()
    case = get_return_case(db, case_id)
    since = timeline_service.last_event_id(db, case.BookingID)
    with booking_service.booking_locks(db, case.BookingID) as product_ids, unit_of_work(db):
        booking = booking_service.load_locked(db, case.BookingID, product_ids)
        case = get_return_case(db, case_id)
        if case.Status != CASE_OPEN:
            raise InvalidTransition(f"Return case {case_id} is already {case.Status}.", returnCaseID=case_id)
        extra = money(additional_charge)
        credit = money(credit_amount)
        if extra < 0 or credit < 0:
            raise InvalidQuantity("Settlement amounts must not be negative.")
        if extra > 0:
            payment_service.record_charge(db, booking.BookingID, extra, now, "return settlement", commit=False)
            case.Receivable = money(money(case.Receivable) + extra)
            booking.DamageCharges = money(money(booking.DamageCharges) + extra)
        if credit > 0:
            payment_service.credit_booking(db, booking.BookingID, credit, "return settlement", commit=False)
        case.Status = CASE_RESOLVED
        case.Resolution = resolution
        case.ResolvedAt = now
        booking.UpdatedDate = now
        timeline_service.record_event(db, booking, "return_resolved", resolution, now)
        timeline_service.log_audit(db, "ReturnCase", case_id, "Resolve", resolution, user_id=user_id)
        db.flush()
        booking_service.complete_booking(db, booking.BookingID, settings, now=now, user_id=user_id, commit=False)
    timeline_service.dispatch(timeline_service.events_since(db, case.BookingID, since))
    LOGGER.info("Resolved return case %s for booking %s", case_id, case.BookingID)
    return case


def serialize_return_case(case: ReturnCase) -> dict:
    return {
        "returnCaseID": case.ReturnCaseID,
        "bookingID": case.BookingID,
        "status": case.Status,
        "returnType": case.ReturnType,
        "returnedAt": case.ReturnedAt,
        "daysLate": case.DaysLate,
        "lateFee": money(case.LateFee),
        "damageCharge": money(case.DamageCharge),
        "depositHeld": money(case.DepositHeld),
        "depositRetained": money(case.DepositRetained),
        "depositRefund": money(case.DepositRefund),
        "receivable": money(case.Receivable),
        "earlyReturnRefund": money(case.EarlyReturnRefund),
        "isDisputed": bool(case.IsDisputed),
        "resolution": case.Resolution,
        "notes": case.Notes,
        "resolvedAt": case.ResolvedAt,
        "items": [
            {
                "returnCaseItemID": item.ReturnCaseItemID,
                "bookingItemID": item.BookingItemID,
                "productID": item.ProductID,
                "quantity": item.Quantity,
                "condition": item.Condition,
                "assessedCost": money(item.AssessedCost),
                "chargedAmount": money(item.ChargedAmount),
                "excessAmount": money(item.ExcessAmount),
                "notes": item.Notes,
            }
            for item in case.Items
        ],
    }
