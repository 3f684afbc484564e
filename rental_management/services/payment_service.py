from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from rental_management.clock import as_local_naive
from rental_management.config import RentalSettings
from rental_management.db.transaction import unit_of_work
from rental_management.errors import InvalidQuantity, NotFound, OverpaymentNotAllowed
from rental_management.models.rental_models import Booking, Installment, PaymentRecord, PaymentTransaction
from rental_management.services.pricing_service import HUNDRED, money

LOGGER = logging.getLogger("rental_management.payments")

INSTALLMENT_PENDING = "pending"
INSTALLMENT_PAID = "paid"
INSTALLMENT_OVERDUE = "overdue"

PAYMENT_PAID = "paid"
PAYMENT_PARTIAL = "partial"
PAYMENT_OVERDUE = "overdue"
PAYMENT_PENDING = "pending"

CAPTURED_STATUSES = {"captured", "succeeded", "success", "paid", "completed"}

ZERO = Decimal("0.00")


def get_payment_record(db: Session, booking_id: int, create: bool = True) -> PaymentRecord | None:
    record = db.execute(
        select(PaymentRecord)
        .options(selectinload(PaymentRecord.Installments))
        .options(selectinload(PaymentRecord.Transactions))
        .where(PaymentRecord.BookingID == booking_id)
    ).scalars().first()
    if record or not create:
        return record
    if not db.get(Booking, booking_id):
        raise NotFound(f"Booking {booking_id} not found", bookingID=booking_id)
    record = PaymentRecord(
        BookingID=booking_id,
        CreditBalance=ZERO,
        CreatedAt=datetime.now(),
        UpdatedAt=datetime.now(),
    )
    db.add(record)
    db.flush()
    return record


def outstanding(installment: Installment) -> Decimal:
    if installment.IsVoided:
        return ZERO
    return money(money(installment.Amount) - money(installment.PaidAmount))


def installment_status(installment: Installment, now: datetime | None = None) -> str:
    now = now or datetime.now()
    if outstanding(installment) <= 0:
        return INSTALLMENT_PAID
    if installment.DueDate and installment.DueDate < now:
        return INSTALLMENT_OVERDUE
    return INSTALLMENT_PENDING


def _live(record: PaymentRecord) -> list[Installment]:
    return sorted(
        (i for i in record.Installments if not i.IsVoided),
        key=lambda i: (i.DueDate, i.InstallmentID or 0),
    )


def _open(record: PaymentRecord) -> list[Installment]:
    return [i for i in _live(record) if outstanding(i) > 0]


def ledger_totals(record: PaymentRecord | None) -> tuple[Decimal, Decimal, Decimal]:
    if record is None:
        return ZERO, ZERO, ZERO
    live = _live(record)
    total = money(sum((money(i.Amount) for i in live), ZERO))
    paid = money(sum((money(i.PaidAmount) for i in live), ZERO))
    return total, paid, money(total - paid)


def derive_payment_status(record: PaymentRecord | None, now: datetime | None = None) -> str:
    total, paid, pending = ledger_totals(record)
    if total > 0 and pending == 0:
        return PAYMENT_PAID
    if 0 < paid < total:
        return PAYMENT_PARTIAL
    if record is not None and any(installment_status(i, now) == INSTALLMENT_OVERDUE for i in _open(record)):
        return PAYMENT_OVERDUE
    return PAYMENT_PENDING


def _settle(installment: Installment, amount: Decimal, when: datetime) -> None:
    installment.PaidAmount = money(money(installment.PaidAmount) + amount)
    if outstanding(installment) <= 0:
        installment.Status = INSTALLMENT_PAID
        installment.PaidAt = when
    else:
        installment.Status = INSTALLMENT_PENDING


def _apply_fifo(record: PaymentRecord, amount: Decimal, when: datetime) -> tuple[Decimal, list[int]]:
    remaining = money(amount)
    touched: list[int] = []
    for installment in _open(record):
        if remaining <= 0:
            break
        portion = min(remaining, outstanding(installment))
        _settle(installment, portion, when)
        remaining = money(remaining - portion)
        touched.append(installment.InstallmentID)
    return remaining, touched


def record_charge(
    db: Session,
    booking_id: int,
    amount,
    due_date: datetime,
    label: str = "charge",
    commit: bool = True,
) -> Installment:
    value = money(amount)
    if value <= 0:
        raise InvalidQuantity("Charge amount must be positive.", amount=str(value))
    due_date = as_local_naive(due_date)
    with unit_of_work(db, commit=commit):
        record = get_payment_record(db, booking_id)
        installment = Installment(
            PaymentRecordID=record.PaymentRecordID,
            BookingID=booking_id,
            Label=label,
            Amount=value,
            PaidAmount=ZERO,
            DueDate=due_date,
            Status=INSTALLMENT_PENDING,
            IsVoided=False,
            CreatedAt=datetime.now(),
        )
        record.Installments.append(installment)
        db.flush()
        credit = money(record.CreditBalance)
        if credit > 0:
            applied = min(credit, value)
            _settle(installment, applied, datetime.now())
            record.CreditBalance = money(credit - applied)
        record.UpdatedAt = datetime.now()
    LOGGER.info("Recorded %s charge of %s for booking %s due %s", label, value, booking_id, due_date)
    return installment


def record_payment(
    db: Session,
    booking_id: int,
    amount,
    method: str = "cash",
    timestamp: datetime | None = None,
    advance_credit: bool = False,
    gateway_transaction_id: str | None = None,
    gateway_status: str = "captured",
    commit: bool = True,
) -> PaymentTransaction:
    value = money(amount)
    if value <= 0:
        raise InvalidQuantity("Payment amount must be positive.", amount=str(value))
    when = as_local_naive(timestamp) or datetime.now()
    status = (gateway_status or "captured").strip().lower()
    with unit_of_work(db, commit=commit):
        record = get_payment_record(db, booking_id)
        transaction = PaymentTransaction(
            PaymentRecordID=record.PaymentRecordID,
            BookingID=booking_id,
            Kind="payment",
            Method=method,
            Amount=value,
            AppliedAmount=ZERO,
            CreditedAmount=ZERO,
            GatewayTransactionID=gateway_transaction_id,
            GatewayStatus=status,
            IsAdvanceCredit=bool(advance_credit),
            CreatedAt=when,
        )
        if status in CAPTURED_STATUSES:
            _, _, pending = ledger_totals(record)
            if value > pending and not advance_credit:
                LOGGER.warning(
                    "Rejected payment of %s for booking %s: outstanding is %s",
                    value,
                    booking_id,
                    pending,
                )
                raise OverpaymentNotAllowed(
                    f"Payment of {value} exceeds the outstanding balance of {pending}.",
                    bookingID=booking_id,
                    amount=str(value),
                    outstanding=str(pending),
                )
            remaining, _ = _apply_fifo(record, value, when)
            transaction.AppliedAmount = money(value - remaining)
            if remaining > 0:
                record.CreditBalance = money(money(record.CreditBalance) + remaining)
                transaction.CreditedAmount = remaining
        else:
            LOGGER.warning(
                "Payment for booking %s not applied: gateway status %s (txn %s)",
                booking_id,
                status,
                gateway_transaction_id,
            )
        record.Transactions.append(transaction)
        record.UpdatedAt = datetime.now()
    LOGGER.info(
        "Recorded payment of %s for booking %s via %s (applied %s, credited %s)",
        value,
        booking_id,
        method,
        transaction.AppliedAmount,
        transaction.CreditedAmount,
    )
    return transaction


def record_refund(
    db: Session,
    booking_id: int,
    amount,
    method: str = "cash",
    gateway_transaction_id: str | None = None,
    gateway_status: str = "succeeded",
    timestamp: datetime | None = None,
    commit: bool = True,
) -> PaymentTransaction:
    value = money(amount)
    if value <= 0:
        raise InvalidQuantity("Refund amount must be positive.", amount=str(value))
    status = (gateway_status or "succeeded").strip().lower()
    with unit_of_work(db, commit=commit):
        record = get_payment_record(db, booking_id)
        transaction = PaymentTransaction(
            PaymentRecordID=record.PaymentRecordID,
            BookingID=booking_id,
            Kind="refund",
            Method=method,
            Amount=value,
            AppliedAmount=ZERO,
            CreditedAmount=ZERO,
            GatewayTransactionID=gateway_transaction_id,
            GatewayStatus=status,
            CreatedAt=as_local_naive(timestamp) or datetime.now(),
        )
        if status in CAPTURED_STATUSES:
            credit = money(record.CreditBalance)
            drawn = min(credit, value)
            record.CreditBalance = money(credit - drawn)
            transaction.AppliedAmount = value
        record.Transactions.append(transaction)
        record.UpdatedAt = datetime.now()
    LOGGER.info("Recorded refund of %s for booking %s (gateway status %s)", value, booking_id, status)
    return transaction


def credit_booking(db: Session, booking_id: int, amount, reason: str = "credit", commit: bool = True) -> Decimal:
    """Apply an in-house credit FIFO to open installments; the remainder becomes credit balance."""
    value = money(amount)
    if value <= 0:
        return ZERO
    with unit_of_work(db, commit=commit):
        record = get_payment_record(db, booking_id)
        remaining, touched = _apply_fifo(record, value, datetime.now())
        if remaining > 0:
            record.CreditBalance = money(money(record.CreditBalance) + remaining)
        record.UpdatedAt = datetime.now()
    LOGGER.info("Credited %s to booking %s (%s); installments %s, to balance %s", value, booking_id, reason, touched, remaining)
    return remaining


def create_due_schedule(
    db: Session,
    booking: Booking,
    settings: RentalSettings,
    now: datetime | None = None,
    commit: bool = True,
) -> list[Installment]:
    now = now or datetime.now()
    final_amount = money(booking.FinalAmount)
    advance = money(final_amount * settings.advance_percent / HUNDRED)
    balance = money(final_amount - advance)
    deposit = money(booking.SecurityDeposit)
    created: list[Installment] = []
    with unit_of_work(db, commit=commit):
        if advance > 0:
            created.append(record_charge(db, booking.BookingID, advance, now, "advance", commit=False))
        if balance > 0:
            created.append(record_charge(db, booking.BookingID, balance, booking.StartAt, "balance", commit=False))
        if deposit > 0:
            created.append(record_charge(db, booking.BookingID, deposit, booking.StartAt, "security deposit", commit=False))
        if not created:
            get_payment_record(db, booking.BookingID)
    return created


def void_unpaid(db: Session, booking_id: int, commit: bool = True) -> int:
    voided = 0
    with unit_of_work(db, commit=commit):
        record = get_payment_record(db, booking_id, create=False)
        if record is None:
            return 0
        for installment in _open(record):
            if money(installment.PaidAmount) > 0:
                installment.Amount = money(installment.PaidAmount)
                installment.Status = INSTALLMENT_PAID
                installment.Label = f"{installment.Label or 'charge'} (remainder voided)"
            else:
                installment.IsVoided = True
            voided += 1
        record.UpdatedAt = datetime.now()
    if voided:
        LOGGER.info("Voided %s unpaid installment(s) for booking %s", voided, booking_id)
    return voided


def reconcile(db: Session, booking_id: int, now: datetime | None = None) -> dict:
    record = get_payment_record(db, booking_id, create=False)
    total, paid, pending = ledger_totals(record)
    credit = money(record.CreditBalance) if record is not None else ZERO
    summary = {
        "bookingID": booking_id,
        "amount": total,
        "paidAmount": paid,
        "pendingAmount": pending,
        "creditBalance": credit,
        "paymentStatus": derive_payment_status(record, now),
    }
    if pending > 0:
        LOGGER.warning("Booking %s closed with %s outstanding", booking_id, pending)
    return summary


def serialize_installment(installment: Installment, now: datetime | None = None) -> dict:
    return {
        "installmentID": installment.InstallmentID,
        "label": installment.Label,
        "amount": money(installment.Amount),
        "paidAmount": money(installment.PaidAmount),
        "outstanding": outstanding(installment),
        "dueDate": installment.DueDate,
        "status": "voided" if installment.IsVoided else installment_status(installment, now),
        "paidAt": installment.PaidAt,
    }


def serialize_payment_record(record: PaymentRecord | None, booking_id: int, now: datetime | None = None) -> dict:
    total, paid, pending = ledger_totals(record)
    installments = sorted(record.Installments, key=lambda i: (i.DueDate, i.InstallmentID or 0)) if record else []
    return {
        "bookingID": booking_id,
        "amount": total,
        "paidAmount": paid,
        "pendingAmount": pending,
        "creditBalance": money(record.CreditBalance) if record else ZERO,
        "paymentStatus": derive_payment_status(record, now),
        "installments": [serialize_installment(i, now) for i in installments],
        "transactions": [
            {
                "transactionID": t.TransactionID,
                "kind": t.Kind,
                "method": t.Method,
                "amount": money(t.Amount),
                "appliedAmount": money(t.AppliedAmount),
                "creditedAmount": money(t.CreditedAmount),
                "gatewayTransactionID": t.GatewayTransactionID,
                "gatewayStatus": t.GatewayStatus,
                "isAdvanceCredit": bool(t.IsAdvanceCredit),
                "createdAt": t.CreatedAt,
            }
            for t in (record.Transactions if record else [])
        ],
    }
