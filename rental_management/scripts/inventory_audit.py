#!/usr/bin/env python3
"""Inventory integrity checks for the rental database."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import inspect, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from rental_management.db.engine import build_engine, build_session_factory
from rental_management.models.rental_models import Booking, InventoryReservation, Product
from rental_management.services import inventory_service

EXPECTED_TABLES = [
    "Products",
    "ProductRates",
    "Customers",
    "Reservations",
    "Pricelists",
    "PricelistRules",
    "Bookings",
    "BookingItems",
    "PaymentRecords",
    "Installments",
    "PaymentTransactions",
    "ReturnCases",
    "ReturnCaseItems",
    "DeliveryRecords",
    "BookingEvents",
    "AuditLogs",
]


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_counter_checks(db: Session) -> list[CheckResult]:
    results: list[CheckResult] = []
    for product in db.execute(select(Product).order_by(Product.ProductID)).scalars().all():
        ok = inventory_service.counters_consistent(product)
        results.append(
            CheckResult(
                f"counters:product:{product.ProductID}",
                ok,
                (
                    f"total={product.TotalUnits} available={product.AvailableUnits} "
                    f"reserved={product.ReservedUnits} maintenance={product.MaintenanceUnits}"
                ),
            )
        )
    return results


def _run_overbooking_checks(db: Session) -> list[CheckResult]:
    results: list[CheckResult] = []
    for product in db.execute(select(Product).order_by(Product.ProductID)).scalars().all():
        active = db.execute(
            select(InventoryReservation)
            .where(InventoryReservation.ProductID == product.ProductID)
            .where(InventoryReservation.Status == inventory_service.RESERVATION_ACTIVE)
        ).scalars().all()
        peak = inventory_service.peak_load(active)
        ok = peak <= int(product.TotalUnits or 0) and peak == int(product.ReservedUnits or 0)
        results.append(
            CheckResult(
                f"overbooking:product:{product.ProductID}",
                ok,
                f"peak={peak} reservedCounter={product.ReservedUnits} total={product.TotalUnits}",
            )
        )
    return results


def _run_lifecycle_checks(db: Session) -> list[CheckResult]:
    stale = db.execute(
        select(InventoryReservation.ReservationID)
        .join(Booking, Booking.BookingID == InventoryReservation.BookingID)
        .where(InventoryReservation.Status == inventory_service.RESERVATION_ACTIVE)
        .where(Booking.Status.in_(["completed", "cancelled"]))
    ).scalars().all()
    unreserved = db.execute(
        select(Booking.BookingID)
        .where(Booking.Status.in_(["confirmed", "in_progress"]))
        .where(
            ~select(InventoryReservation.ReservationID)
            .where(InventoryReservation.BookingID == Booking.BookingID)
            .where(InventoryReservation.Status == inventory_service.RESERVATION_ACTIVE)
            .exists()
        )
    ).scalars().all()
    return [
        CheckResult("reservations:held_by_closed_bookings", not stale, f"ids={list(stale)}"),
        CheckResult("bookings:confirmed_without_reservations", not unreserved, f"ids={list(unreserved)}"),
    ]


def _print_results(title: str, rows: Iterable[CheckResult]) -> bool:
    _print_section(title)
    all_ok = True
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        all_ok = all_ok and row.ok
        print(f"[{status}] {row.name} :: {row.detail}")
    return all_ok


def _print_row_counts(db: Session, present: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = db.execute(text(f'SELECT COUNT(*) FROM "{table}"')).scalar()
        print(f"{table}: {int(count or 0)}")


def _recompute(db: Session) -> None:
    _print_section("Recompute Counters")
    for product_id in db.execute(select(Product.ProductID).order_by(Product.ProductID)).scalars().all():
        product = inventory_service.recompute_counters(db, product_id)
        print(f"product {product_id}: available={product.AvailableUnits} reserved={product.ReservedUnits}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Rental inventory integrity audit")
    parser.add_argument("--db-url", default=os.environ.get("RENTAL_DB_URL", ""))
    parser.add_argument("--recompute", action="store_true", help="rewrite reserved/available counters before checking")
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = build_engine(db_url)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    existence = _run_existence_checks(engine)
    ok = _print_results("Table Existence", existence)
    if not ok:
        return 1

    session = build_session_factory(engine)()
    try:
        if args.recompute:
            _recompute(session)
        ok = _print_results("Counter Invariants", _run_counter_checks(session)) and ok
        ok = _print_results("Overbooking", _run_overbooking_checks(session)) and ok
        ok = _print_results("Lifecycle", _run_lifecycle_checks(session)) and ok
        _print_row_counts(session, {row.name.split(":", 1)[1] for row in existence if row.ok})
    finally:
        session.close()
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
