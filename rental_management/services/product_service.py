from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from rental_management.errors import InvalidQuantity, NoApplicableRate, NotFound
from rental_management.models.rental_models import Customer, Product, ProductRate
from rental_management.services import inventory_service
from rental_management.services.pricing_service import UNIT_HOURS, money, normalize_unit


def generate_next_sku(db: Session, category: str | None) -> str:
    token = "".join(ch for ch in (category or "GEN").upper() if ch.isalnum())[:3] or "GEN"
    prefix = f"{token}-"
    existing = db.execute(select(Product.Sku).where(Product.Sku.startswith(prefix))).scalars().all()
    max_seq = 0
    for sku in existing:
        raw = (sku or "").replace(prefix, "", 1)
        if raw.isdigit() and int(raw) > max_seq:
            max_seq = int(raw)
    return f"{prefix}{max_seq + 1:04d}"


def _apply_rates(product: Product, rates: dict | None) -> None:
    for raw_unit, raw_rate in (rates or {}).items():
        unit = normalize_unit(raw_unit)
        if unit not in UNIT_HOURS:
            raise NoApplicableRate(f"Unknown rate unit {raw_unit!r}.", rateUnit=raw_unit)
        rate = money(raw_rate)
        if rate < 0:
            raise InvalidQuantity("Rates must not be negative.", rateUnit=unit)
        existing = next((r for r in product.Rates if r.RateUnit == unit), None)
        if existing:
            existing.Rate = rate
        else:
            product.Rates.append(ProductRate(RateUnit=unit, Rate=rate))


def create_product(db: Session, payload: dict) -> Product:
    total_units = int(payload.get("totalUnits") or 0)
    maintenance_units = int(payload.get("maintenanceUnits") or 0)
    if total_units < 0 or maintenance_units < 0 or maintenance_units > total_units:
        raise InvalidQuantity(
            "Maintenance units must be between 0 and total units.",
            totalUnits=total_units,
            maintenanceUnits=maintenance_units,
        )
    rate_unit = normalize_unit(payload.get("rateUnit")) or "day"
    if rate_unit not in UNIT_HOURS:
        raise NoApplicableRate(f"Unknown rate unit {payload.get('rateUnit')!r}.")
    product = Product(
        Sku=payload.get("sku") or generate_next_sku(db, payload.get("category")),
        ProductName=payload["name"],
        Category=payload.get("category"),
        Description=payload.get("description"),
        BaseRate=money(payload.get("baseRate")),
        RateUnit=rate_unit,
        TotalUnits=total_units,
        MaintenanceUnits=maintenance_units,
        ReservedUnits=0,
        AvailableUnits=total_units - maintenance_units,
        SecurityDepositPerUnit=money(payload.get("securityDepositPerUnit")),
        ReplacementCost=money(payload["replacementCost"]) if payload.get("replacementCost") is not None else None,
        IsActive=payload.get("isActive", True),
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    _apply_rates(product, payload.get("rates"))
    db.add(product)
    return product


def update_product(db: Session, product_id: int, payload: dict) -> Product:
    product = inventory_service.get_product(db, product_id)
    mapping = {
        "name": "ProductName",
        "category": "Category",
        "description": "Description",
        "isActive": "IsActive",
    }
    for field, column in mapping.items():
        if field in payload and payload[field] is not None:
            setattr(product, column, payload[field])
    for field, column in (("baseRate", "BaseRate"), ("securityDepositPerUnit", "SecurityDepositPerUnit"), ("replacementCost", "ReplacementCost")):
        if payload.get(field) is not None:
            setattr(product, column, money(payload[field]))
    if payload.get("rateUnit"):
        unit = normalize_unit(payload["rateUnit"])
        if unit not in UNIT_HOURS:
            raise NoApplicableRate(f"Unknown rate unit {payload['rateUnit']!r}.")
        product.RateUnit = unit
    _apply_rates(product, payload.get("rates"))
    product.UpdatedDate = datetime.now()
    if payload.get("totalUnits") is not None:
        db.flush()
        inventory_service.adjust_total_units(db, product_id, int(payload["totalUnits"]), commit=False)
    return product


def list_products(db: Session, category: str | None = None, active_only: bool = False) -> list[Product]:
    stmt = select(Product).options(selectinload(Product.Rates)).order_by(Product.ProductName)
    if category:
        stmt = stmt.where(Product.Category == category)
    if active_only:
        stmt = stmt.where(Product.IsActive.is_(True))
    return list(db.execute(stmt).scalars().all())


def serialize_product(product: Product) -> dict:
    return {
        "productID": product.ProductID,
        "sku": product.Sku,
        "name": product.ProductName,
        "category": product.Category,
        "description": product.Description,
        "baseRate": product.BaseRate,
        "rateUnit": product.RateUnit,
        "rates": {rate.RateUnit: rate.Rate for rate in product.Rates},
        "totalUnits": product.TotalUnits,
        "availableUnits": product.AvailableUnits,
        "reservedUnits": product.ReservedUnits,
        "maintenanceUnits": product.MaintenanceUnits,
        "securityDepositPerUnit": product.SecurityDepositPerUnit,
        "replacementCost": product.ReplacementCost,
        "isActive": product.IsActive is not False,
        "version": product.Version,
    }


def create_customer(db: Session, payload: dict) -> Customer:
    segment = (payload.get("segment") or "regular").strip().lower()
    customer = Customer(
        CustomerName=payload["name"],
        Email=payload.get("email"),
        Phone=payload.get("phone"),
        Segment=segment,
        CreatedDate=datetime.now(),
    )
    db.add(customer)
    return customer


def get_customer(db: Session, customer_id: int) -> Customer:
    customer = db.get(Customer, customer_id)
    if not customer:
        raise NotFound(f"Customer {customer_id} not found", customerID=customer_id)
    return customer


def list_customers(db: Session, segment: str | None = None) -> list[Customer]:
    stmt = select(Customer).order_by(Customer.CustomerName)
    if segment:
        stmt = stmt.where(Customer.Segment == segment.lower())
    return list(db.execute(stmt).scalars().all())


def serialize_customer(customer: Customer) -> dict:
    return {
        "customerID": customer.CustomerID,
        "name": customer.CustomerName,
        "email": customer.Email,
        "phone": customer.Phone,
        "segment": customer.Segment,
    }
