import os
import sys
from datetime import datetime
from decimal import Decimal
from pathlib import Path

os.environ.setdefault("RENTAL_DB_URL", "sqlite+pysqlite:///:memory:")

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from rental_management.config import RentalSettings
from rental_management.db.base import Base
from rental_management.db.engine import build_engine, build_session_factory
from rental_management.models.rental_models import Customer, Pricelist, PricelistRule, Product, ProductRate

SETTINGS = RentalSettings()


def new_session_factory(db_url: str = "sqlite+pysqlite:///:memory:"):
    engine = build_engine(db_url)
    Base.metadata.create_all(bind=engine)
    return engine, build_session_factory(engine)


def add_product(db, name="Camera", total=5, rate="2000", unit="day", deposit="0", category="electronics", replacement=None, rates=None):
    product = Product(
        ProductName=name,
        Sku=f"SKU-{name.upper().replace(' ', '-')}",
        Category=category,
        BaseRate=Decimal(rate),
        RateUnit=unit,
        TotalUnits=total,
        AvailableUnits=total,
        ReservedUnits=0,
        MaintenanceUnits=0,
        SecurityDepositPerUnit=Decimal(deposit),
        ReplacementCost=Decimal(replacement) if replacement is not None else None,
        IsActive=True,
        CreatedDate=datetime.now(),
        UpdatedDate=datetime.now(),
    )
    for rate_unit, value in (rates or {}).items():
        product.Rates.append(ProductRate(RateUnit=rate_unit, Rate=Decimal(value)))
    db.add(product)
    db.commit()
    return product


def add_customer(db, name="Asha Rao", segment="regular"):
    customer = Customer(CustomerName=name, Email=f"{name.split()[0].lower()}@example.com", Segment=segment)
    db.add(customer)
    db.commit()
    return customer


def add_pricelist(db, rules, name="Standard", is_default=True):
    pricelist = Pricelist(PricelistName=name, IsDefault=is_default, IsActive=True)
    for rule in rules:
        pricelist.Rules.append(PricelistRule(**rule))
    db.add(pricelist)
    db.commit()
    return pricelist
