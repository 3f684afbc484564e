from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from rental_management.config import RentalSettings
from rental_management.errors import InvalidDuration, InvalidQuantity, NoApplicableRate, NotFound
from rental_management.models.rental_models import Pricelist, PricelistRule, Product

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
UNIT_HOURS = {
    "hour": 1,
    "day": 24,
    "week": 24 * 7,
    "month": 24 * 30,
}
DISCOUNT_TYPES = {"percentage", "fixed"}


def money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_unit(raw: str | None) -> str | None:
    if raw is None:
        return None
    unit = raw.strip().lower()
    if unit.endswith("s"):
        unit = unit[:-1]
    if unit in {"hourly"}:
        return "hour"
    if unit in {"daily"}:
        return "day"
    if unit in {"weekly"}:
        return "week"
    if unit in {"monthly"}:
        return "month"
    return unit


def resolve_rate(product: Product, rate_unit: str | None = None) -> tuple[str, Decimal]:
    unit = normalize_unit(rate_unit) or normalize_unit(product.RateUnit) or "day"
    if unit not in UNIT_HOURS:
        raise NoApplicableRate(f"Unknown rate unit {rate_unit!r}.", productID=product.ProductID, rateUnit=rate_unit)
    if normalize_unit(product.RateUnit) == unit and product.BaseRate is not None:
        return unit, money(product.BaseRate)
    for rate in product.Rates or []:
        if normalize_unit(rate.RateUnit) == unit:
            return unit, money(rate.Rate)
    raise NoApplicableRate(
        f"Product {product.ProductID} has no {unit} rate.",
        productID=product.ProductID,
        rateUnit=unit,
    )


def billable_units_for_window(start: datetime, end: datetime, rate_unit: str) -> int:
    if start is None or end is None or end <= start:
        raise InvalidDuration("End of the rental window must be after its start.", start=str(start), end=str(end))
    seconds = int((end - start).total_seconds())
    unit_seconds = UNIT_HOURS[rate_unit] * 3600
    whole, remainder = divmod(seconds, unit_seconds)
    return int(whole) + (1 if remainder else 0)


def convert_duration(duration, duration_unit: str, rate_unit: str) -> int:
    """Express ``duration`` in whole ``rate_unit`` periods, rounding partial periods up."""
    source = normalize_unit(duration_unit)
    if source not in UNIT_HOURS:
        raise InvalidDuration(f"Unknown duration unit {duration_unit!r}.")
    amount = Decimal(str(duration or 0))
    if amount <= 0:
        raise InvalidDuration("Duration must be positive.", duration=str(duration))
    if source == rate_unit and amount == amount.to_integral_value():
        return int(amount)
    hours = amount * UNIT_HOURS[source]
    units = hours / UNIT_HOURS[rate_unit]
    whole = units.to_integral_value(rounding=ROUND_FLOOR)
    return int(whole) + (1 if units > whole else 0)


@dataclass
class PricingItem:
    product: Product
    quantity: int
    rate_unit: Optional[str] = None
    duration: Optional[Decimal] = None
    duration_unit: Optional[str] = None


@dataclass
class PricingContext:
    start: datetime
    end: datetime
    customer_segment: Optional[str] = None
    pricelist: Optional[Pricelist] = None
    delivery_required: bool = False
    pickup_required: bool = False


@dataclass
class PricedLine:
    product_id: int
    quantity: int
    rate_unit: str
    unit_rate: Decimal
    duration: int
    line_total: Decimal
    discount_amount: Decimal = Decimal("0.00")
    applied_rules: list[int] = field(default_factory=list)
    security_deposit_per_unit: Decimal = Decimal("0.00")

    @property
    def security_deposit(self) -> Decimal:
        return money(self.security_deposit_per_unit * self.quantity)

    def as_dict(self) -> dict:
        return {
            "productID": self.product_id,
            "quantity": self.quantity,
            "rateUnit": self.rate_unit,
            "unitRate": self.unit_rate,
            "duration": self.duration,
            "durationUnit": self.rate_unit,
            "lineTotal": self.line_total,
            "discountAmount": self.discount_amount,
            "appliedRules": list(self.applied_rules),
            "securityDepositPerUnit": self.security_deposit_per_unit,
            "securityDeposit": self.security_deposit,
        }


@dataclass
class PricingResult:
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    delivery_charges: Decimal
    security_deposit: Decimal
    final_amount: Decimal
    lines: list[PricedLine]

    def as_dict(self) -> dict:
        return {
            "subtotal": self.subtotal,
            "discountAmount": self.discount_amount,
            "taxAmount": self.tax_amount,
            "deliveryCharges": self.delivery_charges,
            "securityDeposit": self.security_deposit,
            "finalAmount": self.final_amount,
            "breakdown": [line.as_dict() for line in self.lines],
        }


def rule_matches(
    rule: PricelistRule,
    product: Product,
    quantity: int,
    order_amount: Decimal,
    context: PricingContext,
) -> bool:
    if rule.IsActive is False:
        return False
    if rule.CustomerSegment and (context.customer_segment or "").lower() != rule.CustomerSegment.lower():
        return False
    if rule.ProductCategory and (product.Category or "").lower() != rule.ProductCategory.lower():
        return False
    if rule.ProductID and rule.ProductID != product.ProductID:
        return False
    if rule.MinQuantity and quantity < rule.MinQuantity:
        return False
    if rule.ValidFrom and context.start < rule.ValidFrom:
        return False
    if rule.ValidTo and context.start > rule.ValidTo:
        return False
    if rule.MinOrderAmount is not None and order_amount < money(rule.MinOrderAmount):
        return False
    return True


def rule_discount(rule: PricelistRule, line_total: Decimal) -> Decimal:
    value = Decimal(str(rule.DiscountValue or 0))
    if rule.DiscountType == "fixed":
        return money(value)
    return money(line_total * value / HUNDRED)


def resolve_line_discount(
    rules: Iterable[PricelistRule],
    product: Product,
    quantity: int,
    line_total: Decimal,
    order_amount: Decimal,
    context: PricingContext,
    settings: RentalSettings,
) -> tuple[Decimal, list[int]]:
    matching = [
        rule for rule in rules
        if rule_matches(rule, product, quantity, order_amount, context)
    ]
    if not matching:
        return Decimal("0.00"), []
    matching.sort(key=lambda rule: (-int(rule.Priority or 0), rule.RuleID or 0))

    winner = matching[0]
    if not winner.IsStackable:
        return min(rule_discount(winner, line_total), line_total), [winner.RuleID]

    stacked = [rule for rule in matching if rule.IsStackable]
    # each stackable rule is applied to the undiscounted line total
    combined = sum((rule_discount(rule, line_total) for rule in stacked), Decimal("0.00"))
    cap = money(line_total * settings.max_combined_discount_pct / HUNDRED)
    return min(combined, cap, line_total), [rule.RuleID for rule in stacked]


def price_items(items: list[PricingItem], context: PricingContext, settings: RentalSettings) -> PricingResult:
    if not items:
        raise InvalidQuantity("At least one item is required.")
    if context.end is None or context.start is None or context.end <= context.start:
        raise InvalidDuration("End of the rental window must be after its start.")

    lines: list[PricedLine] = []
    for item in items:
        quantity = int(item.quantity or 0)
        if quantity <= 0:
            raise InvalidQuantity("Quantity must be a positive integer.", productID=item.product.ProductID)
        unit, rate = resolve_rate(item.product, item.rate_unit)
        if item.duration is not None:
            duration = convert_duration(item.duration, item.duration_unit or unit, unit)
        else:
            duration = billable_units_for_window(context.start, context.end, unit)
        lines.append(
            PricedLine(
                product_id=item.product.ProductID,
                quantity=quantity,
                rate_unit=unit,
                unit_rate=rate,
                duration=duration,
                line_total=money(rate * quantity * duration),
                security_deposit_per_unit=money(item.product.SecurityDepositPerUnit),
            )
        )

    subtotal = sum((line.line_total for line in lines), Decimal("0.00"))
    pricelist = context.pricelist
    rules = list(pricelist.Rules) if pricelist is not None and pricelist.IsActive is not False else []
    if rules:
        for item, line in zip(items, lines):
            line.discount_amount, line.applied_rules = resolve_line_discount(
                rules,
                item.product,
                line.quantity,
                line.line_total,
                subtotal,
                context,
                settings,
            )

    discount = sum((line.discount_amount for line in lines), Decimal("0.00"))
    tax = money((subtotal - discount) * settings.tax_rate)
    delivery = Decimal("0.00")
    if context.delivery_required:
        delivery += money(settings.delivery_charge)
    if context.pickup_required:
        delivery += money(settings.pickup_charge)
    deposit = sum((line.security_deposit for line in lines), Decimal("0.00"))

    return PricingResult(
        subtotal=money(subtotal),
        discount_amount=money(discount),
        tax_amount=tax,
        delivery_charges=money(delivery),
        security_deposit=money(deposit),
        final_amount=money(subtotal - discount + tax + delivery),
        lines=lines,
    )


def resolve_pricelist(db: Session, pricelist_id: int | None = None) -> Pricelist | None:
    stmt = select(Pricelist).options(selectinload(Pricelist.Rules))
    if pricelist_id:
        pricelist = db.execute(stmt.where(Pricelist.PricelistID == pricelist_id)).scalars().first()
        if not pricelist:
            raise NotFound(f"Pricelist {pricelist_id} not found", pricelistID=pricelist_id)
        return pricelist
    return db.execute(
        stmt.where(Pricelist.IsDefault.is_(True))
        .where(Pricelist.IsActive.is_(True))
        .order_by(Pricelist.PricelistID)
    ).scalars().first()


def create_pricelist(db: Session, payload: dict) -> Pricelist:
    pricelist = Pricelist(
        PricelistName=payload["name"],
        Description=payload.get("description"),
        IsDefault=bool(payload.get("isDefault")),
        IsActive=payload.get("isActive", True),
        CreatedDate=datetime.now(),
    )
    for raw in payload.get("rules") or []:
        discount_type = (raw.get("discountType") or "percentage").lower()
        if discount_type not in DISCOUNT_TYPES:
            raise InvalidQuantity(f"Unknown discount type {discount_type!r}.")
        value = Decimal(str(raw.get("discountValue") or 0))
        if value < 0 or (discount_type == "percentage" and value > HUNDRED):
            raise InvalidQuantity("Discount value is out of range.", discountValue=str(value))
        pricelist.Rules.append(
            PricelistRule(
                RuleName=raw.get("name"),
                Priority=int(raw.get("priority") or 0),
                IsStackable=bool(raw.get("stackable")),
                DiscountType=discount_type,
                DiscountValue=value,
                CustomerSegment=raw.get("customerSegment"),
                ProductCategory=raw.get("productCategory"),
                ProductID=raw.get("productID"),
                MinQuantity=raw.get("minQuantity"),
                MinOrderAmount=raw.get("minOrderAmount"),
                ValidFrom=raw.get("validFrom"),
                ValidTo=raw.get("validTo"),
                IsActive=raw.get("isActive", True),
            )
        )
    if pricelist.IsDefault:
        for other in db.execute(select(Pricelist).where(Pricelist.IsDefault.is_(True))).scalars().all():
            other.IsDefault = False
    db.add(pricelist)
    return pricelist


def list_pricelists(db: Session) -> list[Pricelist]:
    return list(
        db.execute(
            select(Pricelist).options(selectinload(Pricelist.Rules)).order_by(Pricelist.PricelistID)
        ).scalars().all()
    )


def serialize_pricelist(pricelist: Pricelist) -> dict:
    return {
        "pricelistID": pricelist.PricelistID,
        "name": pricelist.PricelistName,
        "description": pricelist.Description,
        "isDefault": bool(pricelist.IsDefault),
        "isActive": pricelist.IsActive is not False,
        "rules": [
            {
                "ruleID": rule.RuleID,
                "name": rule.RuleName,
                "priority": rule.Priority,
                "stackable": bool(rule.IsStackable),
                "discountType": rule.DiscountType,
                "discountValue": rule.DiscountValue,
                "customerSegment": rule.CustomerSegment,
                "productCategory": rule.ProductCategory,
                "productID": rule.ProductID,
                "minQuantity": rule.MinQuantity,
                "minOrderAmount": rule.MinOrderAmount,
                "validFrom": rule.ValidFrom,
                "validTo": rule.ValidTo,
                "isActive": rule.IsActive is not False,
            }
            for rule in pricelist.Rules
        ],
    }
