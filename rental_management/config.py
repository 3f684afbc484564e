from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping


class ConfigError(Exception):
    pass


_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class RentalSettings:
    tax_rate: Decimal = Decimal("0.18")
    max_combined_discount_pct: Decimal = Decimal("100")
    late_fee_rate: Decimal = Decimal("0.05")
    lead_window_hours: int = 24
    advance_percent: Decimal = Decimal("50")
    delivery_charge: Decimal = Decimal("0")
    pickup_charge: Decimal = Decimal("0")
    early_return_prorate: bool = True
    booking_number_prefix: str = "BK"


def _decimal_env(env: Mapping[str, str], name: str, default: Decimal) -> Decimal:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = Decimal(raw)
    except InvalidOperation as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value < 0:
        raise ConfigError(f"{name} must not be negative")
    return value


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def load_settings(environ: Mapping[str, str] | None = None) -> RentalSettings:
    env = os.environ if environ is None else environ
    max_discount = _decimal_env(env, "RENTAL_MAX_COMBINED_DISCOUNT_PCT", Decimal("100"))
    if max_discount > 100:
        raise ConfigError("RENTAL_MAX_COMBINED_DISCOUNT_PCT must be between 0 and 100")
    advance = _decimal_env(env, "RENTAL_ADVANCE_PERCENT", Decimal("50"))
    if advance > 100:
        raise ConfigError("RENTAL_ADVANCE_PERCENT must be between 0 and 100")
    prorate_raw = str(env.get("RENTAL_EARLY_RETURN_PRORATE", "true")).strip().lower()
    return RentalSettings(
        tax_rate=_decimal_env(env, "RENTAL_TAX_RATE", Decimal("0.18")),
        max_combined_discount_pct=max_discount,
        late_fee_rate=_decimal_env(env, "RENTAL_LATE_FEE_RATE", Decimal("0.05")),
        lead_window_hours=_int_env(env, "RENTAL_LEAD_WINDOW_HOURS", 24),
        advance_percent=advance,
        delivery_charge=_decimal_env(env, "RENTAL_DELIVERY_CHARGE", Decimal("0")),
        pickup_charge=_decimal_env(env, "RENTAL_PICKUP_CHARGE", Decimal("0")),
        early_return_prorate=prorate_raw in _TRUTHY,
        booking_number_prefix=(env.get("RENTAL_BOOKING_PREFIX") or "BK").strip().upper(),
    )
