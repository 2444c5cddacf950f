from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional

from config import (
    DEFAULT_CHARGE_DESCRIPTION,
    INVOICE_CURRENCY,
    INVOICE_DUE_DAYS,
    PRICE_PER_PHOTO_CENTS,
)

from .repository import LedgerRepository

PRICE_PER_PHOTO_KEY = "price_per_photo"


@dataclass(frozen=True)
class BillingSettings:
    currency: str = INVOICE_CURRENCY
    due_days: int = INVOICE_DUE_DAYS
    price_per_photo_cents: int = PRICE_PER_PHOTO_CENTS
    default_charge_description: str = DEFAULT_CHARGE_DESCRIPTION


def _parse_price(raw: Optional[str]) -> Optional[int]:
    # Stored by the admin UI either as cents ("1300") or as a decimal amount ("13.00").
    if raw is None:
        return None
    text = str(raw).strip().replace(",", ".")
    if not text:
        return None
    try:
        if "." in text:
            value = round(float(text) * 100)
        else:
            value = int(text)
    except ValueError:
        return None
    if value < 0:
        return None
    return int(value)


def resolve_billing_settings(repo: LedgerRepository, base: Optional[BillingSettings] = None) -> BillingSettings:
    """Config defaults overlaid with the app_settings rows, read once per operation."""
    settings = base or BillingSettings()
    price = _parse_price(repo.get_setting(PRICE_PER_PHOTO_KEY))
    if price is not None:
        settings = replace(settings, price_per_photo_cents=price)
    return settings
