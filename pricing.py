"""
Order and cart pricing

All amounts are integer minor units (cents). Rates come from settings so
the order and cart flows always agree.
"""

from config import settings


def percent_of(amount_cents: int, rate_bps: int) -> int:
    """Apply a basis-point rate to a cent amount, rounding half up."""
    return (amount_cents * rate_bps + 5000) // 10000


def shipping_for(subtotal_cents: int) -> int:
    if subtotal_cents > settings.free_shipping_threshold_cents:
        return 0
    return settings.flat_shipping_cents


def compute_totals(subtotal_cents: int) -> dict:
    tax = percent_of(subtotal_cents, settings.tax_rate_bps)
    shipping = shipping_for(subtotal_cents)
    return {
        "subtotal_cents": subtotal_cents,
        "tax_cents": tax,
        "shipping_cents": shipping,
        "total_cents": subtotal_cents + tax + shipping,
        "currency": settings.currency,
    }


def format_cents(amount_cents: int, currency: str = None) -> str:
    currency = (currency or settings.currency).upper()
    sign = "-" if amount_cents < 0 else ""
    whole, cents = divmod(abs(amount_cents), 100)
    return f"{sign}{whole}.{cents:02d} {currency}"
