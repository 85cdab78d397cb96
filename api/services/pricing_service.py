"""
Pricing Service - Stars → invoice currency conversion.

1 star = 1.5 currency units, plus a fixed 4% markup.
Amounts are kept as Decimal with exactly two decimal places and converted
to the provider's minor units (kopecks / cents) only when invoicing.
"""

from decimal import Decimal, ROUND_HALF_UP

STAR_UNIT_PRICE = Decimal("1.5")
MARKUP_FACTOR = Decimal("1.04")
UNIT_RATE = STAR_UNIT_PRICE * MARKUP_FACTOR

CENT = Decimal("0.01")
MINOR_UNITS_PER_UNIT = 100


def stars_to_currency(stars: int) -> Decimal:
    """
    Convert a price in stars to the invoice currency.
    
    Examples:
        1 star → 1.56
        10 stars → 15.60
        100 stars → 156.00
    """
    if isinstance(stars, bool) or not isinstance(stars, int):
        raise ValueError("Stars amount must be an integer")
    if stars <= 0:
        raise ValueError("Stars amount must be positive")
    
    amount = Decimal(stars) * UNIT_RATE
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to provider minor units (1.56 → 156)."""
    minor = Decimal(str(amount)) * MINOR_UNITS_PER_UNIT
    return int(minor.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def price_in_minor_units(stars: int) -> int:
    """Invoice amount for a star price, in minor units."""
    return to_minor_units(stars_to_currency(stars))
