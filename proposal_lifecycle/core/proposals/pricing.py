from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from proposal_lifecycle.core.proposals.models import LineItem, PricingBreakdown

_WHOLE_MINOR_UNIT = Decimal("1")


def round_minor(value: Decimal) -> int:
    return int(value.quantize(_WHOLE_MINOR_UNIT, rounding=ROUND_HALF_UP))


def compute_totals(
    line_items: Iterable[LineItem],
    tax_rate_percent: Decimal,
    discount_minor: int,
) -> PricingBreakdown:
    """
    Price a snapshot in integer minor units.

    Line totals are summed unrounded; only the subtotal and the tax are rounded
    half away from zero. Negative totals are returned as computed so callers
    decide how to reject them.
    """
    raw_subtotal = sum((item.line_total for item in line_items), Decimal(0))
    subtotal = round_minor(raw_subtotal)
    tax = round_minor(Decimal(subtotal) * Decimal(tax_rate_percent) / Decimal(100))
    return PricingBreakdown(
        subtotal=subtotal,
        tax=tax,
        discount=discount_minor,
        total=subtotal + tax - discount_minor,
        tax_rate_percent=Decimal(tax_rate_percent),
    )
