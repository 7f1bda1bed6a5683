"""
Price calculation for a booking.

All amounts are integer minor units (halalas for SAR). The only rounding
step is ROUND_HALF_UP to the smallest unit, applied to the discount and the
tax, so the same inputs always give the same total:

    total = (base_price * participants - discount) * (1 + tax_rate)
            + platform_fee + processing_fee

Negative intermediates clamp to zero with a warning; the total is never
negative.
"""

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from activity_booking.core.logging import get_logger
from activity_booking.schemas.catalog import GroupDiscount

logger = get_logger(__name__)

ONE_UNIT = Decimal("1")


@dataclass(frozen=True)
class DiscountRule:
    reason: str
    percent: Optional[Decimal] = None
    amount: Optional[int] = None


@dataclass(frozen=True)
class PriceBreakdown:
    currency: str
    base_price: int
    gross_amount: int
    discount_amount: int
    discount_reason: Optional[str]
    subtotal: int
    tax_rate: Decimal
    tax_amount: int
    platform_fee: int
    processing_fee: int
    total_price: int

    def as_snapshot(self) -> dict:
        """Column values for the booking's frozen pricing snapshot."""
        return asdict(self)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(ONE_UNIT, rounding=ROUND_HALF_UP))


def _non_negative(name: str, value: int) -> int:
    if value < 0:
        logger.warning("pricing_value_clamped", field=name, value=value)
        return 0
    return value


def select_group_discount(
    group_discounts: Iterable[GroupDiscount], participants: int
) -> Optional[DiscountRule]:
    """Pick the highest discount whose threshold the party size meets."""
    eligible = [d for d in group_discounts if d.min_participants <= participants]
    if not eligible:
        return None
    best = max(eligible, key=lambda d: (d.discount_percent, d.min_participants))
    if best.discount_percent <= 0:
        return None
    return DiscountRule(
        reason=f"group discount ({best.min_participants}+ participants)",
        percent=Decimal(best.discount_percent),
    )


def calculate_price(
    base_price: int,
    participants: int,
    *,
    tax_rate: Decimal,
    discount: Optional[DiscountRule] = None,
    platform_fee: int = 0,
    processing_fee: int = 0,
    currency: str = "SAR",
) -> PriceBreakdown:
    if participants < 1:
        raise ValueError("participants must be at least 1")

    base_price = _non_negative("base_price", base_price)
    tax_rate = Decimal(tax_rate)
    if tax_rate < 0:
        logger.warning("pricing_value_clamped", field="tax_rate", value=str(tax_rate))
        tax_rate = Decimal("0")

    gross = base_price * participants

    discount_amount = 0
    discount_reason = None
    if discount is not None:
        if discount.percent is not None:
            discount_amount = round_half_up(Decimal(gross) * Decimal(discount.percent) / 100)
        elif discount.amount is not None:
            discount_amount = discount.amount
        discount_amount = _non_negative("discount_amount", discount_amount)
        discount_reason = discount.reason if discount_amount else None

    subtotal = _non_negative("subtotal", gross - discount_amount)
    if discount_amount > gross:
        discount_amount = gross

    tax_amount = round_half_up(Decimal(subtotal) * tax_rate)
    platform_fee = _non_negative("platform_fee", platform_fee)
    processing_fee = _non_negative("processing_fee", processing_fee)

    total = subtotal + tax_amount + platform_fee + processing_fee

    return PriceBreakdown(
        currency=currency,
        base_price=base_price,
        gross_amount=gross,
        discount_amount=discount_amount,
        discount_reason=discount_reason,
        subtotal=subtotal,
        tax_rate=tax_rate,
        tax_amount=tax_amount,
        platform_fee=platform_fee,
        processing_fee=processing_fee,
        total_price=total,
    )
