"""
Tests for price calculation and group discounts.
"""

from decimal import Decimal

import pytest

from activity_booking.schemas.catalog import GroupDiscount
from activity_booking.services.pricing import (
    DiscountRule,
    calculate_price,
    round_half_up,
    select_group_discount,
)

TAX = Decimal("0.15")


def test_price_without_discount():
    price = calculate_price(10000, 2, tax_rate=TAX)
    assert price.gross_amount == 20000
    assert price.discount_amount == 0
    assert price.discount_reason is None
    assert price.subtotal == 20000
    assert price.tax_amount == 3000
    assert price.total_price == 23000


def test_group_discount_applies_at_threshold():
    discount = select_group_discount(
        [GroupDiscount(min_participants=4, discount_percent=Decimal("10"))], 4
    )
    price = calculate_price(10000, 4, tax_rate=TAX, discount=discount)
    assert price.discount_amount == 4000
    assert price.subtotal == 36000
    assert price.tax_amount == 5400
    assert price.total_price == 41400
    assert price.discount_reason == "group discount (4+ participants)"


def test_highest_eligible_discount_wins():
    tiers = [
        GroupDiscount(min_participants=3, discount_percent=Decimal("5")),
        GroupDiscount(min_participants=5, discount_percent=Decimal("15")),
        GroupDiscount(min_participants=10, discount_percent=Decimal("25")),
    ]
    assert select_group_discount(tiers, 2) is None
    assert select_group_discount(tiers, 4).percent == Decimal("5")
    assert select_group_discount(tiers, 7).percent == Decimal("15")


def test_fees_are_added_after_tax():
    price = calculate_price(10000, 1, tax_rate=TAX, platform_fee=250, processing_fee=100)
    assert price.total_price == 10000 + 1500 + 250 + 100


def test_rounding_is_half_up_to_minor_unit():
    assert round_half_up(Decimal("0.5")) == 1
    assert round_half_up(Decimal("2.5")) == 3
    assert round_half_up(Decimal("2.49")) == 2
    # 333 * 0.15 = 49.95 -> 50
    assert calculate_price(333, 1, tax_rate=TAX).tax_amount == 50


def test_fixed_discount_larger_than_gross_clamps_to_zero():
    price = calculate_price(1000, 1, tax_rate=TAX, discount=DiscountRule(reason="voucher", amount=5000))
    assert price.subtotal == 0
    assert price.discount_amount == 1000
    assert price.total_price == 0


def test_negative_inputs_clamp():
    price = calculate_price(-100, 2, tax_rate=Decimal("-0.1"), platform_fee=-5)
    assert price.base_price == 0
    assert price.tax_rate == Decimal("0")
    assert price.platform_fee == 0
    assert price.total_price == 0


def test_zero_participants_rejected():
    with pytest.raises(ValueError):
        calculate_price(10000, 0, tax_rate=TAX)


def test_snapshot_keys_match_booking_columns():
    from activity_booking.models.booking import PRICING_FIELDS

    snapshot = calculate_price(10000, 2, tax_rate=TAX).as_snapshot()
    assert set(snapshot) == set(PRICING_FIELDS)
