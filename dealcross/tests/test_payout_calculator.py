from decimal import Decimal

import pytest

from dealcross.core.errors import TierNotConfiguredError, ValidationError
from dealcross.services.payout_calculator import compute_fees, minor_unit

SCHEDULE = {
    ("growth", "USD"): {"buyer_fee_rate": Decimal("0.03"), "seller_fee_rate": Decimal("0.02")},
    ("growth", "JPY"): {"buyer_fee_rate": Decimal("0.015"), "seller_fee_rate": Decimal("0.015")},
    ("growth", "BTC"): {"buyer_fee_rate": Decimal("0.0125"), "seller_fee_rate": Decimal("0.0125")},
}


def test_reference_breakdown():
    b = compute_fees(1000, "growth", "USD", SCHEDULE)
    assert b.buyer_fee == Decimal("30")
    assert b.seller_fee == Decimal("20")
    assert b.net_payout == Decimal("980")
    assert b.buyer_pays == Decimal("1030")


def test_parts_always_add_up():
    b = compute_fees("123.45", "growth", "USD", SCHEDULE)
    assert b.buyer_fee == Decimal("3.70")  # 3.7035
    assert b.seller_fee == Decimal("2.47")  # 2.469
    assert b.net_payout + b.seller_fee == b.amount
    assert b.buyer_pays - b.buyer_fee == b.amount


def test_rounds_half_up_to_minor_unit():
    b = compute_fees("0.25", "growth", "USD", SCHEDULE)
    # 0.0075 -> 0.01, 0.005 -> 0.01
    assert b.buyer_fee == Decimal("0.01")
    assert b.seller_fee == Decimal("0.01")


def test_zero_decimal_currency():
    b = compute_fees(1000, "growth", "JPY", SCHEDULE)
    assert b.buyer_fee == Decimal("15")
    assert b.buyer_fee.as_tuple().exponent == 0


def test_crypto_keeps_eight_places():
    b = compute_fees("0.12345678", "growth", "BTC", SCHEDULE)
    assert minor_unit("BTC") == Decimal("0.00000001")
    assert b.seller_fee == Decimal("0.00154321")


def test_float_input_is_not_binary_noise():
    b = compute_fees(0.1, "growth", "USD", {("growth", "USD"): {"buyer_fee_rate": 0.5, "seller_fee_rate": 0.5}})
    assert b.amount == Decimal("0.1")
    assert b.buyer_fee == Decimal("0.05")


def test_schedule_entries_may_be_objects():
    class Row:
        buyer_fee_rate = Decimal("0.03")
        seller_fee_rate = Decimal("0.02")

    assert compute_fees(1000, "growth", "USD", {("growth", "USD"): Row()}).net_payout == Decimal("980")


def test_missing_tier_currency_pair():
    with pytest.raises(TierNotConfiguredError):
        compute_fees(1000, "starter", "USD", SCHEDULE)
    with pytest.raises(TierNotConfiguredError):
        compute_fees(1000, "growth", "EUR", SCHEDULE)


@pytest.mark.parametrize("amount", [0, -5, "abc", "NaN"])
def test_rejects_bad_amounts(amount):
    with pytest.raises(ValidationError):
        compute_fees(amount, "growth", "USD", SCHEDULE)
