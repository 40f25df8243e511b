# dealcross/services/payout_calculator.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Mapping, Optional, Tuple

from dealcross.core.errors import TierNotConfiguredError, ValidationError
from dealcross.models.enums import CRYPTO_CURRENCIES

# minor units per currency; fiat default 2
_ZERO_DECIMAL_CURRENCIES = {"JPY"}
_CRYPTO_PLACES = 8


def minor_unit(currency: str) -> Decimal:
    if currency in CRYPTO_CURRENCIES:
        return Decimal(1).scaleb(-_CRYPTO_PLACES)
    if currency in _ZERO_DECIMAL_CURRENCIES:
        return Decimal(1)
    return Decimal("0.01")


def quantize_money(value: Decimal, currency: str) -> Decimal:
    return value.quantize(minor_unit(currency), rounding=ROUND_HALF_UP)


def to_decimal(value: Any, field: str = "value") -> Decimal:
    if isinstance(value, float):
        # go through repr so 0.025 stays 0.025
        value = repr(value)
    try:
        out = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be numeric.")
    if not out.is_finite():
        raise ValidationError(f"{field} must be finite.")
    return out


@dataclass(frozen=True)
class FeeBreakdown:
    amount: Decimal
    currency: str
    tier: str
    buyer_fee_rate: Decimal
    seller_fee_rate: Decimal
    buyer_fee: Decimal
    seller_fee: Decimal
    net_payout: Decimal
    buyer_pays: Decimal

    def as_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "currency": self.currency,
            "tier": self.tier,
            "buyer_fee_rate": self.buyer_fee_rate,
            "seller_fee_rate": self.seller_fee_rate,
            "buyer_fee": self.buyer_fee,
            "seller_fee": self.seller_fee,
            "net_payout": self.net_payout,
            "buyer_pays": self.buyer_pays,
        }


def _rate(entry: Any, name: str) -> Decimal:
    if isinstance(entry, Mapping):
        raw = entry.get(name)
    else:
        raw = getattr(entry, name, None)
    if raw is None:
        raise TierNotConfiguredError(f"Fee schedule entry has no {name}.")
    return to_decimal(raw, name)


def compute_fees(
    amount: Any,
    tier: str,
    currency: str,
    schedule: Mapping[Tuple[str, str], Any],
) -> FeeBreakdown:
    """
    Pure fee computation.

    schedule maps (tier, currency) to an entry exposing buyer_fee_rate and
    seller_fee_rate, either as attributes (FeeSchedule rows) or as keys.

        buyer_fee  = amount * buyer_fee_rate
        seller_fee = amount * seller_fee_rate
        net_payout = amount - seller_fee
        buyer_pays = amount + buyer_fee

    Fees are rounded half-up to the currency's minor unit; net_payout and
    buyer_pays are derived from the rounded fees so the parts always add up.
    """
    tier = getattr(tier, "value", tier)
    entry: Optional[Any] = schedule.get((tier, currency))
    if entry is None:
        raise TierNotConfiguredError(f"No fee schedule configured for tier {tier} / {currency}.")

    amt = to_decimal(amount, "amount")
    if amt <= 0:
        raise ValidationError("amount must be greater than zero.")

    buyer_rate = _rate(entry, "buyer_fee_rate")
    seller_rate = _rate(entry, "seller_fee_rate")

    buyer_fee = quantize_money(amt * buyer_rate, currency)
    seller_fee = quantize_money(amt * seller_rate, currency)

    return FeeBreakdown(
        amount=amt,
        currency=currency,
        tier=tier,
        buyer_fee_rate=buyer_rate,
        seller_fee_rate=seller_rate,
        buyer_fee=buyer_fee,
        seller_fee=seller_fee,
        net_payout=amt - seller_fee,
        buyer_pays=amt + buyer_fee,
    )
