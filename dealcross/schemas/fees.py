from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from dealcross.models.enums import FeeField, Tier
from dealcross.schemas.primitives import CurrencyCode


class FeeUpdateRequest(BaseModel):
    """
    One field of one (tier, currency) entry. Range rules are enforced by
    the service so that history is never written for a rejected value.
    """
    model_config = ConfigDict(extra="forbid")

    tier: Tier
    currency: CurrencyCode
    field: FeeField
    value: Union[int, Decimal]


class FeeScheduleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tier: str
    currency: str
    buyer_fee_rate: Decimal
    seller_fee_rate: Decimal
    monthly_cost: Decimal
    setup_fee: Decimal
    max_transaction_amount: Decimal
    max_transactions_per_month: int
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class FeeHistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tier: str
    currency: str
    field: str
    old_value: Optional[Decimal] = None
    new_value: Optional[Decimal] = None
    action: str
    actor: str
    created_at: datetime


class FeePreviewOut(BaseModel):
    amount: Decimal
    currency: str
    tier: str
    buyer_fee_rate: Decimal
    seller_fee_rate: Decimal
    buyer_fee: Decimal
    seller_fee: Decimal
    net_payout: Decimal
    buyer_pays: Decimal


class SweepOut(BaseModel):
    inspections_passed: int = 0
    expired: int = 0
    paid_out: int = 0
    skipped: int = 0
