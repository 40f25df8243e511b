from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dealcross.models.enums import EscrowCategory, TransactionType
from dealcross.schemas.primitives import CurrencyCode, PositiveAmount


class MilestoneIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str = Field(..., min_length=1, max_length=500)
    amount: PositiveAmount


class EscrowCreateRequest(BaseModel):
    """
    Buyer opens an escrow against a seller identified by email.
    Milestones, when given, must add up to amount.
    """
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=2000)
    seller_email: str = Field(..., min_length=3, max_length=256)
    amount: PositiveAmount
    currency: CurrencyCode
    category: EscrowCategory = EscrowCategory.other
    transaction_type: TransactionType = TransactionType.custom
    inspection_period_days: Optional[int] = Field(default=None, ge=0, le=90)
    milestones: List[MilestoneIn] = Field(default_factory=list)


class DeliverRequest(BaseModel):
    tracking_number: Optional[str] = Field(default=None, max_length=128)
    courier_service: Optional[str] = Field(default=None, max_length=128)


class NoteRequest(BaseModel):
    note: Optional[str] = Field(default=None, max_length=500)


class MilestoneAddRequest(MilestoneIn):
    pass


class MilestoneRejectRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str = Field(..., min_length=1, max_length=500)


class MilestoneOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    position: int
    description: str
    amount: Decimal
    status: str
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


class EscrowOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    escrow_id: str
    title: str
    description: str
    category: str
    transaction_type: str
    status: str

    buyer_id: uuid.UUID
    buyer_name: str
    buyer_email: str
    buyer_tier: str
    seller_id: uuid.UUID
    seller_name: str
    seller_email: str

    amount: Decimal
    currency: str
    currency_type: str

    buyer_fee_rate: Optional[Decimal] = None
    seller_fee_rate: Optional[Decimal] = None
    buyer_fee: Optional[Decimal] = None
    seller_fee: Optional[Decimal] = None
    buyer_pays: Optional[Decimal] = None
    net_payout: Optional[Decimal] = None
    refund_amount: Optional[Decimal] = None
    released_amount: Optional[Decimal] = None

    tracking_number: Optional[str] = None
    courier_service: Optional[str] = None
    inspection_period_days: int
    delivered_at: Optional[datetime] = None
    inspection_expires_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    funded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    paid_out_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    version: int
    milestones: List[MilestoneOut] = Field(default_factory=list)


class TimelineEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    seq: int
    status: str
    action: str
    actor_id: Optional[str] = None
    actor_role: str
    note: Optional[str] = None
    created_at: datetime


class EventFeedOut(BaseModel):
    escrow_id: str
    events: List[TimelineEventOut]
    cursor: int


class BuyingStats(BaseModel):
    total: int
    pending: int
    funded: int
    completed: int


class SellingStats(BaseModel):
    total: int
    pending: int
    delivered: int
    completed: int


class DashboardStatsOut(BaseModel):
    total: int
    buying: BuyingStats
    selling: SellingStats
    disputed: int
    requires_action: int


class TierLimitsOut(BaseModel):
    currency: str
    max_transaction_amount: Decimal
    max_transactions_per_month: int
    used_this_month: int


class CanCreateOut(BaseModel):
    can_create: bool
    blocking_reason: Optional[str] = None
    requires_action: Optional[str] = None
    tier: str
    limits: TierLimitsOut
