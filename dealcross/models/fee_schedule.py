#dealcross/models/fee_schedule.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import (
    String,
    DateTime,
    Integer,
    Numeric,
    UniqueConstraint,
    CheckConstraint,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from dealcross.db.base import Base


class FeeSchedule(Base):
    """
    Fee rates and limits for one (tier, currency) pair.
    -1 on the max_* columns means unlimited.
    """

    __tablename__ = "fee_schedules"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)

    tier: Mapped[str] = mapped_column(String(16), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)

    buyer_fee_rate: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)
    seller_fee_rate: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False)

    monthly_cost: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False, default=Decimal("0"))
    setup_fee: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False, default=Decimal("0"))
    max_transaction_amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False, default=Decimal("-1"))
    max_transactions_per_month: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)

    updated_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("tier", "currency", name="uq_fee_schedule_tier_currency"),
        CheckConstraint("buyer_fee_rate >= 0 AND buyer_fee_rate < 1", name="ck_fee_schedule_buyer_rate"),
        CheckConstraint("seller_fee_rate >= 0 AND seller_fee_rate < 1", name="ck_fee_schedule_seller_rate"),
        CheckConstraint("max_transaction_amount >= -1", name="ck_fee_schedule_max_amount"),
        CheckConstraint("max_transactions_per_month >= -1", name="ck_fee_schedule_max_tx"),
    )


class FeeHistoryEntry(Base):
    """
    Immutable history row written for every fee schedule mutation.
    """
    __tablename__ = "fee_history"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)

    tier: Mapped[str] = mapped_column(String(16), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    field: Mapped[str] = mapped_column(String(48), nullable=False)  # "*" for a no-op reset

    old_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), nullable=True)
    new_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), nullable=True)

    action: Mapped[str] = mapped_column(String(16), nullable=False)  # update | reset
    actor: Mapped[str] = mapped_column(String(128), nullable=False)

    # set by FeeScheduleService
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_fee_history_tier_currency", "tier", "currency"),
        Index("ix_fee_history_created_at", "created_at"),
    )
