#dealcross/models/escrow.py
from __future__ import annotations

import random
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy import (
    String,
    DateTime,
    Integer,
    Numeric,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dealcross.db.base import Base
from dealcross.models.enums import EscrowStatus, MilestoneStatus, TERMINAL_STATUSES


def new_escrow_ref() -> str:
    return f"ESC{int(time.time() * 1000)}{random.randint(0, 999):03d}"


class Escrow(Base):
    """
    Held-funds transaction between a buyer and a seller.

    - status is mutated only through LifecycleService.transition
    - version is the optimistic concurrency token: every flush is
      conditioned on the version that was read
    - rows are never deleted; archived_at soft-archives terminal records
    """
    __tablename__ = "escrows"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, default=new_escrow_ref)

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(String(2000), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="other")
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False, default="custom")

    # parties (snapshotted at creation)
    buyer_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, ForeignKey("users.id"), nullable=False)
    buyer_name: Mapped[str] = mapped_column(String(128), nullable=False)
    buyer_email: Mapped[str] = mapped_column(String(256), nullable=False)
    buyer_tier: Mapped[str] = mapped_column(String(16), nullable=False)

    seller_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, ForeignKey("users.id"), nullable=False)
    seller_name: Mapped[str] = mapped_column(String(128), nullable=False)
    seller_email: Mapped[str] = mapped_column(String(256), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    currency_type: Mapped[str] = mapped_column(String(8), nullable=False, default="fiat")

    # fee snapshot (fund) / final figures (payout)
    buyer_fee_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 6), nullable=True)
    seller_fee_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 6), nullable=True)
    buyer_fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), nullable=True)
    seller_fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), nullable=True)
    buyer_pays: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), nullable=True)
    net_payout: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), nullable=True)

    # dispute outcome
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), nullable=True)
    released_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default=EscrowStatus.pending.value)

    # delivery / inspection
    tracking_number: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    courier_service: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    inspection_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    inspection_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    funded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_out_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    timeline = relationship(
        "EscrowTimelineEntry",
        back_populates="escrow",
        order_by="EscrowTimelineEntry.seq",
        cascade="all",
    )
    milestones = relationship(
        "EscrowMilestone",
        back_populates="escrow",
        order_by="EscrowMilestone.position",
        cascade="all",
    )
    disputes = relationship("Dispute", back_populates="escrow", order_by="Dispute.created_at")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_escrows_amount_positive"),
        Index("ix_escrows_buyer_status", "buyer_id", "status"),
        Index("ix_escrows_seller_status", "seller_id", "status"),
        Index("ix_escrows_status_expires", "status", "expires_at"),
        Index("ix_escrows_status_inspection", "status", "inspection_expires_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return EscrowStatus(self.status) in TERMINAL_STATUSES

    def party_role(self, user_id) -> Optional[str]:
        uid = str(user_id)
        if uid == str(self.buyer_id):
            return "buyer"
        if uid == str(self.seller_id):
            return "seller"
        return None


class EscrowTimelineEntry(Base):
    """
    Append-only. seq is global and monotonic, used as the event-feed cursor.
    """
    __tablename__ = "escrow_timeline"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    escrow_pk: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, ForeignKey("escrows.id", ondelete="RESTRICT"), nullable=False
    )

    status: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    actor_role: Mapped[str] = mapped_column(String(16), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    escrow = relationship("Escrow", back_populates="timeline")

    __table_args__ = (
        Index("ix_escrow_timeline_escrow_seq", "escrow_pk", "seq"),
    )


class EscrowMilestone(Base):
    """
    Staged release. The seller submits, the buyer approves or rejects;
    once every milestone is approved the escrow completes.
    """
    __tablename__ = "escrow_milestones"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    escrow_pk: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, ForeignKey("escrows.id", ondelete="RESTRICT"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(28, 8), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=MilestoneStatus.pending.value)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    escrow = relationship("Escrow", back_populates="milestones")

    __table_args__ = (
        UniqueConstraint("escrow_pk", "position", name="uq_escrow_milestone_position"),
        CheckConstraint("amount > 0", name="ck_escrow_milestone_amount_positive"),
        CheckConstraint(
            "status IN ('pending','submitted','approved','rejected')",
            name="ck_escrow_milestone_status",
        ),
    )
