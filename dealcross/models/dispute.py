#dealcross/models/dispute.py
from __future__ import annotations

import random
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy import String, DateTime, Numeric, ForeignKey, Index, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dealcross.db.base import Base, JSONType
from dealcross.models.enums import DisputeStatus


def new_dispute_ref() -> str:
    return f"DSP{int(time.time() * 1000)}{random.randint(0, 999):03d}"


class Dispute(Base):
    """
    Contest raised by a party on a non-terminal escrow.
    Never deleted. Once resolved, the row is immutable.
    """
    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    dispute_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, default=new_dispute_ref)

    escrow_pk: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, ForeignKey("escrows.id", ondelete="RESTRICT"), nullable=False
    )

    reason: Mapped[str] = mapped_column(String(48), nullable=False)
    description: Mapped[str] = mapped_column(String(2000), nullable=False)
    evidence: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=DisputeStatus.open.value)

    initiator_id: Mapped[str] = mapped_column(String(128), nullable=False)
    initiator_role: Mapped[str] = mapped_column(String(16), nullable=False)
    deadline_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    assigned_to: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # resolution
    winner: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 8), nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    escrow = relationship("Escrow", back_populates="disputes")

    __table_args__ = (
        Index("ix_disputes_escrow_status", "escrow_pk", "status"),
        Index("ix_disputes_status_created", "status", "created_at"),
    )

    @property
    def is_resolved(self) -> bool:
        return self.status == DisputeStatus.resolved.value
