from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dealcross.models.enums import DisputeReason, DisputeWinner
from dealcross.schemas.primitives import NonNegAmount


class DisputeCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: DisputeReason
    description: str = Field(..., min_length=1, max_length=2000)
    evidence: List[str] = Field(default_factory=list, max_length=20, description="evidence URLs or file refs")


class DisputeResolveRequest(BaseModel):
    """
    winner=seller: escrow completes, refund_amount must be empty or 0.
    winner=buyer: escrow is refunded; refund_amount defaults to the full amount.
    """
    model_config = ConfigDict(extra="forbid")

    winner: DisputeWinner
    refund_amount: Optional[NonNegAmount] = None
    summary: str = Field(..., min_length=1, max_length=2000)


class DisputeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dispute_id: str
    escrow_id: str
    reason: str
    description: str
    evidence: List[str] = Field(default_factory=list)
    status: str
    initiator_id: str
    initiator_role: str
    deadline_at: datetime
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = None
    winner: Optional[str] = None
    summary: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    escrow_status: str

    @classmethod
    def from_row(cls, dispute) -> "DisputeOut":
        return cls(
            dispute_id=dispute.dispute_id,
            escrow_id=dispute.escrow.escrow_id,
            reason=dispute.reason,
            description=dispute.description,
            evidence=list(dispute.evidence or []),
            status=dispute.status,
            initiator_id=dispute.initiator_id,
            initiator_role=dispute.initiator_role,
            deadline_at=dispute.deadline_at,
            assigned_to=dispute.assigned_to,
            assigned_at=dispute.assigned_at,
            winner=dispute.winner,
            summary=dispute.summary,
            refund_amount=dispute.refund_amount,
            resolved_by=dispute.resolved_by,
            resolved_at=dispute.resolved_at,
            created_at=dispute.created_at,
            escrow_status=dispute.escrow.status,
        )
