# dealcross/services/dispute_service.py
from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealcross.core.config import get_settings
from dealcross.core.errors import (
    AlreadyResolvedError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from dealcross.core.timeutil import utcnow
from dealcross.models.dispute import Dispute
from dealcross.models.enums import (
    DisputeReason,
    DisputeStatus,
    DisputeWinner,
    EscrowAction,
    EscrowStatus,
)
from dealcross.models.escrow import Escrow
from dealcross.policies.rbac import Actor
from dealcross.services.audit_service import AuditAction, AuditService
from dealcross.services.lifecycle_service import LifecycleService
from dealcross.services.notification_service import Notifier
from dealcross.services.payout_calculator import quantize_money, to_decimal

logger = logging.getLogger(__name__)


class DisputeService:
    """
    Fork of the escrow lifecycle.

    Invariants:
    - at most one unresolved dispute per escrow (the escrow sits in `disputed`)
    - a resolved dispute is never modified again
    - resolution drives the escrow to completed (seller) or refunded (buyer)
    """

    def __init__(self, lifecycle: Optional[LifecycleService] = None, notifier: Optional[Notifier] = None):
        self.lifecycle = lifecycle or LifecycleService()
        self.notifier = notifier or Notifier()

    # ---------------------------
    # READS
    # ---------------------------

    def get(self, db: Session, *, dispute_id: str) -> Dispute:
        row = db.execute(select(Dispute).where(Dispute.dispute_id == dispute_id)).scalar_one_or_none()
        if not row:
            raise NotFoundError("Dispute not found.")
        return row

    def list(
        self,
        db: Session,
        *,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dispute]:
        q = select(Dispute)
        if status:
            q = q.where(Dispute.status == status)
        q = q.order_by(Dispute.created_at.desc()).limit(limit).offset(offset)
        return list(db.execute(q).scalars().all())

    def open_for_escrow(self, db: Session, *, escrow: Escrow) -> Optional[Dispute]:
        return db.execute(
            select(Dispute).where(
                Dispute.escrow_pk == escrow.id,
                Dispute.status != DisputeStatus.resolved.value,
            )
        ).scalar_one_or_none()

    # ---------------------------
    # MUTATIONS
    # ---------------------------

    def raise_dispute(
        self,
        db: Session,
        *,
        escrow: Escrow,
        reason: DisputeReason,
        description: str,
        evidence: List[str],
        initiator: Actor,
        request_id: Optional[str] = None,
    ) -> Dispute:
        if escrow.is_terminal:
            raise InvalidStateError(f"Escrow is {escrow.status}; disputes are closed.")
        if escrow.status == EscrowStatus.disputed.value or self.open_for_escrow(db, escrow=escrow):
            raise InvalidStateError("Escrow already has an open dispute.")
        if not description or not description.strip():
            raise ValidationError("description is required.")

        self.lifecycle.check(escrow, EscrowAction.raise_dispute, initiator)

        prior = escrow.status
        dispute = Dispute(
            escrow_pk=escrow.id,
            reason=DisputeReason(reason).value,
            description=description.strip(),
            evidence=list(evidence or []),
            status=DisputeStatus.open.value,
            initiator_id=initiator.actor_id,
            initiator_role=initiator.role.value,
            deadline_at=utcnow() + timedelta(days=get_settings().dispute_window_days),
        )
        db.add(dispute)

        self.lifecycle.transition(
            db,
            escrow,
            EscrowAction.raise_dispute,
            initiator,
            note=f"{dispute.reason}",
        )
        AuditService().record(
            db,
            actor_id=initiator.actor_id,
            actor_role=initiator.role.value,
            subject_type="escrow",
            subject_id=escrow.escrow_id,
            action=AuditAction.DISPUTE_RAISED,
            payload_summary={"dispute_id": dispute.dispute_id, "reason": dispute.reason, "from": prior},
            request_id=request_id,
        )
        db.commit()
        db.refresh(dispute)

        self.notifier.notify_parties(
            escrow,
            "dispute_raised",
            {"escrow_id": escrow.escrow_id, "dispute_id": dispute.dispute_id, "reason": dispute.reason},
        )
        return dispute

    def assign(
        self,
        db: Session,
        *,
        dispute: Dispute,
        arbitrator: Actor,
        request_id: Optional[str] = None,
    ) -> Dispute:
        if dispute.is_resolved:
            raise AlreadyResolvedError("Dispute is already resolved.")

        dispute.assigned_to = arbitrator.actor_id
        dispute.assigned_at = utcnow()
        dispute.status = DisputeStatus.under_review.value

        AuditService().record(
            db,
            actor_id=arbitrator.actor_id,
            actor_role=arbitrator.role.value,
            subject_type="dispute",
            subject_id=dispute.dispute_id,
            action=AuditAction.DISPUTE_ASSIGNED,
            payload_summary={"assigned_to": arbitrator.actor_id},
            request_id=request_id,
        )
        db.commit()
        db.refresh(dispute)
        return dispute

    def resolve_dispute(
        self,
        db: Session,
        *,
        dispute: Dispute,
        winner: DisputeWinner,
        refund_amount: Optional[Any],
        summary: str,
        arbitrator: Actor,
        request_id: Optional[str] = None,
    ) -> Dispute:
        if dispute.is_resolved:
            raise AlreadyResolvedError("Dispute is already resolved.")

        winner = DisputeWinner(winner)
        escrow = dispute.escrow
        amount = Decimal(str(escrow.amount))
        refund = None if refund_amount is None else to_decimal(refund_amount, "refund_amount")

        if winner == DisputeWinner.seller:
            if refund is not None and refund != 0:
                raise ValidationError("refund_amount must be empty when the seller wins.")
            refund = Decimal("0")
            target = EscrowStatus.completed
        else:
            refund = amount if refund is None else quantize_money(refund, escrow.currency)
            if refund <= 0 or refund > amount:
                raise ValidationError(f"refund_amount must be in (0, {amount}].")
            target = EscrowStatus.refunded

        self.lifecycle.check(escrow, EscrowAction.resolve, arbitrator, target=target)

        now = utcnow()
        escrow.refund_amount = refund
        escrow.released_amount = amount - refund
        if target == EscrowStatus.completed:
            escrow.completed_at = now

        dispute.status = DisputeStatus.resolved.value
        dispute.winner = winner.value
        dispute.summary = summary
        dispute.refund_amount = refund
        dispute.resolved_by = arbitrator.actor_id
        dispute.resolved_at = now

        self.lifecycle.transition(
            db,
            escrow,
            EscrowAction.resolve,
            arbitrator,
            note=f"winner={winner.value}",
            target=target,
        )
        AuditService().record(
            db,
            actor_id=arbitrator.actor_id,
            actor_role=arbitrator.role.value,
            subject_type="dispute",
            subject_id=dispute.dispute_id,
            action=AuditAction.DISPUTE_RESOLVED,
            payload_summary={
                "escrow_id": escrow.escrow_id,
                "winner": winner.value,
                "refund_amount": refund,
                "status": target.value,
            },
            request_id=request_id,
        )
        db.commit()
        db.refresh(dispute)

        logger.info(
            "dispute resolved",
            extra={"dispute_id": dispute.dispute_id, "winner": winner.value, "request_id": request_id},
        )
        self.notifier.notify_parties(
            escrow,
            "dispute_resolved",
            {
                "escrow_id": escrow.escrow_id,
                "dispute_id": dispute.dispute_id,
                "winner": winner.value,
                "refund_amount": str(refund),
            },
        )
        return dispute
