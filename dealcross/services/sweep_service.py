# dealcross/services/sweep_service.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealcross.core.errors import ConcurrencyConflictError, InvalidTransitionError
from dealcross.core.timeutil import utcnow
from dealcross.models.enums import EscrowAction, EscrowStatus
from dealcross.models.escrow import Escrow
from dealcross.policies.rbac import SYSTEM_ACTOR
from dealcross.services.audit_service import AuditAction, AuditService
from dealcross.services.lifecycle_service import LifecycleService
from dealcross.services.notification_service import Notifier

logger = logging.getLogger(__name__)

EXPIRABLE = (
    EscrowStatus.accepted.value,
    EscrowStatus.funded.value,
    EscrowStatus.in_progress.value,
)


class SweepService:
    """
    Deadline-driven transitions, run by an external scheduler:
    - inspection windows that elapsed pass as `system`
    - escrows past expires_at in accepted/funded/in_progress expire
    - completed escrows still holding funds are paid out

    One commit per escrow. An escrow a party touched in the meantime is
    skipped and picked up by the next run if still due.
    """

    def __init__(self, lifecycle: Optional[LifecycleService] = None, notifier: Optional[Notifier] = None):
        self.lifecycle = lifecycle or LifecycleService()
        self.notifier = notifier or Notifier()

    def _apply(self, db: Session, escrow: Escrow, action: EscrowAction, now: datetime) -> bool:
        previous = escrow.status
        try:
            self.lifecycle.transition(db, escrow, action, SYSTEM_ACTOR, note="sweep", now=now)
            AuditService().record(
                db,
                actor_id=SYSTEM_ACTOR.actor_id,
                actor_role=SYSTEM_ACTOR.role.value,
                subject_type="escrow",
                subject_id=escrow.escrow_id,
                action=AuditAction.ESCROW_TRANSITION,
                payload_summary={"action": action.value, "from": previous, "to": escrow.status},
            )
            db.commit()
        except (ConcurrencyConflictError, InvalidTransitionError) as e:
            db.rollback()
            logger.warning(
                "sweep skipped escrow",
                extra={"escrow_id": escrow.escrow_id, "action": action.value, "error": e.kind},
            )
            return False

        self.notifier.notify_parties(escrow, f"escrow_{escrow.status}", {"escrow_id": escrow.escrow_id})
        return True

    def run_once(self, db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        counts = {"inspections_passed": 0, "expired": 0, "paid_out": 0, "skipped": 0}

        due_inspections = list(
            db.execute(
                select(Escrow.escrow_id).where(
                    Escrow.status == EscrowStatus.inspection_pending.value,
                    Escrow.inspection_expires_at <= now,
                )
            ).scalars().all()
        )
        due_expiry = list(
            db.execute(
                select(Escrow.escrow_id).where(
                    Escrow.status.in_(EXPIRABLE),
                    Escrow.expires_at <= now,
                )
            ).scalars().all()
        )
        due_payout = list(
            db.execute(
                select(Escrow.escrow_id).where(Escrow.status == EscrowStatus.completed.value)
            ).scalars().all()
        )

        for ref, action, key in [
            *((r, EscrowAction.pass_inspection, "inspections_passed") for r in due_inspections),
            *((r, EscrowAction.expire, "expired") for r in due_expiry),
            *((r, EscrowAction.payout, "paid_out") for r in due_payout),
        ]:
            escrow = db.execute(select(Escrow).where(Escrow.escrow_id == ref)).scalar_one()
            if self._apply(db, escrow, action, now):
                counts[key] += 1
            else:
                counts["skipped"] += 1

        logger.info("sweep finished", extra=counts)
        return counts
