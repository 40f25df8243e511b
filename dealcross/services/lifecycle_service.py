# dealcross/services/lifecycle_service.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Optional

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from dealcross.core.config import get_settings
from dealcross.core.errors import (
    ConcurrencyConflictError,
    InvalidStateError,
    InvalidTransitionError,
    UnauthorizedActorError,
)
from dealcross.core.escrow_graph import ESCROW_TRANSITIONS, MILESTONE_RULES
from dealcross.core.timeutil import as_utc, utcnow
from dealcross.models.enums import ActorRole, EscrowAction, EscrowStatus, MilestoneEvent, MilestoneStatus
from dealcross.models.escrow import Escrow, EscrowMilestone, EscrowTimelineEntry
from dealcross.policies.rbac import Actor
from dealcross.services.fee_schedule_service import FeeScheduleService
from dealcross.services.payout_calculator import FeeBreakdown, compute_fees

logger = logging.getLogger(__name__)


def apply_lock_timeout(db: Session) -> None:
    """Bound how long a transition may wait on a row lock (postgres only)."""
    if db.get_bind().dialect.name != "postgresql":
        return
    ms = int(get_settings().transition_lock_timeout_ms)
    db.execute(text(f"SET LOCAL lock_timeout = {ms}"))


class LifecycleService:
    """
    The only writer of Escrow.status.

    transition() validates (action, current status, actor role), applies the
    status change plus its side effects, appends a timeline entry and
    flushes. The flush is conditioned on the escrow's version column, so a
    concurrent writer that got there first turns into
    ConcurrencyConflictError. The caller owns the commit.
    """

    def __init__(self, fees: Optional[FeeScheduleService] = None):
        self.fees = fees or FeeScheduleService()
        self._effects: Dict[EscrowAction, Callable[[Session, Escrow], None]] = {
            EscrowAction.fund: self._on_fund,
            EscrowAction.begin_inspection: self._on_begin_inspection,
            EscrowAction.confirm: self._on_completed,
            EscrowAction.release_milestones: self._on_completed,
            EscrowAction.payout: self._on_payout,
            EscrowAction.cancel: self._on_cancel,
        }

    # ─────────────────────────────────────────────
    # VALIDATION
    # ─────────────────────────────────────────────

    def check(
        self,
        escrow: Escrow,
        action: EscrowAction,
        actor: Actor,
        *,
        target: Optional[EscrowStatus] = None,
        now: Optional[datetime] = None,
    ) -> EscrowStatus:
        """Return the destination status, or raise without touching the escrow."""
        edge = ESCROW_TRANSITIONS.get(action)
        current = EscrowStatus(escrow.status)

        if edge is None or current not in edge.sources:
            raise InvalidTransitionError(
                f"Action {action.value} is not allowed from status {current.value}.",
                details={"status": current.value, "action": action.value},
            )

        if actor.role not in edge.roles:
            raise UnauthorizedActorError(
                f"Role {actor.role.value} may not perform {action.value}.",
                details={"action": action.value, "role": actor.role.value},
            )

        dest = target or edge.default_target
        if dest is None or dest not in edge.targets:
            raise InvalidTransitionError(
                f"Action {action.value} requires a target in {sorted(t.value for t in edge.targets)}.",
            )

        now = now or utcnow()
        if action == EscrowAction.pass_inspection and actor.role == ActorRole.system:
            expires = as_utc(escrow.inspection_expires_at)
            if expires is None or expires > now:
                raise InvalidTransitionError("Inspection period has not elapsed.")

        if action == EscrowAction.expire:
            expires = as_utc(escrow.expires_at)
            if expires is None or expires > now:
                raise InvalidTransitionError("Escrow has not reached its expiry.")

        if action == EscrowAction.fund and escrow.milestones:
            total = sum(Decimal(str(m.amount)) for m in escrow.milestones)
            if total != Decimal(str(escrow.amount)):
                raise InvalidStateError(
                    f"Milestones add up to {total}, escrow amount is {escrow.amount}.",
                    details={"milestones_total": str(total), "amount": str(escrow.amount)},
                )

        if action == EscrowAction.release_milestones:
            if not escrow.milestones or any(
                m.status != MilestoneStatus.approved.value for m in escrow.milestones
            ):
                raise InvalidTransitionError("Every milestone must be approved first.")

        return dest

    # ─────────────────────────────────────────────
    # TRANSITION
    # ─────────────────────────────────────────────

    def transition(
        self,
        db: Session,
        escrow: Escrow,
        action: EscrowAction,
        actor: Actor,
        *,
        note: Optional[str] = None,
        target: Optional[EscrowStatus] = None,
        now: Optional[datetime] = None,
    ) -> Escrow:
        dest = self.check(escrow, action, actor, target=target, now=now)
        previous = escrow.status

        def apply() -> None:
            effect = self._effects.get(action)
            if effect:
                effect(db, escrow)

            escrow.status = dest.value
            db.add(self._timeline_row(escrow, dest.value, action.value, actor, note))

        self._flush(db, escrow, action.value, apply)

        logger.info(
            "escrow transition",
            extra={
                "escrow_id": escrow.escrow_id,
                "action": action.value,
                "from": previous,
                "to": dest.value,
                "actor_role": actor.role.value,
            },
        )
        return escrow

    # ─────────────────────────────────────────────
    # MILESTONES
    # ─────────────────────────────────────────────

    def check_milestone(
        self,
        escrow: Escrow,
        milestone: Optional[EscrowMilestone],
        event: MilestoneEvent,
        actor: Actor,
    ) -> MilestoneStatus:
        rule = MILESTONE_RULES[event]
        current = EscrowStatus(escrow.status)

        if current not in rule.escrow_sources:
            raise InvalidStateError(
                f"Milestone {event.value} is not allowed while the escrow is {current.value}.",
                details={"status": current.value, "action": event.value},
            )
        if actor.role not in rule.roles:
            raise UnauthorizedActorError(
                f"Role {actor.role.value} may not perform {event.value}.",
                details={"action": event.value, "role": actor.role.value},
            )
        m_status = MilestoneStatus(milestone.status) if milestone is not None else None
        if m_status not in rule.milestone_sources:
            raise InvalidStateError(
                f"Milestone is {m_status.value if m_status else 'missing'}; cannot apply {event.value}.",
                details={"milestone_status": m_status.value if m_status else None, "action": event.value},
            )
        return rule.milestone_target

    def record_milestone(
        self,
        db: Session,
        escrow: Escrow,
        milestone: EscrowMilestone,
        event: MilestoneEvent,
        actor: Actor,
        *,
        note: Optional[str] = None,
    ) -> EscrowMilestone:
        """
        Move one milestone along. Escrow.status is untouched, but the escrow
        row is rewritten so its version guards the milestone set as well.
        """
        is_new = milestone not in escrow.milestones
        target = self.check_milestone(escrow, None if is_new else milestone, event, actor)

        def apply() -> None:
            now = utcnow()
            milestone.status = target.value
            if target == MilestoneStatus.submitted:
                milestone.submitted_at = now
                milestone.rejection_reason = None
            elif target == MilestoneStatus.approved:
                milestone.approved_at = now
            elif target == MilestoneStatus.rejected:
                milestone.rejection_reason = note
            if is_new:
                escrow.milestones.append(milestone)

            escrow.updated_at = now
            db.add(self._timeline_row(escrow, escrow.status, event.value, actor, note))

        self._flush(db, escrow, event.value, apply)
        logger.info(
            "milestone updated",
            extra={"escrow_id": escrow.escrow_id, "position": milestone.position, "event": event.value},
        )
        return milestone

    # ─────────────────────────────────────────────
    # PERSISTENCE
    # ─────────────────────────────────────────────

    def _timeline_row(
        self, escrow: Escrow, status: str, action: str, actor: Actor, note: Optional[str]
    ) -> EscrowTimelineEntry:
        return EscrowTimelineEntry(
            escrow_pk=escrow.id,
            status=status,
            action=action,
            actor_id=actor.actor_id,
            actor_role=actor.role.value,
            note=note,
            created_at=utcnow(),
        )

    def _flush(self, db: Session, escrow: Escrow, label: str, apply: Callable[[], None]) -> None:
        """
        Apply in-memory changes and flush under the escrow's version check.
        Any failure rolls the session back.
        """
        try:
            apply_lock_timeout(db)
            apply()
            db.flush()
        except StaleDataError:
            db.rollback()
            logger.warning(
                "escrow write lost a race",
                extra={"escrow_id": escrow.escrow_id, "action": label},
            )
            raise ConcurrencyConflictError(
                "Escrow was modified concurrently; retry the request.",
                details={"action": label},
            )
        except OperationalError as e:
            db.rollback()
            # lock_timeout / serialization failures surface here on postgres
            logger.warning(
                "escrow write timed out waiting for lock",
                extra={"escrow_id": escrow.escrow_id, "action": label, "error": str(e.orig)},
            )
            raise ConcurrencyConflictError(
                "Escrow is busy; retry the request.",
                details={"action": label},
            )
        except Exception:
            db.rollback()
            raise

    # ─────────────────────────────────────────────
    # SIDE EFFECTS
    # ─────────────────────────────────────────────

    def _apply_fees(self, escrow: Escrow, breakdown: FeeBreakdown) -> None:
        escrow.buyer_fee_rate = breakdown.buyer_fee_rate
        escrow.seller_fee_rate = breakdown.seller_fee_rate
        escrow.buyer_fee = breakdown.buyer_fee
        escrow.seller_fee = breakdown.seller_fee
        escrow.buyer_pays = breakdown.buyer_pays
        escrow.net_payout = breakdown.net_payout

    def _on_fund(self, db: Session, escrow: Escrow) -> None:
        schedule = self.fees.get_fee_schedule(db, tier=escrow.buyer_tier, currency=escrow.currency)
        breakdown = compute_fees(
            escrow.amount, escrow.buyer_tier, escrow.currency, {(escrow.buyer_tier, escrow.currency): schedule}
        )
        self._apply_fees(escrow, breakdown)
        escrow.funded_at = utcnow()

    def _on_begin_inspection(self, db: Session, escrow: Escrow) -> None:
        escrow.inspection_expires_at = utcnow() + timedelta(days=escrow.inspection_period_days)

    def _on_completed(self, db: Session, escrow: Escrow) -> None:
        escrow.completed_at = utcnow()

    def _on_payout(self, db: Session, escrow: Escrow) -> None:
        """
        Final figures use the rates locked in at funding. The base is the
        amount released to the seller (full amount unless a dispute split it).
        """
        base = escrow.released_amount if escrow.released_amount is not None else escrow.amount
        rates = {
            "buyer_fee_rate": escrow.buyer_fee_rate,
            "seller_fee_rate": escrow.seller_fee_rate,
        }
        if rates["seller_fee_rate"] is None:
            # never funded through fund(): fall back to the live schedule
            schedule = self.fees.get_fee_schedule(db, tier=escrow.buyer_tier, currency=escrow.currency)
            rates = {"buyer_fee_rate": schedule.buyer_fee_rate, "seller_fee_rate": schedule.seller_fee_rate}

        breakdown = compute_fees(base, escrow.buyer_tier, escrow.currency, {(escrow.buyer_tier, escrow.currency): rates})
        escrow.seller_fee = breakdown.seller_fee
        escrow.net_payout = breakdown.net_payout
        escrow.paid_out_at = utcnow()

    def _on_cancel(self, db: Session, escrow: Escrow) -> None:
        escrow.cancelled_at = utcnow()
