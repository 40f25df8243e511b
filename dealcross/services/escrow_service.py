# dealcross/services/escrow_service.py
from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dealcross.core.config import get_settings
from dealcross.core.errors import InvalidStateError, NotFoundError, ValidationError
from dealcross.core.escrow_graph import actions_for
from dealcross.core.timeutil import utcnow
from dealcross.models.enums import (
    CRYPTO_CURRENCIES,
    SUPPORTED_CURRENCIES,
    ActorRole,
    EscrowAction,
    EscrowCategory,
    EscrowStatus,
    MilestoneEvent,
    MilestoneStatus,
    TransactionType,
)
from dealcross.models.escrow import Escrow, EscrowMilestone, EscrowTimelineEntry
from dealcross.models.user import User
from dealcross.policies.rbac import (
    SYSTEM_ACTOR,
    Actor,
    Principal,
    can_view_escrow,
    party_actor,
)
from dealcross.services.audit_service import AuditAction, AuditService
from dealcross.services.fee_schedule_service import FeeScheduleService
from dealcross.services.lifecycle_service import LifecycleService
from dealcross.services.notification_service import Notifier
from dealcross.services.payout_calculator import quantize_money, to_decimal

logger = logging.getLogger(__name__)

MAX_FEED_PAGE = 200

# available from most open statuses; they never mean the deal is waiting on someone
PASSIVE_ACTIONS = frozenset({EscrowAction.cancel, EscrowAction.raise_dispute})


def _parse_uuid(raw: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


class EscrowService:
    """
    Escrow use cases for parties and admins.

    Every mutation goes through LifecycleService.transition, records an
    audit row in the same transaction and commits once. Notifications go
    out after the commit.
    """

    def __init__(
        self,
        lifecycle: Optional[LifecycleService] = None,
        fees: Optional[FeeScheduleService] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.fees = fees or FeeScheduleService()
        self.lifecycle = lifecycle or LifecycleService(fees=self.fees)
        self.notifier = notifier or Notifier()

    # ---------------------------
    # READS
    # ---------------------------

    def find(self, db: Session, *, escrow_id: str) -> Optional[Escrow]:
        return db.execute(select(Escrow).where(Escrow.escrow_id == escrow_id)).scalar_one_or_none()

    def get_escrow(self, db: Session, *, escrow_id: str, principal: Principal) -> Escrow:
        escrow = self.find(db, escrow_id=escrow_id)
        # non-parties without admin rights get the same answer as a missing id
        if escrow is None or not can_view_escrow(escrow, principal):
            raise NotFoundError("Escrow not found.")
        return escrow

    def list_escrows(
        self,
        db: Session,
        *,
        principal: Principal,
        status: Optional[str] = None,
        role: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Escrow]:
        uid = _parse_uuid(principal.user_id)
        if uid is None:
            return []

        if role == ActorRole.buyer.value:
            q = select(Escrow).where(Escrow.buyer_id == uid)
        elif role == ActorRole.seller.value:
            q = select(Escrow).where(Escrow.seller_id == uid)
        else:
            q = select(Escrow).where((Escrow.buyer_id == uid) | (Escrow.seller_id == uid))

        q = q.where(Escrow.archived_at.is_(None))
        if status:
            q = q.where(Escrow.status == status)
        q = q.order_by(Escrow.created_at.desc()).limit(limit).offset(offset)
        return list(db.execute(q).scalars().all())

    def fetch_since(
        self,
        db: Session,
        *,
        escrow: Escrow,
        cursor: int = 0,
        limit: int = 50,
    ) -> Tuple[List[EscrowTimelineEntry], int]:
        """
        Timeline rows after `cursor`, oldest first, plus the cursor to pass
        next time. An empty page returns the cursor unchanged.
        """
        limit = max(1, min(int(limit), MAX_FEED_PAGE))
        rows = list(
            db.execute(
                select(EscrowTimelineEntry)
                .where(
                    EscrowTimelineEntry.escrow_pk == escrow.id,
                    EscrowTimelineEntry.seq > cursor,
                )
                .order_by(EscrowTimelineEntry.seq.asc())
                .limit(limit)
            ).scalars().all()
        )
        next_cursor = rows[-1].seq if rows else cursor
        return rows, next_cursor

    # ---------------------------
    # DASHBOARD
    # ---------------------------

    def dashboard_stats(self, db: Session, *, principal: Principal) -> Dict[str, Any]:
        """
        Per-user counts over non-archived escrows.

        `requires_action` counts escrows where the user's side can move the
        deal forward right now (cancel and dispute don't count).
        """
        rows = self.list_escrows(db, principal=principal, limit=10_000)
        buying = [e for e in rows if str(e.buyer_id) == principal.user_id]
        selling = [e for e in rows if str(e.seller_id) == principal.user_id]

        def _count(items, status: EscrowStatus) -> int:
            return sum(1 for e in items if e.status == status.value)

        def _waiting(items, role: ActorRole) -> int:
            return sum(
                1 for e in items
                if actions_for(EscrowStatus(e.status), role) - PASSIVE_ACTIONS
            )

        return {
            "total": len(rows),
            "buying": {
                "total": len(buying),
                "pending": _count(buying, EscrowStatus.pending),
                "funded": _count(buying, EscrowStatus.funded),
                "completed": _count(buying, EscrowStatus.completed) + _count(buying, EscrowStatus.paid_out),
            },
            "selling": {
                "total": len(selling),
                "pending": _count(selling, EscrowStatus.pending),
                "delivered": _count(selling, EscrowStatus.delivered) + _count(selling, EscrowStatus.inspection_pending),
                "completed": _count(selling, EscrowStatus.completed) + _count(selling, EscrowStatus.paid_out),
            },
            "disputed": _count(rows, EscrowStatus.disputed),
            "requires_action": _waiting(buying, ActorRole.buyer) + _waiting(selling, ActorRole.seller),
        }

    def can_create(
        self,
        db: Session,
        *,
        principal: Principal,
        amount: Any = None,
        currency: str = "USD",
    ) -> Dict[str, Any]:
        """Pre-check for the create form: same tier rules as create_escrow, reported instead of raised."""
        uid = _parse_uuid(principal.user_id)
        user = db.get(User, uid) if uid else None
        if user is None:
            raise NotFoundError("User not found.")

        currency = (currency or "USD").upper()
        if currency not in SUPPORTED_CURRENCIES:
            raise ValidationError(f"Unsupported currency {currency}.")

        schedule = self.fees.get_fee_schedule(db, tier=user.tier, currency=currency)
        used = self.fees.monthly_usage(db, buyer_id=user.id)

        out: Dict[str, Any] = {
            "can_create": True,
            "blocking_reason": None,
            "requires_action": None,
            "tier": user.tier,
            "limits": {
                "currency": currency,
                "max_transaction_amount": schedule.max_transaction_amount,
                "max_transactions_per_month": schedule.max_transactions_per_month,
                "used_this_month": used,
            },
        }

        check_amount = to_decimal(amount, "amount") if amount is not None else Decimal("0")
        try:
            self.fees.check_limits(db, buyer_id=user.id, tier=user.tier, currency=currency, amount=check_amount)
        except ValidationError as e:
            if e.kind != "tier_limit_exceeded":
                raise
            out.update(can_create=False, blocking_reason=e.message, requires_action="upgrade_tier")
        return out

    # ---------------------------
    # CREATE
    # ---------------------------

    def _validate_milestones(
        self, milestones: List[Dict[str, Any]], amount: Optional[Decimal], currency: str
    ) -> List[Dict[str, Any]]:
        out = []
        for i, m in enumerate(milestones):
            desc = (m.get("description") or "").strip()
            if not desc:
                raise ValidationError(f"milestones[{i}].description is required.")
            m_amount = to_decimal(m.get("amount"), f"milestones[{i}].amount")
            if m_amount <= 0:
                raise ValidationError(f"milestones[{i}].amount must be greater than zero.")
            if quantize_money(m_amount, currency) != m_amount:
                raise ValidationError(f"milestones[{i}].amount has more precision than {currency} allows.")
            out.append({"description": desc, "amount": m_amount})

        if out and amount is not None and sum(m["amount"] for m in out) != amount:
            raise ValidationError("Milestone amounts must add up to the escrow amount.")
        return out

    def create_escrow(
        self,
        db: Session,
        *,
        buyer: Principal,
        payload: Dict[str, Any],
        request_id: Optional[str] = None,
    ) -> Escrow:
        settings = get_settings()

        buyer_uuid = _parse_uuid(buyer.user_id)
        buyer_row = db.get(User, buyer_uuid) if buyer_uuid else None
        if buyer_row is None:
            raise NotFoundError("Buyer account not found.")

        title = (payload.get("title") or "").strip()
        description = (payload.get("description") or "").strip()
        if not title:
            raise ValidationError("title is required.")
        if not description:
            raise ValidationError("description is required.")

        seller_email = (payload.get("seller_email") or "").strip().lower()
        seller_row = db.execute(
            select(User).where(func.lower(User.email) == seller_email)
        ).scalar_one_or_none()
        if seller_row is None:
            raise ValidationError("Seller not found.", kind="seller_not_found")
        if seller_row.id == buyer_row.id:
            raise ValidationError("Buyer and seller must be different accounts.")

        currency = (payload.get("currency") or "").upper()
        if currency not in SUPPORTED_CURRENCIES:
            raise ValidationError(f"Unsupported currency {currency or '(empty)'}.")

        raw_amount = to_decimal(payload.get("amount"), "amount")
        if raw_amount <= 0:
            raise ValidationError("amount must be greater than zero.")
        amount = quantize_money(raw_amount, currency)
        if amount != raw_amount:
            raise ValidationError(f"amount has more precision than {currency} allows.")

        try:
            category = EscrowCategory(payload.get("category") or EscrowCategory.other.value).value
            transaction_type = TransactionType(payload.get("transaction_type") or TransactionType.custom.value).value
        except ValueError as e:
            raise ValidationError(str(e))

        inspection_days = payload.get("inspection_period_days")
        if inspection_days is None:
            inspection_days = settings.default_inspection_period_days
        if int(inspection_days) < 0:
            raise ValidationError("inspection_period_days must be >= 0.")

        milestones = self._validate_milestones(list(payload.get("milestones") or []), amount, currency)

        self.fees.check_limits(
            db, buyer_id=buyer_row.id, tier=buyer_row.tier, currency=currency, amount=amount
        )

        now = utcnow()
        escrow = Escrow(
            title=title,
            description=description,
            category=category,
            transaction_type=transaction_type,
            buyer_id=buyer_row.id,
            buyer_name=buyer_row.name,
            buyer_email=buyer_row.email,
            buyer_tier=buyer_row.tier,
            seller_id=seller_row.id,
            seller_name=seller_row.name,
            seller_email=seller_row.email,
            amount=amount,
            currency=currency,
            currency_type="crypto" if currency in CRYPTO_CURRENCIES else "fiat",
            status=EscrowStatus.pending.value,
            inspection_period_days=int(inspection_days),
            expires_at=now + timedelta(days=settings.escrow_expiry_days),
            created_at=now,
        )
        for pos, m in enumerate(milestones):
            escrow.milestones.append(EscrowMilestone(position=pos, **m))
        db.add(escrow)
        db.flush()

        db.add(
            EscrowTimelineEntry(
                escrow_pk=escrow.id,
                status=EscrowStatus.pending.value,
                action=EscrowAction.create.value,
                actor_id=buyer.user_id,
                actor_role=ActorRole.buyer.value,
                created_at=now,
            )
        )
        AuditService().record(
            db,
            actor_id=buyer.user_id,
            actor_role=ActorRole.buyer.value,
            subject_type="escrow",
            subject_id=escrow.escrow_id,
            action=AuditAction.ESCROW_CREATED,
            payload_summary={
                "amount": amount,
                "currency": currency,
                "seller_id": seller_row.id,
                "milestones": len(milestones),
            },
            request_id=request_id,
        )
        db.commit()
        db.refresh(escrow)

        logger.info(
            "escrow created",
            extra={"escrow_id": escrow.escrow_id, "amount": str(amount), "currency": currency, "request_id": request_id},
        )
        self.notifier.notify(str(seller_row.id), "escrow_created", {"escrow_id": escrow.escrow_id})
        return escrow

    # ---------------------------
    # TRANSITIONS
    # ---------------------------

    def _audit_transition(
        self,
        db: Session,
        escrow: Escrow,
        actor: Actor,
        action: EscrowAction,
        previous: str,
        request_id: Optional[str],
    ) -> None:
        AuditService().record(
            db,
            actor_id=actor.actor_id,
            actor_role=actor.role.value,
            subject_type="escrow",
            subject_id=escrow.escrow_id,
            action=AuditAction.ESCROW_TRANSITION,
            payload_summary={"action": action.value, "from": previous, "to": escrow.status},
            request_id=request_id,
        )

    def _step(
        self,
        db: Session,
        escrow: Escrow,
        action: EscrowAction,
        actor: Actor,
        *,
        note: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> None:
        previous = escrow.status
        self.lifecycle.transition(db, escrow, action, actor, note=note)
        self._audit_transition(db, escrow, actor, action, previous, request_id)

    def _commit(self, db: Session, escrow: Escrow, kind: str) -> Escrow:
        db.commit()
        db.refresh(escrow)
        self.notifier.notify_parties(escrow, kind, {"escrow_id": escrow.escrow_id, "status": escrow.status})
        return escrow

    def accept(self, db: Session, *, escrow: Escrow, principal: Principal, request_id: Optional[str] = None) -> Escrow:
        actor = party_actor(escrow, principal)
        self._step(db, escrow, EscrowAction.accept, actor, request_id=request_id)
        return self._commit(db, escrow, "escrow_accepted")

    def fund(self, db: Session, *, escrow: Escrow, principal: Principal, request_id: Optional[str] = None) -> Escrow:
        actor = party_actor(escrow, principal)
        self._step(db, escrow, EscrowAction.fund, actor, request_id=request_id)
        return self._commit(db, escrow, "escrow_funded")

    def start(self, db: Session, *, escrow: Escrow, principal: Principal, request_id: Optional[str] = None) -> Escrow:
        actor = party_actor(escrow, principal)
        self._step(db, escrow, EscrowAction.start, actor, request_id=request_id)
        return self._commit(db, escrow, "escrow_started")

    def deliver(
        self,
        db: Session,
        *,
        escrow: Escrow,
        principal: Principal,
        tracking_number: Optional[str] = None,
        courier_service: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Escrow:
        """
        Seller marks delivery; the inspection window opens in the same commit.
        """
        actor = party_actor(escrow, principal)
        self.lifecycle.check(escrow, EscrowAction.deliver, actor)

        escrow.tracking_number = tracking_number
        escrow.courier_service = courier_service
        escrow.delivered_at = utcnow()

        note = f"tracking={tracking_number}" if tracking_number else None
        self._step(db, escrow, EscrowAction.deliver, actor, note=note, request_id=request_id)
        self._step(db, escrow, EscrowAction.begin_inspection, SYSTEM_ACTOR, request_id=request_id)
        return self._commit(db, escrow, "escrow_delivered")

    def pass_inspection(
        self, db: Session, *, escrow: Escrow, principal: Principal, request_id: Optional[str] = None
    ) -> Escrow:
        actor = party_actor(escrow, principal)
        self._step(db, escrow, EscrowAction.pass_inspection, actor, request_id=request_id)
        return self._commit(db, escrow, "inspection_passed")

    def fail_inspection(
        self,
        db: Session,
        *,
        escrow: Escrow,
        principal: Principal,
        note: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Escrow:
        actor = party_actor(escrow, principal)
        self._step(db, escrow, EscrowAction.fail_inspection, actor, note=note, request_id=request_id)
        return self._commit(db, escrow, "inspection_failed")

    def confirm(self, db: Session, *, escrow: Escrow, principal: Principal, request_id: Optional[str] = None) -> Escrow:
        actor = party_actor(escrow, principal)
        self._step(db, escrow, EscrowAction.confirm, actor, request_id=request_id)
        if get_settings().auto_payout_on_confirm:
            self._step(db, escrow, EscrowAction.payout, SYSTEM_ACTOR, request_id=request_id)
        return self._commit(db, escrow, "escrow_completed")

    def payout(self, db: Session, *, escrow: Escrow, request_id: Optional[str] = None) -> Escrow:
        self._step(db, escrow, EscrowAction.payout, SYSTEM_ACTOR, request_id=request_id)
        return self._commit(db, escrow, "escrow_paid_out")

    def cancel(
        self,
        db: Session,
        *,
        escrow: Escrow,
        principal: Principal,
        reason: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> Escrow:
        actor = party_actor(escrow, principal)
        self._step(db, escrow, EscrowAction.cancel, actor, note=reason, request_id=request_id)
        return self._commit(db, escrow, "escrow_cancelled")

    # ---------------------------
    # MILESTONES
    # ---------------------------

    def _milestone(self, escrow: Escrow, milestone_id: str) -> EscrowMilestone:
        for m in escrow.milestones:
            if str(m.id) == str(milestone_id):
                return m
        raise NotFoundError("Milestone not found.")

    def _audit_milestone(
        self,
        db: Session,
        escrow: Escrow,
        milestone: EscrowMilestone,
        event: MilestoneEvent,
        actor: Actor,
        request_id: Optional[str],
    ) -> None:
        AuditService().record(
            db,
            actor_id=actor.actor_id,
            actor_role=actor.role.value,
            subject_type="escrow",
            subject_id=escrow.escrow_id,
            action=AuditAction.MILESTONE_UPDATED,
            payload_summary={
                "event": event.value,
                "position": milestone.position,
                "amount": milestone.amount,
                "status": milestone.status,
            },
            request_id=request_id,
        )

    def add_milestone(
        self,
        db: Session,
        *,
        escrow: Escrow,
        principal: Principal,
        description: str,
        amount: Any,
        request_id: Optional[str] = None,
    ) -> Escrow:
        """
        Parties may stage the amount before funding. The running total may
        not exceed the escrow amount; funding requires it to match exactly.
        """
        actor = party_actor(escrow, principal)
        self.lifecycle.check_milestone(escrow, None, MilestoneEvent.added, actor)

        [row] = self._validate_milestones(
            [{"description": description, "amount": amount}], None, escrow.currency
        )
        total = sum((Decimal(str(m.amount)) for m in escrow.milestones), Decimal("0")) + row["amount"]
        if total > Decimal(str(escrow.amount)):
            raise ValidationError(f"Milestones would add up to {total}, more than the escrow amount {escrow.amount}.")

        position = max((m.position for m in escrow.milestones), default=-1) + 1
        milestone = EscrowMilestone(position=position, **row)
        self.lifecycle.record_milestone(db, escrow, milestone, MilestoneEvent.added, actor)
        self._audit_milestone(db, escrow, milestone, MilestoneEvent.added, actor, request_id)
        return self._commit(db, escrow, "milestone_added")

    def submit_milestone(
        self,
        db: Session,
        *,
        escrow: Escrow,
        principal: Principal,
        milestone_id: str,
        request_id: Optional[str] = None,
    ) -> Escrow:
        actor = party_actor(escrow, principal)
        milestone = self._milestone(escrow, milestone_id)
        self.lifecycle.record_milestone(db, escrow, milestone, MilestoneEvent.submitted, actor)
        self._audit_milestone(db, escrow, milestone, MilestoneEvent.submitted, actor, request_id)
        return self._commit(db, escrow, "milestone_submitted")

    def approve_milestone(
        self,
        db: Session,
        *,
        escrow: Escrow,
        principal: Principal,
        milestone_id: str,
        request_id: Optional[str] = None,
    ) -> Escrow:
        """Approving the last open milestone completes the escrow (and pays out when configured)."""
        actor = party_actor(escrow, principal)
        milestone = self._milestone(escrow, milestone_id)
        self.lifecycle.record_milestone(db, escrow, milestone, MilestoneEvent.approved, actor)
        self._audit_milestone(db, escrow, milestone, MilestoneEvent.approved, actor, request_id)

        if all(m.status == MilestoneStatus.approved.value for m in escrow.milestones):
            self._step(db, escrow, EscrowAction.release_milestones, SYSTEM_ACTOR, request_id=request_id)
            if get_settings().auto_payout_on_confirm:
                self._step(db, escrow, EscrowAction.payout, SYSTEM_ACTOR, request_id=request_id)
            return self._commit(db, escrow, "escrow_completed")
        return self._commit(db, escrow, "milestone_approved")

    def reject_milestone(
        self,
        db: Session,
        *,
        escrow: Escrow,
        principal: Principal,
        milestone_id: str,
        reason: str,
        request_id: Optional[str] = None,
    ) -> Escrow:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A rejection reason is required.")
        actor = party_actor(escrow, principal)
        milestone = self._milestone(escrow, milestone_id)
        self.lifecycle.record_milestone(db, escrow, milestone, MilestoneEvent.rejected, actor, note=reason)
        self._audit_milestone(db, escrow, milestone, MilestoneEvent.rejected, actor, request_id)
        return self._commit(db, escrow, "milestone_rejected")

    # ---------------------------
    # ADMIN
    # ---------------------------

    def archive(self, db: Session, *, escrow: Escrow, admin: Principal, request_id: Optional[str] = None) -> Escrow:
        """Soft-archive. Status is untouched; only terminal escrows qualify."""
        if not escrow.is_terminal:
            raise InvalidStateError(f"Only terminal escrows can be archived (status is {escrow.status}).")
        if escrow.archived_at is not None:
            return escrow

        escrow.archived_at = utcnow()
        AuditService().record(
            db,
            actor_id=admin.user_id,
            actor_role="admin",
            subject_type="escrow",
            subject_id=escrow.escrow_id,
            action=AuditAction.ESCROW_ARCHIVED,
            payload_summary={"status": escrow.status},
            request_id=request_id,
        )
        db.commit()
        db.refresh(escrow)
        logger.info("escrow archived", extra={"escrow_id": escrow.escrow_id, "request_id": request_id})
        return escrow
