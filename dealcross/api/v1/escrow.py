# dealcross/api/v1/escrow.py
from __future__ import annotations

from decimal import Decimal
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dealcross.api.v1.deps import get_dispute_service, get_escrow_service, request_id
from dealcross.core.auth_deps import get_current_principal
from dealcross.core.deps_idempotency import idempotency_guard
from dealcross.core.errors import ValidationError
from dealcross.core.rate_limit import DISPUTE_RAISE, ESCROW_CREATE, rate_limited
from dealcross.db.session import get_db
from dealcross.models.enums import ActorRole, EscrowStatus, Tier
from dealcross.models.escrow import Escrow
from dealcross.policies.rbac import Principal, party_actor
from dealcross.schemas.dispute import DisputeCreateRequest, DisputeOut
from dealcross.schemas.escrow import (
    CanCreateOut,
    DashboardStatsOut,
    DeliverRequest,
    EscrowCreateRequest,
    EscrowOut,
    EventFeedOut,
    MilestoneAddRequest,
    MilestoneRejectRequest,
    NoteRequest,
    TimelineEventOut,
)
from dealcross.schemas.fees import FeePreviewOut
from dealcross.schemas.primitives import ok
from dealcross.services.dispute_service import DisputeService
from dealcross.services.escrow_service import EscrowService
from dealcross.services.fee_schedule_service import FeeScheduleService
from dealcross.services.idempotency_service import IdempotencyService
from dealcross.services.retry import run_with_conflict_retry

router = APIRouter(prefix="/escrow")


# ─────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────

def _escrow_out(escrow: Escrow) -> dict:
    return ok(EscrowOut.model_validate(escrow))


def _run_transition(
    db: Session,
    svc: EscrowService,
    escrow_id: str,
    principal: Principal,
    op: Callable[[Escrow], Escrow],
) -> dict:
    """
    Load + transition as one retryable unit: a retry re-reads the escrow,
    so a request that lost a race is re-validated against the winner's state.
    """
    def unit() -> Escrow:
        escrow = svc.get_escrow(db, escrow_id=escrow_id, principal=principal)
        return op(escrow)

    return _escrow_out(run_with_conflict_retry(unit))


# ─────────────────────────────────────────────────────────────
# READS
# ─────────────────────────────────────────────────────────────

@router.get("/fees/preview")
def fee_preview(
    amount: Decimal = Query(..., gt=0),
    currency: str = Query(..., min_length=3, max_length=8),
    tier: Optional[Tier] = Query(default=None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
):
    use_tier = tier.value if tier else (principal.tier or Tier.starter.value)
    breakdown = FeeScheduleService().fee_preview(db, amount=amount, currency=currency.upper(), tier=use_tier)
    return ok(FeePreviewOut(**breakdown.as_dict()))


@router.get("")
def list_my_escrows(
    status: Optional[EscrowStatus] = Query(default=None),
    role: Optional[ActorRole] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    if role is not None and role not in (ActorRole.buyer, ActorRole.seller):
        raise ValidationError("role must be buyer or seller.")
    rows = svc.list_escrows(
        db,
        principal=principal,
        status=status.value if status else None,
        role=role.value if role else None,
        limit=limit,
        offset=offset,
    )
    return ok([EscrowOut.model_validate(r) for r in rows])


@router.get("/stats")
def dashboard_stats(
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    return ok(DashboardStatsOut(**svc.dashboard_stats(db, principal=principal)))


@router.get("/can-create")
def can_create_escrow(
    amount: Optional[Decimal] = Query(default=None, gt=0),
    currency: str = Query(default="USD", min_length=3, max_length=8),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    return ok(CanCreateOut(**svc.can_create(db, principal=principal, amount=amount, currency=currency)))


@router.get("/{escrow_id}")
def get_escrow(
    escrow_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    return _escrow_out(svc.get_escrow(db, escrow_id=escrow_id, principal=principal))


@router.get("/{escrow_id}/events")
def escrow_events(
    escrow_id: str,
    since: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    escrow = svc.get_escrow(db, escrow_id=escrow_id, principal=principal)
    rows, cursor = svc.fetch_since(db, escrow=escrow, cursor=since, limit=limit)
    return ok(
        EventFeedOut(
            escrow_id=escrow.escrow_id,
            events=[TimelineEventOut.model_validate(r) for r in rows],
            cursor=cursor,
        )
    )


# ─────────────────────────────────────────────────────────────
# CREATE
# ─────────────────────────────────────────────────────────────

@router.post("/create", dependencies=[Depends(rate_limited(ESCROW_CREATE))])
def create_escrow(
    body: EscrowCreateRequest,
    request: Request,
    idem_key: Optional[str] = Depends(idempotency_guard),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    if request.state.idempotency_replay_json is not None:
        return JSONResponse(
            status_code=request.state.idempotency_replay_status,
            content=request.state.idempotency_replay_json,
        )

    escrow = svc.create_escrow(
        db,
        buyer=principal,
        payload=body.model_dump(),
        request_id=request_id(request),
    )
    content = _escrow_out(escrow)

    if idem_key:
        IdempotencyService().store_response(
            db,
            user_id=principal.user_id,
            endpoint_key=request.state.idempotency_endpoint_key,
            idem_key=idem_key,
            request_hash=request.state.idempotency_request_hash,
            response_json=content,
            response_status=201,
        )
    return JSONResponse(status_code=201, content=content)


# ─────────────────────────────────────────────────────────────
# LIFECYCLE ACTIONS
# ─────────────────────────────────────────────────────────────

@router.put("/{escrow_id}/accept")
def accept_escrow(
    escrow_id: str,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    rid = request_id(request)
    return _run_transition(
        db, svc, escrow_id, principal,
        lambda e: svc.accept(db, escrow=e, principal=principal, request_id=rid),
    )


@router.put("/{escrow_id}/fund")
def fund_escrow(
    escrow_id: str,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    rid = request_id(request)
    return _run_transition(
        db, svc, escrow_id, principal,
        lambda e: svc.fund(db, escrow=e, principal=principal, request_id=rid),
    )


@router.put("/{escrow_id}/start")
def start_escrow(
    escrow_id: str,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    rid = request_id(request)
    return _run_transition(
        db, svc, escrow_id, principal,
        lambda e: svc.start(db, escrow=e, principal=principal, request_id=rid),
    )


@router.put("/{escrow_id}/deliver")
def deliver_escrow(
    escrow_id: str,
    request: Request,
    body: Optional[DeliverRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    rid = request_id(request)
    body = body or DeliverRequest()
    return _run_transition(
        db, svc, escrow_id, principal,
        lambda e: svc.deliver(
            db,
            escrow=e,
            principal=principal,
            tracking_number=body.tracking_number,
            courier_service=body.courier_service,
            request_id=rid,
        ),
    )


@router.put("/{escrow_id}/inspection/pass")
def pass_inspection(
    escrow_id: str,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    rid = request_id(request)
    return _run_transition(
        db, svc, escrow_id, principal,
        lambda e: svc.pass_inspection(db, escrow=e, principal=principal, request_id=rid),
    )


@router.put("/{escrow_id}/inspection/fail")
def fail_inspection(
    escrow_id: str,
    request: Request,
    body: Optional[NoteRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    rid = request_id(request)
    note = body.note if body else None
    return _run_transition(
        db, svc, escrow_id, principal,
        lambda e: svc.fail_inspection(db, escrow=e, principal=principal, note=note, request_id=rid),
    )


@router.put("/{escrow_id}/confirm")
def confirm_escrow(
    escrow_id: str,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    rid = request_id(request)
    return _run_transition(
        db, svc, escrow_id, principal,
        lambda e: svc.confirm(db, escrow=e, principal=principal, request_id=rid),
    )


@router.put("/{escrow_id}/cancel")
def cancel_escrow(
    escrow_id: str,
    request: Request,
    body: Optional[NoteRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    rid = request_id(request)
    reason = body.note if body else None
    return _run_transition(
        db, svc, escrow_id, principal,
        lambda e: svc.cancel(db, escrow=e, principal=principal, reason=reason, request_id=rid),
    )


# ─────────────────────────────────────────────────────────────
# MILESTONES
# ─────────────────────────────────────────────────────────────

@router.post("/{escrow_id}/milestones")
def add_milestone(
    escrow_id: str,
    body: MilestoneAddRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    rid = request_id(request)
    content = _run_transition(
        db, svc, escrow_id, principal,
        lambda e: svc.add_milestone(
            db, escrow=e, principal=principal, description=body.description, amount=body.amount, request_id=rid
        ),
    )
    return JSONResponse(status_code=201, content=content)


@router.put("/{escrow_id}/milestones/{milestone_id}/submit")
def submit_milestone(
    escrow_id: str,
    milestone_id: str,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    rid = request_id(request)
    return _run_transition(
        db, svc, escrow_id, principal,
        lambda e: svc.submit_milestone(db, escrow=e, principal=principal, milestone_id=milestone_id, request_id=rid),
    )


@router.put("/{escrow_id}/milestones/{milestone_id}/approve")
def approve_milestone(
    escrow_id: str,
    milestone_id: str,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    rid = request_id(request)
    return _run_transition(
        db, svc, escrow_id, principal,
        lambda e: svc.approve_milestone(db, escrow=e, principal=principal, milestone_id=milestone_id, request_id=rid),
    )


@router.put("/{escrow_id}/milestones/{milestone_id}/reject")
def reject_milestone(
    escrow_id: str,
    milestone_id: str,
    body: MilestoneRejectRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    rid = request_id(request)
    return _run_transition(
        db, svc, escrow_id, principal,
        lambda e: svc.reject_milestone(
            db, escrow=e, principal=principal, milestone_id=milestone_id, reason=body.reason, request_id=rid
        ),
    )


# ─────────────────────────────────────────────────────────────
# DISPUTE
# ─────────────────────────────────────────────────────────────

@router.post("/{escrow_id}/dispute", dependencies=[Depends(rate_limited(DISPUTE_RAISE))])
def raise_dispute(
    escrow_id: str,
    body: DisputeCreateRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    escrows: EscrowService = Depends(get_escrow_service),
    disputes: DisputeService = Depends(get_dispute_service),
):
    rid = request_id(request)

    def unit():
        escrow = escrows.get_escrow(db, escrow_id=escrow_id, principal=principal)
        return disputes.raise_dispute(
            db,
            escrow=escrow,
            reason=body.reason,
            description=body.description,
            evidence=body.evidence,
            initiator=party_actor(escrow, principal),
            request_id=rid,
        )

    dispute = run_with_conflict_retry(unit)
    return JSONResponse(status_code=201, content=ok(DisputeOut.from_row(dispute)))
