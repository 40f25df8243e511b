# dealcross/api/v1/admin/disputes.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from dealcross.api.v1.deps import get_dispute_service, request_id
from dealcross.core.auth_deps import get_current_principal
from dealcross.db.session import get_db
from dealcross.models.enums import AdminPermission, DisputeStatus
from dealcross.policies.rbac import Principal, arbitrator_actor, require_permission
from dealcross.schemas.dispute import DisputeOut, DisputeResolveRequest
from dealcross.schemas.primitives import ok
from dealcross.services.dispute_service import DisputeService
from dealcross.services.retry import run_with_conflict_retry

router = APIRouter(prefix="/admin/disputes", tags=["admin"])


@router.get("")
def list_disputes(
    status: Optional[DisputeStatus] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: DisputeService = Depends(get_dispute_service),
):
    require_permission(principal, AdminPermission.manage_disputes)
    rows = svc.list(db, status=status.value if status else None, limit=limit, offset=offset)
    return ok([DisputeOut.from_row(d) for d in rows])


@router.get("/{dispute_id}")
def get_dispute(
    dispute_id: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: DisputeService = Depends(get_dispute_service),
):
    require_permission(principal, AdminPermission.manage_disputes)
    return ok(DisputeOut.from_row(svc.get(db, dispute_id=dispute_id)))


@router.put("/{dispute_id}/assign")
def assign_dispute(
    dispute_id: str,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: DisputeService = Depends(get_dispute_service),
):
    arbitrator = arbitrator_actor(principal)
    dispute = svc.assign(
        db,
        dispute=svc.get(db, dispute_id=dispute_id),
        arbitrator=arbitrator,
        request_id=request_id(request),
    )
    return ok(DisputeOut.from_row(dispute))


@router.put("/{dispute_id}/resolve")
def resolve_dispute(
    dispute_id: str,
    body: DisputeResolveRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: DisputeService = Depends(get_dispute_service),
):
    arbitrator = arbitrator_actor(principal)
    rid = request_id(request)

    def unit():
        return svc.resolve_dispute(
            db,
            dispute=svc.get(db, dispute_id=dispute_id),
            winner=body.winner,
            refund_amount=body.refund_amount,
            summary=body.summary,
            arbitrator=arbitrator,
            request_id=rid,
        )

    return ok(DisputeOut.from_row(run_with_conflict_retry(unit)))
