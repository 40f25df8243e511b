# dealcross/api/v1/admin/operations.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from dealcross.api.v1.deps import get_escrow_service, get_sweep_service, request_id
from dealcross.core.auth_deps import get_current_principal
from dealcross.core.errors import NotFoundError
from dealcross.db.session import get_db
from dealcross.models.enums import AdminPermission
from dealcross.policies.rbac import Principal, require_master, require_permission
from dealcross.schemas.escrow import EscrowOut
from dealcross.schemas.fees import SweepOut
from dealcross.schemas.primitives import ok
from dealcross.services.escrow_service import EscrowService
from dealcross.services.retry import run_with_conflict_retry
from dealcross.services.sweep_service import SweepService

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/sweep")
def run_sweep(
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: SweepService = Depends(get_sweep_service),
):
    require_master(principal)
    return ok(SweepOut(**svc.run_once(db)))


@router.post("/escrows/{escrow_id}/archive")
def archive_escrow(
    escrow_id: str,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    require_permission(principal, AdminPermission.view_transactions)
    escrow = svc.find(db, escrow_id=escrow_id)
    if escrow is None:
        raise NotFoundError("Escrow not found.")
    escrow = svc.archive(db, escrow=escrow, admin=principal, request_id=request_id(request))
    return ok(EscrowOut.model_validate(escrow))


@router.post("/escrows/{escrow_id}/payout")
def payout_escrow(
    escrow_id: str,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    svc: EscrowService = Depends(get_escrow_service),
):
    """Release a completed escrow's funds now instead of waiting for the sweep."""
    require_permission(principal, AdminPermission.view_transactions)
    rid = request_id(request)

    def unit():
        escrow = svc.find(db, escrow_id=escrow_id)
        if escrow is None:
            raise NotFoundError("Escrow not found.")
        return svc.payout(db, escrow=escrow, request_id=rid)

    return ok(EscrowOut.model_validate(run_with_conflict_retry(unit)))
