# dealcross/api/v1/admin/fees.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from dealcross.api.v1.deps import request_id
from dealcross.core.auth_deps import get_current_principal
from dealcross.db.session import get_db
from dealcross.models.enums import AdminPermission, Tier
from dealcross.policies.rbac import Principal, require_permission
from dealcross.schemas.fees import FeeHistoryOut, FeeScheduleOut, FeeUpdateRequest
from dealcross.schemas.primitives import ok
from dealcross.services.fee_schedule_service import FeeScheduleService

router = APIRouter(prefix="/admin/fees", tags=["admin"])


def _fee_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    require_permission(principal, AdminPermission.manage_fees)
    return principal


@router.get("")
def list_fee_schedules(
    tier: Optional[Tier] = Query(default=None),
    db: Session = Depends(get_db),
    principal: Principal = Depends(_fee_admin),
):
    rows = FeeScheduleService().list_schedules(db, tier=tier.value if tier else None)
    return ok([FeeScheduleOut.model_validate(r) for r in rows])


@router.get("/history")
def fee_history(
    tier: Optional[Tier] = Query(default=None),
    currency: Optional[str] = Query(default=None, max_length=8),
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    principal: Principal = Depends(_fee_admin),
):
    rows = FeeScheduleService().history(
        db,
        tier=tier.value if tier else None,
        currency=currency.upper() if currency else None,
        limit=limit,
    )
    return ok([FeeHistoryOut.model_validate(r) for r in rows])


@router.get("/{tier}/{currency}")
def get_fee_schedule(
    tier: Tier,
    currency: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(_fee_admin),
):
    row = FeeScheduleService().get_fee_schedule(db, tier=tier.value, currency=currency.upper())
    return ok(FeeScheduleOut.model_validate(row))


@router.put("")
def update_fee(
    body: FeeUpdateRequest,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(_fee_admin),
):
    row = FeeScheduleService().update_fee(
        db,
        tier=body.tier.value,
        currency=body.currency.upper(),
        field=body.field.value,
        new_value=body.value,
        actor=principal.user_id,
        request_id=request_id(request),
    )
    return ok(FeeScheduleOut.model_validate(row))


@router.post("/{tier}/reset")
def reset_tier(
    tier: Tier,
    request: Request,
    db: Session = Depends(get_db),
    principal: Principal = Depends(_fee_admin),
):
    rows = FeeScheduleService().reset_tier(
        db,
        tier=tier.value,
        actor=principal.user_id,
        request_id=request_id(request),
    )
    return ok([FeeScheduleOut.model_validate(r) for r in rows])
