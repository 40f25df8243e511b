# dealcross/api/v1/auth.py
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from dealcross.core.auth_deps import get_current_principal
from dealcross.db.session import get_db
from dealcross.policies.rbac import Principal
from dealcross.schemas.auth import LoginRequest, MeResponse, TokenResponse
from dealcross.schemas.primitives import ok
from dealcross.services.auth_service import authenticate, issue_token

router = APIRouter(prefix="/auth")


@router.post("/login")
def login(req: LoginRequest, db: Session = Depends(get_db)):
    principal = authenticate(db, req.email, req.password)
    if not principal:
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return ok(TokenResponse(access_token=issue_token(principal)))


@router.get("/me")
def get_me(principal: Principal = Depends(get_current_principal)):
    return ok(
        MeResponse(
            user_id=principal.user_id,
            role=principal.role.value,
            display_name=principal.display_name,
            email=principal.email,
            tier=principal.tier,
            admin_role=principal.admin_role.value if principal.admin_role else None,
            permissions=sorted(principal.permissions),
        )
    )
