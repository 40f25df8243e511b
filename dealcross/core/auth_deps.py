#dealcross/core/auth_deps.py
from __future__ import annotations

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from dealcross.core.security import decode_token
from dealcross.models.enums import AdminRole, UserRole
from dealcross.policies.rbac import Principal

bearer = HTTPBearer(auto_error=True)


def get_current_principal(
    request: Request,
    creds: HTTPAuthorizationCredentials = Depends(bearer),
) -> Principal:
    """
    Canonical authentication dependency.

    Guarantees:
    - JWT is valid
    - user_id and role are present
    - role is a valid UserRole, admin_role (if any) a valid AdminRole
    """

    try:
        payload = decode_token(creds.credentials)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid or expired token.")

    user_id = payload.get("user_id") or payload.get("sub")
    role = payload.get("role")

    if not role or not user_id:
        raise HTTPException(status_code=401, detail="Token missing required claims.")

    try:
        role_enum = UserRole(role)
        admin_role = AdminRole(payload["admin_role"]) if payload.get("admin_role") else None
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid role in token.")

    principal = Principal(
        user_id=str(user_id),
        role=role_enum,
        display_name=str(payload.get("display_name") or "Unknown"),
        email=str(payload.get("email") or ""),
        tier=payload.get("tier"),
        admin_role=admin_role,
        permissions=frozenset(payload.get("permissions") or []),
    )

    # Make principal available to downstream middleware / handlers
    request.state.principal = principal

    return principal
