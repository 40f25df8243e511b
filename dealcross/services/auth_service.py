# dealcross/services/auth_service.py
from __future__ import annotations

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dealcross.core.security import (
    create_access_token,
    hash_password,
    password_needs_rehash,
    verify_password,
)
from dealcross.models.enums import AdminRole, UserRole
from dealcross.models.user import User
from dealcross.policies.rbac import Principal


def principal_for(user: User) -> Principal:
    return Principal(
        user_id=str(user.id),
        role=UserRole(user.role),
        display_name=user.name,
        email=user.email,
        tier=user.tier,
        admin_role=AdminRole(user.admin_role) if user.admin_role else None,
        permissions=frozenset(user.permissions or []),
    )


def authenticate(db: Session, email: str, password: str) -> Optional[Principal]:
    user = db.execute(
        select(User).where(func.lower(User.email) == email.strip().lower())
    ).scalar_one_or_none()

    if not user:
        return None

    if not verify_password(password, user.password_hash):
        return None

    if password_needs_rehash(user.password_hash):
        user.password_hash = hash_password(password)
        db.commit()

    return principal_for(user)


def issue_token(principal: Principal) -> str:
    return create_access_token(
        subject=principal.user_id,
        claims={
            "user_id": principal.user_id,
            "role": principal.role.value,
            "admin_role": principal.admin_role.value if principal.admin_role else None,
            "display_name": principal.display_name,
            "email": principal.email,
            "tier": principal.tier,
            "permissions": sorted(principal.permissions),
        },
    )


def create_user(
    db: Session,
    *,
    name: str,
    email: str,
    password: str,
    tier: str = "starter",
    role: UserRole = UserRole.user,
    admin_role: Optional[AdminRole] = None,
    permissions: Optional[list] = None,
) -> User:
    user = User(
        name=name,
        email=email.strip().lower(),
        password_hash=hash_password(password),
        tier=tier,
        role=UserRole(role).value,
        admin_role=AdminRole(admin_role).value if admin_role else None,
        permissions=list(permissions or []),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
