#dealcross/policies/rbac.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from dealcross.core.errors import NotFoundError, PermissionDeniedError
from dealcross.models.enums import ActorRole, AdminPermission, AdminRole, UserRole


@dataclass(frozen=True)
class Principal:
    """Request-scoped identity built from the bearer token."""
    user_id: str
    role: UserRole
    display_name: str
    email: str
    tier: Optional[str] = None
    admin_role: Optional[AdminRole] = None
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.admin


@dataclass(frozen=True)
class Actor:
    """Who is performing a lifecycle action, relative to one escrow."""
    actor_id: str
    role: ActorRole


SYSTEM_ACTOR = Actor(actor_id="system", role=ActorRole.system)


def has_permission(principal: Principal, permission: AdminPermission) -> bool:
    if not principal.is_admin:
        return False
    if principal.admin_role == AdminRole.master:
        return True
    return permission.value in principal.permissions


def require_permission(principal: Principal, permission: AdminPermission) -> None:
    if not has_permission(principal, permission):
        raise PermissionDeniedError(
            f"Admin permission {permission.value} required."
        )


def require_master(principal: Principal) -> None:
    if not (principal.is_admin and principal.admin_role == AdminRole.master):
        raise PermissionDeniedError("Master admin only.")


def party_actor(escrow, principal: Principal) -> Actor:
    """
    Buyer/seller actor for a principal on an escrow.
    Non-parties don't learn that the escrow exists.
    """
    role = escrow.party_role(principal.user_id)
    if role is None:
        raise NotFoundError("Escrow not found.")
    return Actor(actor_id=principal.user_id, role=ActorRole(role))


def arbitrator_actor(principal: Principal) -> Actor:
    require_permission(principal, AdminPermission.manage_disputes)
    return Actor(actor_id=principal.user_id, role=ActorRole.arbitrator)


def can_view_escrow(escrow, principal: Principal) -> bool:
    if escrow.party_role(principal.user_id) is not None:
        return True
    return has_permission(principal, AdminPermission.view_transactions) or has_permission(
        principal, AdminPermission.manage_disputes
    )
