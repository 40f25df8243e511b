from __future__ import annotations

import uuid
from datetime import datetime
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy import String, DateTime, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from dealcross.db.base import Base, JSONType
from dealcross.models.enums import Tier, UserRole


class User(Base):
    """
    Marketplace account. Admin accounts carry an admin_role and a permission list.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)

    name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False)

    tier: Mapped[str] = mapped_column(String(16), nullable=False, default=Tier.starter.value)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default=UserRole.user.value)

    admin_role: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # master | admin
    permissions: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_users_role", "role"),
    )
