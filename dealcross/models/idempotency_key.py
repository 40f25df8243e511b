from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict

import sqlalchemy as sa
from sqlalchemy import String, DateTime, UniqueConstraint, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from dealcross.db.base import Base, JSONType


class IdempotencyKeyRecord(Base):
    """
    Stores response for a POST request with Idempotency-Key header to prevent duplicates.

    Scope is strict:
      (user_id, endpoint_key, idem_key) must be unique.
    """
    __tablename__ = "idempotency_key_records"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)

    user_id: Mapped[str] = mapped_column(String(128), nullable=False)

    endpoint_key: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "POST:/api/v1/escrow/create"
    idem_key: Mapped[str] = mapped_column(String(128), nullable=False)

    request_hash: Mapped[str] = mapped_column(String(128), nullable=False)

    response_status: Mapped[str] = mapped_column(String(16), nullable=False, default="200")
    response_json: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "endpoint_key", "idem_key", name="uq_idem_scope"),
        Index("ix_idem_lookup", "user_id", "endpoint_key"),
    )
