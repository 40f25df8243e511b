from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

import sqlalchemy as sa
from sqlalchemy import String, DateTime, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from dealcross.db.base import Base, JSONType


class AuditLogRecord(Base):
    """
    Audit trail record.
    - Append-only (never UPDATE)
    - Stores request-id, actor, subject, action, payload hash, and safe payload summary.
    - Written in the same transaction as the change it describes.
    """
    __tablename__ = "audit_log_records"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    # Correlation
    request_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    route: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    method: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    # Actor (user id or "system") + role
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(64), nullable=False)

    # Subject, e.g. ("escrow", "ESC...") or ("fee_schedule", "growth:USD")
    subject_type: Mapped[str] = mapped_column(String(32), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # What happened
    action: Mapped[str] = mapped_column(String(96), nullable=False)  # e.g., ESCROW_TRANSITION
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="ok")

    # Payload traceability (hash + safe summary)
    payload_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    payload_summary_json: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_audit_subject", "subject_type", "subject_id"),
        Index("ix_audit_action", "action"),
        Index("ix_audit_created", "created_at"),
    )
