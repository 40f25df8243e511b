from __future__ import annotations

import json
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from dealcross.core.hashing import canonical_dumps, payload_hash
from dealcross.models.audit_log import AuditLogRecord


class AuditAction:
    # Escrow lifecycle
    ESCROW_CREATED = "ESCROW_CREATED"
    ESCROW_TRANSITION = "ESCROW_TRANSITION"
    ESCROW_ARCHIVED = "ESCROW_ARCHIVED"
    MILESTONE_UPDATED = "MILESTONE_UPDATED"

    # Disputes
    DISPUTE_RAISED = "DISPUTE_RAISED"
    DISPUTE_ASSIGNED = "DISPUTE_ASSIGNED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"

    # Fees
    FEE_UPDATED = "FEE_UPDATED"
    FEE_TIER_RESET = "FEE_TIER_RESET"


class AuditService:
    def record(
        self,
        db: Session,
        *,
        actor_id: str,
        actor_role: str,
        subject_type: str,
        subject_id: str,
        action: str,
        payload_summary: Dict[str, Any],
        request_id: Optional[str] = None,
        route: Optional[str] = None,
        method: Optional[str] = None,
        status: str = "ok",
    ) -> AuditLogRecord:
        """
        Append-only audit record insert.

        Does NOT commit: the row lands in the same transaction as the
        change it describes, so either both persist or neither does.
        """
        row = AuditLogRecord(
            request_id=request_id or "internal",
            route=route,
            method=method,
            actor_id=actor_id,
            actor_role=actor_role,
            subject_type=subject_type,
            subject_id=subject_id,
            action=action,
            status=status,
            payload_hash=payload_hash(payload_summary),
            payload_summary_json=json.loads(canonical_dumps(payload_summary)),
        )
        db.add(row)
        return row

