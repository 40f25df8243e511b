# dealcross/services/idempotency_service.py
from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealcross.core.errors import IdempotencyConflictError
from dealcross.core.hashing import payload_hash
from dealcross.models.idempotency_key import IdempotencyKeyRecord


class IdempotencyService:
    def get_existing(
        self,
        db: Session,
        *,
        user_id: str,
        endpoint_key: str,
        idem_key: str,
    ) -> Optional[IdempotencyKeyRecord]:
        return db.execute(
            select(IdempotencyKeyRecord).where(
                IdempotencyKeyRecord.user_id == user_id,
                IdempotencyKeyRecord.endpoint_key == endpoint_key,
                IdempotencyKeyRecord.idem_key == idem_key,
            )
        ).scalar_one_or_none()

    def reserve_or_replay(
        self,
        db: Session,
        *,
        user_id: str,
        endpoint_key: str,
        idem_key: str,
        request_payload: Dict[str, Any],
    ) -> Tuple[Optional[Dict[str, Any]], Optional[int], str]:
        """
        Returns (replay_json, replay_status_code, request_hash).
        If a record exists:
          - same request_hash => replay the stored response
          - different request_hash => conflict
        """
        req_hash = payload_hash(request_payload)
        existing = self.get_existing(
            db,
            user_id=user_id,
            endpoint_key=endpoint_key,
            idem_key=idem_key,
        )
        if not existing:
            return None, None, req_hash

        if existing.request_hash != req_hash:
            raise IdempotencyConflictError("Idempotency-Key reuse with a different payload is not allowed.")
        return existing.response_json, int(existing.response_status), req_hash

    def store_response(
        self,
        db: Session,
        *,
        user_id: str,
        endpoint_key: str,
        idem_key: str,
        request_hash: str,
        response_json: Dict[str, Any],
        response_status: int,
    ) -> None:
        existing = self.get_existing(
            db,
            user_id=user_id,
            endpoint_key=endpoint_key,
            idem_key=idem_key,
        )
        if existing:
            # first response wins
            return

        db.add(
            IdempotencyKeyRecord(
                user_id=user_id,
                endpoint_key=endpoint_key,
                idem_key=idem_key,
                request_hash=request_hash,
                response_status=str(response_status),
                response_json=response_json,
            )
        )
        try:
            db.commit()
        except IntegrityError:
            # a concurrent request with the same key stored first
            db.rollback()
