# dealcross/core/deps_idempotency.py
from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from dealcross.core.auth_deps import get_current_principal
from dealcross.db.session import get_db
from dealcross.policies.rbac import Principal
from dealcross.services.idempotency_service import IdempotencyService


async def optional_idempotency_key(request: Request) -> Optional[str]:
    key = request.headers.get("Idempotency-Key")
    if key is not None and (not key.strip() or len(key) > 128):
        raise HTTPException(status_code=400, detail="Idempotency-Key must be 1-128 characters.")
    return key


async def idempotency_guard(
    request: Request,
    idem_key: Optional[str] = Depends(optional_idempotency_key),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
) -> Optional[str]:
    """
    Use on POST endpoints that honour Idempotency-Key.

    Stores in request.state:
      - idempotency_key (None when the header is absent)
      - idempotency_endpoint_key
      - idempotency_request_hash
      - idempotency_replay_json / idempotency_replay_status (set on replay)
    """
    request.state.idempotency_key = idem_key
    request.state.idempotency_replay_json = None
    request.state.idempotency_replay_status = None
    if not idem_key:
        return None

    endpoint_key = f"{request.method}:{request.url.path}"

    try:
        payload = await request.json()
    except ValueError:
        payload = {}

    replay_json, replay_status, req_hash = IdempotencyService().reserve_or_replay(
        db,
        user_id=principal.user_id,
        endpoint_key=endpoint_key,
        idem_key=idem_key,
        request_payload=payload if isinstance(payload, dict) else {"_": payload},
    )

    request.state.idempotency_endpoint_key = endpoint_key
    request.state.idempotency_request_hash = req_hash
    request.state.idempotency_replay_json = replay_json
    request.state.idempotency_replay_status = replay_status
    return idem_key
