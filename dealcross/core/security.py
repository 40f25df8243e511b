# dealcross/core/security.py
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from dealcross.core.config import get_settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# stored for accounts that may not log in (seeded system users, fixtures)
UNUSABLE_PASSWORD = "!"
ACCESS_TOKEN_TYPE = "access"


def hash_password(raw: str) -> str:
    if not raw:
        raise ValueError("Password must not be empty.")
    return pwd_context.hash(raw)


def verify_password(raw: str, hashed: Optional[str]) -> bool:
    if not raw or not hashed or hashed == UNUSABLE_PASSWORD:
        return False
    return pwd_context.verify(raw, hashed)


def password_needs_rehash(hashed: str) -> bool:
    return hashed != UNUSABLE_PASSWORD and pwd_context.needs_update(hashed)


def create_access_token(subject: str, claims: Dict[str, Any], expires_minutes: Optional[int] = None) -> str:
    """
    Sign an access token for one account.

    Registered claims (sub, iss, aud, iat, exp, jti, typ) are set here and
    win over anything in `claims`, which carries the escrow-facing identity:
    role, tier, admin role and permissions.
    """
    settings = get_settings()
    exp_minutes = expires_minutes or settings.jwt_access_token_minutes
    now = datetime.now(timezone.utc)
    payload = {
        **claims,
        "sub": subject,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "typ": ACCESS_TOKEN_TYPE,
        "jti": uuid.uuid4().hex,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=exp_minutes)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    """Verify signature, expiry, issuer and audience. Raises JWTError."""
    settings = get_settings()
    payload = jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
        issuer=settings.jwt_issuer,
    )
    if payload.get("typ") != ACCESS_TOKEN_TYPE:
        raise JWTError("Not an access token.")
    return payload
