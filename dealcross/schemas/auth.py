from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=256)
    password: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class MeResponse(BaseModel):
    user_id: str
    role: str
    display_name: str
    email: str
    tier: Optional[str] = None
    admin_role: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
