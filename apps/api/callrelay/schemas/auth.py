"""Data contracts for account and token endpoints."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Identity(BaseModel):
    """Verified caller identity decoded from an access token."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str | None = None


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=80)
    email: EmailStr
    password: str = Field(..., min_length=1)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class UserOut(BaseModel):
    id: str
    name: str
    email: str


class AuthResponse(BaseModel):
    token: str = Field(..., description="Bearer token for HTTP and signaling")
    expires_in: int = Field(..., ge=1, description="Seconds until expiration")
    user: UserOut


class OnlineUser(BaseModel):
    id: str
    name: str
    email: str | None = None
    is_online: bool = Field(default=True, serialization_alias="isOnline")
