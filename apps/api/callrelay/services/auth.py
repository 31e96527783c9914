"""Token issuance and verification.

Identities reach the signaling core only after :func:`decode_token` has
verified them; the core never sees credentials.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from pydantic import ValidationError

from ..core.config import settings
from ..schemas.auth import Identity


class AuthError(RuntimeError):
    """Raised when a request carries no usable identity."""

    def __init__(self, message: str, status_code: int = 401) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class IssuedToken:
    token: str
    expires_in: int


def issue_token(identity: Identity) -> IssuedToken:
    """Sign an access token carrying the identity claims."""

    lifetime = timedelta(hours=settings.token_ttl_hours)
    claims = {
        "id": identity.id,
        "email": identity.email,
        "name": identity.name,
        "exp": datetime.now(timezone.utc) + lifetime,
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return IssuedToken(token=token, expires_in=int(lifetime.total_seconds()))


def decode_token(token: str | None) -> Identity:
    """Return the identity inside ``token`` or raise :class:`AuthError`."""

    if not token:
        raise AuthError("Access token required", status_code=401)
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        return Identity.model_validate(claims)
    except (jwt.InvalidTokenError, ValidationError) as exc:
        raise AuthError("Invalid token", status_code=403) from exc


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.password_hash_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


async def hash_password_async(password: str) -> str:
    """Hash off the event loop; bcrypt is deliberately slow."""

    return await asyncio.to_thread(hash_password, password)


async def verify_password_async(password: str, hashed: str) -> bool:
    return await asyncio.to_thread(verify_password, password, hashed)
