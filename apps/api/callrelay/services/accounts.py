"""In-memory account storage for the lifetime of the process."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional
from uuid import uuid4

from ..schemas.auth import Identity
from .auth import hash_password_async, verify_password_async

logger = logging.getLogger(__name__)


class AccountExistsError(ValueError):
    """Raised when registering an email that already has an account."""


class InvalidCredentialsError(ValueError):
    """Raised when a login cannot be matched to an account."""


@dataclass
class Account:
    id: str
    name: str
    email: str
    password_hash: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def identity(self) -> Identity:
        return Identity(id=self.id, name=self.name, email=self.email)


class AccountStore:
    """Very small account registry keyed by normalized email."""

    def __init__(self) -> None:
        self._accounts: Dict[str, Account] = {}

    def get(self, email: str) -> Optional[Account]:
        return self._accounts.get(_normalize(email))

    async def register(self, *, name: str, email: str, password: str) -> Account:
        key = _normalize(email)
        if key in self._accounts:
            raise AccountExistsError("User already exists")

        password_hash = await hash_password_async(password)
        # Another registration for the same email may have completed while hashing.
        if key in self._accounts:
            raise AccountExistsError("User already exists")

        account = Account(id=str(uuid4()), name=name.strip(), email=key, password_hash=password_hash)
        self._accounts[key] = account
        logger.info("User registered: %s", account.email)
        return account

    async def authenticate(self, *, email: str, password: str) -> Account:
        account = self.get(email)
        if account is None:
            raise InvalidCredentialsError("User not found")
        if not await verify_password_async(password, account.password_hash):
            raise InvalidCredentialsError("Invalid password")
        logger.info("User logged in: %s", account.email)
        return account

    def clear(self) -> None:
        self._accounts.clear()


def _normalize(email: str) -> str:
    return email.strip().lower()


account_store = AccountStore()
