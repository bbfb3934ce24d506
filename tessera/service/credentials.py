from __future__ import annotations

import re
from typing import List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tessera.logging import get_logger
from tessera.service.errors import InvalidCredentials
from tessera.storage.models import User, normalize_email

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


def validate_password_strength(password: str) -> List[str]:
    """Return the unmet password rules; an empty list means the password is acceptable."""
    problems: List[str] = []
    password = password or ""
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        problems.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        problems.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        problems.append("Password must contain at least one number")
    return problems


class PasswordService:
    """argon2id hashing for stored credentials."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so timing does not reveal accounts
        self._dummy_hash = self._pwd_hasher.hash("tessera-dummy-password")

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, password_hash: Optional[str], password: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def burn(self, password: str) -> None:
        self.verify(self._dummy_hash, password)


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...


class CredentialVerifier:
    """Checks an email/password pair against the stored hash."""

    def __init__(self, store: CredentialStore, passwords: PasswordService) -> None:
        self.store = store
        self.passwords = passwords

    def verify(self, email: str, password: str) -> User:
        user = self.store.get_user_by_email(normalize_email(email))
        if not user:
            self.passwords.burn(password)
            raise InvalidCredentials()
        if not self.passwords.verify(self.store.get_password_hash(user.id), password):
            logger.warning("password_verification_failed", user_id=user.id)
            raise InvalidCredentials()
        if not user.is_active:
            logger.warning("inactive_user_login", user_id=user.id)
            raise InvalidCredentials()
        return user
