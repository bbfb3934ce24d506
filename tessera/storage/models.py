from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class Role(str, Enum):
    ADMIN = "Admin"
    STANDARD_USER = "StandardUser"
    RESTRICTED_USER = "RestrictedUser"


class MfaKind(str, Enum):
    TOTP = "totp"
    EMAIL = "email"
    NONE = "none"


class OtpKind(str, Enum):
    EMAIL = "email"
    REGISTRATION = "registration"
    PASSWORD_RESET = "password_reset"


@dataclass
class User:
    id: str
    email: str
    role: Role = Role.STANDARD_USER
    mfa_enabled: bool = False
    mfa_kind: MfaKind = MfaKind.NONE
    totp_secret: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    @property
    def requires_mfa(self) -> bool:
        return self.mfa_enabled and self.mfa_kind != MfaKind.NONE


@dataclass
class Session:
    id: str
    user_id: str
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )


@dataclass
class OtpCode:
    id: str
    subject: str
    code: str
    kind: OtpKind
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)
    # Registration codes carry the pending password hash
    payload: Dict | None = None

    def is_consumable(self, now: datetime) -> bool:
        return not self.used and now < self.expires_at


@dataclass
class BackupCode:
    id: str
    user_id: str
    code_hash: str
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LoginAttempt:
    email: str
    ip_address: Optional[str]
    succeeded: bool
    attempted_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditEvent:
    actor_user_id: Optional[str]
    action: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    role: Role
    type: str
    iat: int
    exp: int
    jti: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_at: datetime
