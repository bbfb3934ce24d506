from __future__ import annotations

import base64
import hashlib
import os
import threading
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from tessera.logging import get_logger
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import (
    AuditEvent,
    BackupCode,
    LoginAttempt,
    MfaKind,
    OtpCode,
    OtpKind,
    Role,
    Session,
    User,
    normalize_email,
    utcnow,
)


class MemoryStore:
    """Thread-safe in-memory implementation of the auth persistence collaborators."""

    def __init__(
        self,
        *,
        mfa_encryption_key: str | None = None,
        attempt_retention_seconds: int = 60 * 60,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self.otp_codes: List[OtpCode] = []
        self.backup_codes: Dict[str, List[BackupCode]] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.audit_log: List[AuditEvent] = []
        # RLock for all data operations; every read-modify-write holds it
        self._data_lock = threading.RLock()
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        self.attempt_retention = timedelta(seconds=attempt_retention_seconds)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material:
            raise RuntimeError("MFA encryption key material is required")
        try:
            return Fernet(self._derive_cipher_key(material))
        except ValueError as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def _public_user(self, user: Optional[User]) -> Optional[User]:
        """Return a detached copy with the TOTP secret decrypted."""
        if user is None:
            return None
        return User(
            id=user.id,
            email=user.email,
            role=user.role,
            mfa_enabled=user.mfa_enabled,
            mfa_kind=user.mfa_kind,
            totp_secret=self._decrypt_mfa_secret(user.totp_secret),
            is_active=user.is_active,
            created_at=user.created_at,
        )

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.STANDARD_USER,
        is_active: bool = True,
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=email, role=role, is_active=is_active)
            self.users[user.id] = user
            self.credentials[user.id] = password_hash
            return self._public_user(user)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            return self._public_user(
                next((u for u in self.users.values() if u.email == email), None)
            )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._public_user(self.users.get(user_id))

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            self.credentials[user_id] = password_hash

    def update_user_mfa(
        self,
        user_id: str,
        *,
        enabled: bool,
        kind: MfaKind,
        totp_secret: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            user.mfa_enabled = enabled
            user.mfa_kind = kind if enabled else MfaKind.NONE
            user.totp_secret = (
                self._encrypt_mfa_secret(totp_secret) if kind == MfaKind.TOTP and enabled else None
            )
            return self._public_user(user)

    def set_user_active(self, user_id: str, is_active: bool) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.is_active = is_active

    # sessions
    def create_session(
        self,
        user_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.sessions[sess.id] = sess
            return sess

    def get_session_by_token(self, access_token: str) -> Optional[Session]:
        with self._data_lock:
            return next(
                (s for s in self.sessions.values() if s.access_token == access_token), None
            )

    def delete_session(self, access_token: str) -> bool:
        with self._data_lock:
            doomed = [sid for sid, s in self.sessions.items() if s.access_token == access_token]
            for sid in doomed:
                del self.sessions[sid]
            return bool(doomed)

    # one-time codes
    def create_otp_code(
        self,
        subject: str,
        code: str,
        kind: OtpKind,
        expires_at: datetime,
        *,
        payload: Optional[dict] = None,
    ) -> OtpCode:
        record = OtpCode(
            id=str(uuid.uuid4()),
            subject=subject,
            code=code,
            kind=kind,
            expires_at=expires_at,
            payload=dict(payload) if payload else None,
        )
        with self._data_lock:
            self.otp_codes.append(record)
        return record

    def _prune_otp_codes(self, now: datetime) -> None:
        # Caller holds _data_lock; spent and expired rows can never match again
        self.otp_codes = [record for record in self.otp_codes if record.is_consumable(now)]

    def _take_otp_code(
        self, now: datetime, matches: Callable[[OtpCode], bool]
    ) -> Optional[OtpCode]:
        with self._data_lock:
            self._prune_otp_codes(now)
            for index, record in enumerate(self.otp_codes):
                if matches(record):
                    record.used = True
                    del self.otp_codes[index]
                    return record
            return None

    def consume_otp_code(
        self, subject: str, code: str, kind: OtpKind, now: datetime
    ) -> Optional[OtpCode]:
        """Mark a matching unused, unexpired code as used; None when nothing matched."""
        return self._take_otp_code(
            now,
            lambda record: record.subject == subject
            and record.kind == kind
            and record.code == code,
        )

    def consume_password_reset_token(self, token: str, now: datetime) -> Optional[OtpCode]:
        return self._take_otp_code(
            now,
            lambda record: record.kind == OtpKind.PASSWORD_RESET and record.code == token,
        )

    # backup codes
    def create_backup_codes(self, user_id: str, code_hashes: List[str]) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            self.backup_codes[user_id] = [
                BackupCode(id=str(uuid.uuid4()), user_id=user_id, code_hash=h)
                for h in code_hashes
            ]

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        with self._data_lock:
            for record in self.backup_codes.get(user_id, []):
                if not record.used and record.code_hash == code_hash:
                    record.used = True
                    return True
            return False

    def count_unused_backup_codes(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for c in self.backup_codes.get(user_id, []) if not c.used)

    def delete_backup_codes(self, user_id: str) -> None:
        with self._data_lock:
            self.backup_codes.pop(user_id, None)

    # login attempts
    def record_login_attempt(
        self,
        email: str,
        ip_address: Optional[str],
        succeeded: bool,
        attempted_at: Optional[datetime] = None,
    ) -> None:
        attempt = LoginAttempt(
            email=normalize_email(email),
            ip_address=ip_address,
            succeeded=succeeded,
            attempted_at=attempted_at or utcnow(),
        )
        cutoff = attempt.attempted_at - self.attempt_retention
        with self._data_lock:
            # Attempts older than one rate-limit window no longer count toward anything
            self.login_attempts = [a for a in self.login_attempts if a.attempted_at >= cutoff]
            self.login_attempts.append(attempt)

    def _failures_since(self, email: str, since: datetime) -> List[LoginAttempt]:
        email = normalize_email(email)
        return [
            a
            for a in self.login_attempts
            if a.email == email and not a.succeeded and a.attempted_at >= since
        ]

    def count_failed_attempts_since(self, email: str, since: datetime) -> int:
        with self._data_lock:
            return len(self._failures_since(email, since))

    def oldest_failed_attempt_since(self, email: str, since: datetime) -> Optional[datetime]:
        with self._data_lock:
            failures = self._failures_since(email, since)
            return min((a.attempted_at for a in failures), default=None)

    # audit
    def create_audit_log(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_log.append(event)
