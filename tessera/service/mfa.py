from __future__ import annotations

import hashlib
import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Protocol, Union

from tessera.logging import get_logger
from tessera.service.errors import InvalidMfaCode, NotificationFailure
from tessera.service.notify import CodeNotifier
from tessera.service.otp import OtpLifecycleManager
from tessera.service.totp import TotpVerifier
from tessera.storage.models import MfaKind, OtpKind, User, utcnow

logger = get_logger(__name__)

BACKUP_CODE_GROUPS = 3
BACKUP_CODE_GROUP_SIZE = 4
_BACKUP_CODE_RE = re.compile(r"^\d{4}-?\d{4}-?\d{4}$")


# Factors are a tagged union; the resolver dispatches on the concrete type.
@dataclass(frozen=True)
class TotpFactor:
    secret: str

    @property
    def label(self) -> str:
        return "totp"


@dataclass(frozen=True)
class EmailOtpFactor:
    email: str

    @property
    def label(self) -> str:
        return "email"


@dataclass(frozen=True)
class BackupFactor:
    @property
    def label(self) -> str:
        return "backup"


MfaFactor = Union[TotpFactor, EmailOtpFactor, BackupFactor]


def factor_for(user: User) -> Optional[MfaFactor]:
    """Primary factor configured for a user, or None when MFA is off."""
    if not user.requires_mfa:
        return None
    if user.mfa_kind == MfaKind.TOTP:
        return TotpFactor(secret=user.totp_secret or "")
    return EmailOtpFactor(email=user.email)


class ChallengeState(str, Enum):
    AWAITING_PASSWORD = "awaiting_password"
    AWAITING_MFA = "awaiting_mfa"
    AUTHENTICATED = "authenticated"


@dataclass
class MfaChallenge:
    user: User
    factor: Optional[MfaFactor]
    state: ChallengeState = ChallengeState.AWAITING_MFA
    resolved_by: Optional[MfaFactor] = None


def normalize_backup_code(code: str) -> str:
    return re.sub(r"[\s-]", "", code or "")


def looks_like_backup_code(code: str) -> bool:
    return bool(_BACKUP_CODE_RE.match((code or "").strip().replace(" ", "")))


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode()).hexdigest()


class BackupCodeStore(Protocol):
    def create_backup_codes(self, user_id: str, code_hashes: List[str]) -> None: ...

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool: ...

    def count_unused_backup_codes(self, user_id: str) -> int: ...

    def delete_backup_codes(self, user_id: str) -> None: ...


class BackupCodeManager:
    """Single-use recovery codes, stored only as SHA-256 digests."""

    def __init__(self, store: BackupCodeStore, *, count: int = 8) -> None:
        self.store = store
        self.count = count

    @staticmethod
    def _new_code() -> str:
        digits = "".join(
            str(secrets.randbelow(10)) for _ in range(BACKUP_CODE_GROUPS * BACKUP_CODE_GROUP_SIZE)
        )
        return "-".join(
            digits[i : i + BACKUP_CODE_GROUP_SIZE]
            for i in range(0, len(digits), BACKUP_CODE_GROUP_SIZE)
        )

    def generate(self, user_id: str) -> List[str]:
        """Replace any existing batch and return the plaintext codes once."""
        codes: List[str] = []
        while len(codes) < self.count:
            candidate = self._new_code()
            if candidate not in codes:
                codes.append(candidate)
        self.store.create_backup_codes(user_id, [hash_backup_code(c) for c in codes])
        logger.info("backup_codes_generated", user_id=user_id, count=len(codes))
        return codes

    def consume(self, user_id: str, code: str) -> bool:
        normalized = normalize_backup_code(code)
        if not normalized.isascii() or not normalized.isdigit():
            return False
        used = self.store.consume_backup_code(user_id, hash_backup_code(normalized))
        if used:
            logger.info(
                "backup_code_used",
                user_id=user_id,
                remaining=self.store.count_unused_backup_codes(user_id),
            )
        return used

    def remaining(self, user_id: str) -> int:
        return self.store.count_unused_backup_codes(user_id)

    def revoke(self, user_id: str) -> None:
        self.store.delete_backup_codes(user_id)


class MfaChallengeResolver:
    """Drives a login from AWAITING_MFA to AUTHENTICATED.

    A submitted code in backup format is tried as a backup code first.
    Otherwise the primary factor is tried, and a six-character code that the
    primary factor rejects gets one more chance as a backup code. There is no
    attempt counter here; brute force on this step is bounded by the short
    code lifetimes.
    """

    def __init__(
        self,
        otp: OtpLifecycleManager,
        totp: TotpVerifier,
        backup_codes: BackupCodeManager,
        notifier: CodeNotifier,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.otp = otp
        self.totp = totp
        self.backup_codes = backup_codes
        self.notifier = notifier
        self._clock = clock or utcnow

    async def dispatch_email_code(self, user: User) -> None:
        """Issue a fresh email OTP and hand it to the notifier."""
        code = self.otp.issue(user.id, OtpKind.EMAIL)
        try:
            sent = await self.notifier.send_code(user.email, code)
        except Exception as exc:
            logger.error("mfa_code_dispatch_failed", user_id=user.id, error=str(exc))
            sent = False
        if not sent:
            raise NotificationFailure()

    async def begin(self, user: User) -> MfaChallenge:
        factor = factor_for(user)
        if factor is None:
            return MfaChallenge(user=user, factor=None, state=ChallengeState.AUTHENTICATED)
        challenge = MfaChallenge(user=user, factor=factor)
        if isinstance(factor, EmailOtpFactor):
            await self.dispatch_email_code(user)
        logger.info("mfa_challenge_started", user_id=user.id, factor=factor.label)
        return challenge

    async def resend(self, challenge: MfaChallenge) -> None:
        if challenge.state != ChallengeState.AWAITING_MFA or not isinstance(
            challenge.factor, EmailOtpFactor
        ):
            raise InvalidMfaCode("No email verification is pending")
        await self.dispatch_email_code(challenge.user)

    def _try_primary(self, challenge: MfaChallenge, factor: MfaFactor, code: str) -> bool:
        user = challenge.user
        if isinstance(factor, TotpFactor):
            return self.totp.verify(code, factor.secret, at=self._clock().timestamp())
        if isinstance(factor, EmailOtpFactor):
            return self.otp.consume(user.id, code, OtpKind.EMAIL)
        if isinstance(factor, BackupFactor):
            return self.backup_codes.consume(user.id, code)
        return False

    def _select_factor(self, challenge: MfaChallenge, kind: Optional[str]) -> Optional[MfaFactor]:
        if kind is None:
            return challenge.factor
        if kind == "backup":
            return BackupFactor()
        if kind == MfaKind.TOTP.value and challenge.user.totp_secret:
            return TotpFactor(secret=challenge.user.totp_secret)
        if kind == MfaKind.EMAIL.value:
            return EmailOtpFactor(email=challenge.user.email)
        return None

    def submit(self, challenge: MfaChallenge, code: str, kind: Optional[str] = None) -> MfaFactor:
        """Resolve the challenge or raise InvalidMfaCode; state only advances on success."""
        if challenge.state != ChallengeState.AWAITING_MFA:
            raise InvalidMfaCode("No verification is pending")
        cleaned = (code or "").strip()
        user_id = challenge.user.id
        resolved: Optional[MfaFactor] = None

        if looks_like_backup_code(cleaned):
            if self.backup_codes.consume(user_id, cleaned):
                resolved = BackupFactor()
        else:
            factor = self._select_factor(challenge, kind)
            if factor is not None and self._try_primary(challenge, factor, cleaned):
                resolved = factor
            elif len(cleaned) == 6 and not isinstance(factor, BackupFactor):
                if self.backup_codes.consume(user_id, cleaned):
                    resolved = BackupFactor()

        if resolved is None:
            logger.warning("mfa_verification_failed", user_id=user_id)
            raise InvalidMfaCode()
        challenge.state = ChallengeState.AUTHENTICATED
        challenge.resolved_by = resolved
        logger.info("mfa_verified", user_id=user_id, factor=resolved.label)
        return resolved
