from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from tessera.logging import get_logger
from tessera.service.errors import SessionPersistenceFailure
from tessera.storage.errors import StorageError
from tessera.storage.models import OtpCode, OtpKind, utcnow

logger = get_logger(__name__)

OTP_DIGITS = 6


class OtpStore(Protocol):
    def create_otp_code(
        self,
        subject: str,
        code: str,
        kind: OtpKind,
        expires_at: datetime,
        *,
        payload: Optional[dict] = None,
    ) -> OtpCode: ...

    def consume_otp_code(
        self, subject: str, code: str, kind: OtpKind, now: datetime
    ) -> Optional[OtpCode]: ...


def generate_numeric_code(digits: int = OTP_DIGITS) -> str:
    """Uniformly random code; leading zeros are kept."""
    return f"{secrets.randbelow(10**digits):0{digits}d}"


class OtpLifecycleManager:
    """Issues short-lived numeric codes and consumes each at most once."""

    def __init__(
        self,
        store: OtpStore,
        *,
        ttl_seconds: int = 120,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or utcnow

    def issue(
        self, subject: str, kind: OtpKind = OtpKind.EMAIL, *, payload: Optional[dict] = None
    ) -> str:
        # Earlier unexpired codes stay valid; re-issuing does not revoke them
        code = generate_numeric_code()
        try:
            self.store.create_otp_code(
                subject, code, kind, self._clock() + self.ttl, payload=payload
            )
        except StorageError as exc:
            logger.error("otp_store_failed", kind=kind.value, error=str(exc))
            raise SessionPersistenceFailure("Could not store verification code") from exc
        logger.info("otp_issued", kind=kind.value)
        return code

    def consume_record(
        self, subject: str, code: str, kind: OtpKind = OtpKind.EMAIL
    ) -> Optional[OtpCode]:
        code = (code or "").strip()
        if len(code) != OTP_DIGITS or not (code.isascii() and code.isdigit()):
            return None
        record = self.store.consume_otp_code(subject, code, kind, self._clock())
        if record is None:
            logger.info("otp_rejected", kind=kind.value)
        return record

    def consume(self, subject: str, code: str, kind: OtpKind = OtpKind.EMAIL) -> bool:
        return self.consume_record(subject, code, kind) is not None
