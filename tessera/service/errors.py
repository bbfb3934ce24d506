from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each exception class defines both a status_code and a stable error_code so
    that a transport layer can map failures without inspecting messages:
    - unauthorized (401)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - notification_failed (502)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class WeakPassword(ValidationError):
    """Password does not meet the strength policy."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__(
            "Password does not meet requirements", detail={"problems": list(problems)}
        )
        self.problems = list(problems)


class ExpiredOrUsedCode(ValidationError):
    """One-time code is unknown, already consumed or past its expiry."""
    error_code = "invalid_code"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown user, wrong password or inactive account; deliberately indistinguishable."""

    def __init__(
        self, message: str = "Invalid email or password", *, remaining_attempts: Optional[int] = None
    ) -> None:
        detail = {} if remaining_attempts is None else {"remaining_attempts": remaining_attempts}
        super().__init__(message, detail=detail)
        self.remaining_attempts = remaining_attempts


class InvalidMfaCode(AuthenticationError):
    error_code = "invalid_mfa_code"

    def __init__(self, message: str = "Invalid verification code") -> None:
        super().__init__(message)


class NotAuthenticated(AuthenticationError):
    """Operation needs an authenticated session context."""


class InvalidToken(AuthenticationError):
    """Token is malformed, uses an unexpected algorithm or fails signature checks."""
    error_code = "invalid_token"


class TokenExpired(InvalidToken):
    error_code = "token_expired"


class TokenTypeMismatch(InvalidToken):
    """Access token presented where a refresh token is expected, or vice versa."""
    error_code = "token_type_mismatch"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountExists(ConflictError):
    def __init__(self, message: str = "User already exists") -> None:
        super().__init__(message)


class RateLimited(ServiceError):
    """Too many failed logins for an email within the window (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, reset_at: Optional[datetime] = None) -> None:
        detail = {"reset_at": reset_at.isoformat()} if reset_at else {}
        super().__init__(message, detail=detail)
        self.reset_at = reset_at


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class SessionPersistenceFailure(ServerError):
    """Session, OTP or refresh state could not be written."""
    error_code = "session_persistence_failed"


class NotificationFailure(ServerError):
    status_code = 502
    error_code = "notification_failed"

    def __init__(self, message: str = "Could not send verification code") -> None:
        super().__init__(message)


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPassword",
    "ExpiredOrUsedCode",
    "AuthenticationError",
    "InvalidCredentials",
    "InvalidMfaCode",
    "NotAuthenticated",
    "InvalidToken",
    "TokenExpired",
    "TokenTypeMismatch",
    "ConflictError",
    "AccountExists",
    "RateLimited",
    "ServerError",
    "SessionPersistenceFailure",
    "NotificationFailure",
]
