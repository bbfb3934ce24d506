from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Callable, List, Optional, Protocol

from tessera.config import Settings
from tessera.logging import get_logger, set_correlation_id
from tessera.service.audit import AuditTrail
from tessera.service.credentials import (
    CredentialVerifier,
    PasswordService,
    validate_password_strength,
)
from tessera.service.errors import (
    AccountExists,
    ExpiredOrUsedCode,
    InvalidCredentials,
    InvalidMfaCode,
    InvalidToken,
    NotAuthenticated,
    NotificationFailure,
    RateLimited,
    SessionPersistenceFailure,
    WeakPassword,
)
from tessera.service.mfa import (
    BackupCodeManager,
    ChallengeState,
    EmailOtpFactor,
    MfaChallenge,
    MfaChallengeResolver,
)
from tessera.service.notify import CodeNotifier
from tessera.service.otp import OtpLifecycleManager
from tessera.service.rate_limit import RateLimiter
from tessera.service.session_monitor import SessionMonitor
from tessera.service.tokens import TokenIssuer
from tessera.service.totp import TotpVerifier
from tessera.storage.errors import ConstraintViolation, StorageError
from tessera.storage.models import (
    AuditEvent,
    ClientInfo,
    MfaKind,
    OtpCode,
    OtpKind,
    Role,
    Session,
    TokenPair,
    User,
    normalize_email,
    utcnow,
)
from tessera.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.STANDARD_USER,
        is_active: bool = True,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...

    def update_password(self, user_id: str, password_hash: str) -> None: ...

    def update_user_mfa(
        self,
        user_id: str,
        *,
        enabled: bool,
        kind: MfaKind,
        totp_secret: Optional[str] = None,
    ) -> User: ...

    def create_session(
        self,
        user_id: str,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: datetime,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session: ...

    def get_session_by_token(self, access_token: str) -> Optional[Session]: ...

    def delete_session(self, access_token: str) -> bool: ...

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

    def consume_password_reset_token(self, token: str, now: datetime) -> Optional[OtpCode]: ...

    def create_backup_codes(self, user_id: str, code_hashes: List[str]) -> None: ...

    def consume_backup_code(self, user_id: str, code_hash: str) -> bool: ...

    def count_unused_backup_codes(self, user_id: str) -> int: ...

    def delete_backup_codes(self, user_id: str) -> None: ...

    def record_login_attempt(
        self,
        email: str,
        ip_address: Optional[str],
        succeeded: bool,
        attempted_at: Optional[datetime] = None,
    ) -> None: ...

    def count_failed_attempts_since(self, email: str, since: datetime) -> int: ...

    def oldest_failed_attempt_since(self, email: str, since: datetime) -> Optional[datetime]: ...

    def create_audit_log(self, event: AuditEvent) -> None: ...


@dataclass
class SessionContext:
    """Client-held authentication state, created by open_context and owned by the caller."""

    client: ClientInfo
    correlation_id: str
    state: ChallengeState = ChallengeState.AWAITING_PASSWORD
    user: Optional[User] = None
    challenge: Optional[MfaChallenge] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    session_id: Optional[str] = None
    monitor: Optional[SessionMonitor] = field(default=None, repr=False)

    @property
    def authenticated(self) -> bool:
        return self.state == ChallengeState.AUTHENTICATED


@dataclass(frozen=True)
class LoginResult:
    requires_mfa: bool
    mfa_kind: Optional[MfaKind] = None


@dataclass(frozen=True)
class TotpEnrollment:
    secret: str
    uri: str
    qr_code: str


class AuthService:
    """Login, MFA, token rotation and session lifetime for client contexts."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        notifier: CodeNotifier,
        cache: Optional[RedisCache] = None,
        passwords: Optional[PasswordService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self.notifier = notifier
        self._clock = clock or utcnow
        self.passwords = passwords or PasswordService()
        self.credentials = CredentialVerifier(store, self.passwords)
        self.rate_limiter = RateLimiter(
            store,
            cache=cache,
            max_failures=settings.login_max_failures,
            window_seconds=settings.login_window_seconds,
            clock=self._clock,
        )
        self.tokens = TokenIssuer(
            settings.access_token_secret,
            settings.refresh_token_secret,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            clock=self._clock,
        )
        self.otp = OtpLifecycleManager(store, ttl_seconds=settings.otp_ttl_seconds, clock=self._clock)
        self.totp = TotpVerifier(
            step_seconds=settings.totp_step_seconds,
            drift_steps=settings.totp_drift_steps,
            issuer=settings.totp_issuer,
        )
        self.backup_codes = BackupCodeManager(store, count=settings.backup_code_count)
        self.mfa = MfaChallengeResolver(
            self.otp, self.totp, self.backup_codes, notifier, clock=self._clock
        )
        self.audit = AuditTrail(store)

    def _now(self) -> datetime:
        return self._clock()

    # context lifecycle
    def open_context(self, client: Optional[ClientInfo] = None) -> SessionContext:
        return SessionContext(client=client or ClientInfo(), correlation_id=set_correlation_id())

    def dispose(self, ctx: SessionContext) -> None:
        """Stop background work for a context and drop its state without server calls."""
        self._cancel_monitor(ctx)
        self._reset(ctx)

    @staticmethod
    def _bind(ctx: SessionContext) -> None:
        set_correlation_id(ctx.correlation_id)

    @staticmethod
    def _cancel_monitor(ctx: SessionContext) -> None:
        monitor, ctx.monitor = ctx.monitor, None
        if monitor is not None:
            monitor.cancel()

    @staticmethod
    def _reset(ctx: SessionContext) -> None:
        ctx.state = ChallengeState.AWAITING_PASSWORD
        ctx.user = None
        ctx.challenge = None
        ctx.access_token = None
        ctx.refresh_token = None
        ctx.session_id = None

    def _require_user(self, ctx: SessionContext) -> User:
        if not ctx.authenticated or ctx.user is None:
            raise NotAuthenticated("Sign in to continue")
        return ctx.user

    # login
    async def login(self, ctx: SessionContext, email: str, password: str) -> LoginResult:
        self._bind(ctx)
        if ctx.state != ChallengeState.AWAITING_PASSWORD:
            await self.logout(ctx)
        email = normalize_email(email)
        ip_address = ctx.client.ip_address

        status = await self.rate_limiter.check(email)
        if status.is_blocked:
            logger.warning("login_rate_limited", ip_address=ip_address)
            raise RateLimited(self.rate_limiter.message_for(status), reset_at=status.reset_at)

        try:
            user = self.credentials.verify(email, password)
        except InvalidCredentials:
            await self.rate_limiter.record_attempt(email, succeeded=False, ip_address=ip_address)
            self.audit.record(
                "Login failed", client=ctx.client, details={"reason": "invalid_credentials"}
            )
            status = await self.rate_limiter.check(email)
            if status.is_blocked:
                raise RateLimited(self.rate_limiter.message_for(status), reset_at=status.reset_at)
            raise InvalidCredentials(remaining_attempts=status.remaining_attempts)

        await self.rate_limiter.record_attempt(email, succeeded=True, ip_address=ip_address)

        if user.requires_mfa:
            challenge = await self.mfa.begin(user)
            ctx.user = user
            ctx.challenge = challenge
            ctx.state = ChallengeState.AWAITING_MFA
            if isinstance(challenge.factor, EmailOtpFactor):
                self.audit.record("Email OTP sent", user_id=user.id, client=ctx.client)
            return LoginResult(requires_mfa=True, mfa_kind=user.mfa_kind)

        self._establish_session(ctx, user)
        self.audit.record("User login", user_id=user.id, client=ctx.client)
        return LoginResult(requires_mfa=False)

    async def verify_mfa(
        self, ctx: SessionContext, code: str, kind: Optional[str] = None
    ) -> bool:
        """Complete a pending challenge; a wrong code returns False and keeps it pending."""
        self._bind(ctx)
        if ctx.state != ChallengeState.AWAITING_MFA or ctx.challenge is None:
            return False
        try:
            factor = self.mfa.submit(ctx.challenge, code, kind)
        except InvalidMfaCode:
            return False
        user = ctx.challenge.user
        try:
            self._establish_session(ctx, user)
        except SessionPersistenceFailure:
            self._reset(ctx)
            raise
        self.audit.record(f"MFA verified ({factor.label})", user_id=user.id, client=ctx.client)
        self.audit.record("User login", user_id=user.id, client=ctx.client)
        return True

    async def resend_mfa_code(self, ctx: SessionContext) -> None:
        self._bind(ctx)
        if ctx.state != ChallengeState.AWAITING_MFA or ctx.challenge is None:
            raise NotAuthenticated("No verification is pending")
        await self.mfa.resend(ctx.challenge)
        self.audit.record("Email OTP sent", user_id=ctx.challenge.user.id, client=ctx.client)

    # sessions
    def _persist_session(self, ctx: SessionContext, user: User, pair: TokenPair) -> Session:
        try:
            return self.store.create_session(
                user.id,
                pair.access_token,
                pair.refresh_token,
                pair.expires_at,
                ip_address=ctx.client.ip_address,
                user_agent=ctx.client.user_agent,
            )
        except StorageError as exc:
            logger.error("session_create_failed", user_id=user.id, error=str(exc))
            raise SessionPersistenceFailure("Could not create session") from exc

    def _establish_session(self, ctx: SessionContext, user: User) -> None:
        pair = self.tokens.issue(user.id, user.email, user.role)
        session = self._persist_session(ctx, user, pair)
        ctx.user = user
        ctx.challenge = None
        ctx.state = ChallengeState.AUTHENTICATED
        ctx.access_token = pair.access_token
        ctx.refresh_token = pair.refresh_token
        ctx.session_id = session.id
        self._start_monitor(ctx)
        logger.info("session_established", user_id=user.id, session_id=session.id)

    def _start_monitor(self, ctx: SessionContext) -> None:
        self._cancel_monitor(ctx)
        monitor = SessionMonitor(
            self.tokens,
            on_refreshed=partial(self._rotate_session, ctx),
            on_terminated=partial(self._expire_session, ctx),
            interval_seconds=self.settings.session_check_interval_seconds,
        )
        ctx.monitor = monitor.start(ctx.access_token, ctx.refresh_token)

    async def _rotate_session(self, ctx: SessionContext, pair: TokenPair) -> None:
        """Replace the session row for a freshly rotated pair: delete old, then insert new."""
        user = ctx.user
        if user is None:
            raise NotAuthenticated("No session to rotate")
        old_token = ctx.access_token
        try:
            if old_token:
                self.store.delete_session(old_token)
        except StorageError as exc:
            logger.error("session_delete_failed", user_id=user.id, error=str(exc))
            raise SessionPersistenceFailure("Could not replace session") from exc
        session = self._persist_session(ctx, user, pair)
        ctx.access_token = pair.access_token
        ctx.refresh_token = pair.refresh_token
        ctx.session_id = session.id
        self.audit.record("Session refreshed", user_id=user.id, client=ctx.client)

    async def _expire_session(self, ctx: SessionContext) -> None:
        if ctx.user is not None:
            self.audit.record("Session expired", user_id=ctx.user.id, client=ctx.client)
        await self.logout(ctx)

    async def refresh(self, ctx: SessionContext) -> bool:
        """Rotate both tokens; a rejected refresh token logs the context out."""
        self._bind(ctx)
        if not ctx.authenticated or not ctx.refresh_token:
            return False
        pair = self.tokens.refresh(ctx.refresh_token)
        if pair is None:
            await self.logout(ctx)
            return False
        await self._rotate_session(ctx, pair)
        if ctx.monitor is not None:
            ctx.monitor.update_tokens(pair.access_token, pair.refresh_token)
        return True

    async def logout(self, ctx: SessionContext) -> None:
        """Release a context; repeated calls are no-ops."""
        self._bind(ctx)
        # Stop the monitor before anything else so it cannot resurrect the session
        self._cancel_monitor(ctx)
        user, token, was_authenticated = ctx.user, ctx.access_token, ctx.authenticated
        self._reset(ctx)
        if token:
            try:
                self.store.delete_session(token)
            except StorageError as exc:
                logger.warning("session_delete_failed", error=str(exc))
        if user is not None and was_authenticated:
            self.audit.record("User logout", user_id=user.id, client=ctx.client)
            logger.info("user_logged_out", user_id=user.id)

    async def restore_session(
        self, ctx: SessionContext, access_token: str, refresh_token: Optional[str]
    ) -> bool:
        """Resume a session from tokens held by the client, refreshing if the access token lapsed."""
        self._bind(ctx)
        self._cancel_monitor(ctx)
        self._reset(ctx)
        session = self.store.get_session_by_token(access_token) if access_token else None
        if session is None:
            return False
        # Only the pair stored with the session may resume it; a rotated-out refresh token is dead
        if not refresh_token or session.refresh_token != refresh_token:
            logger.warning("session_restore_token_mismatch", session_id=session.id)
            return False

        if self.tokens.is_expired(access_token):
            pair = self.tokens.refresh(refresh_token)
            if pair is None:
                self.store.delete_session(access_token)
                return False
            claims = self.tokens.verify_access(pair.access_token)
        else:
            pair = None
            try:
                claims = self.tokens.verify_access(access_token)
            except InvalidToken:
                return False
        if claims.user_id != session.user_id:
            logger.warning("session_restore_user_mismatch", session_id=session.id)
            return False

        user = self.store.get_user(claims.user_id)
        if user is None or not user.is_active:
            return False
        ctx.user = user
        ctx.state = ChallengeState.AUTHENTICATED
        ctx.access_token = access_token
        ctx.refresh_token = refresh_token
        if pair is not None:
            await self._rotate_session(ctx, pair)
        else:
            ctx.session_id = session.id
        self._start_monitor(ctx)
        logger.info("session_restored", user_id=user.id)
        return True

    def resolve_user(self, access_token: str) -> User:
        """Map a presented access token to its active user."""
        claims = self.tokens.verify_access(access_token)
        if self.store.get_session_by_token(access_token) is None:
            raise NotAuthenticated("Session has ended")
        user = self.store.get_user(claims.user_id)
        if user is None or not user.is_active:
            raise NotAuthenticated("Account is unavailable")
        return user

    # registration
    async def _notify(self, email: str, code: str) -> bool:
        try:
            return bool(await self.notifier.send_code(email, code))
        except Exception as exc:
            logger.error("code_dispatch_failed", error=str(exc))
            return False

    async def send_registration_otp(
        self, email: str, password: str, client: Optional[ClientInfo] = None
    ) -> bool:
        email = normalize_email(email)
        problems = validate_password_strength(password)
        if problems:
            raise WeakPassword(problems)
        if self.store.get_user_by_email(email) is not None:
            raise AccountExists()
        code = self.otp.issue(
            email,
            OtpKind.REGISTRATION,
            payload={"password_hash": self.passwords.hash(password)},
        )
        sent = await self._notify(email, code)
        if sent:
            self.audit.record("Email OTP sent", client=client, details={"purpose": "registration"})
        else:
            logger.warning("registration_code_not_sent")
        return sent

    async def verify_registration_otp(
        self, email: str, code: str, client: Optional[ClientInfo] = None
    ) -> User:
        email = normalize_email(email)
        record = self.otp.consume_record(email, code, OtpKind.REGISTRATION)
        password_hash = (record.payload or {}).get("password_hash") if record else None
        if not password_hash:
            raise ExpiredOrUsedCode("Invalid or expired verification code")
        try:
            user = self.store.create_user(email, password_hash, role=Role.STANDARD_USER)
        except ConstraintViolation as exc:
            raise AccountExists() from exc
        self.audit.record("User registration", user_id=user.id, client=client)
        logger.info("user_registered", user_id=user.id)
        return user

    # MFA enrollment
    def setup_totp(self, ctx: SessionContext) -> TotpEnrollment:
        user = self._require_user(ctx)
        secret = self.totp.generate_secret()
        uri = self.totp.provisioning_uri(user.email, secret)
        return TotpEnrollment(secret=secret, uri=uri, qr_code=self.totp.provisioning_qr_code(uri))

    def _enable_mfa(
        self, ctx: SessionContext, kind: MfaKind, totp_secret: Optional[str] = None
    ) -> List[str]:
        user = self._require_user(ctx)
        ctx.user = self.store.update_user_mfa(
            user.id, enabled=True, kind=kind, totp_secret=totp_secret
        )
        return self.backup_codes.generate(user.id)

    async def confirm_totp_setup(
        self, ctx: SessionContext, code: str, secret: str
    ) -> Optional[List[str]]:
        """Enable TOTP once the user proves the secret works; returns fresh backup codes."""
        self._bind(ctx)
        user = self._require_user(ctx)
        if not self.totp.verify(code, secret, at=self._now().timestamp()):
            logger.info("totp_setup_rejected", user_id=user.id)
            return None
        codes = self._enable_mfa(ctx, MfaKind.TOTP, totp_secret=secret)
        self.audit.record("TOTP MFA enabled", user_id=user.id, client=ctx.client)
        return codes

    async def setup_email_otp(self, ctx: SessionContext) -> None:
        self._bind(ctx)
        user = self._require_user(ctx)
        code = self.otp.issue(user.id, OtpKind.EMAIL)
        if not await self._notify(user.email, code):
            raise NotificationFailure()
        self.audit.record("Email OTP sent", user_id=user.id, client=ctx.client)

    async def confirm_email_otp_setup(self, ctx: SessionContext, code: str) -> Optional[List[str]]:
        self._bind(ctx)
        user = self._require_user(ctx)
        if not self.otp.consume(user.id, code, OtpKind.EMAIL):
            return None
        codes = self._enable_mfa(ctx, MfaKind.EMAIL)
        self.audit.record("Email OTP MFA enabled", user_id=user.id, client=ctx.client)
        return codes

    async def disable_mfa(self, ctx: SessionContext) -> None:
        self._bind(ctx)
        user = self._require_user(ctx)
        ctx.user = self.store.update_user_mfa(user.id, enabled=False, kind=MfaKind.NONE)
        self.backup_codes.revoke(user.id)
        self.audit.record("MFA disabled", user_id=user.id, client=ctx.client)

    # password reset
    async def request_password_reset(
        self, email: str, client: Optional[ClientInfo] = None
    ) -> None:
        """Email a single-use reset link to the account holder.

        The token only ever travels through the notifier. Unknown or inactive
        addresses return silently and reveal nothing about account existence.
        A failed delivery raises NotificationFailure.
        """
        user = self.store.get_user_by_email(email)
        if user is None or not user.is_active:
            logger.info("password_reset_unknown_email")
            return
        token = secrets.token_urlsafe(32)
        expires_at = self._now() + timedelta(seconds=self.settings.password_reset_ttl_seconds)
        try:
            self.store.create_otp_code(user.id, token, OtpKind.PASSWORD_RESET, expires_at)
        except StorageError as exc:
            raise SessionPersistenceFailure("Could not store reset token") from exc
        try:
            sent = bool(await self.notifier.send_password_reset(user.email, token))
        except Exception as exc:
            logger.error("password_reset_dispatch_failed", user_id=user.id, error=str(exc))
            sent = False
        if not sent:
            raise NotificationFailure("Could not send password reset email")
        self.audit.record("Password reset requested", user_id=user.id, client=client)

    async def complete_password_reset(
        self, token: str, new_password: str, client: Optional[ClientInfo] = None
    ) -> bool:
        problems = validate_password_strength(new_password)
        if problems:
            raise WeakPassword(problems)
        record = self.store.consume_password_reset_token(token, self._now())
        if record is None:
            logger.info("password_reset_token_rejected")
            return False
        self.store.update_password(record.subject, self.passwords.hash(new_password))
        self.audit.record("Password reset completed", user_id=record.subject, client=client)
        return True
