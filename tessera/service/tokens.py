from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from tessera.logging import get_logger
from tessera.service.errors import InvalidToken, TokenExpired, TokenTypeMismatch
from tessera.storage.models import Role, TokenClaims, TokenPair, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def decode_unverified(token: str) -> Optional[dict[str, Any]]:
    """Decode a token's payload without checking its signature."""
    try:
        _, payload_b64, _ = token.split(".")
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, TypeError, AttributeError):
        return None
    return payload if isinstance(payload, dict) else None


class TokenIssuer:
    """Mints, verifies and rotates HS256 access/refresh token pairs.

    Access and refresh tokens are signed with distinct secrets, so a token of
    one kind never passes the other kind's signature check.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        access_ttl_seconds: int = 30 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {ACCESS: access_secret, REFRESH: refresh_secret}
        self._ttls = {ACCESS: access_ttl_seconds, REFRESH: refresh_ttl_seconds}
        self._clock = clock or utcnow

    def _now_ts(self) -> int:
        return int(self._clock().timestamp())

    def _sign(self, signing_input: str, token_type: str) -> str:
        return _encode_segment(
            hmac.new(
                self._secrets[token_type].encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _mint(self, user_id: str, email: str, role: Role, token_type: str, iat: int) -> str:
        payload = {
            "userId": user_id,
            "email": email,
            "role": Role(role).value,
            "type": token_type,
            "iat": iat,
            "exp": iat + self._ttls[token_type],
            "jti": secrets.token_hex(8),
        }
        return self._encode(payload, token_type)

    def issue(self, user_id: str, email: str, role: Role) -> TokenPair:
        iat = self._now_ts()
        access = self._mint(user_id, email, role, ACCESS, iat)
        refresh = self._mint(user_id, email, role, REFRESH, iat)
        expires_at = datetime.fromtimestamp(iat + self._ttls[ACCESS], tz=timezone.utc)
        return TokenPair(access_token=access, refresh_token=refresh, expires_at=expires_at)

    def _verify(self, token: str, token_type: str) -> TokenClaims:
        try:
            if not token.isascii():
                raise ValueError("token must be ASCII")
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (ValueError, AttributeError):
            raise InvalidToken("Malformed token") from None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidToken("Malformed token") from None
        # Reject algorithm confusion before touching the signature
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise InvalidToken("Unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidToken("Invalid token signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidToken("Malformed token") from None
        if not isinstance(payload, dict):
            raise InvalidToken("Malformed token")
        if payload.get("type") != token_type:
            raise TokenTypeMismatch(f"Expected {token_type} token")
        try:
            exp = int(payload["exp"])
            claims = TokenClaims(
                user_id=str(payload["userId"]),
                email=str(payload["email"]),
                role=Role(payload["role"]),
                type=token_type,
                iat=int(payload["iat"]),
                exp=exp,
                jti=payload.get("jti"),
            )
        except (KeyError, TypeError, ValueError):
            raise InvalidToken("Token is missing required claims") from None
        if self._now_ts() >= exp:
            raise TokenExpired("Token has expired")
        return claims

    def verify_access(self, token: str) -> TokenClaims:
        return self._verify(token, ACCESS)

    def verify_refresh(self, token: str) -> TokenClaims:
        return self._verify(token, REFRESH)

    def refresh(self, refresh_token: str) -> Optional[TokenPair]:
        """Exchange a valid refresh token for a brand-new pair; None when it is rejected."""
        try:
            claims = self.verify_refresh(refresh_token)
        except InvalidToken as exc:
            logger.info("token_refresh_rejected", reason=exc.error_code)
            return None
        return self.issue(claims.user_id, claims.email, claims.role)

    def is_expired(self, token: str) -> bool:
        """Decode without verifying and compare exp to now; undecodable counts as expired."""
        payload = decode_unverified(token)
        if not payload:
            return True
        try:
            exp = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return True
        return self._now_ts() >= exp

    def seconds_until_expiry(self, token: str) -> int:
        payload = decode_unverified(token) or {}
        try:
            exp = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return 0
        return max(0, exp - self._now_ts())
