from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import io
import secrets
import time
from typing import Optional
from urllib.parse import quote, urlencode

import qrcode

from tessera.logging import get_logger

logger = get_logger(__name__)


class TotpVerifier:
    """RFC 6238 time-based codes (HMAC-SHA1, 6 digits) with a small drift window."""

    def __init__(
        self,
        *,
        step_seconds: int = 30,
        drift_steps: int = 1,
        digits: int = 6,
        issuer: str = "Tessera",
    ) -> None:
        self.step_seconds = step_seconds
        self.drift_steps = drift_steps
        self.digits = digits
        self.issuer = issuer

    @staticmethod
    def generate_secret() -> str:
        # 160 bits encodes to exactly 32 base32 characters with no padding
        return base64.b32encode(secrets.token_bytes(20)).decode("ascii")

    def provisioning_uri(self, email: str, secret: str) -> str:
        label = quote(f"{self.issuer}:{email}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.step_seconds,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    def provisioning_qr_code(self, uri: str) -> str:
        """Render an otpauth URI as a PNG data URI for authenticator apps."""
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=10,
            border=4,
        )
        qr.add_data(uri)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    def generate_code(self, secret: str, timestamp: float) -> str:
        padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return ""
        counter = int(timestamp // self.step_seconds).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def verify(self, code: str, secret: str, *, at: Optional[float] = None) -> bool:
        code = (code or "").strip()
        if len(code) != self.digits or not (code.isascii() and code.isdigit()) or not secret:
            return False
        now = time.time() if at is None else at
        for offset in range(-self.drift_steps, self.drift_steps + 1):
            generated = self.generate_code(secret, now + offset * self.step_seconds)
            if generated and hmac.compare_digest(generated, code):
                return True
        return False
