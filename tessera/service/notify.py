from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlencode

from tessera.logging import get_logger, redact_email

logger = get_logger(__name__)


@dataclass(frozen=True)
class CodeMessage:
    subject: str
    text_body: str
    html_body: str


def _validity(ttl_seconds: int) -> str:
    minutes = max(1, ttl_seconds // 60)
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour{'s' if hours != 1 else ''}"
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


def render_code_message(code: str, *, from_name: str = "Tessera", ttl_seconds: int = 120) -> CodeMessage:
    """Compose the verification-code email in plain text and HTML."""
    validity = _validity(ttl_seconds)
    subject = f"Your {from_name} verification code"
    text_body = (
        f"Your verification code is: {code}\n\n"
        f"This code will expire in {validity}.\n\n"
        "If you didn't request this code, please ignore this email."
    )
    html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; font-weight: 700; letter-spacing: 8px; margin: 30px 0; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Verification code</h1>
        <p>Use the code below to continue signing in:</p>
        <p class="code">{code}</p>
        <p>This code will expire in {validity}.</p>
        <div class="footer">
            <p>{from_name}</p>
            <p>If you didn't request this code, please ignore this email.</p>
        </div>
    </div>
</body>
</html>
"""
    return CodeMessage(subject=subject, text_body=text_body, html_body=html_body)


def render_reset_message(
    token: str,
    *,
    base_url: str = "http://localhost:8000",
    from_name: str = "Tessera",
    ttl_seconds: int = 3600,
) -> CodeMessage:
    """Compose the password reset email carrying a single-use link."""
    reset_url = f"{base_url.rstrip('/')}/reset-password?{urlencode({'token': token})}"
    validity = _validity(ttl_seconds)
    subject = f"Reset your {from_name} password"
    text_body = (
        "We received a request to reset your password. "
        "Visit the link below to choose a new password:\n\n"
        f"{reset_url}\n\n"
        f"This link will expire in {validity}.\n\n"
        "If you didn't request this, you can safely ignore this email."
    )
    html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2f5d8a; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Reset your password</h1>
        <p>We received a request to reset your password.</p>
        <p style="margin: 30px 0;"><a href="{reset_url}" class="button">Reset Password</a></p>
        <p>This link will expire in {validity}.</p>
        <div class="footer">
            <p>{from_name}</p>
            <p>If the button doesn't work, copy and paste this URL: {reset_url}</p>
        </div>
    </div>
</body>
</html>
"""
    return CodeMessage(subject=subject, text_body=text_body, html_body=html_body)


class CodeNotifier(Protocol):
    async def send_code(self, email: str, code: str) -> bool: ...

    async def send_password_reset(self, email: str, token: str) -> bool: ...


class LoggingCodeNotifier:
    """Development notifier: logs the rendered message instead of delivering it."""

    def __init__(
        self,
        *,
        from_name: str = "Tessera",
        ttl_seconds: int = 120,
        base_url: str = "http://localhost:8000",
        reset_ttl_seconds: int = 3600,
    ) -> None:
        self.from_name = from_name
        self.ttl_seconds = ttl_seconds
        self.base_url = base_url
        self.reset_ttl_seconds = reset_ttl_seconds

    def _log(self, email: str, message: CodeMessage) -> bool:
        logger.info(
            "email_dev_mode",
            to=redact_email(email),
            subject=message.subject,
            body_preview=message.text_body[:200],
        )
        return True

    async def send_code(self, email: str, code: str) -> bool:
        message = render_code_message(code, from_name=self.from_name, ttl_seconds=self.ttl_seconds)
        return self._log(email, message)

    async def send_password_reset(self, email: str, token: str) -> bool:
        message = render_reset_message(
            token,
            base_url=self.base_url,
            from_name=self.from_name,
            ttl_seconds=self.reset_ttl_seconds,
        )
        return self._log(email, message)
