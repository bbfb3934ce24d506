from __future__ import annotations

from typing import Optional, Protocol

from tessera.logging import get_logger
from tessera.storage.models import AuditEvent, ClientInfo, utcnow

logger = get_logger(__name__)


class AuditRecorder(Protocol):
    def create_audit_log(self, event: AuditEvent) -> None: ...


class AuditTrail:
    """Best-effort audit writer; a failed write is logged and never reaches the caller."""

    def __init__(self, recorder: AuditRecorder) -> None:
        self.recorder = recorder

    def record(
        self,
        action: str,
        *,
        user_id: Optional[str] = None,
        client: Optional[ClientInfo] = None,
        details: Optional[dict] = None,
    ) -> None:
        client = client or ClientInfo()
        event = AuditEvent(
            actor_user_id=user_id,
            action=action,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            details=details,
            created_at=utcnow(),
        )
        try:
            self.recorder.create_audit_log(event)
        except Exception as exc:
            logger.warning("audit_log_failed", action=action, user_id=user_id, error=str(exc))
