from __future__ import annotations

from enum import Enum
from typing import Optional, Protocol

from tenantauth.logging import get_logger
from tenantauth.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditAction(str, Enum):
    LOGIN_PASSWORD = "LOGIN_PASSWORD"
    LOGIN_EMAIL = "LOGIN_EMAIL"
    LOGIN_PHONE = "LOGIN_PHONE"
    LOGOUT = "LOGOUT"
    REFRESH_TOKEN = "REFRESH_TOKEN"
    VERIFY_TOKEN = "VERIFY_TOKEN"
    SEND_CODE = "SEND_CODE"
    REGISTER_EMAIL = "REGISTER_EMAIL"
    REGISTER_PHONE = "REGISTER_PHONE"
    RESET_PASSWORD = "RESET_PASSWORD"
    CHANGE_PASSWORD = "CHANGE_PASSWORD"
    VERIFY_EMAIL = "VERIFY_EMAIL"


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class AuditLog:
    """Best-effort audit trail; an outage here never blocks authentication."""

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink

    def safe_record(
        self,
        tenant_id: str,
        user_id: Optional[int],
        action: AuditAction,
        success: bool,
        *,
        ip: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        try:
            self.sink.record(
                AuditEvent(
                    tenant_id=tenant_id,
                    action=AuditAction(action).value,
                    success=success,
                    user_id=user_id,
                    ip=ip,
                    detail=detail,
                )
            )
        except Exception as exc:
            logger.warning(
                "audit_record_failed",
                tenant_id=tenant_id,
                action=AuditAction(action).value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
