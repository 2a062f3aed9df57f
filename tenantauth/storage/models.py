from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


@dataclass(frozen=True)
class Principal:
    tenant_id: str
    user_id: int
    username: str


@dataclass(frozen=True)
class TokenClaims:
    """Verified claims carried by a session token."""

    principal: Principal
    issued_at: int
    expires_at: int
    jti: str


@dataclass
class Tenant:
    tenant_id: str
    name: str
    enabled: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class UserAccount:
    user_id: int
    tenant_id: str
    username: str
    password_hash: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    enabled: bool = True
    email_verified: bool = False
    phone_verified: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_principal(self) -> Principal:
        return Principal(
            tenant_id=self.tenant_id, user_id=self.user_id, username=self.username
        )


@dataclass(frozen=True)
class CaptchaChallenge:
    captcha_id: str
    question: str
    ttl_seconds: int


@dataclass
class AuditEvent:
    tenant_id: str
    action: str
    success: bool
    user_id: Optional[int] = None
    ip: Optional[str] = None
    detail: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
