from __future__ import annotations

from typing import Optional, Protocol

from tenantauth.logging import get_logger
from tenantauth.service.result import ErrorKind, Result
from tenantauth.storage.models import Principal, Tenant

logger = get_logger(__name__)


class TenantDirectory(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...


class TenantGuard:
    """Declared tenant must equal token tenant, and that tenant must be active."""

    def __init__(self, tenants: TenantDirectory) -> None:
        self.tenants = tenants

    def require_enabled(self, tenant_id: str) -> Result[Tenant]:
        try:
            tenant = self.tenants.get_tenant(tenant_id)
        except Exception as exc:
            # Lookup outage must not read as "tenant is fine"
            logger.error(
                "tenant_lookup_failed",
                tenant_id=tenant_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return Result.failure(ErrorKind.INTERNAL)
        if tenant is None:
            logger.info("tenant_not_found", tenant_id=tenant_id)
            return Result.failure(ErrorKind.TENANT_NOT_FOUND)
        if not tenant.enabled:
            logger.info("tenant_disabled", tenant_id=tenant_id)
            return Result.failure(ErrorKind.TENANT_DISABLED)
        return Result.success(tenant)

    def check(self, declared_tenant_id: Optional[str], principal: Principal) -> Result[Principal]:
        if not declared_tenant_id or declared_tenant_id != principal.tenant_id:
            logger.warning(
                "tenant_mismatch",
                declared_tenant_id=declared_tenant_id,
                token_tenant_id=principal.tenant_id,
                user_id=principal.user_id,
            )
            return Result.failure(ErrorKind.TENANT_MISMATCH)
        enabled = self.require_enabled(principal.tenant_id)
        if not enabled.ok:
            return Result.failure(enabled.error, enabled.message)
        return Result.success(principal)
