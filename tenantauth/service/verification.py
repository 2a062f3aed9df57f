from __future__ import annotations

import secrets
from typing import Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.keys import CodePurpose, code_key
from tenantauth.service.result import ErrorKind, Result
from tenantauth.storage.keyed_store import KeyedStore

logger = get_logger(__name__)


class VerificationCodeManager:
    """Numeric one-time codes for email and phone proof of possession."""

    def __init__(self, store: KeyedStore, *, ttl_seconds: int = 600, length: int = 6) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.length = length

    @classmethod
    def from_settings(cls, store: KeyedStore, settings: Settings) -> "VerificationCodeManager":
        return cls(
            store,
            ttl_seconds=settings.verification_code_ttl_seconds,
            length=settings.verification_code_length,
        )

    def generate(self) -> str:
        # Fixed width without a leading zero: 100000..999999 for length 6
        low = 10 ** (self.length - 1)
        return str(low + secrets.randbelow(9 * low))

    async def store_code(self, key: str, code: str, ttl_seconds: Optional[int] = None) -> None:
        await self.store.set(key, code, ttl_seconds or self.ttl_seconds)

    async def issue(self, purpose: CodePurpose, tenant_id: str, address: str) -> str:
        code = self.generate()
        await self.store_code(code_key(purpose, tenant_id, address), code)
        return code

    async def verify_and_consume(self, key: str, code: Optional[str]) -> Result[None]:
        """Compare and delete in one store operation; a code verifies once."""
        if not code or not code.strip():
            return Result.failure(ErrorKind.INVALID_CODE)
        if await self.store.compare_and_delete(key, code.strip()):
            return Result.success()
        logger.info("verification_code_rejected", key_prefix=key.rsplit(":", 1)[0])
        return Result.failure(ErrorKind.INVALID_CODE)

    async def verify(
        self, purpose: CodePurpose, tenant_id: str, address: str, code: Optional[str]
    ) -> Result[None]:
        return await self.verify_and_consume(code_key(purpose, tenant_id, address), code)
