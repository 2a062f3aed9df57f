from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Dict, Optional, Tuple

from tenantauth.logging import get_logger
from tenantauth.service.keys import blacklist_key
from tenantauth.service.result import ErrorKind, Result
from tenantauth.service.tenant_guard import TenantGuard
from tenantauth.service.tokens import TokenIssuer, hash_token
from tenantauth.storage.errors import StoreUnavailable
from tenantauth.storage.keyed_store import KeyedStore
from tenantauth.storage.models import Principal, TokenClaims

logger = get_logger(__name__)


class ValidationCache:
    """Short-lived memo of verified claims keyed by token hash.

    Evicted hashes leave a tombstone until the token's own expiry so that a
    validation racing with a revocation cannot write the claims back.
    """

    def __init__(
        self,
        ttl_seconds: int,
        *,
        max_entries: int = 10000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[TokenClaims, float]]" = OrderedDict()
        self._tombstones: Dict[str, float] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, token_hash: str) -> Optional[TokenClaims]:
        with self._lock:
            entry = self._entries.get(token_hash)
            if entry is None:
                return None
            claims, cached_until = entry
            if cached_until <= self._clock():
                del self._entries[token_hash]
                return None
            return claims

    def put(self, token_hash: str, claims: TokenClaims) -> bool:
        if self.ttl_seconds <= 0:
            return False
        with self._lock:
            now = self._clock()
            tombstone = self._tombstones.get(token_hash)
            if tombstone is not None and tombstone > now:
                return False
            cached_until = min(now + self.ttl_seconds, claims.expires_at)
            if cached_until <= now:
                return False
            if token_hash not in self._entries and len(self._entries) >= self.max_entries:
                self._prune(now)
                while len(self._entries) >= self.max_entries:
                    self._entries.popitem(last=False)
            self._entries[token_hash] = (claims, cached_until)
            return True

    def evict(self, token_hash: str, *, until: Optional[float] = None) -> None:
        with self._lock:
            self._entries.pop(token_hash, None)
            if until is not None and until > self._clock():
                if len(self._tombstones) >= self.max_entries:
                    self._prune(self._clock())
                self._tombstones[token_hash] = until

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._tombstones.clear()

    def _prune(self, now: float) -> None:
        for key in [k for k, (_, until) in self._entries.items() if until <= now]:
            del self._entries[key]
        for key in [k for k, until in self._tombstones.items() if until <= now]:
            del self._tombstones[key]


class RevocationStore:
    """Durable blacklist of token hashes, kept in step with the ValidationCache."""

    def __init__(
        self,
        store: KeyedStore,
        cache: ValidationCache,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self._clock = clock

    async def revoke(
        self,
        token_hash: str,
        tenant_id: str,
        remaining_ttl: int,
        *,
        expires_at: Optional[float] = None,
    ) -> None:
        """Blacklist ``token_hash`` for ``remaining_ttl`` seconds and evict it.

        Eviction runs even when the token is already dead or the store
        write fails; a failed write still propagates to the caller.
        """
        until = expires_at if expires_at is not None else self._clock() + max(remaining_ttl, 0)
        try:
            if remaining_ttl > 0:
                await self.store.set(blacklist_key(token_hash), tenant_id, remaining_ttl)
        finally:
            self.cache.evict(token_hash, until=until)
        logger.info(
            "token_revoked",
            tenant_id=tenant_id,
            token_hash=token_hash[:12],
            remaining_ttl=remaining_ttl,
        )

    async def claim(
        self,
        token_hash: str,
        tenant_id: str,
        remaining_ttl: int,
        *,
        expires_at: Optional[float] = None,
    ) -> bool:
        """Blacklist ``token_hash`` only if nobody else has; False means it was already taken.

        Used where a token may be spent once, such as a refresh. The cache is
        evicted whether or not the claim wins.
        """
        until = expires_at if expires_at is not None else self._clock() + max(remaining_ttl, 0)
        try:
            claimed = await self.store.set_if_absent(
                blacklist_key(token_hash), tenant_id, max(remaining_ttl, 1)
            )
        finally:
            self.cache.evict(token_hash, until=until)
        if claimed:
            logger.info(
                "token_claimed",
                tenant_id=tenant_id,
                token_hash=token_hash[:12],
                remaining_ttl=remaining_ttl,
            )
        else:
            logger.warning("token_claim_lost", tenant_id=tenant_id, token_hash=token_hash[:12])
        return claimed

    async def is_revoked(self, token_hash: str) -> bool:
        """Raises StoreUnavailable when the blacklist cannot be read."""
        return await self.store.exists(blacklist_key(token_hash))


class TokenValidator:
    """Per-request token check: blacklist, cache or signature, then tenant."""

    def __init__(
        self,
        issuer: TokenIssuer,
        revocations: RevocationStore,
        cache: ValidationCache,
        guard: TenantGuard,
    ) -> None:
        self.issuer = issuer
        self.revocations = revocations
        self.cache = cache
        self.guard = guard

    async def verify_claims(
        self, token: str, declared_tenant_id: Optional[str]
    ) -> Result[TokenClaims]:
        token_hash = hash_token(token)
        try:
            revoked = await self.revocations.is_revoked(token_hash)
        except StoreUnavailable as exc:
            logger.warning(
                "revocation_check_failed",
                token_hash=token_hash[:12],
                error=exc.message,
            )
            return Result.failure(ErrorKind.INTERNAL)
        if revoked:
            logger.info("token_blacklisted", token_hash=token_hash[:12])
            return Result.failure(ErrorKind.TOKEN_BLACKLISTED)

        claims = self.cache.get(token_hash)
        if claims is None:
            parsed = self.issuer.parse(token)
            if not parsed.ok:
                return Result.failure(parsed.error, parsed.message)
            claims = parsed.value
            self.cache.put(token_hash, claims)

        guarded = self.guard.check(declared_tenant_id, claims.principal)
        if not guarded.ok:
            return Result.failure(guarded.error, guarded.message)
        return Result.success(claims)

    async def verify(self, token: str, declared_tenant_id: Optional[str]) -> Result[Principal]:
        result = await self.verify_claims(token, declared_tenant_id)
        if not result.ok:
            return Result.failure(result.error, result.message)
        return Result.success(result.value.principal)
