from __future__ import annotations

import asyncio
import threading
import time
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from tenantauth.config import Settings, SigningKey, get_settings, reset_settings_cache
from tenantauth.logging import get_logger
from tenantauth.service.audit import AuditLog, AuditSink
from tenantauth.service.auth import AuthOrchestrator, UserDirectory
from tenantauth.service.captcha import CaptchaManager
from tenantauth.service.delivery import Channel, select_sender
from tenantauth.service.passwords import PasswordVerifier
from tenantauth.service.rate_limit import RateLimiter
from tenantauth.service.revocation import RevocationStore, TokenValidator, ValidationCache
from tenantauth.service.tenant_guard import TenantDirectory, TenantGuard
from tenantauth.service.tokens import TokenIssuer
from tenantauth.service.verification import VerificationCodeManager
from tenantauth.storage.keyed_store import KeyedStore
from tenantauth.storage.memory import MemoryAuditSink, MemoryDirectory, MemoryKeyedStore
from tenantauth.storage.redis_cache import RedisKeyedStore, SyncRedisKeyedStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


def _connect_store(settings: Settings, clock: Callable[[], float]) -> KeyedStore:
    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            # Sync client in test mode avoids binding a pool to a throwaway loop
            if settings.test_mode:
                store = SyncRedisKeyedStore(
                    settings.redis_url, operation_timeout=settings.store_timeout_seconds
                )
            else:
                store = RedisKeyedStore(
                    settings.redis_url, operation_timeout=settings.store_timeout_seconds
                )
            store.verify_connection()
            logger.info("keyed_store_connected", redis_url=_mask_url_password(settings.redis_url))
            return store
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for rate limits, captcha challenges, codes and revocations; "
            "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
        ) from redis_error

    fallback_mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message=(
            f"Running without Redis under {fallback_mode}; counters, challenges, codes and "
            "revocations are local to this process."
        ),
        mode=fallback_mode,
    )
    return MemoryKeyedStore(clock=clock)


class Runtime:
    """Holds the wired gateway services for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[KeyedStore] = None,
        directory: Optional[MemoryDirectory] = None,
        audit_sink: Optional[AuditSink] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            app_env=self.settings.app_env,
            test_mode=self.settings.test_mode,
        )
        # Fails fast on a missing or placeholder secret
        self.signing_key = SigningKey.from_settings(self.settings)
        self.store: KeyedStore = store or _connect_store(self.settings, clock)
        self.directory = directory or MemoryDirectory()
        tenants: TenantDirectory = self.directory
        users: UserDirectory = self.directory
        self.audit_sink = audit_sink or MemoryAuditSink()

        self.passwords = PasswordVerifier()
        self.issuer = TokenIssuer(self.signing_key, clock=clock)
        self.cache = ValidationCache(
            self.settings.token_cache_ttl_seconds,
            max_entries=self.settings.token_cache_max_entries,
            clock=clock,
        )
        self.guard = TenantGuard(tenants)
        self.revocations = RevocationStore(self.store, self.cache, clock=clock)
        self.validator = TokenValidator(self.issuer, self.revocations, self.cache, self.guard)
        self.rate_limiter = RateLimiter(self.store, self.settings)
        self.captcha = CaptchaManager.from_settings(self.store, self.settings, clock=clock)
        self.codes = VerificationCodeManager.from_settings(self.store, self.settings)
        self.senders = {channel: select_sender(channel, self.settings) for channel in Channel}
        self.audit = AuditLog(self.audit_sink)
        self.auth = AuthOrchestrator(
            issuer=self.issuer,
            validator=self.validator,
            revocations=self.revocations,
            rate_limiter=self.rate_limiter,
            captcha=self.captcha,
            codes=self.codes,
            guard=self.guard,
            users=users,
            passwords=self.passwords,
            audit=self.audit,
            senders=self.senders,
        )
        logger.info(
            "runtime_init_complete",
            store_type=type(self.store).__name__,
            senders={channel.value: sender.name for channel, sender in self.senders.items()},
        )

    async def close(self) -> None:
        await self.store.close()
        self.cache.clear()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path when the runtime
    exists, and a locked re-check before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                if isinstance(runtime.store, SyncRedisKeyedStore):
                    runtime.store.client.close()
                elif isinstance(runtime.store, RedisKeyedStore):
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.store.close())
                    except RuntimeError:
                        asyncio.run(runtime.store.close())
            except Exception as exc:
                # Connection may already be closed
                logger.debug("runtime_store_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
