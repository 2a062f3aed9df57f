from __future__ import annotations

import itertools
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import AuditEvent, Tenant, UserAccount


class MemoryKeyedStore:
    """Process-local keyed store with per-key TTL.

    Serves as the dev/test stand-in for Redis. Every operation runs under one
    lock, which gives the same atomicity the Lua scripts give in Redis.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str, now: float) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= now:
            del self._data[key]
            return None
        return entry

    async def incr_with_expire(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                self._data[key] = ("1", now + max(1, int(ttl_seconds)))
                return 1
            value, expires_at = entry
            count = int(value) + 1
            self._data[key] = (str(count), expires_at)
            return count

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            now = self._clock()
            if self._live(key, now) is not None:
                return False
            self._data[key] = (value, now + max(1, int(ttl_seconds)))
            return True

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key, self._clock())
            return entry[0] if entry else None

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key, self._clock())
            if entry is None:
                return None
            del self._data[key]
            return entry[0]

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._lock:
            entry = self._live(key, self._clock())
            if entry is None or entry[0] != expected:
                return False
            del self._data[key]
            return True

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self._clock()) is not None

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def close(self) -> None:
        with self._lock:
            self._data.clear()

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires, or None when absent or persistent."""
        with self._lock:
            entry = self._live(key, self._clock())
            if entry is None or entry[1] is None:
                return None
            return entry[1] - self._clock()


class MemoryDirectory:
    """In-memory tenant and user records for local runs and tests."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.users: Dict[Tuple[str, int], UserAccount] = {}
        self._user_ids = itertools.count(1)
        self._data_lock = threading.RLock()

    def add_tenant(self, tenant_id: str, name: Optional[str] = None, *, enabled: bool = True) -> Tenant:
        with self._data_lock:
            if tenant_id in self.tenants:
                raise ConstraintViolation("tenant exists", {"tenant_id": tenant_id})
            tenant = Tenant(tenant_id=tenant_id, name=name or tenant_id, enabled=enabled)
            self.tenants[tenant_id] = tenant
            return tenant

    def set_tenant_enabled(self, tenant_id: str, enabled: bool) -> None:
        with self._data_lock:
            self.tenants[tenant_id].enabled = enabled

    def add_user(
        self,
        tenant_id: str,
        username: str,
        *,
        password_hash: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        enabled: bool = True,
        email_verified: bool = False,
        phone_verified: bool = False,
    ) -> UserAccount:
        with self._data_lock:
            if self.get_user_by_username(tenant_id, username):
                raise ConstraintViolation("username exists", {"tenant_id": tenant_id, "field": "username"})
            if email and self.get_user_by_email(tenant_id, email):
                raise ConstraintViolation("email exists", {"tenant_id": tenant_id, "field": "email"})
            if phone and self.get_user_by_phone(tenant_id, phone):
                raise ConstraintViolation("phone exists", {"tenant_id": tenant_id, "field": "phone"})
            user = UserAccount(
                user_id=next(self._user_ids),
                tenant_id=tenant_id,
                username=username,
                password_hash=password_hash,
                email=email.lower() if email else None,
                phone=phone,
                enabled=enabled,
                email_verified=email_verified,
                phone_verified=phone_verified,
            )
            self.users[(tenant_id, user.user_id)] = user
            self.logger.info("directory_user_added", tenant_id=tenant_id, user_id=user.user_id)
            return user

    def set_user_enabled(self, tenant_id: str, user_id: int, enabled: bool) -> None:
        with self._data_lock:
            self.users[(tenant_id, user_id)].enabled = enabled

    def set_password_hash(self, tenant_id: str, user_id: int, password_hash: str) -> None:
        with self._data_lock:
            self.users[(tenant_id, user_id)].password_hash = password_hash
        self.logger.info("directory_password_updated", tenant_id=tenant_id, user_id=user_id)

    def mark_verified(self, tenant_id: str, user_id: int, *, email: bool = False, phone: bool = False) -> None:
        with self._data_lock:
            user = self.users[(tenant_id, user_id)]
            if email:
                user.email_verified = True
            if phone:
                user.phone_verified = True

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def get_user(self, tenant_id: str, user_id: int) -> Optional[UserAccount]:
        with self._data_lock:
            return self.users.get((tenant_id, user_id))

    def _find(self, tenant_id: str, attr: str, value: str) -> Optional[UserAccount]:
        with self._data_lock:
            for (user_tenant, _), user in self.users.items():
                if user_tenant == tenant_id and getattr(user, attr) == value:
                    return user
            return None

    def get_user_by_username(self, tenant_id: str, username: str) -> Optional[UserAccount]:
        return self._find(tenant_id, "username", username)

    def get_user_by_email(self, tenant_id: str, email: str) -> Optional[UserAccount]:
        return self._find(tenant_id, "email", email.lower())

    def get_user_by_phone(self, tenant_id: str, phone: str) -> Optional[UserAccount]:
        return self._find(tenant_id, "phone", phone)


class MemoryAuditSink:
    """Keeps audit events in a list."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def record(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)
