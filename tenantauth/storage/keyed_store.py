from __future__ import annotations

from typing import Optional, Protocol


class KeyedStore(Protocol):
    """Shared key-value store with per-key TTL reachable by every instance.

    Implementations raise ``StoreUnavailable`` when a call cannot complete; a
    failed call is never reported as "not found".
    """

    async def incr_with_expire(self, key: str, ttl_seconds: int) -> int: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def getdel(self, key: str) -> Optional[str]: ...

    async def compare_and_delete(self, key: str, expected: str) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


__all__ = ["KeyedStore"]
