from __future__ import annotations

import json
import random
import secrets
import time
import uuid
from typing import Callable, Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.keys import Action, captcha_challenge_key, captcha_fail_key
from tenantauth.service.result import ErrorKind, Result
from tenantauth.storage.keyed_store import KeyedStore
from tenantauth.storage.models import CaptchaChallenge

logger = get_logger(__name__)


class CaptchaManager:
    """Arithmetic challenges gated by per-identifier failure counters.

    Challenges are stored under their id only. Whoever holds the id and the
    answer can spend it once, independent of which identifier tripped the
    requirement.
    """

    def __init__(
        self,
        store: KeyedStore,
        *,
        threshold: int = 3,
        ttl_seconds: int = 300,
        max_operand: int = 4,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.threshold = threshold
        self.ttl_seconds = ttl_seconds
        self.max_operand = max_operand
        self._rng = rng or secrets.SystemRandom()
        self._clock = clock

    @classmethod
    def from_settings(cls, store: KeyedStore, settings: Settings, **kwargs) -> "CaptchaManager":
        return cls(
            store,
            threshold=settings.captcha_threshold,
            ttl_seconds=settings.captcha_ttl_seconds,
            max_operand=settings.captcha_max_operand,
            **kwargs,
        )

    async def failure_count(self, tenant_id: str, action: Action, identifier: Optional[str]) -> int:
        value = await self.store.get(captcha_fail_key(action, tenant_id, identifier))
        try:
            return int(value) if value is not None else 0
        except ValueError:
            return 0

    async def is_required(self, tenant_id: str, action: Action, identifier: Optional[str]) -> bool:
        return await self.failure_count(tenant_id, action, identifier) >= self.threshold

    async def record_failure(self, tenant_id: str, action: Action, identifier: Optional[str]) -> int:
        count = await self.store.incr_with_expire(
            captcha_fail_key(action, tenant_id, identifier), self.ttl_seconds
        )
        logger.info(
            "captcha_failure_recorded",
            tenant_id=tenant_id,
            action=Action(action).value,
            failures=count,
            threshold=self.threshold,
        )
        return count

    async def reset(self, tenant_id: str, action: Action, identifier: Optional[str]) -> None:
        await self.store.delete(captcha_fail_key(action, tenant_id, identifier))

    async def create_challenge(
        self, tenant_id: str, action: Action, identifier: Optional[str]
    ) -> CaptchaChallenge:
        a = self._rng.randint(1, self.max_operand)
        b = self._rng.randint(1, self.max_operand)
        captcha_id = str(uuid.uuid4())
        record = {
            "answer": str(a + b),
            "tenantId": tenant_id,
            "createdAt": int(self._clock()),
        }
        await self.store.set(
            captcha_challenge_key(captcha_id), json.dumps(record), self.ttl_seconds
        )
        logger.info(
            "captcha_challenge_created",
            tenant_id=tenant_id,
            action=Action(action).value,
            captcha_id=captcha_id,
        )
        return CaptchaChallenge(
            captcha_id=captcha_id, question=f"{a} + {b}", ttl_seconds=self.ttl_seconds
        )

    async def verify(self, captcha_id: Optional[str], answer: Optional[str]) -> Result[None]:
        """Consume the challenge and compare answers.

        The stored answer is deleted on lookup, so a second call with the
        same id fails even when the first one succeeded.
        """
        if not captcha_id or not captcha_id.strip() or answer is None or not answer.strip():
            return Result.failure(ErrorKind.CAPTCHA_INVALID)
        raw = await self.store.getdel(captcha_challenge_key(captcha_id.strip()))
        if raw is None:
            logger.info("captcha_challenge_missing", captcha_id=captcha_id)
            return Result.failure(ErrorKind.CAPTCHA_INVALID)
        try:
            expected = str(json.loads(raw)["answer"])
        except (ValueError, KeyError, TypeError):
            logger.warning("captcha_challenge_corrupt", captcha_id=captcha_id)
            return Result.failure(ErrorKind.CAPTCHA_INVALID)
        if answer.strip().lower() != expected.strip().lower():
            return Result.failure(ErrorKind.CAPTCHA_INVALID)
        return Result.success()
