from __future__ import annotations

from typing import Optional

from tenantauth.config import RateAction, RateRule, Settings
from tenantauth.logging import get_logger
from tenantauth.service.keys import UNKNOWN, Action, ip_rate_key, rate_key
from tenantauth.service.result import ErrorKind, Result
from tenantauth.storage.errors import StoreUnavailable
from tenantauth.storage.keyed_store import KeyedStore

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


class RateLimiter:
    """Fixed-window counters over the shared keyed store.

    Each event runs one atomic increment-with-expire; the first event of a
    window sets the expiry. Count above the class maximum is a denial.
    """

    def __init__(self, store: KeyedStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def rule_for(self, rate_class: RateAction) -> RateRule:
        rule = self.settings.rate_rule(rate_class)
        if rule.window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                rate_class=RateAction(rate_class).value,
                window_seconds=rule.window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            rule = RateRule(rule.max_requests, DEFAULT_WINDOW_SECONDS)
        return rule

    async def check(self, key: str, rate_class: RateAction = RateAction.DEFAULT) -> Result[int]:
        """Count one event against ``key``; fail RATE_LIMITED past the maximum.

        A non-positive maximum disables the class. Store outages fail closed.
        """
        rule = self.rule_for(rate_class)
        if rule.max_requests <= 0:
            return Result.success(0)
        try:
            count = await self.store.incr_with_expire(key, rule.window_seconds)
        except StoreUnavailable as exc:
            logger.error("rate_limit_store_unavailable", key=key, error=exc.message)
            return Result.failure(ErrorKind.INTERNAL, "unable to verify request rate")
        if count > rule.max_requests:
            logger.warning(
                "rate_limited",
                key=key,
                count=count,
                max_requests=rule.max_requests,
                window_seconds=rule.window_seconds,
            )
            return Result.failure(ErrorKind.RATE_LIMITED)
        return Result.success(count)

    async def check_action(
        self, action: Action, tenant_id: str, identifier: Optional[str]
    ) -> Result[int]:
        return await self.check(rate_key(action, tenant_id, identifier), action.rate_class)

    async def check_ip(self, action: Action, ip: Optional[str]) -> Result[int]:
        """Per-IP check under the permissive ``ip`` class.

        Requests whose source cannot be determined are denied.
        """
        if not ip or ip == UNKNOWN:
            logger.warning("rate_limit_unknown_ip", action=Action(action).value)
            return Result.failure(ErrorKind.RATE_LIMITED, "unable to verify request source")
        return await self.check(ip_rate_key(action, ip), RateAction.IP)
