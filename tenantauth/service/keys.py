from __future__ import annotations

from enum import Enum
from typing import Optional

from tenantauth.config import RateAction


class Action(str, Enum):
    """Key-namespace action names, one per rate/captcha family."""

    SEND_CODE = "RATE_LIMIT_SEND_CODE"
    LOGIN_PASSWORD = "RATE_LIMIT_LOGIN_PASSWORD"
    LOGIN_EMAIL = "RATE_LIMIT_LOGIN_EMAIL"
    LOGIN_PHONE = "RATE_LIMIT_LOGIN_PHONE"
    CAPTCHA = "RATE_LIMIT_CAPTCHA"
    REFRESH_TOKEN = "RATE_LIMIT_REFRESH_TOKEN"
    REGISTER = "RATE_LIMIT_REGISTER"
    RESET_PASSWORD = "RATE_LIMIT_RESET_PASSWORD"
    CHANGE_PASSWORD = "RATE_LIMIT_CHANGE_PASSWORD"
    VERIFY_EMAIL = "RATE_LIMIT_VERIFY_EMAIL"

    @property
    def rate_class(self) -> RateAction:
        return _RATE_CLASS[self]


_RATE_CLASS = {
    Action.SEND_CODE: RateAction.SEND_CODE,
    Action.LOGIN_PASSWORD: RateAction.LOGIN,
    Action.LOGIN_EMAIL: RateAction.LOGIN,
    Action.LOGIN_PHONE: RateAction.LOGIN,
    Action.CAPTCHA: RateAction.CAPTCHA,
    Action.REFRESH_TOKEN: RateAction.REFRESH_TOKEN,
    # Code and password guessing flows count against the login budget
    Action.REGISTER: RateAction.LOGIN,
    Action.RESET_PASSWORD: RateAction.LOGIN,
    Action.CHANGE_PASSWORD: RateAction.LOGIN,
    Action.VERIFY_EMAIL: RateAction.LOGIN,
}


class CodePurpose(str, Enum):
    LOGIN = "login"
    REGISTER = "register"
    EMAIL_VERIFY = "email-verify"
    PASSWORD_RESET = "password-reset"


UNKNOWN = "unknown"


def normalize_identifier(identifier: Optional[str]) -> str:
    """Trim identifiers and fold email case so one mailbox maps to one key."""
    if identifier is None:
        return UNKNOWN
    value = identifier.strip()
    if not value:
        return UNKNOWN
    if "@" in value:
        value = value.lower()
    return value


def _segment(value: str) -> str:
    # ":" separates key parts; escape it (and the escape char) inside a part
    return value.replace("%", "%25").replace(":", "%3A")


def rate_key(action: Action, tenant_id: str, identifier: Optional[str]) -> str:
    return (
        f"rate:{Action(action).value}:{_segment(tenant_id)}:"
        f"{_segment(normalize_identifier(identifier))}"
    )


def ip_rate_key(action: Action, ip: str) -> str:
    return f"rate:ip:{Action(action).value}:{_segment(ip)}"


def captcha_fail_key(action: Action, tenant_id: str, identifier: Optional[str]) -> str:
    return (
        f"captcha:fail:{Action(action).value}:{_segment(tenant_id)}:"
        f"{_segment(normalize_identifier(identifier))}"
    )


def captcha_challenge_key(captcha_id: str) -> str:
    return f"captcha:challenge:{_segment(captcha_id)}"


def blacklist_key(token_hash: str) -> str:
    return f"blacklist:{token_hash}"


def code_key(purpose: CodePurpose, tenant_id: str, address: str) -> str:
    return (
        f"code:{CodePurpose(purpose).value}:{_segment(tenant_id)}:"
        f"{_segment(normalize_identifier(address))}"
    )
