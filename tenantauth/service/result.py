from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

from tenantauth.service import errors

T = TypeVar("T")


class ErrorKind(str, Enum):
    INVALID_TOKEN = "invalid_token"
    TOKEN_BLACKLISTED = "token_blacklisted"
    TENANT_MISMATCH = "tenant_mismatch"
    TENANT_DISABLED = "tenant_disabled"
    TENANT_NOT_FOUND = "tenant_not_found"
    RATE_LIMITED = "rate_limited"
    CAPTCHA_REQUIRED = "captcha_required"
    CAPTCHA_INVALID = "captcha_invalid"
    INVALID_CODE = "invalid_code"
    BAD_CREDENTIALS = "bad_credentials"
    USER_DISABLED = "user_disabled"
    USER_NOT_FOUND = "user_not_found"
    INTERNAL = "internal"


_KIND_TO_ERROR: dict[ErrorKind, type[errors.ServiceError]] = {
    ErrorKind.INVALID_TOKEN: errors.InvalidTokenError,
    ErrorKind.TOKEN_BLACKLISTED: errors.TokenBlacklistedError,
    ErrorKind.TENANT_MISMATCH: errors.TenantMismatchError,
    ErrorKind.TENANT_DISABLED: errors.TenantDisabledError,
    ErrorKind.TENANT_NOT_FOUND: errors.TenantNotFoundError,
    ErrorKind.RATE_LIMITED: errors.RateLimitedError,
    ErrorKind.CAPTCHA_REQUIRED: errors.CaptchaRequiredError,
    ErrorKind.CAPTCHA_INVALID: errors.CaptchaInvalidError,
    ErrorKind.INVALID_CODE: errors.InvalidCodeError,
    ErrorKind.BAD_CREDENTIALS: errors.BadCredentialsError,
    ErrorKind.USER_DISABLED: errors.UserDisabledError,
    ErrorKind.USER_NOT_FOUND: errors.UserNotFoundError,
    ErrorKind.INTERNAL: errors.ServerError,
}

_DEFAULT_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.INVALID_TOKEN: "invalid token",
    ErrorKind.TOKEN_BLACKLISTED: "token revoked",
    ErrorKind.TENANT_MISMATCH: "tenant mismatch",
    ErrorKind.TENANT_DISABLED: "tenant disabled",
    ErrorKind.TENANT_NOT_FOUND: "tenant not found",
    ErrorKind.RATE_LIMITED: "too many requests",
    ErrorKind.CAPTCHA_REQUIRED: "captcha required",
    ErrorKind.CAPTCHA_INVALID: "captcha invalid",
    ErrorKind.INVALID_CODE: "invalid code",
    ErrorKind.BAD_CREDENTIALS: "invalid credentials",
    ErrorKind.USER_DISABLED: "user disabled",
    ErrorKind.USER_NOT_FOUND: "user not found",
    ErrorKind.INTERNAL: "internal error",
}


def error_for(kind: ErrorKind, message: Optional[str] = None) -> errors.ServiceError:
    """Build the ServiceError that represents ``kind``."""
    return _KIND_TO_ERROR[kind](message or _DEFAULT_MESSAGES[kind])


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success value or failure kind.

    Validation, rate checks and token verification return this instead of
    raising, so callers branch on ``ok`` and decide themselves whether a
    failure becomes an HTTP error.
    """

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: Optional[str] = None) -> "Result[T]":
        return cls(error=kind, message=message or _DEFAULT_MESSAGES[kind])

    def unwrap(self) -> T:
        if self.error is not None:
            raise error_for(self.error, self.message)
        return self.value  # type: ignore[return-value]

    def __bool__(self) -> bool:
        return self.ok
