from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code``, a stable string
    ``error_code`` and a stable numeric ``code`` for clients that key on
    numbers.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    code: int = 999

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    code = 117


class MissingTenantHeaderError(ValidationError):
    """Tenant header absent from an authenticated request (400)."""
    error_code = "missing_tenant_header"


class InvalidTokenError(ServiceError):
    """Token malformed, expired, or signed with another key (401)."""
    status_code = 401
    error_code = "invalid_token"
    code = 113


class TokenBlacklistedError(ServiceError):
    status_code = 401
    error_code = "token_blacklisted"
    code = 114


class TenantMismatchError(ServiceError):
    status_code = 403
    error_code = "tenant_mismatch"
    code = 115


class TenantDisabledError(ServiceError):
    status_code = 403
    error_code = "tenant_disabled"
    code = 116


class TenantNotFoundError(ServiceError):
    status_code = 404
    error_code = "tenant_not_found"
    code = 102


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    code = 112


class CaptchaRequiredError(ServiceError):
    status_code = 400
    error_code = "captcha_required"
    code = 111


class CaptchaInvalidError(ServiceError):
    status_code = 400
    error_code = "captcha_invalid"
    code = 119


class InvalidCodeError(ServiceError):
    status_code = 400
    error_code = "invalid_code"
    code = 110


class BadCredentialsError(ServiceError):
    status_code = 401
    error_code = "bad_credentials"
    code = 104


class UserDisabledError(ServiceError):
    status_code = 403
    error_code = "user_disabled"
    code = 103


class UserNotFoundError(ServiceError):
    status_code = 404
    error_code = "user_not_found"
    code = 101


class DuplicateUsernameError(ServiceError):
    """Username already taken in this tenant (409)."""
    status_code = 409
    error_code = "duplicate_username"
    code = 105


class DuplicateEmailError(ServiceError):
    status_code = 409
    error_code = "duplicate_email"
    code = 107


class DuplicatePhoneError(ServiceError):
    status_code = 409
    error_code = "duplicate_phone"
    code = 108


class PasswordMismatchError(ServiceError):
    """Confirmation differs, or the current password did not match (400)."""
    status_code = 400
    error_code = "password_mismatch"
    code = 109


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    code = 118


__all__ = [
    "ServiceError",
    "ValidationError",
    "MissingTenantHeaderError",
    "InvalidTokenError",
    "TokenBlacklistedError",
    "TenantMismatchError",
    "TenantDisabledError",
    "TenantNotFoundError",
    "RateLimitedError",
    "CaptchaRequiredError",
    "CaptchaInvalidError",
    "InvalidCodeError",
    "BadCredentialsError",
    "UserDisabledError",
    "UserNotFoundError",
    "DuplicateUsernameError",
    "DuplicateEmailError",
    "DuplicatePhoneError",
    "PasswordMismatchError",
    "ServerError",
]
