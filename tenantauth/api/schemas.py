from __future__ import annotations

import re
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from tenantauth.service.delivery import Channel
from tenantauth.service.keys import Action, CodePurpose

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "missing_tenant_header",
    "invalid_token",
    "token_blacklisted",
    "tenant_mismatch",
    "tenant_disabled",
    "tenant_not_found",
    "captcha_required",
    "captcha_invalid",
    "invalid_code",
    "bad_credentials",
    "user_disabled",
    "user_not_found",
    "duplicate_username",
    "duplicate_email",
    "duplicate_phone",
    "password_mismatch",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL = re.compile(r"^[^@\s]{1,64}@[^@\s]+\.[^@\s]+$")
_PHONE = re.compile(r"^\+?[0-9]{6,15}$")

_CAPTCHA_ACTIONS = {
    "login_password": Action.LOGIN_PASSWORD,
    "login_email": Action.LOGIN_EMAIL,
    "login_phone": Action.LOGIN_PHONE,
    "register": Action.REGISTER,
    "reset_password": Action.RESET_PASSWORD,
    "verify_email": Action.VERIFY_EMAIL,
}


def _validate_address(channel: Channel, address: str) -> str:
    value = (address or "").strip()
    if channel == Channel.EMAIL:
        if len(value) > 254 or not _EMAIL.match(value):
            raise ValueError("invalid email address")
        return value.lower()
    compact = value.replace(" ", "").replace("-", "")
    if not _PHONE.match(compact):
        raise ValueError("invalid phone number")
    return compact


class PasswordLoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=128)
    captcha_id: Optional[str] = Field(default=None, max_length=64)
    captcha_answer: Optional[str] = Field(default=None, max_length=16)


class SendCodeRequest(BaseModel):
    channel: Channel
    address: str = Field(..., max_length=254)
    purpose: CodePurpose = CodePurpose.LOGIN

    @model_validator(mode="after")
    def _normalize_address(self) -> "SendCodeRequest":
        self.address = _validate_address(self.channel, self.address)
        return self


class CodeLoginRequest(BaseModel):
    channel: Channel
    address: str = Field(..., max_length=254)
    code: str = Field(..., min_length=4, max_length=10)
    captcha_id: Optional[str] = Field(default=None, max_length=64)
    captcha_answer: Optional[str] = Field(default=None, max_length=16)

    @model_validator(mode="after")
    def _normalize_address(self) -> "CodeLoginRequest":
        self.address = _validate_address(self.channel, self.address)
        return self


class RegisterRequest(BaseModel):
    channel: Channel
    address: str = Field(..., max_length=254)
    code: str = Field(..., min_length=4, max_length=10)
    username: str = Field(..., min_length=1, max_length=64)
    password: Optional[str] = Field(default=None, min_length=8, max_length=128)
    captcha_id: Optional[str] = Field(default=None, max_length=64)
    captcha_answer: Optional[str] = Field(default=None, max_length=16)

    @model_validator(mode="after")
    def _normalize_address(self) -> "RegisterRequest":
        self.address = _validate_address(self.channel, self.address)
        if self.channel == Channel.EMAIL and not self.password:
            raise ValueError("password is required for email registration")
        return self


class ResetPasswordRequest(BaseModel):
    channel: Channel
    address: str = Field(..., max_length=254)
    code: str = Field(..., min_length=4, max_length=10)
    new_password: str = Field(..., min_length=8, max_length=128)
    confirm_password: str = Field(..., min_length=1, max_length=128)
    captcha_id: Optional[str] = Field(default=None, max_length=64)
    captcha_answer: Optional[str] = Field(default=None, max_length=16)

    @model_validator(mode="after")
    def _normalize_address(self) -> "ResetPasswordRequest":
        self.address = _validate_address(self.channel, self.address)
        return self


class VerifyEmailRequest(BaseModel):
    email: str = Field(..., max_length=254)
    code: str = Field(..., min_length=4, max_length=10)
    captcha_id: Optional[str] = Field(default=None, max_length=64)
    captcha_answer: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _validate_address(Channel.EMAIL, value)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=8, max_length=128)


class CaptchaRequest(BaseModel):
    action: Literal[
        "login_password",
        "login_email",
        "login_phone",
        "register",
        "reset_password",
        "verify_email",
    ] = "login_password"
    identifier: Optional[str] = Field(default=None, max_length=254)

    @property
    def key_action(self) -> Action:
        return _CAPTCHA_ACTIONS[self.action]


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    tenant_id: str
    user_id: int
    username: str


class TokenVerifyResponse(BaseModel):
    valid: bool = True
    tenant_id: str
    user_id: int
    username: str
    expires_at: int


class CaptchaResponse(BaseModel):
    captcha_id: str
    question: str
    expires_in: int


class CodeSentResponse(BaseModel):
    channel: Channel
    expires_in: int
