from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from tenantauth.api.client_ip import client_ip
from tenantauth.api.schemas import (
    CaptchaRequest,
    CaptchaResponse,
    ChangePasswordRequest,
    CodeLoginRequest,
    CodeSentResponse,
    Envelope,
    PasswordLoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SendCodeRequest,
    TokenResponse,
    TokenVerifyResponse,
    VerifyEmailRequest,
)
from tenantauth.service.auth import TokenGrant
from tenantauth.service.errors import (
    InvalidTokenError,
    MissingTenantHeaderError,
    ValidationError,
)
from tenantauth.service.runtime import Runtime, get_runtime

router = APIRouter(prefix="/api/auth")

TENANT_HEADER = "X-Tenant-Id"


def require_tenant(
    x_tenant_id: Optional[str] = Header(None, alias=TENANT_HEADER),
) -> str:
    """Tenant declared by the transport, independent of any token."""
    if not x_tenant_id or not x_tenant_id.strip():
        raise MissingTenantHeaderError(f"{TENANT_HEADER} header is required")
    tenant_id = x_tenant_id.strip()
    # ":" separates parts of every store key
    if ":" in tenant_id:
        raise ValidationError(f"{TENANT_HEADER} must not contain ':'")
    return tenant_id


def require_bearer(authorization: Optional[str] = Header(None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise InvalidTokenError("invalid token")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise InvalidTokenError("invalid token")
    return token


def _ip(request: Request, runtime: Runtime) -> str:
    return client_ip(request, trust_proxy_headers=runtime.settings.trust_proxy_headers)


def _token_response(grant: TokenGrant) -> TokenResponse:
    return TokenResponse(
        access_token=grant.token,
        token_type=grant.token_type,
        expires_in=grant.expires_in,
        tenant_id=grant.principal.tenant_id,
        user_id=grant.principal.user_id,
        username=grant.principal.username,
    )


@router.post("/login/password", response_model=Envelope, tags=["auth"])
async def login_password(
    body: PasswordLoginRequest,
    request: Request,
    tenant_id: str = Depends(require_tenant),
):
    """Authenticate with username and password.

    Raises:
        400: captcha_required / captcha_invalid once the failure threshold is hit
        401: bad_credentials
        429: rate_limited
    """
    runtime = get_runtime()
    grant = await runtime.auth.login_password(
        tenant_id,
        body.username,
        body.password,
        captcha_id=body.captcha_id,
        captcha_answer=body.captcha_answer,
        ip=_ip(request, runtime),
    )
    return Envelope(status="ok", data=_token_response(grant))


@router.post("/code/send", response_model=Envelope, tags=["auth"])
async def send_code(
    body: SendCodeRequest,
    request: Request,
    tenant_id: str = Depends(require_tenant),
):
    """Send a one-time code. The answer does not reveal whether the address is known."""
    runtime = get_runtime()
    ticket = await runtime.auth.send_code(
        tenant_id, body.channel, body.address, body.purpose, ip=_ip(request, runtime)
    )
    return Envelope(
        status="ok",
        data=CodeSentResponse(channel=ticket.channel, expires_in=ticket.ttl_seconds),
    )


@router.post("/login/code", response_model=Envelope, tags=["auth"])
async def login_code(
    body: CodeLoginRequest,
    request: Request,
    tenant_id: str = Depends(require_tenant),
):
    runtime = get_runtime()
    grant = await runtime.auth.login_code(
        tenant_id,
        body.channel,
        body.address,
        body.code,
        captcha_id=body.captcha_id,
        captcha_answer=body.captcha_answer,
        ip=_ip(request, runtime),
    )
    return Envelope(status="ok", data=_token_response(grant))


@router.post("/captcha", response_model=Envelope, tags=["auth"])
async def create_captcha(
    body: CaptchaRequest,
    request: Request,
    tenant_id: str = Depends(require_tenant),
):
    runtime = get_runtime()
    challenge = await runtime.auth.create_captcha(
        tenant_id, body.key_action, body.identifier, ip=_ip(request, runtime)
    )
    return Envelope(
        status="ok",
        data=CaptchaResponse(
            captcha_id=challenge.captcha_id,
            question=challenge.question,
            expires_in=challenge.ttl_seconds,
        ),
    )


@router.post("/token/verify", response_model=Envelope, tags=["auth"])
async def verify_token(
    request: Request,
    tenant_id: str = Depends(require_tenant),
    token: str = Depends(require_bearer),
):
    runtime = get_runtime()
    claims = await runtime.auth.verify_token(tenant_id, token, ip=_ip(request, runtime))
    return Envelope(
        status="ok",
        data=TokenVerifyResponse(
            tenant_id=claims.principal.tenant_id,
            user_id=claims.principal.user_id,
            username=claims.principal.username,
            expires_at=claims.expires_at,
        ),
    )


@router.post("/token/refresh", response_model=Envelope, tags=["auth"])
async def refresh_token(
    request: Request,
    tenant_id: str = Depends(require_tenant),
    token: str = Depends(require_bearer),
):
    runtime = get_runtime()
    grant = await runtime.auth.refresh(tenant_id, token, ip=_ip(request, runtime))
    return Envelope(status="ok", data=_token_response(grant))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    tenant_id: str = Depends(require_tenant),
    token: str = Depends(require_bearer),
):
    runtime = get_runtime()
    await runtime.auth.logout(tenant_id, token, ip=_ip(request, runtime))
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/register", response_model=Envelope, tags=["account"])
async def register(
    body: RegisterRequest,
    request: Request,
    tenant_id: str = Depends(require_tenant),
):
    """Create an account from a REGISTER code and sign it in.

    Raises:
        400: invalid_code / captcha_required / captcha_invalid
        409: duplicate_username / duplicate_email / duplicate_phone
        429: rate_limited
    """
    runtime = get_runtime()
    grant = await runtime.auth.register_with_code(
        tenant_id,
        body.channel,
        body.address,
        body.code,
        body.username,
        body.password,
        captcha_id=body.captcha_id,
        captcha_answer=body.captcha_answer,
        ip=_ip(request, runtime),
    )
    return Envelope(status="ok", data=_token_response(grant))


@router.post("/password/reset", response_model=Envelope, tags=["account"])
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    tenant_id: str = Depends(require_tenant),
):
    runtime = get_runtime()
    await runtime.auth.reset_password(
        tenant_id,
        body.channel,
        body.address,
        body.code,
        body.new_password,
        body.confirm_password,
        captcha_id=body.captcha_id,
        captcha_answer=body.captcha_answer,
        ip=_ip(request, runtime),
    )
    return Envelope(status="ok", data={"password_reset": True})


@router.post("/password/change", response_model=Envelope, tags=["account"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    tenant_id: str = Depends(require_tenant),
    token: str = Depends(require_bearer),
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        tenant_id, token, body.old_password, body.new_password, ip=_ip(request, runtime)
    )
    return Envelope(status="ok", data={"password_changed": True})


@router.post("/email/verify", response_model=Envelope, tags=["account"])
async def verify_email(
    body: VerifyEmailRequest,
    request: Request,
    tenant_id: str = Depends(require_tenant),
):
    runtime = get_runtime()
    await runtime.auth.verify_email(
        tenant_id,
        body.email,
        body.code,
        captcha_id=body.captcha_id,
        captcha_answer=body.captcha_answer,
        ip=_ip(request, runtime),
    )
    return Envelope(status="ok", data={"email_verified": True})


@router.get("/healthz", response_model=Envelope, tags=["health"])
async def healthz():
    return Envelope(status="ok", data={"status": "healthy"})
