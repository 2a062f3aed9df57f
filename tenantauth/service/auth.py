from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from tenantauth.logging import get_logger, mask_address
from tenantauth.service.audit import AuditAction, AuditLog
from tenantauth.service.captcha import CaptchaManager
from tenantauth.service.delivery import Channel, CodeSender
from tenantauth.service.errors import (
    DuplicateEmailError,
    DuplicatePhoneError,
    DuplicateUsernameError,
    PasswordMismatchError,
    ServiceError,
    ValidationError,
)
from tenantauth.service.keys import UNKNOWN, Action, CodePurpose, normalize_identifier
from tenantauth.service.passwords import PasswordVerifier
from tenantauth.service.rate_limit import RateLimiter
from tenantauth.service.result import ErrorKind, error_for
from tenantauth.service.revocation import RevocationStore, TokenValidator
from tenantauth.service.tenant_guard import TenantGuard
from tenantauth.service.tokens import TokenIssuer, hash_token
from tenantauth.service.verification import VerificationCodeManager
from tenantauth.storage.errors import ConstraintViolation, StoreUnavailable
from tenantauth.storage.models import CaptchaChallenge, Principal, TokenClaims, UserAccount

logger = get_logger(__name__)


class UserDirectory(Protocol):
    def get_user(self, tenant_id: str, user_id: int) -> Optional[UserAccount]: ...

    def get_user_by_username(self, tenant_id: str, username: str) -> Optional[UserAccount]: ...

    def get_user_by_email(self, tenant_id: str, email: str) -> Optional[UserAccount]: ...

    def get_user_by_phone(self, tenant_id: str, phone: str) -> Optional[UserAccount]: ...

    def add_user(
        self,
        tenant_id: str,
        username: str,
        *,
        password_hash: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        email_verified: bool = False,
        phone_verified: bool = False,
    ) -> UserAccount: ...

    def set_password_hash(self, tenant_id: str, user_id: int, password_hash: str) -> None: ...

    def mark_verified(
        self, tenant_id: str, user_id: int, *, email: bool = False, phone: bool = False
    ) -> None: ...


@dataclass(frozen=True)
class TokenGrant:
    token: str
    expires_in: int
    principal: Principal
    token_type: str = "Bearer"


@dataclass(frozen=True)
class CodeTicket:
    """Outward answer to a send-code request; identical whether or not a code went out."""

    channel: Channel
    ttl_seconds: int


_LOGIN_ACTIONS = {
    Channel.EMAIL: (Action.LOGIN_EMAIL, AuditAction.LOGIN_EMAIL),
    Channel.PHONE: (Action.LOGIN_PHONE, AuditAction.LOGIN_PHONE),
}

_REGISTER_AUDIT = {
    Channel.EMAIL: AuditAction.REGISTER_EMAIL,
    Channel.PHONE: AuditAction.REGISTER_PHONE,
}

_DUPLICATE_ERRORS = {
    "username": DuplicateUsernameError,
    "email": DuplicateEmailError,
    "phone": DuplicatePhoneError,
}

# Purposes that only make sense for an address already on file
_EXISTING_ACCOUNT_PURPOSES = {
    CodePurpose.LOGIN,
    CodePurpose.PASSWORD_RESET,
    CodePurpose.EMAIL_VERIFY,
}


class AuthOrchestrator:
    """Sign-in, token and account lifecycle flows for tenant users.

    Each flow is a fixed sequence of gates. A failing gate raises the
    ServiceError for its kind; login-side failures also feed the captcha
    failure counter for the caller's identifier.
    """

    def __init__(
        self,
        *,
        issuer: TokenIssuer,
        validator: TokenValidator,
        revocations: RevocationStore,
        rate_limiter: RateLimiter,
        captcha: CaptchaManager,
        codes: VerificationCodeManager,
        guard: TenantGuard,
        users: UserDirectory,
        passwords: PasswordVerifier,
        audit: AuditLog,
        senders: Dict[Channel, CodeSender],
    ) -> None:
        self.issuer = issuer
        self.validator = validator
        self.revocations = revocations
        self.rate_limiter = rate_limiter
        self.captcha = captcha
        self.codes = codes
        self.guard = guard
        self.users = users
        self.passwords = passwords
        self.audit = audit
        self.senders = senders

    # ------------------------------------------------------------------
    # Shared gates
    # ------------------------------------------------------------------

    async def _rate_gates(
        self, action: Action, tenant_id: str, identifier: Optional[str], ip: Optional[str]
    ) -> None:
        # IP and identifier windows are independent; either one denies
        (await self.rate_limiter.check_ip(action, ip)).unwrap()
        (await self.rate_limiter.check_action(action, tenant_id, identifier)).unwrap()

    async def _ensure_captcha(
        self,
        tenant_id: str,
        action: Action,
        identifier: str,
        captcha_id: Optional[str],
        captcha_answer: Optional[str],
    ) -> None:
        if not await self.captcha.is_required(tenant_id, action, identifier):
            return
        if not captcha_id or not captcha_answer:
            logger.warning("captcha_required", tenant_id=tenant_id, action=action.value)
            raise error_for(ErrorKind.CAPTCHA_REQUIRED)
        if not await self.captcha.verify(captcha_id, captcha_answer):
            logger.warning("captcha_invalid", tenant_id=tenant_id, action=action.value)
            await self.captcha.record_failure(tenant_id, action, identifier)
            raise error_for(ErrorKind.CAPTCHA_INVALID)

    async def _reject_login(
        self,
        tenant_id: str,
        action: Action,
        audit_action: AuditAction,
        identifier: str,
        kind: ErrorKind,
        *,
        user_id: Optional[int] = None,
        ip: Optional[str] = None,
    ) -> ServiceError:
        await self.captcha.record_failure(tenant_id, action, identifier)
        self.audit.safe_record(
            tenant_id, user_id, audit_action, False, ip=ip, detail=kind.value
        )
        logger.info(
            "login_rejected",
            tenant_id=tenant_id,
            action=action.value,
            reason=kind.value,
            user_id=user_id,
        )
        # Unknown and disabled accounts look exactly like a wrong password
        return error_for(ErrorKind.BAD_CREDENTIALS)

    async def _complete_login(
        self,
        user: UserAccount,
        action: Action,
        audit_action: AuditAction,
        identifier: str,
        ip: Optional[str],
    ) -> TokenGrant:
        principal = user.to_principal()
        token = self.issuer.issue(principal)
        await self._reset_captcha(user.tenant_id, action, identifier)
        self.audit.safe_record(user.tenant_id, user.user_id, audit_action, True, ip=ip)
        logger.info(
            "login_succeeded",
            tenant_id=user.tenant_id,
            user_id=user.user_id,
            action=action.value,
        )
        return TokenGrant(token=token, expires_in=self.issuer.ttl_seconds, principal=principal)

    def _active_user(self, principal: Principal) -> UserAccount:
        user = self.users.get_user(principal.tenant_id, principal.user_id)
        if user is None:
            raise error_for(ErrorKind.USER_NOT_FOUND)
        if not user.enabled:
            raise error_for(ErrorKind.USER_DISABLED)
        return user

    def _lookup(self, tenant_id: str, channel: Channel, address: str) -> Optional[UserAccount]:
        if channel == Channel.EMAIL:
            return self.users.get_user_by_email(tenant_id, address)
        return self.users.get_user_by_phone(tenant_id, address)

    # argon2 is CPU bound; every call runs on a worker thread
    async def _verify_password(self, password: str, password_hash: Optional[str]) -> bool:
        return await asyncio.to_thread(self.passwords.verify, password, password_hash)

    async def _burn_password(self, password: str) -> None:
        await asyncio.to_thread(self.passwords.burn, password)

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self.passwords.hash, password)

    async def _consume_code(
        self,
        purpose: CodePurpose,
        tenant_id: str,
        identifier: str,
        code: Optional[str],
        action: Action,
        audit_action: AuditAction,
        ip: Optional[str],
    ) -> None:
        verified = await self.codes.verify(purpose, tenant_id, identifier, code)
        if verified:
            return
        await self.captcha.record_failure(tenant_id, action, identifier)
        self.audit.safe_record(
            tenant_id, None, audit_action, False, ip=ip, detail=ErrorKind.INVALID_CODE.value
        )
        raise error_for(ErrorKind.INVALID_CODE)

    async def _reset_captcha(self, tenant_id: str, action: Action, identifier: str) -> None:
        try:
            await self.captcha.reset(tenant_id, action, identifier)
        except StoreUnavailable as exc:
            logger.warning(
                "captcha_reset_failed",
                tenant_id=tenant_id,
                action=action.value,
                error=exc.message,
            )

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    async def login_password(
        self,
        tenant_id: str,
        username: str,
        password: str,
        *,
        captcha_id: Optional[str] = None,
        captcha_answer: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> TokenGrant:
        action, audit_action = Action.LOGIN_PASSWORD, AuditAction.LOGIN_PASSWORD
        identifier = normalize_identifier(username)
        self.guard.require_enabled(tenant_id).unwrap()
        await self._rate_gates(action, tenant_id, identifier, ip)
        await self._ensure_captcha(tenant_id, action, identifier, captcha_id, captcha_answer)

        user = self.users.get_user_by_username(tenant_id, username.strip())
        if user is None:
            await self._burn_password(password)
            raise await self._reject_login(
                tenant_id, action, audit_action, identifier, ErrorKind.USER_NOT_FOUND, ip=ip
            )
        # Hash before looking at the account state so disabled accounts cost the same
        password_ok = await self._verify_password(password, user.password_hash)
        if not user.enabled:
            raise await self._reject_login(
                tenant_id,
                action,
                audit_action,
                identifier,
                ErrorKind.USER_DISABLED,
                user_id=user.user_id,
                ip=ip,
            )
        if not password_ok:
            raise await self._reject_login(
                tenant_id,
                action,
                audit_action,
                identifier,
                ErrorKind.BAD_CREDENTIALS,
                user_id=user.user_id,
                ip=ip,
            )
        return await self._complete_login(user, action, audit_action, identifier, ip)

    async def send_code(
        self,
        tenant_id: str,
        channel: Channel,
        address: str,
        purpose: CodePurpose = CodePurpose.LOGIN,
        *,
        ip: Optional[str] = None,
    ) -> CodeTicket:
        channel = Channel(channel)
        purpose = CodePurpose(purpose)
        identifier = normalize_identifier(address)
        if identifier == UNKNOWN:
            raise ValidationError("address is required")
        self.guard.require_enabled(tenant_id).unwrap()
        await self._rate_gates(Action.SEND_CODE, tenant_id, identifier, ip)

        ticket = CodeTicket(channel=channel, ttl_seconds=self.codes.ttl_seconds)
        user = self._lookup(tenant_id, channel, identifier)
        if purpose in _EXISTING_ACCOUNT_PURPOSES:
            skip_reason = None if user is not None and user.enabled else "no_active_account"
        else:
            skip_reason = "address_in_use" if user is not None else None
        if skip_reason:
            logger.info(
                "code_not_sent",
                tenant_id=tenant_id,
                channel=channel.value,
                purpose=purpose.value,
                reason=skip_reason,
                to=mask_address(identifier),
            )
            self.audit.safe_record(
                tenant_id, None, AuditAction.SEND_CODE, False, ip=ip, detail=skip_reason
            )
            return ticket

        code = await self.codes.issue(purpose, tenant_id, identifier)
        delivered = await self.senders[channel].send_code(identifier, code)
        if not delivered:
            logger.error(
                "code_delivery_failed",
                tenant_id=tenant_id,
                channel=channel.value,
                to=mask_address(identifier),
            )
        self.audit.safe_record(
            tenant_id,
            user.user_id if user is not None else None,
            AuditAction.SEND_CODE,
            delivered,
            ip=ip,
            detail=purpose.value,
        )
        return ticket

    async def login_code(
        self,
        tenant_id: str,
        channel: Channel,
        address: str,
        code: str,
        *,
        captcha_id: Optional[str] = None,
        captcha_answer: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> TokenGrant:
        channel = Channel(channel)
        action, audit_action = _LOGIN_ACTIONS[channel]
        identifier = normalize_identifier(address)
        self.guard.require_enabled(tenant_id).unwrap()
        await self._rate_gates(action, tenant_id, identifier, ip)
        await self._ensure_captcha(tenant_id, action, identifier, captcha_id, captcha_answer)

        await self._consume_code(
            CodePurpose.LOGIN, tenant_id, identifier, code, action, audit_action, ip
        )

        user = self._lookup(tenant_id, channel, identifier)
        if user is None:
            raise await self._reject_login(
                tenant_id, action, audit_action, identifier, ErrorKind.USER_NOT_FOUND, ip=ip
            )
        if not user.enabled:
            raise await self._reject_login(
                tenant_id,
                action,
                audit_action,
                identifier,
                ErrorKind.USER_DISABLED,
                user_id=user.user_id,
                ip=ip,
            )
        return await self._complete_login(user, action, audit_action, identifier, ip)

    async def create_captcha(
        self,
        tenant_id: str,
        action: Action,
        identifier: Optional[str],
        *,
        ip: Optional[str] = None,
    ) -> CaptchaChallenge:
        identifier = normalize_identifier(identifier)
        self.guard.require_enabled(tenant_id).unwrap()
        (await self.rate_limiter.check_ip(Action.CAPTCHA, ip)).unwrap()
        # Anonymous callers have no identifier bucket of their own; the IP window covers them
        if identifier != UNKNOWN:
            (
                await self.rate_limiter.check_action(Action.CAPTCHA, tenant_id, identifier)
            ).unwrap()
        return await self.captcha.create_challenge(tenant_id, Action(action), identifier)

    async def verify_token(
        self, tenant_id: Optional[str], token: str, *, ip: Optional[str] = None
    ) -> TokenClaims:
        try:
            claims = (await self.validator.verify_claims(token, tenant_id)).unwrap()
            self._active_user(claims.principal)
        except ServiceError as exc:
            if tenant_id:
                self.audit.safe_record(
                    tenant_id, None, AuditAction.VERIFY_TOKEN, False, ip=ip, detail=exc.error_code
                )
            raise
        self.audit.safe_record(
            claims.principal.tenant_id,
            claims.principal.user_id,
            AuditAction.VERIFY_TOKEN,
            True,
            ip=ip,
        )
        return claims

    async def refresh(
        self, tenant_id: Optional[str], token: str, *, ip: Optional[str] = None
    ) -> TokenGrant:
        (await self.rate_limiter.check_ip(Action.REFRESH_TOKEN, ip)).unwrap()
        claims = (await self.validator.verify_claims(token, tenant_id)).unwrap()
        user = self._active_user(claims.principal)
        (
            await self.rate_limiter.check_action(
                Action.REFRESH_TOKEN, user.tenant_id, str(user.user_id)
            )
        ).unwrap()

        # Old token is blacklisted and evicted before a replacement exists;
        # only one of several concurrent refreshes of it can win the claim
        claimed = await self.revocations.claim(
            hash_token(token),
            user.tenant_id,
            self.issuer.remaining_ttl(claims),
            expires_at=claims.expires_at,
        )
        if not claimed:
            self.audit.safe_record(
                user.tenant_id,
                user.user_id,
                AuditAction.REFRESH_TOKEN,
                False,
                ip=ip,
                detail=ErrorKind.TOKEN_BLACKLISTED.value,
            )
            raise error_for(ErrorKind.TOKEN_BLACKLISTED)
        principal = user.to_principal()
        new_token = self.issuer.issue(principal)
        self.audit.safe_record(user.tenant_id, user.user_id, AuditAction.REFRESH_TOKEN, True, ip=ip)
        logger.info("token_refreshed", tenant_id=user.tenant_id, user_id=user.user_id)
        return TokenGrant(
            token=new_token, expires_in=self.issuer.ttl_seconds, principal=principal
        )

    async def logout(
        self, tenant_id: Optional[str], token: str, *, ip: Optional[str] = None
    ) -> None:
        claims = (await self.validator.verify_claims(token, tenant_id)).unwrap()
        principal = claims.principal
        await self.revocations.revoke(
            hash_token(token),
            principal.tenant_id,
            self.issuer.remaining_ttl(claims),
            expires_at=claims.expires_at,
        )
        self.audit.safe_record(principal.tenant_id, principal.user_id, AuditAction.LOGOUT, True, ip=ip)
        logger.info("logout", tenant_id=principal.tenant_id, user_id=principal.user_id)

    # ------------------------------------------------------------------
    # Account lifecycle
    # ------------------------------------------------------------------

    async def register_with_code(
        self,
        tenant_id: str,
        channel: Channel,
        address: str,
        code: str,
        username: str,
        password: Optional[str] = None,
        *,
        captcha_id: Optional[str] = None,
        captcha_answer: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> TokenGrant:
        """Create an account whose address is proven by a REGISTER code.

        Email accounts need a password; phone accounts may rely on codes
        alone. The new account is signed in on success.
        """
        channel = Channel(channel)
        action, audit_action = Action.REGISTER, _REGISTER_AUDIT[channel]
        identifier = normalize_identifier(address)
        username = (username or "").strip()
        if identifier == UNKNOWN:
            raise ValidationError("address is required")
        if not username:
            raise ValidationError("username is required")
        if channel == Channel.EMAIL and not password:
            raise ValidationError("password is required")
        self.guard.require_enabled(tenant_id).unwrap()
        await self._rate_gates(action, tenant_id, identifier, ip)
        await self._ensure_captcha(tenant_id, action, identifier, captcha_id, captcha_answer)
        await self._consume_code(
            CodePurpose.REGISTER, tenant_id, identifier, code, action, audit_action, ip
        )

        if self.users.get_user_by_username(tenant_id, username) is not None:
            self.audit.safe_record(
                tenant_id, None, audit_action, False, ip=ip, detail="duplicate_username"
            )
            raise DuplicateUsernameError("username already registered")
        if self._lookup(tenant_id, channel, identifier) is not None:
            field = "email" if channel == Channel.EMAIL else "phone"
            self.audit.safe_record(
                tenant_id, None, audit_action, False, ip=ip, detail=f"duplicate_{field}"
            )
            raise _DUPLICATE_ERRORS[field](f"{field} already registered")

        password_hash = await self._hash_password(password) if password else None
        try:
            user = self.users.add_user(
                tenant_id,
                username,
                password_hash=password_hash,
                email=identifier if channel == Channel.EMAIL else None,
                phone=identifier if channel == Channel.PHONE else None,
                email_verified=channel == Channel.EMAIL,
                phone_verified=channel == Channel.PHONE,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            field = exc.detail.get("field", "username")
            self.audit.safe_record(
                tenant_id, None, audit_action, False, ip=ip, detail=f"duplicate_{field}"
            )
            raise _DUPLICATE_ERRORS.get(field, DuplicateUsernameError)(exc.message) from exc
        logger.info(
            "user_registered",
            tenant_id=tenant_id,
            user_id=user.user_id,
            channel=channel.value,
            to=mask_address(identifier),
        )
        return await self._complete_login(user, action, audit_action, identifier, ip)

    async def reset_password(
        self,
        tenant_id: str,
        channel: Channel,
        address: str,
        code: str,
        new_password: str,
        confirm_password: str,
        *,
        captcha_id: Optional[str] = None,
        captcha_answer: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> None:
        channel = Channel(channel)
        action, audit_action = Action.RESET_PASSWORD, AuditAction.RESET_PASSWORD
        identifier = normalize_identifier(address)
        if identifier == UNKNOWN:
            raise ValidationError("address is required")
        if not new_password:
            raise ValidationError("password is required")
        if new_password != confirm_password:
            raise PasswordMismatchError("passwords do not match")
        self.guard.require_enabled(tenant_id).unwrap()
        await self._rate_gates(action, tenant_id, identifier, ip)
        await self._ensure_captcha(tenant_id, action, identifier, captcha_id, captcha_answer)
        await self._consume_code(
            CodePurpose.PASSWORD_RESET, tenant_id, identifier, code, action, audit_action, ip
        )

        user = self._lookup(tenant_id, channel, identifier)
        if user is None:
            raise await self._reject_login(
                tenant_id, action, audit_action, identifier, ErrorKind.USER_NOT_FOUND, ip=ip
            )
        if not user.enabled:
            raise await self._reject_login(
                tenant_id,
                action,
                audit_action,
                identifier,
                ErrorKind.USER_DISABLED,
                user_id=user.user_id,
                ip=ip,
            )
        self.users.set_password_hash(tenant_id, user.user_id, await self._hash_password(new_password))
        await self._reset_captcha(tenant_id, action, identifier)
        self.audit.safe_record(tenant_id, user.user_id, audit_action, True, ip=ip)
        logger.info("password_reset", tenant_id=tenant_id, user_id=user.user_id)

    async def verify_email(
        self,
        tenant_id: str,
        email: str,
        code: str,
        *,
        captcha_id: Optional[str] = None,
        captcha_answer: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> None:
        action, audit_action = Action.VERIFY_EMAIL, AuditAction.VERIFY_EMAIL
        identifier = normalize_identifier(email)
        if identifier == UNKNOWN:
            raise ValidationError("email is required")
        self.guard.require_enabled(tenant_id).unwrap()
        await self._rate_gates(action, tenant_id, identifier, ip)
        await self._ensure_captcha(tenant_id, action, identifier, captcha_id, captcha_answer)
        await self._consume_code(
            CodePurpose.EMAIL_VERIFY, tenant_id, identifier, code, action, audit_action, ip
        )

        user = self.users.get_user_by_email(tenant_id, identifier)
        if user is None or not user.enabled:
            kind = ErrorKind.USER_NOT_FOUND if user is None else ErrorKind.USER_DISABLED
            raise await self._reject_login(
                tenant_id,
                action,
                audit_action,
                identifier,
                kind,
                user_id=user.user_id if user is not None else None,
                ip=ip,
            )
        self.users.mark_verified(tenant_id, user.user_id, email=True)
        await self._reset_captcha(tenant_id, action, identifier)
        self.audit.safe_record(tenant_id, user.user_id, audit_action, True, ip=ip)
        logger.info("email_verified", tenant_id=tenant_id, user_id=user.user_id)

    async def change_password(
        self,
        tenant_id: Optional[str],
        token: str,
        old_password: str,
        new_password: str,
        *,
        ip: Optional[str] = None,
    ) -> None:
        """Replace the password of the token's owner after re-checking the old one."""
        action, audit_action = Action.CHANGE_PASSWORD, AuditAction.CHANGE_PASSWORD
        claims = (await self.validator.verify_claims(token, tenant_id)).unwrap()
        user = self._active_user(claims.principal)
        await self._rate_gates(action, user.tenant_id, str(user.user_id), ip)
        if not new_password:
            raise ValidationError("password is required")

        if not await self._verify_password(old_password or "", user.password_hash):
            self.audit.safe_record(
                user.tenant_id,
                user.user_id,
                audit_action,
                False,
                ip=ip,
                detail="password_mismatch",
            )
            raise PasswordMismatchError("old password is incorrect")
        if new_password == old_password:
            raise ValidationError("new password must differ from the old one")

        self.users.set_password_hash(
            user.tenant_id, user.user_id, await self._hash_password(new_password)
        )
        self.audit.safe_record(user.tenant_id, user.user_id, audit_action, True, ip=ip)
        logger.info("password_changed", tenant_id=user.tenant_id, user_id=user.user_id)
