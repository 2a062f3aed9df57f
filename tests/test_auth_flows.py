"""End-to-end orchestrator flows over the in-process store and directory."""

import asyncio
import json
from unittest.mock import MagicMock, patch

import pytest

from tenantauth.service.delivery import Channel
from tenantauth.service.errors import (
    BadCredentialsError,
    CaptchaInvalidError,
    CaptchaRequiredError,
    DuplicateEmailError,
    DuplicateUsernameError,
    InvalidCodeError,
    PasswordMismatchError,
    RateLimitedError,
    TenantDisabledError,
    TenantMismatchError,
    TenantNotFoundError,
    TokenBlacklistedError,
    UserDisabledError,
    ValidationError,
)
from tenantauth.service.keys import Action, CodePurpose
from tenantauth.service.runtime import Runtime
from tenantauth.service.tokens import hash_token
from tenantauth.storage.memory import MemoryKeyedStore

IP = "198.51.100.7"


class RecordingSender:
    name = "recording"
    is_configured = True

    def __init__(self, delivered: bool = True):
        self.sent = []
        self.delivered = delivered

    async def send_code(self, address, code):
        self.sent.append((address, code))
        return self.delivered


@pytest.fixture
def runtime(settings, clock):
    runtime = Runtime(settings, store=MemoryKeyedStore(clock=clock), clock=clock)
    directory = runtime.directory
    directory.add_tenant("t1")
    directory.add_tenant("t2")
    directory.add_user(
        "t1",
        "alice",
        password_hash=runtime.passwords.hash("correct horse"),
        email="alice@example.com",
        phone="+15550001111",
    )
    directory.add_user("t2", "alice", password_hash=runtime.passwords.hash("other"))
    return runtime


@pytest.fixture
def auth(runtime):
    return runtime.auth


@pytest.fixture
def email_sender(runtime):
    sender = RecordingSender()
    runtime.senders[Channel.EMAIL] = sender
    return sender


async def _solve(runtime, challenge):
    record = json.loads(await runtime.store.get(f"captcha:challenge:{challenge.captcha_id}"))
    return record["answer"]


class TestPasswordLogin:
    async def test_success_returns_tenant_scoped_token(self, auth, runtime):
        grant = await auth.login_password("t1", "alice", "correct horse", ip=IP)

        assert grant.principal.tenant_id == "t1"
        assert grant.expires_in == 7200
        assert grant.token_type == "Bearer"
        assert runtime.issuer.validate(grant.token).value == grant.principal

    async def test_captcha_escalation_after_repeated_failures(self, auth, runtime):
        for _ in range(3):
            with pytest.raises(BadCredentialsError):
                await auth.login_password("t1", "alice", "wrong", ip=IP)

        for _ in range(2):
            with pytest.raises(CaptchaRequiredError):
                await auth.login_password("t1", "alice", "wrong", ip=IP)

        challenge = await auth.create_captcha("t1", Action.LOGIN_PASSWORD, "alice", ip=IP)
        grant = await auth.login_password(
            "t1",
            "alice",
            "correct horse",
            captcha_id=challenge.captcha_id,
            captcha_answer=await _solve(runtime, challenge),
            ip=IP,
        )

        assert grant.principal.tenant_id == "t1"
        assert not await runtime.captcha.is_required("t1", Action.LOGIN_PASSWORD, "alice")

    async def test_wrong_captcha_answer_rejected(self, auth):
        for _ in range(3):
            with pytest.raises(BadCredentialsError):
                await auth.login_password("t1", "alice", "wrong", ip=IP)
        challenge = await auth.create_captcha("t1", Action.LOGIN_PASSWORD, "alice", ip=IP)

        with pytest.raises(CaptchaInvalidError):
            await auth.login_password(
                "t1",
                "alice",
                "correct horse",
                captcha_id=challenge.captcha_id,
                captcha_answer="not-a-number",
                ip=IP,
            )

    async def test_unknown_and_disabled_users_look_like_bad_password(self, auth, runtime):
        with pytest.raises(BadCredentialsError) as unknown:
            await auth.login_password("t1", "nobody", "whatever", ip=IP)

        user = runtime.directory.get_user_by_username("t1", "alice")
        runtime.directory.set_user_enabled("t1", user.user_id, False)
        with pytest.raises(BadCredentialsError) as disabled:
            await auth.login_password("t1", "alice", "correct horse", ip=IP)

        assert unknown.value.message == disabled.value.message
        details = [event.detail for event in runtime.audit_sink.events]
        assert details == ["user_not_found", "user_disabled"]

    async def test_disabled_account_still_runs_password_hash(self, auth, runtime):
        user = runtime.directory.get_user_by_username("t1", "alice")
        runtime.directory.set_user_enabled("t1", user.user_id, False)

        with patch.object(runtime.passwords, "verify", wraps=runtime.passwords.verify) as verify:
            with pytest.raises(BadCredentialsError):
                await auth.login_password("t1", "alice", "correct horse", ip=IP)

        verify.assert_called_once_with("correct horse", user.password_hash)

    async def test_password_hashing_runs_in_worker_thread(self, auth):
        """argon2 calls go through asyncio.to_thread rather than the event loop."""
        offloaded = []
        real_to_thread = asyncio.to_thread

        async def recording_to_thread(func, *args, **kwargs):
            offloaded.append(func.__name__)
            return await real_to_thread(func, *args, **kwargs)

        with patch("tenantauth.service.auth.asyncio.to_thread", side_effect=recording_to_thread):
            await auth.login_password("t1", "alice", "correct horse", ip=IP)
            with pytest.raises(BadCredentialsError):
                await auth.login_password("t1", "nobody", "whatever", ip=IP)

        assert offloaded == ["verify", "burn"]

    async def test_unknown_and_disabled_tenants(self, auth, runtime):
        with pytest.raises(TenantNotFoundError):
            await auth.login_password("t9", "alice", "correct horse", ip=IP)

        runtime.directory.set_tenant_enabled("t1", False)
        with pytest.raises(TenantDisabledError):
            await auth.login_password("t1", "alice", "correct horse", ip=IP)

    async def test_unknown_ip_is_rejected(self, auth):
        with pytest.raises(RateLimitedError):
            await auth.login_password("t1", "alice", "correct horse", ip="unknown")

    async def test_audit_outage_does_not_block_login(self, auth, runtime):
        runtime.audit.sink = MagicMock()
        runtime.audit.sink.record.side_effect = RuntimeError("audit db down")

        with patch("tenantauth.service.audit.logger") as mock_logger:
            grant = await auth.login_password("t1", "alice", "correct horse", ip=IP)

        assert grant.token
        assert mock_logger.warning.call_args[0][0] == "audit_record_failed"


class TestTokenLifecycle:
    async def test_token_rejected_for_other_tenant(self, auth):
        grant = await auth.login_password("t1", "alice", "correct horse", ip=IP)

        with pytest.raises(TenantMismatchError):
            await auth.verify_token("t2", grant.token, ip=IP)

    async def test_logout_blacklists_token(self, auth, runtime):
        grant = await auth.login_password("t1", "alice", "correct horse", ip=IP)
        assert (await auth.verify_token("t1", grant.token, ip=IP)).principal.username == "alice"

        await auth.logout("t1", grant.token, ip=IP)

        assert await runtime.revocations.is_revoked(hash_token(grant.token))
        with pytest.raises(TokenBlacklistedError):
            await auth.verify_token("t1", grant.token, ip=IP)

    async def test_refresh_revokes_previous_token(self, auth, clock):
        grant = await auth.login_password("t1", "alice", "correct horse", ip=IP)
        clock.advance(1)

        refreshed = await auth.refresh("t1", grant.token, ip=IP)

        assert refreshed.token != grant.token
        assert refreshed.principal == grant.principal
        with pytest.raises(TokenBlacklistedError):
            await auth.verify_token("t1", grant.token, ip=IP)
        assert (await auth.verify_token("t1", refreshed.token, ip=IP)).principal.user_id == 1

    async def test_cached_token_rejected_for_other_tenant(self, auth, runtime):
        grant = await auth.login_password("t1", "alice", "correct horse", ip=IP)
        await auth.verify_token("t1", grant.token, ip=IP)
        assert runtime.cache.get(hash_token(grant.token)) is not None

        with pytest.raises(TenantMismatchError):
            await auth.verify_token("t2", grant.token, ip=IP)

    async def test_refresh_rate_limited_per_user(self, auth, clock):
        grant = await auth.login_password("t1", "alice", "correct horse", ip=IP)
        token = grant.token
        for _ in range(10):
            clock.advance(1)
            token = (await auth.refresh("t1", token, ip=IP)).token

        with pytest.raises(RateLimitedError):
            await auth.refresh("t1", token, ip=IP)
        # A denied refresh leaves the presented token usable
        assert (await auth.verify_token("t1", token, ip=IP)).principal.username == "alice"

    async def test_concurrent_refresh_of_one_token_has_one_winner(self, auth, runtime, clock):
        grant = await auth.login_password("t1", "alice", "correct horse", ip=IP)
        clock.advance(1)
        real_check = runtime.rate_limiter.check_action

        async def yielding_check(*args, **kwargs):
            # Let the other refresh pass its blacklist lookup before either claims
            await asyncio.sleep(0)
            return await real_check(*args, **kwargs)

        with patch.object(runtime.rate_limiter, "check_action", side_effect=yielding_check):
            results = await asyncio.gather(
                auth.refresh("t1", grant.token, ip=IP),
                auth.refresh("t1", grant.token, ip=IP),
                return_exceptions=True,
            )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], TokenBlacklistedError)
        refresh_events = [e for e in runtime.audit_sink.events if e.action == "REFRESH_TOKEN"]
        assert sorted(e.success for e in refresh_events) == [False, True]

    async def test_refresh_for_disabled_user(self, auth, runtime):
        grant = await auth.login_password("t1", "alice", "correct horse", ip=IP)
        runtime.directory.set_user_enabled("t1", grant.principal.user_id, False)

        with pytest.raises(UserDisabledError):
            await auth.refresh("t1", grant.token, ip=IP)

    async def test_verify_after_tenant_disabled(self, auth, runtime):
        grant = await auth.login_password("t1", "alice", "correct horse", ip=IP)
        runtime.directory.set_tenant_enabled("t1", False)

        with pytest.raises(TenantDisabledError):
            await auth.verify_token("t1", grant.token, ip=IP)


class TestCodeLogin:
    async def test_send_code_answer_does_not_reveal_account(self, auth, email_sender, runtime):
        known = await auth.send_code("t1", Channel.EMAIL, "alice@example.com", ip=IP)
        unknown = await auth.send_code("t1", Channel.EMAIL, "ghost@example.com", ip=IP)

        assert known == unknown
        assert [address for address, _ in email_sender.sent] == ["alice@example.com"]
        assert [event.success for event in runtime.audit_sink.events] == [True, False]

    async def test_register_only_sends_to_unused_address(self, auth, email_sender):
        await auth.send_code(
            "t1", Channel.EMAIL, "alice@example.com", CodePurpose.REGISTER, ip=IP
        )
        await auth.send_code(
            "t1", Channel.EMAIL, "new@example.com", CodePurpose.REGISTER, ip=IP
        )

        assert [address for address, _ in email_sender.sent] == ["new@example.com"]

    async def test_blank_address_rejected(self, auth):
        with pytest.raises(ValidationError):
            await auth.send_code("t1", Channel.EMAIL, "   ", ip=IP)

    async def test_code_login_is_single_use(self, auth, email_sender):
        await auth.send_code("t1", Channel.EMAIL, "Alice@Example.com", ip=IP)
        _, code = email_sender.sent[0]

        grant = await auth.login_code("t1", Channel.EMAIL, "alice@example.com", code, ip=IP)
        assert grant.principal.username == "alice"

        with pytest.raises(InvalidCodeError):
            await auth.login_code("t1", Channel.EMAIL, "alice@example.com", code, ip=IP)

    async def test_code_not_valid_in_other_tenant(self, auth, email_sender):
        await auth.send_code("t1", Channel.EMAIL, "alice@example.com", ip=IP)
        _, code = email_sender.sent[0]

        with pytest.raises(InvalidCodeError):
            await auth.login_code("t2", Channel.EMAIL, "alice@example.com", code, ip=IP)

    async def test_phone_code_login(self, auth, runtime):
        sender = RecordingSender()
        runtime.senders[Channel.PHONE] = sender
        await auth.send_code("t1", Channel.PHONE, "+15550001111", ip=IP)

        grant = await auth.login_code(
            "t1", Channel.PHONE, "+15550001111", sender.sent[0][1], ip=IP
        )

        assert grant.principal.tenant_id == "t1"

    async def test_send_code_rate_limited_per_address(self, auth, email_sender):
        for _ in range(5):
            await auth.send_code("t1", Channel.EMAIL, "alice@example.com", ip=IP)

        with pytest.raises(RateLimitedError):
            await auth.send_code("t1", Channel.EMAIL, "alice@example.com", ip=IP)
        assert len(email_sender.sent) == 5

    async def test_code_login_captcha_escalation(self, auth, runtime, email_sender):
        for _ in range(3):
            with pytest.raises(InvalidCodeError):
                await auth.login_code("t1", Channel.EMAIL, "alice@example.com", "000000", ip=IP)
        await auth.send_code("t1", Channel.EMAIL, "alice@example.com", ip=IP)
        _, code = email_sender.sent[-1]

        with pytest.raises(CaptchaRequiredError):
            await auth.login_code("t1", Channel.EMAIL, "alice@example.com", code, ip=IP)

        challenge = await auth.create_captcha(
            "t1", Action.LOGIN_EMAIL, "alice@example.com", ip=IP
        )
        grant = await auth.login_code(
            "t1",
            Channel.EMAIL,
            "alice@example.com",
            code,
            captcha_id=challenge.captcha_id,
            captcha_answer=await _solve(runtime, challenge),
            ip=IP,
        )

        assert grant.principal.username == "alice"
        assert not await runtime.captcha.is_required("t1", Action.LOGIN_EMAIL, "alice@example.com")


class TestCaptchaCreation:
    async def test_anonymous_callers_do_not_share_a_bucket(self, auth):
        for _ in range(20):
            await auth.create_captcha("t1", Action.LOGIN_PASSWORD, None, ip=IP)

        challenge = await auth.create_captcha(
            "t1", Action.LOGIN_PASSWORD, None, ip="198.51.100.8"
        )

        assert challenge.captcha_id

    async def test_identified_callers_limited_across_ips(self, auth):
        for _ in range(20):
            await auth.create_captcha("t1", Action.LOGIN_PASSWORD, "alice", ip=IP)

        with pytest.raises(RateLimitedError):
            await auth.create_captcha("t1", Action.LOGIN_PASSWORD, "alice", ip="198.51.100.8")


class TestRegistration:
    async def test_email_registration_signs_in_new_account(self, auth, runtime, email_sender):
        await auth.send_code("t1", Channel.EMAIL, "new@example.com", CodePurpose.REGISTER, ip=IP)
        _, code = email_sender.sent[0]

        grant = await auth.register_with_code(
            "t1", Channel.EMAIL, "New@Example.com", code, "newbie", "s3cret pass", ip=IP
        )

        user = runtime.directory.get_user_by_email("t1", "new@example.com")
        assert grant.principal == user.to_principal()
        assert user.email_verified is True
        login = await auth.login_password("t1", "newbie", "s3cret pass", ip=IP)
        assert login.principal.user_id == user.user_id
        assert runtime.audit_sink.events[-2].action == "REGISTER_EMAIL"

    async def test_phone_registration_without_password(self, auth, runtime):
        sender = RecordingSender()
        runtime.senders[Channel.PHONE] = sender
        await auth.send_code("t1", Channel.PHONE, "+15550002222", CodePurpose.REGISTER, ip=IP)

        grant = await auth.register_with_code(
            "t1", Channel.PHONE, "+15550002222", sender.sent[0][1], "phoney", ip=IP
        )

        user = runtime.directory.get_user_by_phone("t1", "+15550002222")
        assert grant.principal.username == "phoney"
        assert user.password_hash is None
        assert user.phone_verified is True
        with pytest.raises(BadCredentialsError):
            await auth.login_password("t1", "phoney", "anything", ip=IP)

    async def test_email_registration_requires_password(self, auth):
        with pytest.raises(ValidationError):
            await auth.register_with_code(
                "t1", Channel.EMAIL, "new@example.com", "123456", "newbie", ip=IP
            )

    async def test_login_code_cannot_register(self, auth, runtime, email_sender):
        code = await runtime.codes.issue(CodePurpose.LOGIN, "t1", "new@example.com")

        with pytest.raises(InvalidCodeError):
            await auth.register_with_code(
                "t1", Channel.EMAIL, "new@example.com", code, "newbie", "s3cret pass", ip=IP
            )
        assert await runtime.captcha.failure_count("t1", Action.REGISTER, "new@example.com") == 1

    async def test_duplicate_username(self, auth, email_sender):
        await auth.send_code("t1", Channel.EMAIL, "new@example.com", CodePurpose.REGISTER, ip=IP)

        with pytest.raises(DuplicateUsernameError):
            await auth.register_with_code(
                "t1",
                Channel.EMAIL,
                "new@example.com",
                email_sender.sent[0][1],
                "alice",
                "s3cret pass",
                ip=IP,
            )

    async def test_duplicate_email(self, auth, runtime):
        code = await runtime.codes.issue(CodePurpose.REGISTER, "t1", "alice@example.com")

        with pytest.raises(DuplicateEmailError):
            await auth.register_with_code(
                "t1", Channel.EMAIL, "alice@example.com", code, "alice2", "s3cret pass", ip=IP
            )

    async def test_same_address_can_register_in_other_tenant(self, auth, email_sender):
        await auth.send_code("t2", Channel.EMAIL, "alice@example.com", CodePurpose.REGISTER, ip=IP)

        grant = await auth.register_with_code(
            "t2",
            Channel.EMAIL,
            "alice@example.com",
            email_sender.sent[0][1],
            "alice-two",
            "s3cret pass",
            ip=IP,
        )

        assert grant.principal.tenant_id == "t2"


class TestPasswordManagement:
    async def test_reset_replaces_password(self, auth, email_sender):
        await auth.send_code(
            "t1", Channel.EMAIL, "alice@example.com", CodePurpose.PASSWORD_RESET, ip=IP
        )
        _, code = email_sender.sent[0]

        await auth.reset_password(
            "t1", Channel.EMAIL, "alice@example.com", code, "battery staple", "battery staple", ip=IP
        )

        assert (await auth.login_password("t1", "alice", "battery staple", ip=IP)).token
        with pytest.raises(BadCredentialsError):
            await auth.login_password("t1", "alice", "correct horse", ip=IP)

    async def test_reset_confirmation_mismatch_keeps_code(self, auth, email_sender):
        await auth.send_code(
            "t1", Channel.EMAIL, "alice@example.com", CodePurpose.PASSWORD_RESET, ip=IP
        )
        _, code = email_sender.sent[0]

        with pytest.raises(PasswordMismatchError):
            await auth.reset_password(
                "t1", Channel.EMAIL, "alice@example.com", code, "battery staple", "battery", ip=IP
            )
        await auth.reset_password(
            "t1", Channel.EMAIL, "alice@example.com", code, "battery staple", "battery staple", ip=IP
        )

    async def test_login_code_cannot_reset(self, auth, email_sender):
        await auth.send_code("t1", Channel.EMAIL, "alice@example.com", ip=IP)

        with pytest.raises(InvalidCodeError):
            await auth.reset_password(
                "t1",
                Channel.EMAIL,
                "alice@example.com",
                email_sender.sent[0][1],
                "battery staple",
                "battery staple",
                ip=IP,
            )

    async def test_reset_code_escalates_to_captcha(self, auth):
        for _ in range(3):
            with pytest.raises(InvalidCodeError):
                await auth.reset_password(
                    "t1", Channel.EMAIL, "alice@example.com", "000000", "battery staple",
                    "battery staple", ip=IP,
                )

        with pytest.raises(CaptchaRequiredError):
            await auth.reset_password(
                "t1", Channel.EMAIL, "alice@example.com", "000000", "battery staple",
                "battery staple", ip=IP,
            )

    async def test_change_password(self, auth, runtime):
        grant = await auth.login_password("t1", "alice", "correct horse", ip=IP)

        await auth.change_password("t1", grant.token, "correct horse", "battery staple", ip=IP)

        assert (await auth.login_password("t1", "alice", "battery staple", ip=IP)).token
        assert runtime.audit_sink.events[-2].action == "CHANGE_PASSWORD"

    async def test_change_password_wrong_old_password(self, auth):
        grant = await auth.login_password("t1", "alice", "correct horse", ip=IP)

        with pytest.raises(PasswordMismatchError):
            await auth.change_password("t1", grant.token, "wrong", "battery staple", ip=IP)

    async def test_change_password_must_differ(self, auth):
        grant = await auth.login_password("t1", "alice", "correct horse", ip=IP)

        with pytest.raises(ValidationError):
            await auth.change_password("t1", grant.token, "correct horse", "correct horse", ip=IP)

    async def test_change_password_needs_tenant_token(self, auth):
        grant = await auth.login_password("t1", "alice", "correct horse", ip=IP)

        with pytest.raises(TenantMismatchError):
            await auth.change_password("t2", grant.token, "correct horse", "battery staple", ip=IP)


class TestEmailVerification:
    async def test_verify_marks_email(self, auth, runtime, email_sender):
        await auth.send_code(
            "t1", Channel.EMAIL, "alice@example.com", CodePurpose.EMAIL_VERIFY, ip=IP
        )

        await auth.verify_email("t1", "alice@example.com", email_sender.sent[0][1], ip=IP)

        assert runtime.directory.get_user_by_email("t1", "alice@example.com").email_verified
        assert runtime.audit_sink.events[-1].action == "VERIFY_EMAIL"

    async def test_wrong_code(self, auth, runtime):
        with pytest.raises(InvalidCodeError):
            await auth.verify_email("t1", "alice@example.com", "000000", ip=IP)

        assert not runtime.directory.get_user_by_email("t1", "alice@example.com").email_verified
