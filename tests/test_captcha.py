"""Tests for captcha escalation and single-use challenges."""

import random

import pytest

from tenantauth.service.captcha import CaptchaManager
from tenantauth.service.keys import Action
from tenantauth.service.result import ErrorKind


def _answer(question: str) -> str:
    a, b = question.split(" + ")
    return str(int(a) + int(b))


@pytest.fixture
def captcha(store, clock):
    return CaptchaManager(
        store, threshold=3, ttl_seconds=300, max_operand=4, rng=random.Random(7), clock=clock
    )


class TestEscalation:
    async def test_required_once_threshold_reached(self, captcha):
        for expected in (False, False, False):
            assert await captcha.is_required("t1", Action.LOGIN_PASSWORD, "alice") is expected
            await captcha.record_failure("t1", Action.LOGIN_PASSWORD, "alice")

        assert await captcha.is_required("t1", Action.LOGIN_PASSWORD, "alice")

    async def test_counter_scoped_by_action_and_tenant(self, captcha):
        for _ in range(3):
            await captcha.record_failure("t1", Action.LOGIN_PASSWORD, "alice")

        assert not await captcha.is_required("t2", Action.LOGIN_PASSWORD, "alice")
        assert not await captcha.is_required("t1", Action.LOGIN_EMAIL, "alice")

    async def test_reset_clears_counter(self, captcha):
        for _ in range(3):
            await captcha.record_failure("t1", Action.LOGIN_PASSWORD, "alice")
        await captcha.reset("t1", Action.LOGIN_PASSWORD, "alice")

        assert not await captcha.is_required("t1", Action.LOGIN_PASSWORD, "alice")

    async def test_counter_expires_with_ttl(self, captcha, clock):
        for _ in range(3):
            await captcha.record_failure("t1", Action.LOGIN_PASSWORD, "alice")
        clock.advance(301)

        assert not await captcha.is_required("t1", Action.LOGIN_PASSWORD, "alice")


class TestChallenges:
    async def test_question_uses_small_operands(self, captcha):
        challenge = await captcha.create_challenge("t1", Action.LOGIN_PASSWORD, "alice")
        a, b = (int(part) for part in challenge.question.split(" + "))

        assert 1 <= a <= 4 and 1 <= b <= 4
        assert challenge.ttl_seconds == 300

    async def test_challenge_stored_by_id_only(self, captcha, store):
        challenge = await captcha.create_challenge("t1", Action.LOGIN_PASSWORD, "alice")
        assert await store.exists(f"captcha:challenge:{challenge.captcha_id}")

    async def test_correct_answer_verifies_once(self, captcha):
        challenge = await captcha.create_challenge("t1", Action.LOGIN_PASSWORD, "alice")
        answer = _answer(challenge.question)

        assert (await captcha.verify(challenge.captcha_id, answer)).ok
        second = await captcha.verify(challenge.captcha_id, answer)
        assert second.error == ErrorKind.CAPTCHA_INVALID

    async def test_answer_trimmed(self, captcha):
        challenge = await captcha.create_challenge("t1", Action.LOGIN_PASSWORD, "alice")
        assert await captcha.verify(challenge.captcha_id, f"  {_answer(challenge.question)} ")

    async def test_wrong_answer_consumes_challenge(self, captcha):
        challenge = await captcha.create_challenge("t1", Action.LOGIN_PASSWORD, "alice")

        assert not await captcha.verify(challenge.captcha_id, "99")
        assert not await captcha.verify(challenge.captcha_id, _answer(challenge.question))

    async def test_blank_answer_does_not_consume(self, captcha):
        challenge = await captcha.create_challenge("t1", Action.LOGIN_PASSWORD, "alice")

        assert not await captcha.verify(challenge.captcha_id, "  ")
        assert await captcha.verify(challenge.captcha_id, _answer(challenge.question))

    async def test_unknown_or_expired_id(self, captcha, clock):
        assert not await captcha.verify("no-such-id", "3")

        challenge = await captcha.create_challenge("t1", Action.LOGIN_PASSWORD, "alice")
        clock.advance(301)
        assert not await captcha.verify(challenge.captcha_id, _answer(challenge.question))

    async def test_any_holder_of_the_id_may_answer(self, captcha):
        # The identifier that tripped the requirement is not re-checked
        challenge = await captcha.create_challenge("t1", Action.LOGIN_PASSWORD, "alice")
        assert await captcha.verify(challenge.captcha_id, _answer(challenge.question))
