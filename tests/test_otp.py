"""Tests for one-time passcode generation and the resend policy."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from sessionward.service.clock import IdentifierSource
from sessionward.service.otp import OtpChallenge, OtpGenerator


@pytest.fixture
def otp(clock):
    return OtpGenerator(
        window=timedelta(minutes=10),
        min_resend_interval=timedelta(seconds=60),
        clock=clock,
    )


class TestGenerate:
    def test_code_is_six_digits(self, otp):
        for _ in range(50):
            code = otp.generate().code
            assert len(code) == 6
            assert code.isdigit()

    def test_leading_zeros_preserved(self, clock):
        ids = MagicMock(spec=IdentifierSource)
        ids.random_digits.return_value = "000042"
        challenge = OtpGenerator(clock=clock, ids=ids).generate()
        assert challenge.code == "000042"
        ids.random_digits.assert_called_once_with(6)

    def test_random_digits_pads(self):
        ids = IdentifierSource()
        assert all(len(ids.random_digits(6)) == 6 for _ in range(200))

    def test_expiry_is_now_plus_window(self, otp, clock):
        challenge = otp.generate()
        assert challenge.expires_at == clock.now() + timedelta(minutes=10)
        assert challenge.issued_at(otp.window) == clock.now()


class TestLiveness:
    def test_live_before_expiry(self, otp, clock):
        challenge = otp.generate()
        clock.advance(599)
        assert otp.is_live(challenge, clock.now())

    def test_dead_at_expiry(self, otp, clock):
        challenge = otp.generate()
        clock.advance(600)
        assert not otp.is_live(challenge, clock.now())

    def test_no_challenge_is_not_live(self, otp, clock):
        assert not otp.is_live(None, clock.now())


class TestMatches:
    def test_matching_live_code(self, otp, clock):
        challenge = OtpChallenge(code="123456", expires_at=clock.now() + timedelta(minutes=1))
        assert otp.matches(challenge, "123456", clock.now())
        assert otp.matches(challenge, " 123456 ", clock.now())

    def test_wrong_code(self, otp, clock):
        challenge = OtpChallenge(code="123456", expires_at=clock.now() + timedelta(minutes=1))
        assert not otp.matches(challenge, "654321", clock.now())

    def test_expired_matching_code(self, otp, clock):
        challenge = OtpChallenge(code="123456", expires_at=clock.now())
        assert not otp.matches(challenge, "123456", clock.now())


class TestResendPolicy:
    def test_no_live_code_means_no_wait(self, otp, clock):
        assert otp.resend_wait_seconds(None, clock.now()) == 0

    def test_wait_right_after_issue(self, otp, clock):
        challenge = otp.generate()
        assert otp.resend_wait_seconds(challenge, clock.now()) == 60

    def test_wait_rounds_up(self, otp, clock):
        challenge = otp.generate()
        clock.advance(milliseconds=30_500)
        assert otp.resend_wait_seconds(challenge, clock.now()) == 30

    def test_allowed_after_interval(self, otp, clock):
        challenge = otp.generate()
        clock.advance(60)
        assert otp.resend_wait_seconds(challenge, clock.now()) == 0

    def test_expired_code_never_blocks(self, otp, clock):
        challenge = otp.generate()
        clock.advance(601)
        assert otp.resend_wait_seconds(challenge, clock.now()) == 0
