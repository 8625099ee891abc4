"""Tests for the HS256 token codec."""

import base64
import json

import pytest

from sessionward.config import Settings
from sessionward.service.clock import ManualClock
from sessionward.service.tokens import (
    AccessClaims,
    InvalidSignature,
    MalformedToken,
    RefreshClaims,
    TokenCodec,
    TokenExpiredError,
    TokenPurpose,
    WrongPurpose,
    derive_key,
)
from sessionward.storage.models import Role, UserAccount


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


@pytest.fixture
def codec(clock):
    settings = Settings(app_env="test", jwt_secret="unit-test-secret")
    return TokenCodec.from_settings(settings, clock=clock)


@pytest.fixture
def user():
    return UserAccount(
        id="user-1",
        name="Ada",
        email="ada@example.com",
        password_hash="x",
        role=Role.ADMIN,
        token_version=3,
    )


class TestRoundTrip:
    def test_access_claims_round_trip(self, codec, user, clock):
        issued = codec.issue_access(user, 900)

        claims = codec.verify_access(issued.value)

        assert claims == AccessClaims(
            sub="user-1",
            name="Ada",
            email="ada@example.com",
            role="ADMIN",
            iat=clock.timestamp(),
            exp=clock.timestamp() + 900,
        )
        assert int(issued.expires_at.timestamp()) == claims.exp

    def test_refresh_claims_carry_token_version(self, codec, user, clock):
        token = codec.issue_refresh(user, 3600).value

        claims = codec.verify_refresh(token)

        assert claims == RefreshClaims(
            sub="user-1",
            token_version=3,
            iat=clock.timestamp(),
            exp=clock.timestamp() + 3600,
        )

    def test_tokens_are_unique_per_issue(self, codec, user):
        assert codec.issue_access(user, 60).value != codec.issue_access(user, 60).value

    def test_rejects_non_positive_ttl(self, codec, user):
        with pytest.raises(ValueError):
            codec.issue_access(user, 0)


class TestExpiry:
    def test_valid_until_just_before_exp(self, codec, user, clock):
        token = codec.issue_access(user, 60).value
        clock.advance(59)
        assert codec.verify_access(token).sub == "user-1"

    def test_expired_at_exact_exp(self, codec, user, clock):
        token = codec.issue_access(user, 60).value
        clock.advance(60)
        with pytest.raises(TokenExpiredError):
            codec.verify_access(token)


class TestPurposeIsolation:
    def test_refresh_token_rejected_as_access(self, codec, user):
        token = codec.issue_refresh(user, 60).value
        with pytest.raises(WrongPurpose):
            codec.verify(token, TokenPurpose.ACCESS)

    def test_access_token_rejected_as_refresh(self, codec, user):
        token = codec.issue_access(user, 60).value
        with pytest.raises(WrongPurpose):
            codec.verify(token, TokenPurpose.REFRESH)

    def test_purpose_keys_differ(self):
        assert derive_key("s", TokenPurpose.ACCESS) != derive_key("s", TokenPurpose.REFRESH)

    def test_relabelled_token_fails_signature(self, codec, user):
        """Rewriting the purpose tag cannot move a token across purposes."""
        token = codec.issue_refresh(user, 60).value
        header, payload, sig = token.split(".")
        claims = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        claims.update({"purpose": "access", "name": "Ada", "email": "a@b.co", "role": "ADMIN"})
        forged = f"{header}.{_b64(claims)}.{sig}"
        with pytest.raises(InvalidSignature):
            codec.verify_access(forged)

    def test_override_secrets_take_precedence(self, clock, user):
        settings = Settings(
            app_env="test",
            jwt_access_secret="access-only",
            jwt_refresh_secret="refresh-only",
        )
        codec = TokenCodec.from_settings(settings, clock=clock)
        other = TokenCodec.from_settings(
            Settings(app_env="test", jwt_secret="access-only"), clock=clock
        )
        token = codec.issue_access(user, 60).value
        assert codec.verify_access(token).sub == user.id
        with pytest.raises(InvalidSignature):
            other.verify_access(token)


class TestMalformed:
    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!!.???.###"])
    def test_bad_shapes(self, codec, token):
        with pytest.raises(MalformedToken):
            codec.verify_access(token)

    def test_rejects_non_hs256_header(self, codec, user):
        token = codec.issue_access(user, 60).value
        _, payload, sig = token.split(".")
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}.{sig}"
        with pytest.raises(MalformedToken):
            codec.verify_access(forged)

    def test_missing_claim_is_malformed(self, codec):
        token = codec.issue({"sub": "user-1"}, TokenPurpose.ACCESS, 60)
        with pytest.raises(MalformedToken):
            codec.verify_access(token)

    def test_tampered_signature(self, codec, user):
        token = codec.issue_access(user, 60).value
        flipped = token[:-2] + ("AA" if not token.endswith("AA") else "BB")
        with pytest.raises(InvalidSignature):
            codec.verify_access(flipped)

    def test_foreign_issuer_rejected(self, user):
        clock = ManualClock()
        ours = TokenCodec({p: b"k" for p in TokenPurpose}, issuer="ours", clock=clock)
        theirs = TokenCodec({p: b"k" for p in TokenPurpose}, issuer="theirs", clock=clock)
        with pytest.raises(InvalidSignature):
            ours.verify_access(theirs.issue_access(user, 60).value)

    def test_claims_of_the_wrong_kind_are_malformed(self, codec, monkeypatch):
        refresh = RefreshClaims(sub="user-1", token_version=0, iat=0, exp=60)
        access = AccessClaims(
            sub="user-1", name="Ada", email="ada@example.com", role="USER", iat=0, exp=60
        )

        monkeypatch.setattr(codec, "verify", lambda token, purpose: refresh)
        with pytest.raises(MalformedToken):
            codec.verify_access("token")
        monkeypatch.setattr(codec, "verify", lambda token, purpose: access)
        with pytest.raises(MalformedToken):
            codec.verify_refresh("token")

    def test_missing_key_is_configuration_error(self):
        with pytest.raises(ValueError):
            TokenCodec({TokenPurpose.ACCESS: b"k"}, issuer="x")
