from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from sessionward.config import Settings
from sessionward.logging import get_logger
from sessionward.service.clock import Clock, IdentifierSource, SystemClock
from sessionward.storage.models import UserAccount

logger = get_logger(__name__)


class TokenPurpose(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenError(Exception):
    """Base class for token verification failures."""


class MalformedToken(TokenError):
    pass


class InvalidSignature(TokenError):
    pass


class TokenExpiredError(TokenError):
    pass


class WrongPurpose(TokenError):
    pass


@dataclass(frozen=True)
class AccessClaims:
    sub: str
    name: str
    email: str
    role: str
    iat: int
    exp: int


@dataclass(frozen=True)
class RefreshClaims:
    sub: str
    token_version: int
    iat: int
    exp: int


Claims = Union[AccessClaims, RefreshClaims]


@dataclass(frozen=True)
class IssuedToken:
    value: str
    expires_at: datetime


_REQUIRED_CLAIMS = {
    TokenPurpose.ACCESS: {"sub": str, "name": str, "email": str, "role": str, "iat": int, "exp": int},
    TokenPurpose.REFRESH: {"sub": str, "ver": int, "iat": int, "exp": int},
}


def derive_key(master_secret: str, purpose: TokenPurpose) -> bytes:
    """Namespace the master secret so one purpose's key never verifies another's."""
    label = f"sessionward/{purpose.value}-token".encode()
    return hmac.new(master_secret.encode(), label, hashlib.sha256).digest()


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """Issues and verifies compact HS256 tokens with a per-purpose key."""

    def __init__(
        self,
        keys: dict[TokenPurpose, bytes],
        *,
        issuer: str,
        clock: Optional[Clock] = None,
        ids: Optional[IdentifierSource] = None,
    ) -> None:
        missing = [p.value for p in TokenPurpose if not keys.get(p)]
        if missing:
            raise ValueError(f"missing signing key for: {', '.join(missing)}")
        self._keys = dict(keys)
        self.issuer = issuer
        self.clock = clock or SystemClock()
        self.ids = ids or IdentifierSource()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        ids: Optional[IdentifierSource] = None,
    ) -> "TokenCodec":
        keys: dict[TokenPurpose, bytes] = {}
        overrides = {
            TokenPurpose.ACCESS: settings.jwt_access_secret,
            TokenPurpose.REFRESH: settings.jwt_refresh_secret,
        }
        for purpose, override in overrides.items():
            if override:
                keys[purpose] = override.encode()
            else:
                keys[purpose] = derive_key(settings.jwt_secret or "", purpose)
        return cls(keys, issuer=settings.jwt_issuer, clock=clock, ids=ids)

    def _sign(self, signing_input: str, purpose: TokenPurpose) -> str:
        digest = hmac.new(
            self._keys[purpose], signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def issue(
        self, subject_claims: dict[str, Any], purpose: TokenPurpose, ttl_seconds: int
    ) -> str:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        iat = self.clock.timestamp()
        payload = {
            **subject_claims,
            "purpose": purpose.value,
            "iss": self.issuer,
            "jti": self.ids.new_id(),
            "iat": iat,
            "exp": iat + int(ttl_seconds),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, purpose)}"

    def verify(self, token: str, expected_purpose: TokenPurpose) -> Claims:
        """Return typed claims for ``token`` or raise a :class:`TokenError`.

        Checks run in a fixed order: shape, purpose tag, signature, expiry.
        The tag is read from the unverified payload only to classify the
        failure; nothing is trusted until the signature has been checked
        with the expected purpose's key.
        """
        if not isinstance(token, str) or token.count(".") != 2:
            raise MalformedToken("token must have three segments")
        header_b64, payload_b64, sig_b64 = token.split(".")
        try:
            header = json.loads(_decode_segment(header_b64))
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedToken("token segments are not valid base64 JSON") from exc
        if not isinstance(header, dict):
            raise MalformedToken("token header must be an object")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise MalformedToken("unsupported token algorithm")
        if not isinstance(payload, dict):
            raise MalformedToken("token payload must be an object")

        tag = payload.get("purpose")
        if tag not in {p.value for p in TokenPurpose}:
            raise MalformedToken("token purpose missing")
        if tag != expected_purpose.value:
            raise WrongPurpose(f"expected {expected_purpose.value} token, got {tag}")

        for name, kind in _REQUIRED_CLAIMS[expected_purpose].items():
            value = payload.get(name)
            # bool is an int subclass; reject it for numeric claims
            if not isinstance(value, kind) or isinstance(value, bool):
                raise MalformedToken(f"claim '{name}' missing or invalid")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", expected_purpose)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignature("signature mismatch")
        if payload.get("iss") != self.issuer:
            raise InvalidSignature("unexpected issuer")

        if self.clock.timestamp() >= payload["exp"]:
            raise TokenExpiredError("token expired")

        if expected_purpose == TokenPurpose.ACCESS:
            return AccessClaims(
                sub=payload["sub"],
                name=payload["name"],
                email=payload["email"],
                role=payload["role"],
                iat=payload["iat"],
                exp=payload["exp"],
            )
        return RefreshClaims(
            sub=payload["sub"],
            token_version=payload["ver"],
            iat=payload["iat"],
            exp=payload["exp"],
        )

    def _expiry(self, token: str) -> datetime:
        payload = json.loads(_decode_segment(token.split(".")[1]))
        return datetime.fromtimestamp(payload["exp"], tz=timezone.utc)

    def issue_access(self, user: UserAccount, ttl_seconds: int) -> IssuedToken:
        token = self.issue(
            {
                "sub": user.id,
                "name": user.name,
                "email": user.email,
                "role": user.role.value,
            },
            TokenPurpose.ACCESS,
            ttl_seconds,
        )
        return IssuedToken(value=token, expires_at=self._expiry(token))

    def issue_refresh(self, user: UserAccount, ttl_seconds: int) -> IssuedToken:
        token = self.issue(
            {"sub": user.id, "ver": user.token_version},
            TokenPurpose.REFRESH,
            ttl_seconds,
        )
        return IssuedToken(value=token, expires_at=self._expiry(token))

    def verify_access(self, token: str) -> AccessClaims:
        claims = self.verify(token, TokenPurpose.ACCESS)
        if not isinstance(claims, AccessClaims):
            raise MalformedToken("token does not carry access claims")
        return claims

    def verify_refresh(self, token: str) -> RefreshClaims:
        claims = self.verify(token, TokenPurpose.REFRESH)
        if not isinstance(claims, RefreshClaims):
            raise MalformedToken("token does not carry refresh claims")
        return claims


__all__ = [
    "AccessClaims",
    "Claims",
    "InvalidSignature",
    "IssuedToken",
    "MalformedToken",
    "RefreshClaims",
    "TokenCodec",
    "TokenError",
    "TokenExpiredError",
    "TokenPurpose",
    "WrongPurpose",
    "derive_key",
]
