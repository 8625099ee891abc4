from __future__ import annotations

import math
from typing import Optional


class ServiceError(Exception):
    """Failure raised by the account services and rendered as an error envelope.

    Subclasses pin an HTTP status and the envelope `code`:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - timeout (504)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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
    """Input rejected by an account rule (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credentials or token missing, wrong or expired (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Caller is known but may not do this (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """No such account (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Write collides with existing state (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Caller must back off; `retry_after_seconds` feeds Retry-After (429)."""
    status_code = 429
    error_code = "rate_limited"

    retry_after_seconds: int = 0


class RequestTimeoutError(ServiceError):
    """Request exceeded its deadline (504)."""
    status_code = 504
    error_code = "timeout"


# Account lifecycle


class UserAlreadyExists(ConflictError):
    def __init__(self) -> None:
        super().__init__("user already exists")


class InvalidCredentials(AuthenticationError):
    def __init__(self) -> None:
        super().__init__("invalid credentials")


class AccountNotVerified(AuthenticationError):
    def __init__(self) -> None:
        super().__init__(
            "email not verified", detail={"requires_verification": True}
        )


class TokenExpired(AuthenticationError):
    def __init__(self) -> None:
        super().__init__("token expired")


class TokenInvalid(AuthenticationError):
    def __init__(self) -> None:
        super().__init__("invalid token")


class InvalidOrExpiredOtp(ValidationError):
    def __init__(self) -> None:
        super().__init__("invalid or expired code")


class InvalidResetToken(ValidationError):
    def __init__(self) -> None:
        super().__init__("invalid or expired reset token")


class ResendTooSoon(RateLimitedError):
    def __init__(self, wait_seconds: int) -> None:
        self.retry_after_seconds = max(1, int(wait_seconds))
        super().__init__(
            f"please wait {self.retry_after_seconds}s before requesting a new code",
            detail={"retry_after_seconds": self.retry_after_seconds},
        )


class RateLimited(RateLimitedError):
    def __init__(self, retry_after_ms: int) -> None:
        self.retry_after_ms = max(0, int(retry_after_ms))
        self.retry_after_seconds = max(1, math.ceil(self.retry_after_ms / 1000))
        super().__init__(
            "rate limit exceeded",
            detail={"retry_after_seconds": self.retry_after_seconds},
        )


class NotAvailable(ForbiddenError):
    def __init__(self) -> None:
        super().__init__("not available in this environment")


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "RequestTimeoutError",
    "UserAlreadyExists",
    "InvalidCredentials",
    "AccountNotVerified",
    "TokenExpired",
    "TokenInvalid",
    "InvalidOrExpiredOtp",
    "InvalidResetToken",
    "ResendTooSoon",
    "RateLimited",
    "NotAvailable",
]
