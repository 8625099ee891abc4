from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional, Protocol

from sessionward.config import Settings
from sessionward.logging import get_logger, redact_email
from sessionward.service.clock import Clock, IdentifierSource, SystemClock
from sessionward.service.errors import (
    AccountNotVerified,
    ForbiddenError,
    InvalidCredentials,
    InvalidOrExpiredOtp,
    InvalidResetToken,
    NotFoundError,
    ResendTooSoon,
    TokenExpired,
    TokenInvalid,
    UserAlreadyExists,
    ValidationError,
)
from sessionward.service.otp import OtpChallenge, OtpGenerator
from sessionward.service.passwords import PasswordHasher
from sessionward.service.tokens import (
    AccessClaims,
    TokenCodec,
    TokenError,
    TokenExpiredError,
)
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import Role, UserAccount

logger = get_logger(__name__)


class UserStore(Protocol):
    def find_user_by_email(self, email: str) -> Optional[UserAccount]: ...

    def find_user_by_id(self, user_id: str) -> Optional[UserAccount]: ...

    def find_user_by_reset_token(self, token_hash: str) -> Optional[UserAccount]: ...

    def create_user(self, fields: Mapping[str, Any]) -> UserAccount: ...

    def update_user(
        self, user_id: str, changes: Mapping[str, Any]
    ) -> Optional[UserAccount]: ...

    def update_user_if(
        self,
        user_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Optional[UserAccount]: ...

    def count_users(self) -> int: ...


class Mailer(Protocol):
    def send_otp_email(self, to_email: str, code: str, expires_minutes: int = 10) -> bool: ...

    def send_password_reset_email(
        self, to_email: str, reset_url: str, expires_minutes: int = 60
    ) -> bool: ...


@dataclass(frozen=True)
class RegisterResult:
    user: UserAccount
    requires_verification: bool
    is_first_user: bool


@dataclass(frozen=True)
class VerifyOtpResult:
    verified: bool


@dataclass(frozen=True)
class ResendOtpResult:
    success: bool


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    user: UserAccount


@dataclass(frozen=True)
class RefreshResult:
    access_token: str
    access_expires_at: datetime
    user: UserAccount
    refresh_token: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class LogoutResult:
    success: bool


@dataclass(frozen=True)
class PasswordResetRequested:
    message: str


PASSWORD_RESET_REQUESTED = PasswordResetRequested(
    message="If an account exists for that email, a password reset link has been sent."
)


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class SessionManager:
    """Account lifecycle: registration, OTP verification, login and refresh.

    Store reads and writes are synchronous and cheap; password hashing runs
    in a worker thread. Emails are queued as background tasks that outlive
    the call which queued them, so a slow mail server never holds up (or
    times out) a registration or reset request; ``flush_emails`` waits for
    whatever is still queued. Every state change that races with another
    request (OTP verify against reissue, failed-attempt counting, reset
    completion) is a conditional update on the value the caller last read.
    """

    def __init__(
        self,
        store: UserStore,
        codec: TokenCodec,
        otp: OtpGenerator,
        hasher: PasswordHasher,
        mailer: Mailer,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        ids: Optional[IdentifierSource] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.otp = otp
        self.hasher = hasher
        self.mailer = mailer
        self.settings = settings
        self.clock = clock or SystemClock()
        self.ids = ids or IdentifierSource()
        self._outbox: set[asyncio.Task] = set()

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.settings.refresh_token_ttl_minutes * 60

    def _check_password(self, password: str) -> None:
        if len(password or "") < self.settings.password_min_length:
            raise ValidationError(
                f"password must be at least {self.settings.password_min_length} characters",
                detail={"field": "password"},
            )

    async def _deliver(
        self, event: str, user_id: str, send: Callable[..., bool], *args: Any
    ) -> bool:
        try:
            sent = await asyncio.to_thread(send, *args)
        except Exception as exc:
            logger.error(
                f"{event}_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not sent:
            logger.warning(f"{event}_not_sent", user_id=user_id)
        return bool(sent)

    def _queue_email(
        self, event: str, user_id: str, send: Callable[..., bool], *args: Any
    ) -> None:
        task = asyncio.create_task(self._deliver(event, user_id, send, *args))
        self._outbox.add(task)
        task.add_done_callback(self._outbox.discard)

    @property
    def pending_emails(self) -> int:
        return len(self._outbox)

    async def flush_emails(self, timeout: Optional[float] = None) -> None:
        """Wait for queued emails started on the running loop.

        A flush that is cancelled or times out leaves the sends running.
        """
        loop = asyncio.get_running_loop()
        pending = [task for task in self._outbox if task.get_loop() is loop]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.warning("email_flush_timed_out", pending=len(still_running))

    def _send_otp(self, user: UserAccount, code: str) -> None:
        self._queue_email(
            "otp_email",
            user.id,
            self.mailer.send_otp_email,
            user.email,
            code,
            self.settings.otp_ttl_minutes,
        )

    @staticmethod
    def _challenge(user: UserAccount) -> Optional[OtpChallenge]:
        if user.otp_code is None or user.otp_expires_at is None:
            return None
        return OtpChallenge(code=user.otp_code, expires_at=user.otp_expires_at)

    async def register(self, name: str, email: str, password: str) -> RegisterResult:
        email = _normalize_email(email)
        name = (name or "").strip()
        if not name:
            raise ValidationError("name is required", detail={"field": "name"})
        if not email:
            raise ValidationError("email is required", detail={"field": "email"})
        self._check_password(password)
        if self.store.find_user_by_email(email):
            logger.info("register_duplicate_email", recipient=redact_email(email))
            raise UserAlreadyExists()

        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        # Count-then-create: two concurrent first registrations can both see an
        # empty store; the bootstrap script can repair roles if that happens.
        is_first_user = self.store.count_users() == 0
        challenge = self.otp.generate()
        now = self.clock.now()
        try:
            user = self.store.create_user(
                {
                    "id": self.ids.new_id(),
                    "name": name,
                    "email": email,
                    "password_hash": password_hash,
                    "role": Role.ADMIN if is_first_user else Role.USER,
                    "is_bootstrap_admin": is_first_user,
                    "otp_code": challenge.code,
                    "otp_expires_at": challenge.expires_at,
                    "created_at": now,
                    "updated_at": now,
                }
            )
        except ConstraintViolation as exc:
            if exc.field != "email":
                raise
            raise UserAlreadyExists() from None

        logger.info(
            "user_registered",
            user_id=user.id,
            role=user.role.value,
            is_first_user=is_first_user,
        )
        # Code is already stored; a failed send only means the user must resend
        self._send_otp(user, challenge.code)
        return RegisterResult(
            user=user, requires_verification=True, is_first_user=is_first_user
        )

    async def verify_otp(self, email: str, code: str) -> VerifyOtpResult:
        user = self.store.find_user_by_email(_normalize_email(email))
        # Verified accounts get the same answer as unknown ones
        if not user or user.email_verified:
            raise InvalidOrExpiredOtp()

        challenge = self._challenge(user)
        now = self.clock.now()
        if self.otp.matches(challenge, code, now):
            updated = self.store.update_user_if(
                user.id,
                {"otp_code": user.otp_code},
                {
                    "email_verified": True,
                    "otp_code": None,
                    "otp_expires_at": None,
                    "otp_attempts": 0,
                },
            )
            if not updated:
                # The code was reissued or consumed while we were checking it
                logger.info("otp_verify_lost_race", user_id=user.id)
                raise InvalidOrExpiredOtp()
            logger.info("email_verified", user_id=user.id)
            return VerifyOtpResult(verified=True)

        recorded = self._record_failed_attempt(user, challenge is not None)
        logger.info(
            "otp_verify_failed",
            user_id=user.id,
            attempts=recorded.otp_attempts if recorded else None,
            expired=challenge is not None and not self.otp.is_live(challenge, now),
            discarded=bool(recorded) and challenge is not None and recorded.otp_code is None,
        )
        raise InvalidOrExpiredOtp()

    def _record_failed_attempt(
        self, user: UserAccount, has_code: bool
    ) -> Optional[UserAccount]:
        """Count one failed verify against the code ``user`` was read with.

        Retries on a concurrent count; gives up once the code is consumed or
        reissued.
        """
        code = user.otp_code
        while True:
            attempts = user.otp_attempts + 1
            changes: dict[str, Any] = {"otp_attempts": attempts}
            if has_code and attempts >= self.settings.otp_max_attempts:
                changes.update({"otp_code": None, "otp_expires_at": None})
            updated = self.store.update_user_if(
                user.id,
                {"otp_code": code, "otp_attempts": user.otp_attempts},
                changes,
            )
            if updated:
                return updated
            current = self.store.find_user_by_id(user.id)
            if not current or current.email_verified or current.otp_code != code:
                return None
            user = current

    async def resend_otp(self, email: str) -> ResendOtpResult:
        user = self.store.find_user_by_email(_normalize_email(email))
        if not user or user.email_verified:
            # Same answer whether or not there is anything to resend
            return ResendOtpResult(success=True)

        wait = self.otp.resend_wait_seconds(self._challenge(user), self.clock.now())
        if wait > 0:
            raise ResendTooSoon(wait)

        challenge = self.otp.generate()
        updated = self.store.update_user_if(
            user.id,
            {"otp_code": user.otp_code},
            {
                "otp_code": challenge.code,
                "otp_expires_at": challenge.expires_at,
                "otp_attempts": 0,
            },
        )
        if not updated:
            # A concurrent resend won; its code was issued just now
            raise ResendTooSoon(int(self.otp.min_resend_interval.total_seconds()))
        logger.info("otp_reissued", user_id=user.id)
        self._send_otp(updated, challenge.code)
        return ResendOtpResult(success=True)

    def _may_skip_verification(self, user: UserAccount) -> bool:
        return (
            self.settings.allow_unverified_admin_login
            and user.is_bootstrap_admin
            and user.role == Role.ADMIN
        )

    async def login(self, email: str, password: str) -> LoginResult:
        user = self.store.find_user_by_email(_normalize_email(email))
        if not user:
            await asyncio.to_thread(self.hasher.burn, password or "")
            logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentials()
        if not await asyncio.to_thread(self.hasher.verify, password or "", user.password_hash):
            logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentials()
        if not user.email_verified and not self._may_skip_verification(user):
            logger.info("login_failed", reason="not_verified", user_id=user.id)
            raise AccountNotVerified()

        access = self.codec.issue_access(user, self.access_ttl_seconds)
        refresh = self.codec.issue_refresh(user, self.refresh_ttl_seconds)
        logger.info("login_succeeded", user_id=user.id)
        return LoginResult(
            access_token=access.value,
            access_expires_at=access.expires_at,
            refresh_token=refresh.value,
            refresh_expires_at=refresh.expires_at,
            user=user,
        )

    async def refresh(self, refresh_token: Optional[str]) -> RefreshResult:
        if not refresh_token:
            raise TokenInvalid()
        try:
            claims = self.codec.verify_refresh(refresh_token)
        except TokenExpiredError:
            raise TokenExpired() from None
        except TokenError as exc:
            logger.info("refresh_rejected", reason=type(exc).__name__)
            raise TokenInvalid() from None

        user = self.store.find_user_by_id(claims.sub)
        if not user or user.token_version != claims.token_version:
            logger.info("refresh_rejected", reason="revoked", user_id=claims.sub)
            raise TokenInvalid()

        access = self.codec.issue_access(user, self.access_ttl_seconds)
        if not self.settings.rotate_refresh_tokens:
            return RefreshResult(
                access_token=access.value, access_expires_at=access.expires_at, user=user
            )
        rotated = self.codec.issue_refresh(user, self.refresh_ttl_seconds)
        return RefreshResult(
            access_token=access.value,
            access_expires_at=access.expires_at,
            user=user,
            refresh_token=rotated.value,
            refresh_expires_at=rotated.expires_at,
        )

    async def logout(self) -> LogoutResult:
        return LogoutResult(success=True)

    def _bump_token_version(self, user_id: str) -> Optional[UserAccount]:
        while True:
            user = self.store.find_user_by_id(user_id)
            if not user:
                return None
            updated = self.store.update_user_if(
                user_id,
                {"token_version": user.token_version},
                {"token_version": user.token_version + 1},
            )
            if updated:
                return updated

    async def logout_everywhere(self, user_id: str) -> LogoutResult:
        if not self._bump_token_version(user_id):
            raise TokenInvalid()
        logger.info("sessions_revoked", user_id=user_id)
        return LogoutResult(success=True)

    async def request_password_reset(self, email: str) -> PasswordResetRequested:
        user = self.store.find_user_by_email(_normalize_email(email))
        if not user:
            logger.info("password_reset_unknown_account")
            return PASSWORD_RESET_REQUESTED

        token = self.ids.url_token()
        ttl_minutes = self.settings.password_reset_ttl_minutes
        self.store.update_user(
            user.id,
            {
                "reset_token_hash": _hash_reset_token(token),
                "reset_token_expires_at": self.clock.now() + timedelta(minutes=ttl_minutes),
            },
        )
        reset_url = f"{self.settings.app_base_url.rstrip('/')}/reset-password?token={token}"
        # Queued so a known account answers as fast as an unknown one
        self._queue_email(
            "password_reset_email",
            user.id,
            self.mailer.send_password_reset_email,
            user.email,
            reset_url,
            ttl_minutes,
        )
        logger.info("password_reset_requested", user_id=user.id)
        return PASSWORD_RESET_REQUESTED

    async def complete_password_reset(self, token: str, new_password: str) -> LogoutResult:
        if not token:
            raise InvalidResetToken()
        self._check_password(new_password)
        digest = _hash_reset_token(token)
        user = self.store.find_user_by_reset_token(digest)
        if (
            not user
            or user.reset_token_expires_at is None
            or self.clock.now() >= user.reset_token_expires_at
        ):
            logger.warning("password_reset_invalid_token")
            raise InvalidResetToken()

        password_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        updated = self.store.update_user_if(
            user.id,
            {"reset_token_hash": digest, "token_version": user.token_version},
            {
                "password_hash": password_hash,
                "reset_token_hash": None,
                "reset_token_expires_at": None,
                "token_version": user.token_version + 1,
            },
        )
        if not updated:
            # Token already consumed, or a concurrent revoke raced us
            raise InvalidResetToken()
        logger.info("password_reset_completed", user_id=user.id)
        return LogoutResult(success=True)

    def authenticate(self, access_token: Optional[str]) -> AccessClaims:
        if not access_token:
            raise TokenInvalid()
        try:
            return self.codec.verify_access(access_token)
        except TokenExpiredError:
            raise TokenExpired() from None
        except TokenError:
            raise TokenInvalid() from None

    def current_user(self, claims: AccessClaims) -> UserAccount:
        user = self.store.find_user_by_id(claims.sub)
        if not user:
            raise TokenInvalid()
        return user

    async def set_user_role(
        self, actor: AccessClaims, user_id: str, role: Role
    ) -> UserAccount:
        acting_user = self.store.find_user_by_id(actor.sub)
        # Trust the stored role, not the one baked into the token
        if not acting_user or acting_user.role != Role.ADMIN:
            raise ForbiddenError("admin role required")
        updated = self.store.update_user(user_id, {"role": role})
        if not updated:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        logger.info(
            "user_role_changed", actor_id=acting_user.id, user_id=user_id, role=role.value
        )
        return updated
