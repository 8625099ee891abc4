from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Awaitable, Optional, TypeVar, Union
from urllib.parse import urlparse, urlunparse

from sessionward.config import (
    AppEnv,
    RateLimitBackend,
    Settings,
    get_settings,
    reset_settings_cache,
)
from sessionward.logging import get_logger
from sessionward.service.clock import Clock, IdentifierSource, SystemClock
from sessionward.service.email import EmailService
from sessionward.service.errors import RequestTimeoutError
from sessionward.service.otp import OtpGenerator
from sessionward.service.passwords import PasswordHasher
from sessionward.service.rate_limit import (
    MemoryRateLimiter,
    RateDecision,
    RedisRateLimiter,
)
from sessionward.service.sessions import SessionManager
from sessionward.service.tokens import TokenCodec
from sessionward.storage.memory import MemoryStore
from sessionward.storage.redis_cache import RedisCache

logger = get_logger(__name__)

T = TypeVar("T")


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:hunter2@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the singleton services behind the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        ids = IdentifierSource()
        logger.info(
            "runtime_init_started",
            app_env=self.settings.app_env.value,
            rate_limit_backend=self.settings.rate_limit_backend.value,
        )

        self.store = MemoryStore(fs_root=self.settings.state_dir)
        self.cache: Optional[RedisCache] = None
        self.rate_limiter: Union[MemoryRateLimiter, RedisRateLimiter]
        if self.settings.rate_limit_backend == RateLimitBackend.REDIS:
            self.rate_limiter = self._build_redis_limiter()
        else:
            self.rate_limiter = MemoryRateLimiter(self.clock)

        self.codec = TokenCodec.from_settings(self.settings, clock=self.clock, ids=ids)
        self.otp = OtpGenerator(
            window=timedelta(minutes=self.settings.otp_ttl_minutes),
            min_resend_interval=timedelta(seconds=self.settings.otp_resend_interval_seconds),
            clock=self.clock,
            ids=ids,
        )
        self.hasher = PasswordHasher()
        self.email = EmailService.from_settings(self.settings)
        if not self.email.is_configured:
            logger.warning(
                "email_not_configured",
                message="SMTP_HOST/EMAIL_FROM_ADDRESS unset; emails are logged, not sent",
            )
        self.sessions = SessionManager(
            self.store,
            self.codec,
            self.otp,
            self.hasher,
            self.email,
            self.settings,
            clock=self.clock,
            ids=ids,
        )
        logger.info("runtime_init_completed")

    def _build_redis_limiter(self) -> Union[MemoryRateLimiter, RedisRateLimiter]:
        redis_url = self.settings.redis_url or ""
        try:
            cache = RedisCache(redis_url)
            cache.verify_connection()
        except Exception as exc:
            if self.settings.is_production:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "RATE_LIMIT_BACKEND=memory"
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(redis_url),
                error=str(exc),
                message="Rate limits are process-local until Redis is reachable",
            )
            return MemoryRateLimiter(self.clock)
        self.cache = cache
        return RedisRateLimiter(cache, self.clock)

    async def close(self) -> None:
        if self.sessions.pending_emails:
            logger.info("email_flush_on_shutdown", pending=self.sessions.pending_emails)
            await self.sessions.flush_emails(timeout=self.email.timeout)
        if self.cache is not None:
            await self.cache.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, clock: Optional[Clock] = None) -> Runtime:
    """Rebuild the runtime from a fresh environment read. Test mode only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if settings.app_env != AppEnv.TEST:
            raise RuntimeError("runtime reset is only allowed when APP_ENV=test")
        runtime = Runtime(settings, clock=clock)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    route: str,
    identifier: str,
    limit: int,
    *,
    window_seconds: Optional[int] = None,
) -> RateDecision:
    """Count one request for ``route`` from ``identifier`` in the current window."""
    window_seconds = window_seconds or runtime.settings.rate_limit_window_seconds
    return await runtime.rate_limiter.admit(
        f"{route}:{identifier}", limit, window_seconds * 1000
    )


async def run_with_deadline(
    runtime: Runtime, awaitable: Awaitable[T], *, operation: str
) -> T:
    timeout = runtime.settings.request_timeout_seconds
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("request_deadline_exceeded", operation=operation, timeout=timeout)
        raise RequestTimeoutError(
            "request timed out", detail={"timeout_seconds": timeout}
        ) from None
