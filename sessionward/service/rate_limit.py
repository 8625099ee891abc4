from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from sessionward.logging import get_logger
from sessionward.service.clock import Clock, SystemClock
from sessionward.storage.models import RateWindow
from sessionward.storage.redis_cache import RedisCache

logger = get_logger(__name__)

# Expired windows are swept after this many hits
PURGE_EVERY = 1024


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    count: int
    limit: int
    reset_at_ms: int
    retry_after_ms: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def retry_after_seconds(self) -> int:
        return math.ceil(self.retry_after_ms / 1000) if self.retry_after_ms > 0 else 0


@dataclass(frozen=True)
class RateWindowSnapshot:
    identifier: str
    count: int
    reset_at: datetime
    expired: bool


class RateLimiter(Protocol):
    async def admit(self, identifier: str, limit: int, window_ms: int) -> RateDecision: ...

    async def clear(self) -> int: ...

    async def snapshot(self) -> List[RateWindowSnapshot]: ...


def _decide(count: int, limit: int, reset_at_ms: int, now_ms: int) -> RateDecision:
    if count > limit:
        return RateDecision(
            allowed=False,
            count=count,
            limit=limit,
            reset_at_ms=reset_at_ms,
            retry_after_ms=max(0, reset_at_ms - now_ms),
        )
    return RateDecision(allowed=True, count=count, limit=limit, reset_at_ms=reset_at_ms)


def _validate(limit: int, window_ms: int) -> None:
    if limit <= 0:
        raise ValueError("limit must be positive")
    if window_ms <= 0:
        raise ValueError("window_ms must be positive")


def _to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


class MemoryRateLimiter:
    """Process-local fixed-window limiter.

    Each identifier owns a :class:`RateWindow` with its own lock, so the
    read-increment-compare-write for one caller never serializes another.
    The table lock is held only long enough to find or create an entry.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock = clock or SystemClock()
        self._windows: Dict[str, RateWindow] = {}
        self._table_lock = threading.Lock()
        self._hits_since_purge = 0

    def _entry(self, identifier: str) -> RateWindow:
        with self._table_lock:
            self._hits_since_purge += 1
            entry = self._windows.get(identifier)
            if entry is None:
                # count=0/reset_at=0 is treated as an expired window below
                entry = RateWindow(count=0, reset_at_ms=0)
                self._windows[identifier] = entry
            return entry

    def hit(self, identifier: str, limit: int, window_ms: int) -> RateDecision:
        _validate(limit, window_ms)
        if self._hits_since_purge >= PURGE_EVERY:
            self.purge_expired()
        while True:
            entry = self._entry(identifier)
            with entry.lock:
                # A purge or clear may have detached this entry; retry with the live one
                if self._windows.get(identifier) is not entry:
                    continue
                now_ms = self.clock.now_ms()
                if now_ms >= entry.reset_at_ms:
                    entry.count = 1
                    entry.reset_at_ms = now_ms + window_ms
                else:
                    entry.count += 1
                decision = _decide(entry.count, limit, entry.reset_at_ms, now_ms)
            break
        if not decision.allowed:
            logger.info(
                "rate_limit_denied",
                identifier=identifier,
                count=decision.count,
                limit=limit,
                retry_after_ms=decision.retry_after_ms,
            )
        return decision

    async def admit(self, identifier: str, limit: int, window_ms: int) -> RateDecision:
        return self.hit(identifier, limit, window_ms)

    def purge_expired(self) -> int:
        """Drop windows that have already reset; returns how many were removed."""
        now_ms = self.clock.now_ms()
        removed = 0
        with self._table_lock:
            self._hits_since_purge = 0
            for identifier in list(self._windows):
                entry = self._windows[identifier]
                with entry.lock:
                    if now_ms >= entry.reset_at_ms:
                        del self._windows[identifier]
                        removed += 1
        return removed

    async def clear(self) -> int:
        with self._table_lock:
            removed = len(self._windows)
            self._windows.clear()
        logger.info("rate_limits_cleared", backend="memory", removed=removed)
        return removed

    async def snapshot(self) -> List[RateWindowSnapshot]:
        now_ms = self.clock.now_ms()
        with self._table_lock:
            items = list(self._windows.items())
        snapshots = []
        for identifier, entry in items:
            with entry.lock:
                count, reset_at_ms = entry.count, entry.reset_at_ms
            snapshots.append(
                RateWindowSnapshot(
                    identifier=identifier,
                    count=count,
                    reset_at=_to_datetime(reset_at_ms),
                    expired=now_ms >= reset_at_ms,
                )
            )
        return sorted(snapshots, key=lambda item: item.identifier)


class RedisRateLimiter:
    """Fixed-window limiter whose counters live in Redis, shared by every instance."""

    def __init__(self, cache: RedisCache, clock: Optional[Clock] = None) -> None:
        self.cache = cache
        self.clock = clock or SystemClock()

    async def admit(self, identifier: str, limit: int, window_ms: int) -> RateDecision:
        _validate(limit, window_ms)
        now_ms = self.clock.now_ms()
        count, reset_at_ms = await self.cache.incr_fixed_window(identifier, window_ms, now_ms)
        decision = _decide(count, limit, reset_at_ms, now_ms)
        if not decision.allowed:
            logger.info(
                "rate_limit_denied",
                identifier=identifier,
                count=count,
                limit=limit,
                retry_after_ms=decision.retry_after_ms,
            )
        return decision

    async def clear(self) -> int:
        removed = await self.cache.clear_windows()
        logger.info("rate_limits_cleared", backend="redis", removed=removed)
        return removed

    async def snapshot(self) -> List[RateWindowSnapshot]:
        now_ms = self.clock.now_ms()
        windows = await self.cache.list_windows()
        return sorted(
            (
                RateWindowSnapshot(
                    identifier=window["identifier"],
                    count=window["count"],
                    reset_at=_to_datetime(window["reset_at_ms"]),
                    expired=now_ms >= window["reset_at_ms"],
                )
                for window in windows
            ),
            key=lambda item: item.identifier,
        )
