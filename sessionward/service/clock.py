from __future__ import annotations

import secrets
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...

    def timestamp(self) -> int: ...

    def now_ms(self) -> int: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def timestamp(self) -> int:
        return int(time.time())

    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000


class ManualClock:
    """Clock that only moves when told to; used to drive expiry in tests."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._lock = threading.Lock()
        self._now_ms = int(start.timestamp() * 1000)

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.now_ms() / 1000, tz=timezone.utc)

    def timestamp(self) -> int:
        return self.now_ms() // 1000

    def now_ms(self) -> int:
        with self._lock:
            return self._now_ms

    def advance(self, seconds: float = 0, *, milliseconds: int = 0) -> datetime:
        with self._lock:
            self._now_ms += int(seconds * 1000) + milliseconds
        return self.now()

    def set(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        with self._lock:
            self._now_ms = int(moment.timestamp() * 1000)


def seconds_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier) / timedelta(seconds=1)


class IdentifierSource:
    """Random identifiers and codes drawn from the OS CSPRNG."""

    def new_id(self) -> str:
        return str(uuid.uuid4())

    def random_digits(self, length: int) -> str:
        # randbelow is uniform over [0, 10**length); no modulo bias
        return str(secrets.randbelow(10**length)).zfill(length)

    def url_token(self, nbytes: int = 32) -> str:
        return secrets.token_urlsafe(nbytes)
