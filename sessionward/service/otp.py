from __future__ import annotations

import hmac
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sessionward.service.clock import Clock, IdentifierSource, SystemClock, seconds_between

OTP_DIGITS = 6


@dataclass(frozen=True)
class OtpChallenge:
    code: str
    expires_at: datetime

    def issued_at(self, window: timedelta) -> datetime:
        return self.expires_at - window


class OtpGenerator:
    """Issues six-digit passcodes and applies the resend policy."""

    def __init__(
        self,
        *,
        window: timedelta = timedelta(minutes=10),
        min_resend_interval: timedelta = timedelta(seconds=60),
        clock: Optional[Clock] = None,
        ids: Optional[IdentifierSource] = None,
    ) -> None:
        self.window = window
        self.min_resend_interval = min_resend_interval
        self.clock = clock or SystemClock()
        self.ids = ids or IdentifierSource()

    def generate(self) -> OtpChallenge:
        return OtpChallenge(
            code=self.ids.random_digits(OTP_DIGITS),
            expires_at=self.clock.now() + self.window,
        )

    @staticmethod
    def is_live(challenge: Optional[OtpChallenge], now: datetime) -> bool:
        return challenge is not None and now < challenge.expires_at

    def resend_wait_seconds(
        self, challenge: Optional[OtpChallenge], now: datetime
    ) -> int:
        """Whole seconds until a new code may be issued; 0 means now."""
        if challenge is None or not self.is_live(challenge, now):
            return 0
        # Issue time is reconstructed from the stored expiry
        elapsed = seconds_between(now, challenge.issued_at(self.window))
        remaining = self.min_resend_interval.total_seconds() - elapsed
        if remaining <= 0:
            return 0
        return math.ceil(remaining)

    def matches(
        self, challenge: Optional[OtpChallenge], code: str, now: datetime
    ) -> bool:
        if challenge is None or not isinstance(code, str):
            return False
        same = hmac.compare_digest(challenge.code.encode(), code.strip().encode())
        return same and self.is_live(challenge, now)
