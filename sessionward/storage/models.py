from __future__ import annotations

import threading
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Role(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserAccount:
    id: str
    name: str
    email: str
    password_hash: str
    role: Role = Role.USER
    email_verified: bool = False
    otp_code: Optional[str] = None
    otp_expires_at: Optional[datetime] = None
    otp_attempts: int = 0
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    # Embedded in refresh tokens; bumping it revokes every outstanding one
    token_version: int = 0
    is_bootstrap_admin: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def public(self) -> Dict[str, Any]:
        """Account view without credentials or pending secrets."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "email_verified": self.email_verified,
            "created_at": self.created_at,
        }

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, Role):
                value = value.value
            record[item.name] = value
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "UserAccount":
        data = dict(record)
        for key in ("otp_expires_at", "reset_token_expires_at", "created_at", "updated_at"):
            raw = data.get(key)
            if isinstance(raw, str):
                data[key] = datetime.fromisoformat(raw)
        data["role"] = Role(data.get("role", Role.USER.value))
        known = {item.name for item in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class RateWindow:
    """Fixed-window counter for one caller identifier."""

    count: int
    reset_at_ms: int
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
