from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from sessionward.logging import get_logger
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import Role, UserAccount

# Fields callers may never overwrite through update_user
_IMMUTABLE_FIELDS = {"id", "created_at"}


class MemoryStore:
    """In-process account store.

    Records are handed out as copies; every change goes through
    ``update_user`` or ``update_user_if`` under the data lock, so a
    single-record read-modify-write is atomic. When ``fs_root`` is given the
    accounts are mirrored to ``<fs_root>/state/users.json``.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserAccount] = {}
        self._email_index: Dict[str, str] = {}
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    def _state_path(self) -> Path:
        if self.fs_root is None:
            raise RuntimeError("account state persistence needs an fs_root")
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "users.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"users": [user.to_record() for user in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist account state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            record["id"]: UserAccount.from_record(record)
            for record in data.get("users", [])
        }
        self._email_index = {
            self._normalize_email(user.email): user.id for user in self.users.values()
        }
        self.logger.info("account_state_loaded", users=len(self.users))
        return True

    def find_user_by_email(self, email: str) -> Optional[UserAccount]:
        with self._data_lock:
            user_id = self._email_index.get(self._normalize_email(email))
            user = self.users.get(user_id) if user_id else None
            return replace(user) if user else None

    def find_user_by_id(self, user_id: str) -> Optional[UserAccount]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def find_user_by_reset_token(self, token_hash: str) -> Optional[UserAccount]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.reset_token_hash == token_hash),
                None,
            )
            return replace(user) if user else None

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def create_user(self, fields: Mapping[str, Any]) -> UserAccount:
        record = dict(fields)
        email = self._normalize_email(record["email"])
        record["email"] = email
        if isinstance(record.get("role"), str):
            record["role"] = Role(record["role"])
        with self._data_lock:
            if email in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if record["id"] in self.users:
                raise ConstraintViolation("id already exists", {"field": "id"})
            user = UserAccount(**record)
            self.users[user.id] = user
            self._email_index[email] = user.id
            self._persist_state()
            return replace(user)

    def _apply(self, user: UserAccount, changes: Mapping[str, Any]) -> None:
        for key, value in changes.items():
            if key in _IMMUTABLE_FIELDS or not hasattr(user, key):
                raise ValueError(f"cannot update field '{key}'")
            if key == "email":
                value = self._normalize_email(value)
                owner = self._email_index.get(value)
                if owner and owner != user.id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                self._email_index.pop(self._normalize_email(user.email), None)
                self._email_index[value] = user.id
            setattr(user, key, value)
        user.updated_at = datetime.now(timezone.utc)

    def update_user(
        self, user_id: str, changes: Mapping[str, Any]
    ) -> Optional[UserAccount]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self._apply(user, changes)
            self._persist_state()
            return replace(user)

    def update_user_if(
        self,
        user_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Optional[UserAccount]:
        """Apply ``changes`` only if every ``expected`` field still holds.

        Returns the updated record, or ``None`` when the record is gone or
        one of the expected values has changed underneath the caller.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in expected.items():
                if getattr(user, key) != value:
                    return None
            self._apply(user, changes)
            self._persist_state()
            return replace(user)
