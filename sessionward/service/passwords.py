from __future__ import annotations

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionward.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing behind the ``hash``/``verify`` pair the session layer uses."""

    def __init__(self, hasher: Argon2Hasher | None = None) -> None:
        self._hasher = hasher or Argon2Hasher(type=Type.ID)
        # Verified against when the account does not exist, so a miss costs
        # the same as a wrong password
        self._dummy_digest = self._hasher.hash("sessionward-dummy-password")

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str) -> bool:
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def burn(self, plaintext: str) -> None:
        self.verify(plaintext, self._dummy_digest)
