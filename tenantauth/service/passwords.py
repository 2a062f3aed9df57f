from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.logging import get_logger

logger = get_logger(__name__)


class PasswordVerifier:
    """argon2id hashing and verification."""

    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the account does not exist so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("tenantauth-timing-equalizer")

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            self.burn(password)
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False

    def burn(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password or "")
        except VerifyMismatchError:
            pass
