from __future__ import annotations

from typing import Optional

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tutorauth.logging import get_logger

MAX_CREDENTIAL_LENGTH = 1000
_LEGACY_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


class CredentialVerifier:
    """Slow salted password hashing.

    New hashes are argon2id. Hashes are self-describing, so older argon2
    parameters and legacy bcrypt hashes still verify; ``needs_rehash`` tells
    the caller to upgrade them after a successful login.
    """

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self.logger = get_logger(__name__)

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    @staticmethod
    def is_legacy(stored_hash: str) -> bool:
        return stored_hash.startswith(_LEGACY_BCRYPT_PREFIXES)

    def verify(self, password: str, stored_hash: Optional[str]) -> bool:
        if not stored_hash:
            return False
        if self.is_legacy(stored_hash):
            try:
                return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
            except ValueError as exc:
                self.logger.warning("password_hash_invalid", scheme="bcrypt", error=str(exc))
                return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError, ValueError) as exc:
            # ValueError covers passwords that cannot be UTF-8 encoded
            self.logger.warning("password_hash_invalid", scheme="argon2", error=str(exc))
            return False

    def needs_rehash(self, stored_hash: Optional[str]) -> bool:
        if not stored_hash:
            return False
        if self.is_legacy(stored_hash):
            return True
        try:
            return self._pwd_hasher.check_needs_rehash(stored_hash)
        except (InvalidHash, ValueError):
            return False
