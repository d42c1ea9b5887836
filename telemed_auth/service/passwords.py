from __future__ import annotations

import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from telemed_auth.logging import get_logger

logger = get_logger(__name__)


class CredentialVerifier:
    """argon2id hashing with constant-time verification."""

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 64 * 1024) -> None:
        self._pwd_hasher = PasswordHasher(
            type=Type.ID, time_cost=time_cost, memory_cost=memory_cost
        )
        # Verified against when the account does not exist, so an unknown
        # email costs the same as a wrong password.
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, credential_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(credential_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            logger.warning("credential_hash_unverifiable")
            return False

    def verify_dummy(self, password: str) -> bool:
        self.verify(self._dummy_hash, password)
        return False

    def needs_rehash(self, credential_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(credential_hash)
        except InvalidHashError:
            return True
