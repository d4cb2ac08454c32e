from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionguard.config import Settings


class PasswordVerifier:
    """Argon2id hashing and verification. Never logs or stores plaintext."""

    def __init__(self, settings: Settings) -> None:
        self._hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, stored_hash: str) -> bool:
        """True iff ``plaintext`` matches ``stored_hash``.

        A malformed or foreign hash is treated as a mismatch.
        """
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False

