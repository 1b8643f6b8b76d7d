from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from storefront_auth.logging import get_logger

logger = get_logger(__name__)


class PasswordService:
    """Argon2id hashing with a per-call random salt.

    Cost parameters come from settings so tests can run with cheap hashes
    while production keeps each hash in the tens of milliseconds.
    """

    def __init__(self, *, time_cost: int = 3, memory_cost_kib: int = 64 * 1024) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost_kib, type=Type.ID
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, hashed: Optional[str]) -> bool:
        """Return True when ``plaintext`` matches ``hashed``.

        Accounts created through an external identity have no hash; those
        and malformed hashes verify as False instead of raising.
        """
        if not hashed or plaintext is None:
            return False
        try:
            return self._hasher.verify(hashed, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, hashed: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(hashed)
        except InvalidHash:
            return False
