from __future__ import annotations

import asyncio

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from classifieds.config import Settings
from classifieds.logging import get_logger

logger = get_logger(__name__)


class PasswordHasherGateway:
    """Argon2id hashing with cost parameters pinned by configuration.

    ``verify`` answers ``False`` for a wrong password and for a digest it
    cannot parse; it never raises for either.
    """

    def __init__(
        self,
        *,
        memory_cost: int = 19456,
        time_cost: int = 2,
        parallelism: int = 1,
    ) -> None:
        self._hasher = PasswordHasher(
            type=Type.ID,
            memory_cost=memory_cost,
            time_cost=time_cost,
            parallelism=parallelism,
        )
        # Decoy digest for unknown-account logins so both paths pay for a verify
        self._dummy_digest = self._hasher.hash("classifieds-timing-decoy")

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordHasherGateway":
        return cls(
            memory_cost=settings.argon2_memory_cost,
            time_cost=settings.argon2_time_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, digest: str, password: str) -> bool:
        try:
            return self._hasher.verify(digest, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_digest_unusable")
            return False

    def verify_dummy(self, password: str) -> bool:
        self.verify(self._dummy_digest, password)
        return False

    async def hash_async(self, password: str) -> str:
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(self, digest: str, password: str) -> bool:
        return await asyncio.to_thread(self.verify, digest, password)

    async def verify_dummy_async(self, password: str) -> bool:
        return await asyncio.to_thread(self.verify_dummy, password)
