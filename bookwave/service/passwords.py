from __future__ import annotations

from typing import Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from bookwave.logging import get_logger
from bookwave.service.clock import utcnow
from bookwave.storage.common import RelationalStore

PASSWORD_ALGO = "argon2id"


class PasswordService:
    """argon2id password hashes stored one row per profile."""

    def __init__(self, store: RelationalStore) -> None:
        self.store = store
        self.logger = get_logger(__name__)
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    async def has_password(self, profile_id: str) -> bool:
        return await self.store.find("passwords", {"profile_id": profile_id}) is not None

    async def save_password(self, profile_id: str, password: str) -> None:
        """Hash and save a new password for a profile."""
        pwd_hash, algo = self._hash_password(password)
        await self.store.upsert(
            "passwords",
            {
                "profile_id": profile_id,
                "password_hash": pwd_hash,
                "password_algo": algo,
                "updated_at": utcnow(),
            },
            "profile_id",
        )

    async def verify_password(self, profile_id: str, password: str) -> bool:
        record = await self.store.find("passwords", {"profile_id": profile_id})
        if not record:
            self.logger.warning("password_record_missing", profile_id=profile_id)
            return False
        if record.get("password_algo") != PASSWORD_ALGO:
            self.logger.warning(
                "password_algo_mismatch", profile_id=profile_id, algo=record.get("password_algo")
            )
            return False
        stored_hash = record["password_hash"]
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", profile_id=profile_id)
            return False
        if self._pwd_hasher.check_needs_rehash(stored_hash):
            await self.save_password(profile_id, password)
        return True
