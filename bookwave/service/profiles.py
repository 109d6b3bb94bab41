from __future__ import annotations

import re
from typing import Any, Optional

from bookwave.logging import get_logger
from bookwave.service.clock import utcnow
from bookwave.service.errors import ConflictError, NotFoundError, ValidationError
from bookwave.storage.common import RelationalStore
from bookwave.storage.models import DEFAULT_LANGUAGE, Profile, ProfileDetails

logger = get_logger(__name__)

_PHONE_PATTERN = re.compile(r"^\+?\d{8,15}$")
_LANGUAGE_PATTERN = re.compile(r"^[A-Za-z]{2,3}(-[A-Za-z0-9]{2,8})*$")


def normalize_phone(phone: Optional[str]) -> str:
    """Strip whitespace, dashes and parentheses; validate E.164-like digits."""
    cleaned = re.sub(r"[\s\-().]", "", phone or "")
    if not _PHONE_PATTERN.match(cleaned):
        raise ValidationError("invalid phone number", detail={"field": "phone"})
    return cleaned


def normalize_language(language: Optional[str]) -> str:
    value = (language or "").strip()
    if not value or not _LANGUAGE_PATTERN.match(value):
        return DEFAULT_LANGUAGE
    return value


def normalize_email(email: str) -> str:
    return email.strip().lower()


class ProfileService:
    """Profile lookups and the details that gate session issuance."""

    def __init__(self, store: RelationalStore) -> None:
        self.store = store

    async def get(self, profile_id: str) -> Optional[Profile]:
        row = await self.store.find("profiles", {"id": profile_id})
        return Profile.from_row(row) if row else None

    async def require(self, profile_id: str) -> Profile:
        profile = await self.get(profile_id)
        if profile is None:
            raise NotFoundError("profile not found")
        return profile

    async def find_by_email(self, email: str) -> Optional[Profile]:
        row = await self.store.find("profiles", {"email": normalize_email(email)})
        return Profile.from_row(row) if row else None

    async def find_by_phone(self, phone: str) -> Optional[Profile]:
        details = await self.store.find("profile_details", {"phone": phone})
        if not details:
            return None
        return await self.get(details["profile_id"])

    async def create(self, profile: Profile) -> Profile:
        row = await self.store.insert("profiles", profile.to_row())
        logger.info("profile_created", profile_id=profile.id, provider=profile.provider)
        return Profile.from_row(row)

    async def upsert_by_email(
        self, email: str, *, name: Optional[str], provider: str, provider_sub: Optional[str]
    ) -> Profile:
        """Create the profile for ``email`` or refresh its name and provider binding."""
        normalized = normalize_email(email)
        existing = await self.find_by_email(normalized)
        if existing is None:
            return await self.create(
                Profile.new(normalized, name=name, provider=provider, provider_sub=provider_sub)
            )
        row: dict[str, Any] = {
            "id": existing.id,
            "email": normalized,
            "provider": provider,
            "provider_sub": provider_sub,
            "name": name or existing.name,
        }
        return Profile.from_row(await self.store.upsert("profiles", row, "email"))

    async def get_details(self, profile_id: str) -> ProfileDetails:
        row = await self.store.find("profile_details", {"profile_id": profile_id})
        if not row:
            return ProfileDetails(profile_id=profile_id)
        return ProfileDetails.from_row(row)

    async def save_details(self, profile_id: str, **changes: Any) -> ProfileDetails:
        allowed = {"phone", "language", "genre", "accepted_terms"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"unknown profile detail fields: {sorted(unknown)}")
        if "language" in changes:
            changes["language"] = normalize_language(changes["language"])
        current = await self.get_details(profile_id)
        row = {**current.to_row(), **changes, "updated_at": utcnow()}
        return ProfileDetails.from_row(await self.store.upsert("profile_details", row, "profile_id"))

    async def ensure_phone_available(self, phone: str, profile_id: Optional[str]) -> None:
        owner = await self.store.find("profile_details", {"phone": phone})
        if owner and owner["profile_id"] != profile_id:
            logger.warning("phone_already_bound", profile_id=profile_id)
            raise ConflictError("phone number already linked to another account")

    async def mark_terms_accepted(
        self, profile_id: str, *, language: Optional[str] = None, genre: Optional[str] = None
    ) -> ProfileDetails:
        changes: dict[str, Any] = {"accepted_terms": True}
        if language:
            changes["language"] = language
        if genre:
            changes["genre"] = genre
        details = await self.save_details(profile_id, **changes)
        logger.info("terms_accepted", profile_id=profile_id)
        return details

    async def describe(self, profile: Profile) -> dict[str, Any]:
        details = await self.get_details(profile.id)
        return {
            "id": profile.id,
            "email": profile.email,
            "name": profile.name,
            "provider": profile.provider,
            "phone": details.phone,
            "language": details.language,
            "genre": details.genre,
            "accepted_terms": details.accepted_terms,
        }
