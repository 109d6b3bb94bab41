from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from bookwave.logging import get_logger
from bookwave.service.errors import AuthenticationError, ValidationError
from bookwave.service.pending import PendingFlow, PendingTicket
from bookwave.service.profiles import ProfileService
from bookwave.storage.models import Profile

logger = get_logger(__name__)


@dataclass
class TermsAcceptanceResult:
    profile: Profile
    provider: str
    provider_sub: Optional[str]


class TermsAcceptanceService:
    """Pending terms acceptance; only offered once the profile has a phone."""

    def __init__(self, flow: PendingFlow, profiles: ProfileService) -> None:
        self.flow = flow
        self.profiles = profiles

    async def start(
        self, profile_id: str, *, provider: str, provider_sub: Optional[str]
    ) -> PendingTicket:
        details = await self.profiles.get_details(profile_id)
        if not details.phone:
            raise ValidationError("phone required before accepting terms")
        return await self.flow.create_pending(
            f"profile:{profile_id}",
            {"profile_id": profile_id, "provider": provider, "provider_sub": provider_sub},
        )

    async def accept(
        self,
        pending_token: Optional[str],
        *,
        language: Optional[str] = None,
        genre: Optional[str] = None,
    ) -> TermsAcceptanceResult:
        record = await self.flow.lookup(pending_token)
        profile = await self.profiles.get(record.context["profile_id"])
        if profile is None:
            await self.flow.finish(record)
            raise AuthenticationError("invalid token")
        await self.profiles.mark_terms_accepted(profile.id, language=language, genre=genre)
        await self.flow.finish(record)
        return TermsAcceptanceResult(
            profile=profile,
            provider=record.context.get("provider") or profile.provider,
            provider_sub=record.context.get("provider_sub"),
        )
