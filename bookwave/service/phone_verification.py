from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple

from bookwave.logging import get_logger
from bookwave.service.clock import is_expired
from bookwave.service.errors import (
    AttemptsExceededError,
    AuthenticationError,
    ValidationError,
)
from bookwave.service.pending import PendingRecord, PendingTicket, VerificationFlow
from bookwave.service.profiles import ProfileService, normalize_language, normalize_phone
from bookwave.storage.models import Profile

logger = get_logger(__name__)

PHONE_PROVIDER = "phone"


@dataclass
class PhoneVerificationResult:
    profile: Profile
    provider: str
    provider_sub: Optional[str]


class PhoneVerificationService:
    """Phone OTP flow, bound to both a pending token and the requesting device.

    Two entry points share one state machine:
    - the login gate starts a record for a profile that has no phone yet;
    - passwordless login starts a record keyed by the phone number itself and
      creates the profile once the code is verified.
    """

    def __init__(self, flow: VerificationFlow, profiles: ProfileService) -> None:
        self.flow = flow
        self.profiles = profiles
        # machine code -> (pending token hash, binding expiry)
        self._machine_codes: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    async def start_for_profile(
        self, profile_id: str, *, provider: str, provider_sub: Optional[str]
    ) -> PendingTicket:
        return await self.flow.create_pending(
            f"profile:{profile_id}",
            {"profile_id": profile_id, "provider": provider, "provider_sub": provider_sub},
        )

    async def start_passwordless(
        self,
        phone: str,
        machine_code: str,
        *,
        language: Optional[str] = None,
        accept_terms: bool = False,
    ) -> Tuple[PendingTicket, datetime]:
        normalized = normalize_phone(phone)
        existing = await self.profiles.find_by_phone(normalized)
        ticket = await self.flow.create_pending(
            f"phone:{normalized}",
            {
                "profile_id": existing.id if existing else None,
                "provider": existing.provider if existing else PHONE_PROVIDER,
                "provider_sub": existing.provider_sub if existing else normalized,
                "phone": normalized,
                "language": normalize_language(language),
                "accept_terms": bool(accept_terms),
                "passwordless": True,
            },
        )
        code_expires_at = await self.request_code(ticket.token, normalized, machine_code)
        return ticket, code_expires_at

    async def request_code(
        self, pending_token: Optional[str], phone: str, machine_code: str
    ) -> datetime:
        record = await self.flow.lookup(pending_token)
        if not machine_code:
            raise ValidationError("machine code required", detail={"field": "machine_code"})
        normalized = normalize_phone(phone)
        if record.context.get("passwordless") and normalized != record.context.get("phone"):
            raise ValidationError("phone does not match pending login")
        profile_id = record.context.get("profile_id")
        if profile_id:
            await self.profiles.ensure_phone_available(normalized, profile_id)
        record.context["phone"] = normalized
        code_expires_at = await self.flow.request_code(pending_token, normalized)
        self._bind_device(machine_code, record)
        return code_expires_at

    async def verify_code(
        self, pending_token: Optional[str], code: str, machine_code: str
    ) -> PhoneVerificationResult:
        """Check the code and bind the phone.

        Once the code matches, the pending record is consumed even if binding
        fails (e.g. the phone was claimed meanwhile), so a conflict ends the flow.
        """
        record = await self.flow.lookup(pending_token)
        if not self._device_matches(machine_code, record):
            logger.warning("phone_code_device_mismatch")
            raise ValidationError("code not requested for this device")
        try:
            verified = await self.flow.verify_code(pending_token, code)
        except AttemptsExceededError:
            self._unbind(machine_code)
            raise
        try:
            profile = await self._complete(verified)
        finally:
            await self.flow.finish(verified)
            self._unbind(machine_code)
        return PhoneVerificationResult(
            profile=profile,
            provider=verified.context.get("provider") or PHONE_PROVIDER,
            provider_sub=verified.context.get("provider_sub"),
        )

    async def _complete(self, record: PendingRecord) -> Profile:
        phone = record.context.get("phone")
        if not phone:
            raise ValidationError("code not requested")
        profile_id = record.context.get("profile_id")
        if profile_id:
            profile = await self.profiles.get(profile_id)
            if profile is None:
                raise AuthenticationError("invalid token")
        else:
            # Passwordless login: the phone may have been claimed meanwhile
            profile = await self.profiles.find_by_phone(phone)
            if profile is None:
                profile = await self.profiles.create(
                    Profile.new(None, provider=PHONE_PROVIDER, provider_sub=phone)
                )
        await self.profiles.ensure_phone_available(phone, profile.id)
        changes = {"phone": phone}
        if record.context.get("language"):
            changes["language"] = record.context["language"]
        if record.context.get("accept_terms"):
            changes["accepted_terms"] = True
        await self.profiles.save_details(profile.id, **changes)
        logger.info("phone_verified", profile_id=profile.id)
        return profile

    def _bind_device(self, machine_code: str, record: PendingRecord) -> None:
        with self._lock:
            stale = [
                code for code, (token_hash, expires_at) in self._machine_codes.items()
                if token_hash == record.token_hash or is_expired(expires_at)
            ]
            for code in stale:
                self._machine_codes.pop(code, None)
            self._machine_codes[machine_code] = (record.token_hash, record.expires_at)

    def _device_matches(self, machine_code: Optional[str], record: PendingRecord) -> bool:
        if not machine_code:
            return False
        with self._lock:
            binding = self._machine_codes.get(machine_code)
        if binding is None:
            return False
        token_hash, expires_at = binding
        return token_hash == record.token_hash and not is_expired(expires_at)

    def _unbind(self, machine_code: str) -> None:
        with self._lock:
            self._machine_codes.pop(machine_code, None)
