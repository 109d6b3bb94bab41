from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from bookwave.logging import get_logger
from bookwave.service.clock import is_expired
from bookwave.service.errors import ConflictError, RateLimitedError
from bookwave.service.passwords import PasswordService
from bookwave.service.pending import STATUS_VERIFIED, PendingTicket, VerificationFlow
from bookwave.service.profiles import ProfileService, normalize_email
from bookwave.service.tokens import generate_opaque_token
from bookwave.storage.models import Profile

logger = get_logger(__name__)

PASSWORD_PROVIDER = "password"


@dataclass
class EmailCodeTicket:
    pending_token: str
    expires_at: datetime
    code_expires_at: Optional[datetime]


class EmailVerificationService:
    """Email OTP for registration and for password reset.

    Each purpose has its own flow and store; both end in a single-use
    continuation token (register token or reset token).
    """

    def __init__(
        self,
        register_flow: VerificationFlow,
        reset_flow: VerificationFlow,
        profiles: ProfileService,
        passwords: PasswordService,
        *,
        derived_token_ttl_minutes: float,
    ) -> None:
        self.register_flow = register_flow
        self.reset_flow = reset_flow
        self.profiles = profiles
        self.passwords = passwords
        self.derived_token_ttl_minutes = derived_token_ttl_minutes

    async def request_code(self, email: str) -> EmailCodeTicket:
        normalized = normalize_email(email)
        existing = await self.profiles.find_by_email(normalized)
        if existing is not None and await self.passwords.has_password(existing.id):
            raise ConflictError("email already registered", detail={"next_step": "login"})
        current = await self.register_flow.store.get_by_subject(normalized)
        if current is not None:
            if current.status == STATUS_VERIFIED and not is_expired(current.derived_expires_at):
                raise ConflictError("email already verified", detail={"next_step": "register"})
            wait = self.register_flow.resend_wait_seconds(current)
            if wait:
                raise RateLimitedError(
                    f"wait {wait} seconds before requesting a new code",
                    detail={"retry_after_seconds": wait},
                )
        ticket = await self.register_flow.create_pending(normalized, {"email": normalized})
        code_expires_at = await self.register_flow.request_code(ticket.token, normalized)
        return EmailCodeTicket(ticket.token, ticket.expires_at, code_expires_at)

    async def resend_code(self, pending_token: Optional[str]) -> datetime:
        record = await self.register_flow.lookup(pending_token)
        return await self.register_flow.request_code(pending_token, record.subject)

    async def verify_code(
        self, pending_token: Optional[str], code: str
    ) -> Tuple[str, datetime]:
        record = await self.register_flow.verify_code(pending_token, code)
        return await self.register_flow.issue_derived_token(
            record, self.derived_token_ttl_minutes
        )

    async def register(
        self, register_token: Optional[str], password: str, name: Optional[str] = None
    ) -> Profile:
        record = await self.register_flow.consume_derived_token(register_token)
        email = record.subject
        existing = await self.profiles.find_by_email(email)
        if existing is not None:
            if existing.provider != PASSWORD_PROVIDER:
                raise ConflictError(
                    "email linked to another sign-in provider",
                    detail={"provider": existing.provider},
                )
            if await self.passwords.has_password(existing.id):
                raise ConflictError("email already registered", detail={"next_step": "login"})
            profile = existing
        else:
            profile = await self.profiles.create(
                Profile.new(email, name=name, provider=PASSWORD_PROVIDER)
            )
        await self.passwords.save_password(profile.id, password)
        logger.info("email_registration_completed", profile_id=profile.id)
        return profile

    async def request_reset(self, email: str) -> EmailCodeTicket:
        """Start a reset; unknown emails get an inert ticket so callers can't enumerate accounts."""
        normalized = normalize_email(email)
        profile = await self.profiles.find_by_email(normalized)
        if profile is None or not await self.passwords.has_password(profile.id):
            logger.info("password_reset_unknown_account")
            inert = generate_opaque_token()
            expires_at = await self.reset_flow.time_source.expires_in(
                self.reset_flow.pending_ttl_minutes
            )
            return EmailCodeTicket(inert.clear, expires_at, None)
        ticket: PendingTicket = await self.reset_flow.create_pending(
            normalized, {"email": normalized, "profile_id": profile.id}
        )
        code_expires_at = await self.reset_flow.request_code(ticket.token, normalized)
        return EmailCodeTicket(ticket.token, ticket.expires_at, code_expires_at)

    async def verify_reset(
        self, pending_token: Optional[str], code: str
    ) -> Tuple[str, datetime]:
        record = await self.reset_flow.verify_code(pending_token, code)
        return await self.reset_flow.issue_derived_token(record, self.derived_token_ttl_minutes)

    async def confirm_reset(self, reset_token: Optional[str], new_password: str) -> str:
        record = await self.reset_flow.consume_derived_token(reset_token)
        profile_id = record.context["profile_id"]
        await self.passwords.save_password(profile_id, new_password)
        logger.info("password_reset_completed", profile_id=profile_id)
        return profile_id
