from __future__ import annotations

import asyncio
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Set

from bookwave.logging import get_logger
from bookwave.service.clock import TimeSource, utcnow
from bookwave.service.email_verification import PASSWORD_PROVIDER, EmailVerificationService
from bookwave.service.errors import AuthenticationError, ConflictError, ValidationError
from bookwave.service.passwords import PasswordService
from bookwave.service.pending import PendingTicket
from bookwave.service.phone_verification import PhoneVerificationService
from bookwave.service.profiles import ProfileService
from bookwave.service.terms import TermsAcceptanceService
from bookwave.service.tokens import base64url_decode, generate_opaque_token, hash_token
from bookwave.storage.common import RelationalStore, lt
from bookwave.storage.models import Profile, SessionContext, SessionRecord

logger = get_logger(__name__)


def decode_identity_claims(id_token: str) -> Dict[str, Any]:
    """Decode the payload segment of an identity assertion without verifying it.

    Trailing garbage after the JSON object is tolerated by cutting at the last
    closing brace before giving up.
    """
    # TODO: verify the signature and issuer against the provider's JWKS before
    # trusting these claims.
    parts = (id_token or "").split(".")
    if len(parts) < 2 or not parts[1]:
        raise ValidationError("malformed identity token")
    try:
        raw = base64url_decode(parts[1]).decode("utf-8", errors="replace")
    except (ValueError, binascii.Error) as exc:
        raise ValidationError("malformed identity token") from exc
    try:
        claims = json.loads(raw)
    except json.JSONDecodeError:
        cut = raw.rfind("}")
        if cut == -1:
            raise ValidationError("malformed identity token")
        try:
            claims = json.loads(raw[: cut + 1])
        except json.JSONDecodeError as exc:
            raise ValidationError("malformed identity token") from exc
    if not isinstance(claims, dict):
        raise ValidationError("malformed identity token")
    return claims


@dataclass
class LoginResult:
    """Outcome of a login step: either a full session or the next gate."""

    user: Dict[str, Any]
    session_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    requires_phone: bool = False
    requires_terms_acceptance: bool = False
    pending_token: Optional[str] = field(default=None, repr=False)
    pending_expires_at: Optional[datetime] = None

    @property
    def permission(self) -> bool:
        return self.session_token is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_token": self.session_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "requires_phone": self.requires_phone,
            "requires_terms_acceptance": self.requires_terms_acceptance,
            "pending_token": self.pending_token,
            "pending_expires_at": (
                self.pending_expires_at.isoformat() if self.pending_expires_at else None
            ),
            "permission": self.permission,
            "user": self.user,
        }


class SessionIssuer:
    """Turns resolved identities into opaque-token sessions.

    A full session (``permission=True``) is only issued once the profile has a
    phone and has accepted the terms; otherwise a restricted token tied to the
    matching pending flow is persisted and returned instead.
    """

    def __init__(
        self,
        store: RelationalStore,
        time_source: TimeSource,
        profiles: ProfileService,
        passwords: PasswordService,
        phone: PhoneVerificationService,
        terms: TermsAcceptanceService,
        email: EmailVerificationService,
        *,
        session_ttl_minutes: float,
        refresh_grace_seconds: float,
    ) -> None:
        self.store = store
        self.time_source = time_source
        self.profiles = profiles
        self.passwords = passwords
        self.phone = phone
        self.terms = terms
        self.email = email
        self.session_ttl_minutes = session_ttl_minutes
        self.refresh_grace_seconds = refresh_grace_seconds
        self._deferred: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------ login

    async def login_with_password(self, email: str, password: str) -> LoginResult:
        profile = await self.profiles.find_by_email(email)
        if profile is None or not await self.passwords.verify_password(profile.id, password):
            raise AuthenticationError("invalid credentials")
        return await self.complete_login(profile, PASSWORD_PROVIDER, None)

    async def login_with_provider(self, provider: str, id_token: str) -> LoginResult:
        claims = decode_identity_claims(id_token)
        subject = claims.get("sub")
        email = claims.get("email")
        if not subject or not email or not isinstance(email, str):
            raise AuthenticationError("identity token missing required claims")
        existing = await self.profiles.find_by_email(email)
        if existing is not None:
            if existing.provider != provider:
                logger.warning(
                    "provider_conflict", profile_id=existing.id, provider=provider, bound=existing.provider
                )
                raise ConflictError(
                    "email linked to another sign-in provider",
                    detail={"provider": existing.provider},
                )
            if existing.provider_sub and existing.provider_sub != str(subject):
                raise ConflictError("email linked to another account at this provider")
        profile = await self.profiles.upsert_by_email(
            email, name=claims.get("name"), provider=provider, provider_sub=str(subject)
        )
        return await self.complete_login(profile, provider, str(subject))

    async def start_phone_login(
        self,
        phone: str,
        machine_code: str,
        *,
        language: Optional[str] = None,
        accept_terms: bool = False,
    ) -> Dict[str, Any]:
        ticket, code_expires_at = await self.phone.start_passwordless(
            phone, machine_code, language=language, accept_terms=accept_terms
        )
        return {
            "pending_token": ticket.token,
            "expires_at": ticket.expires_at.isoformat(),
            "code_expires_at": code_expires_at.isoformat(),
        }

    async def verify_phone_code(
        self, pending_token: Optional[str], code: str, machine_code: str
    ) -> LoginResult:
        result = await self.phone.verify_code(pending_token, code, machine_code)
        return await self.complete_login(result.profile, result.provider, result.provider_sub)

    async def accept_terms(
        self,
        pending_token: Optional[str],
        *,
        language: Optional[str] = None,
        genre: Optional[str] = None,
    ) -> LoginResult:
        result = await self.terms.accept(pending_token, language=language, genre=genre)
        return await self.complete_login(result.profile, result.provider, result.provider_sub)

    async def register_with_email(
        self, register_token: Optional[str], password: str, name: Optional[str] = None
    ) -> LoginResult:
        profile = await self.email.register(register_token, password, name)
        return await self.complete_login(profile, PASSWORD_PROVIDER, None)

    async def confirm_password_reset(self, reset_token: Optional[str], new_password: str) -> int:
        profile_id = await self.email.confirm_reset(reset_token, new_password)
        return await self.revoke_user_sessions(profile_id)

    # ------------------------------------------------------------------- gate

    async def complete_login(
        self, profile: Profile, provider: str, provider_sub: Optional[str]
    ) -> LoginResult:
        details = await self.profiles.get_details(profile.id)
        if not details.phone:
            ticket = await self.phone.start_for_profile(
                profile.id, provider=provider, provider_sub=provider_sub
            )
            await self._persist_restricted(profile.id, ticket, provider, provider_sub)
            logger.info("login_requires_phone", user_id=profile.id)
            return LoginResult(
                user=await self.profiles.describe(profile),
                requires_phone=True,
                pending_token=ticket.token,
                pending_expires_at=ticket.expires_at,
            )
        if not details.accepted_terms:
            ticket = await self.terms.start(profile.id, provider=provider, provider_sub=provider_sub)
            await self._persist_restricted(profile.id, ticket, provider, provider_sub)
            logger.info("login_requires_terms", user_id=profile.id)
            return LoginResult(
                user=await self.profiles.describe(profile),
                requires_terms_acceptance=True,
                pending_token=ticket.token,
                pending_expires_at=ticket.expires_at,
            )
        return await self.issue_session(profile, provider, provider_sub)

    async def _persist_restricted(
        self,
        user_id: str,
        ticket: PendingTicket,
        provider: str,
        provider_sub: Optional[str],
    ) -> None:
        # At most one outstanding auth-flow token per user
        await self.store.delete("tokens", {"user_id": user_id, "permission": False})
        record = SessionRecord.new(
            user_id,
            ticket.token_hash,
            provider=provider,
            provider_sub=provider_sub,
            expires_at=ticket.expires_at,
            permission=False,
        )
        await self.store.insert("tokens", record.to_row())

    async def issue_session(
        self, profile: Profile, provider: str, provider_sub: Optional[str]
    ) -> LoginResult:
        token = generate_opaque_token()
        expires_at = await self.time_source.expires_in(self.session_ttl_minutes)
        record = SessionRecord.new(
            profile.id,
            token.hash,
            provider=provider,
            provider_sub=provider_sub,
            expires_at=expires_at,
            permission=True,
        )
        # Persist before anything is handed back to the client
        await self.store.insert("tokens", record.to_row())
        await self.store.delete("tokens", {"user_id": profile.id, "permission": False})
        logger.info("session_issued", user_id=profile.id, token_id=record.id, provider=provider)
        return LoginResult(
            user=await self.profiles.describe(profile),
            session_token=token.clear,
            expires_at=expires_at,
        )

    # ---------------------------------------------------------------- session

    async def get_record(self, clear_token: Optional[str]) -> Optional[SessionRecord]:
        if not clear_token:
            return None
        row = await self.store.find("tokens", {"token_hash": hash_token(clear_token)})
        if not row:
            return None
        record = SessionRecord.from_row(row)
        if not record.is_active(utcnow()):
            return None
        return record

    async def resolve(self, clear_token: Optional[str]) -> Optional[SessionContext]:
        record = await self.get_record(clear_token)
        if record is None:
            return None
        return SessionContext.from_record(record, clear_token or "")

    async def refresh_session_token(self, clear_token: Optional[str]) -> LoginResult:
        """Exchange a full session token for a new one.

        The old token can be exchanged once. It keeps resolving until the grace
        window ends so in-flight requests still succeed, but a second refresh
        with it is rejected.
        """
        record = await self.get_record(clear_token)
        if record is None or not record.permission or record.rotated_at is not None:
            raise AuthenticationError("invalid token")
        profile = await self.profiles.get(record.user_id)
        if profile is None:
            await self.store.delete("tokens", {"id": record.id})
            raise AuthenticationError("invalid token")
        now = utcnow()
        grace_end = now + timedelta(seconds=self.refresh_grace_seconds)
        # Compare-and-set: only one refresh may claim the row
        claimed = await self.store.update(
            "tokens",
            {"id": record.id, "rotated_at": None},
            {"rotated_at": now, "expires_at": min(record.expires_at, grace_end)},
        )
        if not claimed:
            logger.warning("session_refresh_replayed", user_id=record.user_id, token_id=record.id)
            raise AuthenticationError("invalid token")
        result = await self.complete_login(profile, record.provider, record.provider_sub)
        if result.session_token is None:
            # Profile regressed (phone removed or consent revoked)
            await self.store.delete("tokens", {"id": record.id})
            logger.info("session_refresh_regressed", user_id=record.user_id, token_id=record.id)
            return result
        self._schedule_deletion(record.id, self.refresh_grace_seconds)
        logger.info("session_refreshed", user_id=record.user_id, old_token_id=record.id)
        return result

    def _schedule_deletion(self, token_id: str, delay: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._delete_later(token_id, delay))
        self._deferred.add(task)
        task.add_done_callback(self._deferred.discard)

    async def _delete_later(self, token_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            removed = await self.store.delete("tokens", {"id": token_id})
        except Exception as exc:
            # expires_at is already clamped, so the token stops working regardless
            logger.error("deferred_token_delete_failed", token_id=token_id, error=str(exc))
            return
        logger.debug("deferred_token_deleted", token_id=token_id, removed=removed)

    async def logout(self, clear_token: str) -> bool:
        removed = await self.store.delete("tokens", {"token_hash": hash_token(clear_token)})
        return removed > 0

    async def revoke_user_sessions(self, user_id: str) -> int:
        revoked = await self.store.update(
            "tokens", {"user_id": user_id, "revoked_at": None}, {"revoked_at": utcnow()}
        )
        logger.info("user_sessions_revoked", user_id=user_id, count=revoked)
        return revoked

    async def sweep_expired(self) -> int:
        removed = await self.store.delete("tokens", {"expires_at": lt(utcnow())})
        if removed:
            logger.info("expired_tokens_swept", count=removed)
        return removed

    async def shutdown(self) -> None:
        tasks = list(self._deferred)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._deferred.clear()
