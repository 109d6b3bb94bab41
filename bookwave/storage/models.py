from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

DEFAULT_LANGUAGE = "en-US"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Profile:
    id: str
    email: Optional[str]
    name: Optional[str] = None
    provider: str = "password"
    provider_sub: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        email: Optional[str],
        *,
        name: Optional[str] = None,
        provider: str = "password",
        provider_sub: Optional[str] = None,
    ) -> "Profile":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            provider=provider,
            provider_sub=provider_sub,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Profile":
        return cls(
            id=row["id"],
            email=row.get("email"),
            name=row.get("name"),
            provider=row.get("provider") or "password",
            provider_sub=row.get("provider_sub"),
            created_at=row.get("created_at") or _utcnow(),
        )

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProfileDetails:
    profile_id: str
    phone: Optional[str] = None
    language: str = DEFAULT_LANGUAGE
    genre: Optional[str] = None
    accepted_terms: bool = False
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ProfileDetails":
        return cls(
            profile_id=row["profile_id"],
            phone=row.get("phone"),
            language=row.get("language") or DEFAULT_LANGUAGE,
            genre=row.get("genre"),
            accepted_terms=bool(row.get("accepted_terms")),
            updated_at=row.get("updated_at") or _utcnow(),
        )

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionRecord:
    """Persisted opaque-token session; only the token hash is stored.

    ``permission`` is False for restricted auth-flow tokens that can only
    complete a pending verification. ``rotated_at`` is set once the token has
    been exchanged by a refresh; the row then only lives out its grace window.
    """

    id: str
    user_id: str
    token_hash: str
    provider: str
    provider_sub: Optional[str]
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    rotated_at: Optional[datetime] = None
    permission: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        *,
        provider: str,
        provider_sub: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        ttl_minutes: float = 60 * 24,
        permission: bool = True,
        issued_at: Optional[datetime] = None,
    ) -> "SessionRecord":
        now = issued_at or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            provider=provider,
            provider_sub=provider_sub,
            issued_at=now,
            expires_at=expires_at or now + timedelta(minutes=ttl_minutes),
            permission=permission,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SessionRecord":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            token_hash=row["token_hash"],
            provider=row.get("provider") or "password",
            provider_sub=row.get("provider_sub"),
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            rotated_at=row.get("rotated_at"),
            permission=bool(row.get("permission", True)),
        )

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        current = now or _utcnow()
        return self.revoked_at is None and current <= self.expires_at


@dataclass
class SessionContext:
    """Identity attached to an authenticated request."""

    user_id: str
    token_id: str
    provider: str
    provider_sub: Optional[str]
    expires_at: datetime
    permission: bool
    token: str = field(repr=False, default="")

    @classmethod
    def from_record(cls, record: SessionRecord, token: str) -> "SessionContext":
        return cls(
            user_id=record.user_id,
            token_id=record.id,
            provider=record.provider,
            provider_sub=record.provider_sub,
            expires_at=record.expires_at,
            permission=record.permission,
            token=token,
        )
