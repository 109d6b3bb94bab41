"""Short-lived pending-verification records and the code state machine.

A record is created when a flow starts, mutated while codes are issued and
attempted, and destroyed on success, on derived-token consumption, on attempt
exhaustion or on expiry. Expiry is checked lazily on every read; the
per-record timers only reclaim memory early.
"""

from __future__ import annotations

import asyncio
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol, Tuple

from bookwave.logging import get_logger
from bookwave.service.clock import TimeSource, is_expired, utcnow
from bookwave.service.errors import (
    AttemptsExceededError,
    AuthenticationError,
    RateLimitedError,
    ValidationError,
    VerificationCodeExpiredError,
)
from bookwave.service.notifications import CodeDispatcher
from bookwave.service.tokens import (
    generate_numeric_code,
    generate_opaque_token,
    hash_code,
    hash_token,
    tokens_match,
)

logger = get_logger(__name__)

STATUS_PENDING = "pending"
STATUS_CODE_SENT = "code_sent"
STATUS_VERIFIED = "verified"


@dataclass
class PendingRecord:
    token_hash: str
    subject: str
    expires_at: datetime
    status: str = STATUS_PENDING
    code_hash: Optional[str] = None
    code_expires_at: Optional[datetime] = None
    code_sent_at: Optional[datetime] = None
    attempts: int = 0
    derived_token_hash: Optional[str] = None
    derived_expires_at: Optional[datetime] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return is_expired(self.expires_at, now)


@dataclass(frozen=True)
class PendingTicket:
    token: str = field(repr=False)
    token_hash: str
    expires_at: datetime


class PendingStore(Protocol):
    async def put(self, record: PendingRecord) -> None:
        ...

    async def get(self, token_hash: str) -> Optional[PendingRecord]:
        ...

    async def get_by_subject(self, subject: str) -> Optional[PendingRecord]:
        ...

    async def get_by_derived(self, derived_hash: str) -> Optional[PendingRecord]:
        ...

    async def delete(self, token_hash: str) -> Optional[PendingRecord]:
        ...

    async def sweep(self) -> int:
        ...


class InMemoryPendingStore:
    """Process-local pending records with subject and derived-token indexes.

    ``put`` for a subject that already owns a record drops the older record,
    so at most one record per subject exists.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._records: Dict[str, PendingRecord] = {}
        self._by_subject: Dict[str, str] = {}
        self._by_derived: Dict[str, str] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._records)

    async def put(self, record: PendingRecord) -> None:
        with self._lock:
            prior = self._by_subject.get(record.subject)
            if prior is not None and prior != record.token_hash:
                self._remove(prior)
                logger.info("pending_record_superseded", flow=self.name)
            stale_derived = [
                derived for derived, owner in self._by_derived.items()
                if owner == record.token_hash and derived != record.derived_token_hash
            ]
            for derived in stale_derived:
                self._by_derived.pop(derived, None)
            self._records[record.token_hash] = record
            self._by_subject[record.subject] = record.token_hash
            if record.derived_token_hash:
                self._by_derived[record.derived_token_hash] = record.token_hash
            self._schedule_expiry(record)

    async def get(self, token_hash: str) -> Optional[PendingRecord]:
        with self._lock:
            record = self._records.get(token_hash)
            if record is None:
                return None
            if record.is_expired():
                self._remove(token_hash)
                return None
            return record

    async def get_by_subject(self, subject: str) -> Optional[PendingRecord]:
        with self._lock:
            token_hash = self._by_subject.get(subject)
        if token_hash is None:
            return None
        return await self.get(token_hash)

    async def get_by_derived(self, derived_hash: str) -> Optional[PendingRecord]:
        with self._lock:
            token_hash = self._by_derived.get(derived_hash)
        if token_hash is None:
            return None
        record = await self.get(token_hash)
        if record is None or is_expired(record.derived_expires_at):
            return None
        return record

    async def delete(self, token_hash: str) -> Optional[PendingRecord]:
        with self._lock:
            return self._remove(token_hash)

    async def sweep(self) -> int:
        now = utcnow()
        with self._lock:
            expired = [h for h, record in self._records.items() if record.is_expired(now)]
            for token_hash in expired:
                self._remove(token_hash)
        if expired:
            logger.debug("pending_records_swept", flow=self.name, count=len(expired))
        return len(expired)

    def _remove(self, token_hash: str) -> Optional[PendingRecord]:
        record = self._records.pop(token_hash, None)
        timer = self._timers.pop(token_hash, None)
        if timer is not None:
            timer.cancel()
        if record is None:
            return None
        if self._by_subject.get(record.subject) == token_hash:
            self._by_subject.pop(record.subject, None)
        if record.derived_token_hash:
            self._by_derived.pop(record.derived_token_hash, None)
        return record

    def _schedule_expiry(self, record: PendingRecord) -> None:
        existing = self._timers.pop(record.token_hash, None)
        if existing is not None:
            existing.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        delay = max((record.expires_at - utcnow()).total_seconds(), 0.0)
        self._timers[record.token_hash] = loop.call_later(
            delay, self._expire, record.token_hash
        )

    def _expire(self, token_hash: str) -> None:
        with self._lock:
            self._timers.pop(token_hash, None)
            record = self._records.get(token_hash)
            if record is not None and record.is_expired():
                self._remove(token_hash)
                logger.debug("pending_record_expired", flow=self.name)


class PendingFlow:
    """Token-addressed pending records without codes (terms acceptance)."""

    def __init__(
        self,
        name: str,
        store: PendingStore,
        time_source: TimeSource,
        *,
        pending_ttl_minutes: float,
    ) -> None:
        self.name = name
        self.store = store
        self.time_source = time_source
        self.pending_ttl_minutes = pending_ttl_minutes

    async def create_pending(
        self, subject: str, context: Optional[Dict[str, Any]] = None
    ) -> PendingTicket:
        token = generate_opaque_token()
        expires_at = await self.time_source.expires_in(self.pending_ttl_minutes)
        record = PendingRecord(
            token_hash=token.hash,
            subject=subject,
            expires_at=expires_at,
            context=dict(context or {}),
        )
        await self.store.put(record)
        logger.info("pending_record_created", flow=self.name, expires_at=expires_at.isoformat())
        return PendingTicket(token=token.clear, token_hash=token.hash, expires_at=expires_at)

    async def lookup(self, pending_token: Optional[str]) -> PendingRecord:
        if not pending_token:
            raise AuthenticationError("invalid token")
        record = await self.store.get(hash_token(pending_token))
        if record is None:
            raise AuthenticationError("invalid token")
        return record

    async def finish(self, record: PendingRecord) -> None:
        await self.store.delete(record.token_hash)

    async def cancel(self, pending_token: str) -> bool:
        return await self.store.delete(hash_token(pending_token)) is not None

    async def sweep(self) -> int:
        return await self.store.sweep()


class VerificationFlow(PendingFlow):
    """Pending records that are completed by a numeric out-of-band code."""

    def __init__(
        self,
        name: str,
        store: PendingStore,
        time_source: TimeSource,
        dispatcher: CodeDispatcher,
        *,
        pending_ttl_minutes: float,
        code_ttl_minutes: float,
        code_length: int,
        max_attempts: int,
        resend_interval_seconds: float = 0,
    ) -> None:
        super().__init__(name, store, time_source, pending_ttl_minutes=pending_ttl_minutes)
        self.dispatcher = dispatcher
        self.code_ttl_minutes = code_ttl_minutes
        self.code_length = code_length
        self.max_attempts = max_attempts
        self.resend_interval_seconds = resend_interval_seconds

    def resend_wait_seconds(self, record: PendingRecord) -> int:
        if not self.resend_interval_seconds or record.code_sent_at is None:
            return 0
        elapsed = (utcnow() - record.code_sent_at).total_seconds()
        return max(0, math.ceil(self.resend_interval_seconds - elapsed))

    async def request_code(self, pending_token: str, destination: str) -> datetime:
        record = await self.lookup(pending_token)
        if record.status == STATUS_VERIFIED:
            raise ValidationError("code already verified")
        wait = self.resend_wait_seconds(record)
        if wait:
            raise RateLimitedError(
                f"wait {wait} seconds before requesting a new code",
                detail={"retry_after_seconds": wait},
            )
        return await self._issue_code(record, destination)

    async def _issue_code(self, record: PendingRecord, destination: Optional[str]) -> datetime:
        if not destination:
            raise ValidationError("no destination for verification code")
        code = generate_numeric_code(self.code_length)
        record.code_hash = hash_code(code)
        record.code_expires_at = await self.time_source.expires_in(self.code_ttl_minutes)
        record.code_sent_at = utcnow()
        record.attempts = 0
        record.status = STATUS_CODE_SENT
        record.context["destination"] = destination
        await self.store.put(record)
        self.dispatcher.dispatch(
            destination, code, purpose=self.name, ttl_minutes=self.code_ttl_minutes
        )
        logger.info(
            "verification_code_issued",
            flow=self.name,
            code_expires_at=record.code_expires_at.isoformat(),
        )
        return record.code_expires_at

    async def verify_code(self, pending_token: str, code: str) -> PendingRecord:
        record = await self.lookup(pending_token)
        if record.status == STATUS_VERIFIED:
            raise ValidationError("code already verified")
        if record.code_hash is None or record.code_expires_at is None:
            raise ValidationError("code not requested")
        if is_expired(record.code_expires_at):
            new_expiry = await self._issue_code(record, record.context.get("destination"))
            logger.info("verification_code_expired_resent", flow=self.name)
            raise VerificationCodeExpiredError(
                "code expired, a new code was sent",
                detail={"code_resent": True, "code_expires_at": new_expiry.isoformat()},
            )
        if not tokens_match(record.code_hash, hash_code(code or "")):
            record.attempts += 1
            if record.attempts >= self.max_attempts:
                await self.store.delete(record.token_hash)
                logger.warning("verification_attempts_exceeded", flow=self.name)
                raise AttemptsExceededError("maximum attempts exceeded")
            await self.store.put(record)
            logger.info("verification_code_mismatch", flow=self.name, attempts=record.attempts)
            raise ValidationError(
                "invalid code",
                detail={"attempts_remaining": self.max_attempts - record.attempts},
            )
        record.status = STATUS_VERIFIED
        record.code_hash = None
        record.code_expires_at = None
        await self.store.put(record)
        logger.info("verification_code_verified", flow=self.name)
        return record

    async def issue_derived_token(
        self, record: PendingRecord, ttl_minutes: float
    ) -> Tuple[str, datetime]:
        """Attach a single-use continuation token to a verified record."""
        if record.status != STATUS_VERIFIED:
            raise ValidationError("code not verified")
        token = generate_opaque_token()
        expires_at = await self.time_source.expires_in(ttl_minutes)
        record.derived_token_hash = token.hash
        record.derived_expires_at = expires_at
        # Keep the record alive for as long as its continuation token
        record.expires_at = max(record.expires_at, expires_at)
        await self.store.put(record)
        return token.clear, expires_at

    async def consume_derived_token(self, token: Optional[str]) -> PendingRecord:
        if not token:
            raise AuthenticationError("invalid token")
        record = await self.store.get_by_derived(hash_token(token))
        if record is None:
            raise AuthenticationError("invalid token")
        # Destroy the whole parent record before the caller acts on it
        if await self.store.delete(record.token_hash) is None:
            raise AuthenticationError("invalid token")
        logger.info("derived_token_consumed", flow=self.name)
        return record
