from __future__ import annotations

import asyncio
import threading
from typing import List, Optional
from urllib.parse import urlparse, urlunparse

import redis.asyncio as aioredis

from bookwave.config import DuplicateBackend, Settings, get_settings, reset_settings_cache
from bookwave.logging import get_logger
from bookwave.service.clock import TimeSource
from bookwave.service.duplicates import (
    DuplicateGuard,
    DuplicateRequestStats,
    InMemoryDuplicateRequestDetector,
    RedisDuplicateRequestDetector,
)
from bookwave.service.email import EmailService
from bookwave.service.email_verification import EmailVerificationService
from bookwave.service.notifications import (
    CodeDispatcher,
    EmailCodeDispatcher,
    MessagingCodeDispatcher,
)
from bookwave.service.passwords import PasswordService
from bookwave.service.pending import InMemoryPendingStore, PendingFlow, VerificationFlow
from bookwave.service.phone_verification import PhoneVerificationService
from bookwave.service.profiles import ProfileService
from bookwave.service.sessions import SessionIssuer
from bookwave.service.terms import TermsAcceptanceService
from bookwave.storage.common import RelationalStore
from bookwave.storage.memory import MemoryStore
from bookwave.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[RelationalStore] = None,
        time_source: Optional[TimeSource] = None,
        phone_dispatcher: Optional[CodeDispatcher] = None,
        email_dispatcher: Optional[CodeDispatcher] = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=s.use_memory_store,
            duplicate_backend=s.duplicate_backend.value,
            test_mode=s.test_mode,
        )

        if store is not None:
            self.store = store
        elif s.use_memory_store:
            self.store = MemoryStore(s.memory_store_path)
        else:
            logger.info("runtime_store_postgres", database_url=_mask_url_password(s.database_url))
            self.store = PostgresStore(s.database_url)

        self.time_source = time_source or TimeSource(
            s.trusted_time_urls,
            timeout=s.trusted_time_timeout_seconds,
            enabled=s.trusted_time_enabled,
        )
        self.email_service = EmailService(
            smtp_host=s.smtp_host,
            smtp_port=s.smtp_port,
            smtp_user=s.smtp_user,
            smtp_password=s.smtp_password,
            smtp_use_tls=s.smtp_use_tls,
            from_email=s.email_from_address,
            from_name=s.email_from_name,
        )
        self.phone_dispatcher = phone_dispatcher or MessagingCodeDispatcher()
        self.email_dispatcher = email_dispatcher or EmailCodeDispatcher(self.email_service)

        self.profiles = ProfileService(self.store)
        self.passwords = PasswordService(self.store)

        self.phone_flow = VerificationFlow(
            "phone",
            InMemoryPendingStore("phone"),
            self.time_source,
            self.phone_dispatcher,
            pending_ttl_minutes=s.phone_pending_ttl_minutes,
            code_ttl_minutes=s.phone_code_ttl_minutes,
            code_length=s.phone_code_length,
            max_attempts=s.phone_max_attempts,
            resend_interval_seconds=s.phone_resend_interval_seconds,
        )
        email_flow_options = dict(
            pending_ttl_minutes=s.email_pending_ttl_minutes,
            code_ttl_minutes=s.email_code_ttl_minutes,
            code_length=s.email_code_length,
            max_attempts=s.email_max_attempts,
            resend_interval_seconds=s.email_resend_interval_seconds,
        )
        self.register_flow = VerificationFlow(
            "register",
            InMemoryPendingStore("register"),
            self.time_source,
            self.email_dispatcher,
            **email_flow_options,
        )
        self.reset_flow = VerificationFlow(
            "reset",
            InMemoryPendingStore("reset"),
            self.time_source,
            self.email_dispatcher,
            **email_flow_options,
        )
        self.terms_flow = PendingFlow(
            "terms",
            InMemoryPendingStore("terms"),
            self.time_source,
            pending_ttl_minutes=s.terms_pending_ttl_minutes,
        )

        self.phone = PhoneVerificationService(self.phone_flow, self.profiles)
        self.email = EmailVerificationService(
            self.register_flow,
            self.reset_flow,
            self.profiles,
            self.passwords,
            derived_token_ttl_minutes=s.email_derived_token_ttl_minutes,
        )
        self.terms = TermsAcceptanceService(self.terms_flow, self.profiles)
        self.sessions = SessionIssuer(
            self.store,
            self.time_source,
            self.profiles,
            self.passwords,
            self.phone,
            self.terms,
            self.email,
            session_ttl_minutes=s.session_ttl_minutes,
            refresh_grace_seconds=s.refresh_grace_seconds,
        )

        self.duplicates: DuplicateGuard = self._build_duplicate_guard(s)
        self.duplicate_stats = DuplicateRequestStats(s.duplicate_stats_history)
        self._background: List[asyncio.Task] = []
        logger.info("runtime_init_completed")

    def _build_duplicate_guard(self, s: Settings) -> DuplicateGuard:
        if s.duplicate_backend == DuplicateBackend.REDIS:
            client = aioredis.from_url(
                s.redis_url,
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
            )
            logger.info("duplicate_guard_redis", redis_url=_mask_url_password(s.redis_url))
            return RedisDuplicateRequestDetector(
                client, max_age_ms=s.duplicate_max_age_ms, retention_ms=s.duplicate_retention_ms
            )
        return InMemoryDuplicateRequestDetector(
            max_age_ms=s.duplicate_max_age_ms,
            retention_ms=s.duplicate_retention_ms,
            sweep_interval_ms=s.duplicate_sweep_interval_ms,
        )

    @property
    def pending_flows(self) -> List[PendingFlow]:
        return [self.phone_flow, self.register_flow, self.reset_flow, self.terms_flow]

    async def _run_token_sweep(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sessions.sweep_expired()
                for flow in self.pending_flows:
                    await flow.sweep()
            except Exception as exc:
                logger.error("token_sweep_failed", error_type=type(exc).__name__, error=str(exc))

    async def start(self) -> None:
        await self.duplicates.start()
        self._background.append(
            asyncio.create_task(self._run_token_sweep(self.settings.token_sweep_interval_seconds))
        )
        logger.info("runtime_started")

    async def stop(self) -> None:
        for task in self._background:
            task.cancel()
        for task in self._background:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._background.clear()
        await self.sessions.shutdown()
        await self.duplicates.stop()
        await self.phone_dispatcher.drain()
        await self.email_dispatcher.drain()
        await self.store.close()
        logger.info("runtime_stopped")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**overrides) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, **overrides)
        return runtime
