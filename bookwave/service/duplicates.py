"""Duplicate-request suppression for mutating endpoints.

A fingerprint is held in a *pending* table while its request is in flight
and in a *recently-completed* table for a retention window afterwards; a
fingerprint present in either is rejected.
"""

from __future__ import annotations

import asyncio
import hashlib
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Protocol

from bookwave.logging import get_logger

logger = get_logger(__name__)

Release = Callable[[], Awaitable[None]]


def _now_ms() -> float:
    return time.monotonic() * 1000


@dataclass(frozen=True)
class RequestFingerprint:
    method: str
    path: str
    body: str = ""
    query: str = ""
    token: str = ""
    user_agent: str = ""
    client_ip: str = ""

    def digest(self) -> str:
        raw = ":".join(
            [
                self.method.upper(),
                self.path,
                self.body,
                self.query,
                self.token,
                self.user_agent,
                self.client_ip,
            ]
        )
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class DuplicateGuard(Protocol):
    async def acquire(self, request: RequestFingerprint) -> Optional[Release]:
        """Return a release callable, or None when the request is a duplicate."""
        ...

    def stats(self) -> Dict[str, Any]:
        ...

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...


class InMemoryDuplicateRequestDetector:
    def __init__(
        self,
        *,
        max_age_ms: int = 30_000,
        retention_ms: int = 45_000,
        sweep_interval_ms: int = 5_000,
    ) -> None:
        self.max_age_ms = max_age_ms
        self.retention_ms = retention_ms
        self.sweep_interval_ms = sweep_interval_ms
        self._pending: Dict[str, float] = {}
        self._completed: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._sweep_task: Optional[asyncio.Task] = None
        self.timeouts = 0

    def _is_duplicate_locked(self, key: str, now: float) -> bool:
        if key in self._pending:
            return True
        completed_at = self._completed.get(key)
        if completed_at is None:
            return False
        if now - completed_at <= self.retention_ms:
            return True
        self._completed.pop(key, None)
        return False

    def check_duplicate(self, request: RequestFingerprint) -> bool:
        with self._lock:
            return self._is_duplicate_locked(request.digest(), _now_ms())

    def register_pending(self, request: RequestFingerprint) -> Callable[[], None]:
        key = request.digest()
        with self._lock:
            self._pending[key] = _now_ms()
        return self._make_release(key)

    def _make_release(self, key: str) -> Callable[[], None]:
        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            with self._lock:
                self._pending.pop(key, None)
                self._completed[key] = _now_ms()

        return release

    async def acquire(self, request: RequestFingerprint) -> Optional[Release]:
        key = request.digest()
        # Check and register under one lock, before any await
        with self._lock:
            if self._is_duplicate_locked(key, _now_ms()):
                return None
            self._pending[key] = _now_ms()
        release = self._make_release(key)

        async def async_release() -> None:
            release()

        return async_release

    def sweep(self) -> int:
        now = _now_ms()
        with self._lock:
            stuck = [k for k, started in self._pending.items() if now - started > self.max_age_ms]
            for key in stuck:
                self._pending.pop(key, None)
            stale = [k for k, done in self._completed.items() if now - done > self.retention_ms]
            for key in stale:
                self._completed.pop(key, None)
            self.timeouts += len(stuck)
        if stuck:
            logger.warning("duplicate_guard_pending_timeout", count=len(stuck))
        return len(stuck) + len(stale)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "backend": "memory",
                "pending": len(self._pending),
                "recently_completed": len(self._completed),
                "timeouts": self.timeouts,
                "max_age_ms": self.max_age_ms,
                "retention_ms": self.retention_ms,
            }

    def clear(self) -> None:
        with self._lock:
            self._pending.clear()
            self._completed.clear()

    async def _sweep_loop(self) -> None:
        interval = self.sweep_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    async def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.clear()


class RedisDuplicateRequestDetector:
    """Shared-backend variant for multi-instance deployments.

    One key per fingerprint carries the whole lifecycle: it is claimed as
    ``pending`` with ``SET NX PX`` (so it expires on its own if the owning
    process dies) and flipped to ``done`` for the retention window on
    release. A single ``SET NX`` therefore rejects both states at once.
    """

    PENDING = "pending"
    DONE = "done"

    def __init__(
        self,
        client: Any,
        *,
        max_age_ms: int = 30_000,
        retention_ms: int = 45_000,
        prefix: str = "dup",
    ) -> None:
        self.client = client
        self.max_age_ms = max_age_ms
        self.retention_ms = retention_ms
        self.prefix = prefix

    def _key(self, digest: str) -> str:
        return f"{self.prefix}:{digest}"

    async def acquire(self, request: RequestFingerprint) -> Optional[Release]:
        key = self._key(request.digest())
        claimed = await self.client.set(key, self.PENDING, px=self.max_age_ms, nx=True)
        if not claimed:
            return None
        released = False

        async def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            try:
                marked = await self.client.set(key, self.DONE, px=self.retention_ms, xx=True)
                if not marked:
                    # Pending key already expired; never overwrite a newer claim
                    await self.client.set(key, self.DONE, px=self.retention_ms, nx=True)
            except Exception as exc:
                # The pending key still expires via PX
                logger.error("duplicate_guard_release_failed", error=str(exc))

        return release

    def stats(self) -> Dict[str, Any]:
        return {
            "backend": "redis",
            "max_age_ms": self.max_age_ms,
            "retention_ms": self.retention_ms,
        }

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        close = getattr(self.client, "aclose", None) or getattr(self.client, "close", None)
        if close is not None:
            await close()


@dataclass
class DuplicateRequestEntry:
    fingerprint: str
    method: str
    path: str
    user_id: Optional[str]
    at: float


class DuplicateRequestStats:
    """Bounded history of rejected duplicates for the stats endpoint."""

    def __init__(self, history_size: int = 1000) -> None:
        self._entries: Deque[DuplicateRequestEntry] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def record(
        self, fingerprint: str, method: str, path: str, user_id: Optional[str] = None
    ) -> None:
        entry = DuplicateRequestEntry(fingerprint, method.upper(), path, user_id, time.time())
        with self._lock:
            self._entries.append(entry)
        logger.warning("duplicate_request_rejected", method=entry.method, path=path, user_id=user_id)

    def summary(self, now: Optional[float] = None) -> Dict[str, Any]:
        current = now if now is not None else time.time()
        with self._lock:
            entries = list(self._entries)
        last_day = [e for e in entries if current - e.at <= 24 * 3600]
        last_hour = [e for e in last_day if current - e.at <= 3600]
        endpoints = Counter(f"{e.method} {e.path}" for e in last_day)
        users = Counter(e.user_id for e in last_day if e.user_id)
        return {
            "total": len(entries),
            "last_24h": len(last_day),
            "last_hour": len(last_hour),
            "top_endpoints": [
                {"endpoint": endpoint, "count": count} for endpoint, count in endpoints.most_common(10)
            ],
            "top_users": [
                {"user_id": user_id, "count": count} for user_id, count in users.most_common(10)
            ],
        }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
