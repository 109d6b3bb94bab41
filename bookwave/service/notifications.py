from __future__ import annotations

import asyncio
from typing import Optional, Set

from bookwave.logging import get_logger
from bookwave.service.email import EmailService

logger = get_logger(__name__)


class CodeDispatcher:
    """Fire-and-forget delivery of verification codes.

    ``dispatch`` returns immediately; delivery runs as a background task and
    failures are logged, never raised into the verification flow.
    """

    channel = "log"

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(
        self,
        destination: str,
        code: str,
        *,
        purpose: str = "verify",
        ttl_minutes: float = 5,
    ) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("code_dispatch_skipped", channel=self.channel, reason="no_event_loop")
            return
        task = loop.create_task(self._safe_deliver(destination, code, purpose, ttl_minutes))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _safe_deliver(
        self, destination: str, code: str, purpose: str, ttl_minutes: float
    ) -> None:
        try:
            await self.deliver(destination, code, purpose=purpose, ttl_minutes=ttl_minutes)
        except Exception as exc:
            logger.error(
                "code_dispatch_failed",
                channel=self.channel,
                purpose=purpose,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def deliver(
        self, destination: str, code: str, *, purpose: str, ttl_minutes: float
    ) -> None:
        logger.info("code_dispatched", channel=self.channel, destination=destination, purpose=purpose)

    async def drain(self) -> None:
        """Wait for in-flight deliveries; used on shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class MessagingCodeDispatcher(CodeDispatcher):
    """SMS/WhatsApp delivery. No gateway is wired yet, so codes are only logged."""

    channel = "whatsapp"

    def __init__(self, sender_id: Optional[str] = None) -> None:
        super().__init__()
        self.sender_id = sender_id


class EmailCodeDispatcher(CodeDispatcher):
    channel = "email"

    def __init__(self, email_service: EmailService) -> None:
        super().__init__()
        self.email_service = email_service

    async def deliver(
        self, destination: str, code: str, *, purpose: str, ttl_minutes: float
    ) -> None:
        # smtplib blocks; keep it off the event loop
        sent = await asyncio.to_thread(
            self.email_service.send_verification_code,
            destination,
            code,
            purpose=purpose,
            ttl_minutes=ttl_minutes,
        )
        if not sent:
            logger.warning("email_code_not_delivered", purpose=purpose)
