from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Sequence

import httpx

from bookwave.logging import get_logger

logger = get_logger(__name__)

_JSON_TIME_KEYS = ("utc_datetime", "dateTime", "datetime", "currentDateTime")
_FRACTION = re.compile(r"\.(\d{6})\d+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        # Some endpoints report 7 fractional digits
        text = _FRACTION.sub(r".\1", text)
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """Read-time expiry check against the local clock (``now > expires_at``)."""
    if expires_at is None:
        return True
    return (now or utcnow()) > expires_at


class TimeSource:
    """Trusted UTC time from remote references with local-clock fallback.

    Issued expiry timestamps come from here so a skewed host clock cannot
    stretch token lifetimes. Each URL is tried in order under ``timeout``;
    only when all fail does the local clock answer.
    """

    def __init__(
        self,
        urls: Sequence[str],
        *,
        timeout: float = 2.5,
        enabled: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.urls = list(urls)
        self.timeout = timeout
        self.enabled = enabled
        self._transport = transport

    async def now(self) -> datetime:
        if not self.enabled or not self.urls:
            return utcnow()
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport, follow_redirects=True
        ) as client:
            for url in self.urls:
                try:
                    response = await client.get(url)
                    response.raise_for_status()
                    return self._extract_time(response)
                except (httpx.HTTPError, ValueError) as exc:
                    logger.warning(
                        "time_source_failed",
                        url=url,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
        logger.warning("time_source_fallback", sources=len(self.urls))
        return utcnow()

    async def expires_in(self, minutes: float) -> datetime:
        return (await self.now()) + timedelta(minutes=minutes)

    async def utc_timestamp_plus_minutes(self, minutes: float) -> str:
        return (await self.expires_in(minutes)).isoformat()

    @staticmethod
    def _extract_time(response: httpx.Response) -> datetime:
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                payload = response.json()
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                for key in _JSON_TIME_KEYS:
                    value = payload.get(key)
                    if isinstance(value, str) and value:
                        return parse_timestamp(value)
        date_header = response.headers.get("date")
        if date_header:
            try:
                return parse_timestamp(parsedate_to_datetime(date_header))
            except (TypeError, IndexError) as exc:
                raise ValueError(f"unparseable Date header: {date_header}") from exc
        raise ValueError("response carried no timestamp")


__all__ = ["TimeSource", "is_expired", "parse_timestamp", "utcnow"]
