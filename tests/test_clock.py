"""Tests for the trusted time source and timestamp parsing."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from bookwave.service.clock import TimeSource, is_expired, parse_timestamp, utcnow


class TestParseTimestamp:
    def test_trailing_z_is_utc(self):
        parsed = parse_timestamp("2024-05-01T10:00:00Z")
        assert parsed == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def test_seven_fraction_digits_are_trimmed(self):
        parsed = parse_timestamp("2024-05-01T10:00:00.1234567+00:00")
        assert parsed.microsecond == 123456

    def test_naive_values_are_treated_as_utc(self):
        parsed = parse_timestamp("2024-05-01T10:00:00")
        assert parsed.tzinfo is not None
        assert parsed.utcoffset() == timedelta(0)

    def test_offsets_are_normalized_to_utc(self):
        parsed = parse_timestamp("2024-05-01T12:00:00+02:00")
        assert parsed.hour == 10


class TestIsExpired:
    def test_missing_expiry_counts_as_expired(self):
        assert is_expired(None)

    def test_expiry_is_strictly_after(self):
        now = utcnow()
        assert not is_expired(now, now)
        assert is_expired(now, now + timedelta(microseconds=1))


class TestTimeSource:
    @pytest.mark.asyncio
    async def test_uses_json_payload_from_first_source(self):
        def handler(request):
            return httpx.Response(200, json={"utc_datetime": "2030-01-01T00:00:00Z"})

        source = TimeSource(["https://time.test/a"], transport=httpx.MockTransport(handler))
        assert await source.now() == datetime(2030, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_falls_through_to_next_source(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            if request.url.host == "bad.test":
                return httpx.Response(503)
            return httpx.Response(200, json={"dateTime": "2030-01-01T00:00:00.0000001"})

        source = TimeSource(
            ["https://bad.test/", "https://good.test/"],
            transport=httpx.MockTransport(handler),
        )
        assert await source.now() == datetime(2030, 1, 1, tzinfo=timezone.utc)
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_date_header_is_used_without_json_body(self):
        def handler(request):
            return httpx.Response(200, headers={"Date": "Tue, 01 Jan 2030 00:00:00 GMT"}, text="ok")

        source = TimeSource(["https://time.test/"], transport=httpx.MockTransport(handler))
        assert await source.now() == datetime(2030, 1, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_falls_back_to_local_clock_when_all_sources_fail(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        source = TimeSource(
            ["https://a.test/", "https://b.test/"], transport=httpx.MockTransport(handler)
        )
        before = utcnow()
        now = await source.now()
        assert before <= now <= utcnow()

    @pytest.mark.asyncio
    async def test_disabled_source_never_calls_out(self):
        def handler(request):  # pragma: no cover - must not be reached
            raise AssertionError("network used")

        source = TimeSource(
            ["https://time.test/"], enabled=False, transport=httpx.MockTransport(handler)
        )
        assert abs((await source.now() - utcnow()).total_seconds()) < 5

    @pytest.mark.asyncio
    async def test_expiry_helpers_add_minutes(self):
        def handler(request):
            return httpx.Response(200, json={"datetime": "2030-01-01T00:00:00+00:00"})

        source = TimeSource(["https://time.test/"], transport=httpx.MockTransport(handler))
        assert await source.expires_in(5) == datetime(2030, 1, 1, 0, 5, tzinfo=timezone.utc)
        assert await source.utc_timestamp_plus_minutes(1) == "2030-01-01T00:01:00+00:00"
