"""Tests for email registration and password reset codes."""

import pytest

from bookwave.service.errors import (
    AuthenticationError,
    ConflictError,
    RateLimitedError,
)
from bookwave.storage.models import Profile

EMAIL = "reader@example.com"


async def _register(runtime, email=EMAIL, password="correct horse"):
    ticket = await runtime.email.request_code(email)
    register_token, _ = await runtime.email.verify_code(
        ticket.pending_token, runtime.email_dispatcher.last_code(email)
    )
    return await runtime.email.register(register_token, password, "Reader")


class TestRegistration:
    @pytest.mark.asyncio
    async def test_full_registration_creates_password_profile(self, runtime):
        profile = await _register(runtime)
        assert profile.email == EMAIL
        assert profile.provider == "password"
        assert await runtime.passwords.verify_password(profile.id, "correct horse")
        assert not await runtime.passwords.verify_password(profile.id, "wrong")

    @pytest.mark.asyncio
    async def test_email_is_normalized(self, runtime):
        await runtime.email.request_code("  Reader@Example.COM ")
        assert runtime.email_dispatcher.sent[-1]["destination"] == EMAIL

    @pytest.mark.asyncio
    async def test_registered_email_cannot_request_again(self, runtime):
        await _register(runtime)
        with pytest.raises(ConflictError) as excinfo:
            await runtime.email.request_code(EMAIL)
        assert excinfo.value.detail == {"next_step": "login"}

    @pytest.mark.asyncio
    async def test_request_within_resend_window_is_rate_limited(self, runtime):
        await runtime.email.request_code(EMAIL)
        with pytest.raises(RateLimitedError):
            await runtime.email.request_code(EMAIL)

    @pytest.mark.asyncio
    async def test_verified_email_points_to_register_step(self, runtime):
        ticket = await runtime.email.request_code(EMAIL)
        await runtime.email.verify_code(ticket.pending_token, runtime.email_dispatcher.last_code())
        with pytest.raises(ConflictError) as excinfo:
            await runtime.email.request_code(EMAIL)
        assert excinfo.value.detail == {"next_step": "register"}

    @pytest.mark.asyncio
    async def test_register_token_is_single_use(self, runtime):
        ticket = await runtime.email.request_code(EMAIL)
        register_token, _ = await runtime.email.verify_code(
            ticket.pending_token, runtime.email_dispatcher.last_code()
        )
        await runtime.email.register(register_token, "correct horse")
        with pytest.raises(AuthenticationError):
            await runtime.email.register(register_token, "correct horse")

    @pytest.mark.asyncio
    async def test_pending_token_is_not_a_register_token(self, runtime):
        ticket = await runtime.email.request_code(EMAIL)
        with pytest.raises(AuthenticationError):
            await runtime.email.register(ticket.pending_token, "correct horse")

    @pytest.mark.asyncio
    async def test_email_owned_by_social_provider_conflicts(self, runtime):
        await runtime.profiles.create(Profile.new(EMAIL, provider="google", provider_sub="g-1"))
        ticket = await runtime.email.request_code(EMAIL)
        register_token, _ = await runtime.email.verify_code(
            ticket.pending_token, runtime.email_dispatcher.last_code()
        )
        with pytest.raises(ConflictError):
            await runtime.email.register(register_token, "correct horse")

    @pytest.mark.asyncio
    async def test_resend_after_window(self, runtime):
        runtime.register_flow.resend_interval_seconds = 0
        ticket = await runtime.email.request_code(EMAIL)
        await runtime.email.resend_code(ticket.pending_token)
        codes = [item["code"] for item in runtime.email_dispatcher.sent]
        assert len(codes) == 2
        register_token, _ = await runtime.email.verify_code(ticket.pending_token, codes[-1])
        assert register_token


class TestPasswordReset:
    @pytest.mark.asyncio
    async def test_reset_replaces_password(self, runtime):
        profile = await _register(runtime)
        ticket = await runtime.email.request_reset(EMAIL)
        reset_token, _ = await runtime.email.verify_reset(
            ticket.pending_token, runtime.email_dispatcher.last_code()
        )
        assert await runtime.email.confirm_reset(reset_token, "new password!") == profile.id
        assert await runtime.passwords.verify_password(profile.id, "new password!")
        assert not await runtime.passwords.verify_password(profile.id, "correct horse")
        with pytest.raises(AuthenticationError):
            await runtime.email.confirm_reset(reset_token, "another one")

    @pytest.mark.asyncio
    async def test_unknown_email_gets_inert_ticket(self, runtime):
        ticket = await runtime.email.request_reset("nobody@example.com")
        assert ticket.pending_token
        assert ticket.code_expires_at is None
        assert runtime.email_dispatcher.sent == []
        with pytest.raises(AuthenticationError):
            await runtime.email.verify_reset(ticket.pending_token, "123456")

    @pytest.mark.asyncio
    async def test_reset_and_register_flows_are_isolated(self, runtime):
        await _register(runtime)
        ticket = await runtime.email.request_reset(EMAIL)
        with pytest.raises(AuthenticationError):
            await runtime.email.verify_code(ticket.pending_token, runtime.email_dispatcher.last_code())
