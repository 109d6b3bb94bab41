import pytest

from bookwave.service.errors import AuthenticationError, ValidationError
from bookwave.storage.models import Profile


class TestTermsAcceptance:
    @pytest.mark.asyncio
    async def test_requires_phone_first(self, runtime):
        profile = await runtime.profiles.create(Profile.new("reader@example.com"))
        with pytest.raises(ValidationError):
            await runtime.terms.start(profile.id, provider="password", provider_sub=None)

    @pytest.mark.asyncio
    async def test_accept_records_consent_and_preferences(self, runtime):
        profile = await runtime.profiles.create(Profile.new("reader@example.com"))
        await runtime.profiles.save_details(profile.id, phone="+15550001111")
        ticket = await runtime.terms.start(profile.id, provider="google", provider_sub="g-1")

        result = await runtime.terms.accept(ticket.token, language="fr-FR", genre="mystery")

        assert result.profile.id == profile.id
        assert result.provider == "google"
        assert result.provider_sub == "g-1"
        details = await runtime.profiles.get_details(profile.id)
        assert details.accepted_terms
        assert details.language == "fr-FR"
        assert details.genre == "mystery"

    @pytest.mark.asyncio
    async def test_token_is_consumed(self, runtime):
        profile = await runtime.profiles.create(Profile.new("reader@example.com"))
        await runtime.profiles.save_details(profile.id, phone="+15550001111")
        ticket = await runtime.terms.start(profile.id, provider="password", provider_sub=None)
        await runtime.terms.accept(ticket.token)
        with pytest.raises(AuthenticationError):
            await runtime.terms.accept(ticket.token)

    @pytest.mark.asyncio
    async def test_invalid_language_falls_back_to_default(self, runtime):
        profile = await runtime.profiles.create(Profile.new("reader@example.com"))
        await runtime.profiles.save_details(profile.id, phone="+15550001111")
        ticket = await runtime.terms.start(profile.id, provider="password", provider_sub=None)
        await runtime.terms.accept(ticket.token, language="not a language")
        assert (await runtime.profiles.get_details(profile.id)).language == "en-US"
