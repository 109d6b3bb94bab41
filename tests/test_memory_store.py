"""Tests for the in-memory relational store and its JSON persistence."""

from datetime import timedelta

import pytest

from bookwave.service.clock import utcnow
from bookwave.storage.common import gte, lt, matches, ne
from bookwave.storage.errors import ConstraintViolation
from bookwave.storage.memory import MemoryStore
from bookwave.storage.models import Profile, SessionRecord


class TestFilters:
    def test_comparisons_skip_missing_values(self):
        now = utcnow()
        assert matches({"expires_at": now}, {"expires_at": lt(now + timedelta(seconds=1))})
        assert not matches({"expires_at": None}, {"expires_at": lt(now)})
        assert matches({"n": 3}, {"n": gte(3)})

    def test_not_equal_follows_sql_null_semantics(self):
        assert matches({"sub": "g-1"}, {"sub": ne("g-2")})
        assert not matches({"sub": "g-2"}, {"sub": ne("g-2")})
        assert not matches({"sub": None}, {"sub": ne("g-2")})
        assert not matches({}, {"sub": ne(None)})
        assert matches({"sub": "g-1"}, {"sub": ne(None)})

    def test_equality_filter(self):
        assert matches({"a": 1, "b": None}, {"a": 1, "b": None})
        assert not matches({"a": 1}, {"a": 2})


class TestMemoryStore:
    @pytest.mark.asyncio
    async def test_insert_and_find(self):
        store = MemoryStore()
        profile = Profile.new("reader@example.com", name="Reader")
        await store.insert("profiles", profile.to_row())
        row = await store.find("profiles", {"email": "reader@example.com"})
        assert row["id"] == profile.id
        assert await store.find("profiles", {"email": "other@example.com"}) is None

    @pytest.mark.asyncio
    async def test_unique_keys_enforced_but_nulls_allowed(self):
        store = MemoryStore()
        await store.insert("profiles", Profile.new("a@example.com").to_row())
        with pytest.raises(ConstraintViolation):
            await store.insert("profiles", Profile.new("a@example.com").to_row())
        # Passwordless profiles have no email
        await store.insert("profiles", Profile.new(None).to_row())
        await store.insert("profiles", Profile.new(None).to_row())
        assert len(await store.find_all("profiles")) == 3

    @pytest.mark.asyncio
    async def test_upsert_merges_on_conflict_key(self):
        store = MemoryStore()
        await store.upsert("profile_details", {"profile_id": "p1", "phone": "+15550001111"}, "profile_id")
        merged = await store.upsert("profile_details", {"profile_id": "p1", "genre": "poetry"}, "profile_id")
        assert merged["phone"] == "+15550001111"
        assert merged["genre"] == "poetry"
        assert len(await store.find_all("profile_details")) == 1

    @pytest.mark.asyncio
    async def test_update_and_delete_return_counts(self):
        store = MemoryStore()
        now = utcnow()
        for offset in (-10, -5, 30):
            record = SessionRecord.new(
                "user-1", f"hash{offset}", provider="password", expires_at=now + timedelta(minutes=offset)
            )
            await store.insert("tokens", record.to_row())
        assert await store.update("tokens", {"user_id": "user-1"}, {"provider": "google"}) == 3
        assert await store.delete("tokens", {"expires_at": lt(now)}) == 2
        remaining = await store.find_all("tokens")
        assert len(remaining) == 1
        assert remaining[0]["provider"] == "google"

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, tmp_path):
        path = tmp_path / "state.json"
        store = MemoryStore(str(path))
        record = SessionRecord.new("user-1", "hash", provider="password")
        await store.insert("tokens", record.to_row())
        await store.close()

        reloaded = MemoryStore(str(path))
        row = await reloaded.find("tokens", {"token_hash": "hash"})
        assert row is not None
        restored = SessionRecord.from_row(row)
        assert restored.expires_at == record.expires_at
        assert restored.is_active()
