"""MemoryStore behavior that the services rely on."""

from datetime import timedelta

import pytest

from kioskapi.storage.errors import ConstraintViolation
from kioskapi.storage.memory import MemoryStore
from kioskapi.storage.models import AccessToken, utcnow


@pytest.fixture
def memory_store():
    return MemoryStore()


class TestUsers:
    async def test_ids_are_sequential(self, memory_store):
        first = await memory_store.create_user("A", "B", "+1", "1111111111")
        second = await memory_store.create_user("C", "D", "+1", "2222222222")

        assert (first.id, second.id) == (1, 2)

    async def test_natural_key_unique(self, memory_store):
        await memory_store.create_user("A", "B", "+1", "1111111111")

        with pytest.raises(ConstraintViolation):
            await memory_store.create_user("C", "D", "+1", "1111111111")

    async def test_lookup_by_phone(self, memory_store):
        user = await memory_store.create_user("A", "B", "+44", "1111111111")

        assert await memory_store.get_user_by_phone("+44", "1111111111") == user
        assert await memory_store.get_user_by_phone("+1", "1111111111") is None

    async def test_update_ignores_unknown_fields(self, memory_store):
        user = await memory_store.create_user("A", "B", "+1", "1111111111")

        updated = await memory_store.update_user(user.id, {"id": 99, "lastname": "Z"})

        assert updated.id == user.id
        assert updated.lastname == "Z"

    async def test_update_missing_user(self, memory_store):
        assert await memory_store.update_user(5, {"firstname": "X"}) is None

    async def test_delete_cascades_reviews_both_ways(self, memory_store):
        alice = await memory_store.create_user("Alice", "A", "+1", "1111111111")
        bob = await memory_store.create_user("Bob", "B", "+1", "2222222222")
        carol = await memory_store.create_user("Carol", "C", "+1", "3333333333")
        await memory_store.create_review(bob.id, alice.id, "by alice", 4)
        await memory_store.create_review(alice.id, bob.id, "about alice", 2)
        kept = await memory_store.create_review(bob.id, carol.id, "unrelated", 5)

        assert await memory_store.delete_user(alice.id) is True

        assert list(memory_store.reviews) == [kept.id]
        assert await memory_store.delete_user(alice.id) is False

    async def test_create_with_credential(self, memory_store):
        user = await memory_store.create_user(
            "A", "B", "+1", "1111111111", credential=("hash", "argon2id")
        )

        assert await memory_store.get_password_record(user.id) == ("hash", "argon2id")

    async def test_duplicate_writes_no_credential(self, memory_store):
        await memory_store.create_user("A", "B", "+1", "1111111111", credential=("h1", "argon2id"))

        with pytest.raises(ConstraintViolation):
            await memory_store.create_user(
                "C", "D", "+1", "1111111111", credential=("h2", "argon2id")
            )

        assert list(memory_store.credentials.values()) == [("h1", "argon2id")]

    async def test_credential_update_for_missing_user(self, memory_store):
        assert await memory_store.update_user(7, {}, credential=("hash", "argon2id")) is None
        assert memory_store.credentials == {}


class TestTokens:
    async def test_token_needs_user(self, memory_store):
        with pytest.raises(ConstraintViolation):
            await memory_store.create_token(1, 60)

    async def test_created_at_override(self, memory_store):
        user = await memory_store.create_user("A", "B", "+1", "1111111111")
        past = utcnow() - timedelta(hours=1)

        token = await memory_store.create_token(user.id, 60, created_at=past)

        assert token.created_at == past
        assert token.expired()

    async def test_delete_counts(self, memory_store):
        user = await memory_store.create_user("A", "B", "+1", "1111111111")
        token = await memory_store.create_token(user.id, 60)

        assert await memory_store.delete_token(token.id) == 1
        assert await memory_store.delete_token(token.id) == 0

    def test_naive_timestamps_treated_as_utc(self):
        naive_now = utcnow().replace(tzinfo=None)
        token = AccessToken.new(1, 60, now=naive_now)

        assert token.created_at.tzinfo is not None
        assert token.expired(naive_now + timedelta(seconds=60))
        assert not token.expired(naive_now + timedelta(seconds=59))


class TestKiosks:
    async def test_kiosk_needs_owner(self, memory_store):
        with pytest.raises(ConstraintViolation):
            await memory_store.create_kiosk(3, "t", "d", 0.0, 0.0)

    async def test_search_ties_break_on_id(self, memory_store):
        user = await memory_store.create_user("A", "B", "+1", "1111111111")
        a = await memory_store.create_kiosk(user.id, "a", "", 1.0, 1.0)
        b = await memory_store.create_kiosk(user.id, "b", "", 1.0, 1.0)

        results = await memory_store.search_kiosks(1.0, 1.0, 10, limit=5)

        assert [r.kiosk.id for r in results] == [a.id, b.id]
        assert results[0].distance == 0
