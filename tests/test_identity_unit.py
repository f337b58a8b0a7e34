"""Unit tests for the identity service: registration, login and profiles."""

import pytest
from argon2 import PasswordHasher, Type

from kioskapi.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from kioskapi.service.identity import IdentityService
from kioskapi.service.tokens import TokenService
from kioskapi.storage.errors import StoreUnavailable
from kioskapi.storage.memory import MemoryStore


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def identity_service(memory_store):
    # low-cost parameters keep the suite fast; the algorithm is still argon2id
    hasher = PasswordHasher(type=Type.ID, time_cost=1, memory_cost=8, parallelism=1)
    return IdentityService(
        memory_store,
        TokenService(memory_store),
        token_ttl_seconds=120,
        password_hasher=hasher,
    )


async def _register(service, phone="1234567890", password="password123"):
    return await service.register("Ada", "Lovelace", "+1", phone, password)


class FailingCredentials(dict):
    """Credential table whose writes fail, as when the database drops mid-request."""

    def __setitem__(self, key, value):
        raise StoreUnavailable("database unavailable")


class TestRegister:
    async def test_register_hashes_password(self, memory_store, identity_service):
        user = await _register(identity_service)

        pwd_hash, algo = await memory_store.get_password_record(user.id)

        assert algo == "argon2id"
        assert pwd_hash != "password123"
        assert pwd_hash.startswith("$argon2id$")

    async def test_user_record_has_no_secret(self, identity_service):
        user = await _register(identity_service)

        assert not hasattr(user, "password")
        assert not hasattr(user, "password_hash")

    async def test_duplicate_phone_conflicts(self, identity_service):
        await _register(identity_service)

        with pytest.raises(ConflictError) as exc:
            await _register(identity_service, password="another-pass")

        assert exc.value.status_code == 409

    async def test_same_phone_other_country_is_allowed(self, identity_service):
        await _register(identity_service)

        other = await identity_service.register("Bo", "Ek", "+46", "1234567890", "secret1")

        assert other.country_code == "+46"

    async def test_failed_credential_write_leaves_no_account(
        self, memory_store, identity_service
    ):
        healthy = memory_store.credentials
        memory_store.credentials = FailingCredentials()

        with pytest.raises(StoreUnavailable):
            await _register(identity_service)

        assert memory_store.users == {}
        memory_store.credentials = healthy

        user = await _register(identity_service)
        token, logged_in = await identity_service.login("+1", "1234567890", "password123")
        assert logged_in.id == user.id
        assert token.user_id == user.id


class TestLogin:
    async def test_login_issues_token_for_user(self, identity_service):
        user = await _register(identity_service)

        token, logged_in = await identity_service.login("+1", "1234567890", "password123")

        assert logged_in.id == user.id
        assert token.user_id == user.id
        assert token.ttl == 120
        assert await identity_service.tokens.validate(token.id)

    async def test_wrong_password_matches_unknown_account(self, identity_service):
        await _register(identity_service)

        with pytest.raises(AuthenticationError) as wrong_password:
            await identity_service.login("+1", "1234567890", "nope-nope")
        with pytest.raises(AuthenticationError) as unknown_account:
            await identity_service.login("+1", "9999999999", "password123")

        assert wrong_password.value.status_code == unknown_account.value.status_code == 401
        assert wrong_password.value.message == unknown_account.value.message
        assert wrong_password.value.detail == unknown_account.value.detail

    async def test_missing_credential_record_fails_login(self, memory_store, identity_service):
        user = await memory_store.create_user("No", "Password", "+1", "5551234567")

        assert await identity_service.verify_password(user.id, "anything") is False
        with pytest.raises(AuthenticationError):
            await identity_service.login("+1", "5551234567", "anything")

    async def test_logout_revokes_and_is_idempotent(self, identity_service):
        await _register(identity_service)
        token, _ = await identity_service.login("+1", "1234567890", "password123")

        assert await identity_service.logout(token.id) == 1
        assert await identity_service.logout(token.id) == 0
        assert await identity_service.tokens.validate(token.id) is False


class TestProfile:
    async def test_ensure_self(self, identity_service):
        identity_service.ensure_self(1, 1)
        with pytest.raises(ForbiddenError) as exc:
            identity_service.ensure_self(1, 2)
        assert exc.value.message == "You can only access your own profile."

    async def test_get_missing_user(self, identity_service):
        with pytest.raises(NotFoundError):
            await identity_service.get_user(404)

    async def test_update_returns_new_record(self, identity_service):
        user = await _register(identity_service)

        updated = await identity_service.update_user(user.id, {"firstname": "Augusta"})

        assert updated.firstname == "Augusta"
        assert user.firstname == "Ada"
        assert updated.updated_at >= user.updated_at

    async def test_update_password_rehashes(self, memory_store, identity_service):
        user = await _register(identity_service)
        old_hash, _ = await memory_store.get_password_record(user.id)

        await identity_service.update_user(user.id, {"password": "new-password"})

        new_hash, _ = await memory_store.get_password_record(user.id)
        assert new_hash != old_hash
        token, _ = await identity_service.login("+1", "1234567890", "new-password")
        assert token.user_id == user.id
        with pytest.raises(AuthenticationError):
            await identity_service.login("+1", "1234567890", "password123")

    async def test_password_change_signs_out_every_session(self, memory_store, identity_service):
        user = await _register(identity_service)
        first, _ = await identity_service.login("+1", "1234567890", "password123")
        second, _ = await identity_service.login("+1", "1234567890", "password123")

        await identity_service.update_user(user.id, {"password": "new-password"})

        assert await memory_store.get_token(first.id) is None
        assert await memory_store.get_token(second.id) is None

    async def test_profile_update_keeps_sessions(self, memory_store, identity_service):
        user = await _register(identity_service)
        token, _ = await identity_service.login("+1", "1234567890", "password123")

        await identity_service.update_user(user.id, {"lastname": "King"})

        assert await identity_service.tokens.validate(token.id)

    async def test_failed_password_change_keeps_profile(self, memory_store, identity_service):
        user = await _register(identity_service)
        memory_store.credentials = FailingCredentials(memory_store.credentials)

        with pytest.raises(StoreUnavailable):
            await identity_service.update_user(
                user.id, {"firstname": "Augusta", "password": "new-password"}
            )

        assert (await memory_store.get_user(user.id)).firstname == "Ada"
        token, _ = await identity_service.login("+1", "1234567890", "password123")
        assert token.user_id == user.id

    async def test_update_to_taken_phone_conflicts(self, identity_service):
        await _register(identity_service)
        other = await _register(identity_service, phone="5550001111")

        with pytest.raises(ConflictError):
            await identity_service.update_user(other.id, {"phone": "1234567890"})

    async def test_delete_cascades(self, memory_store, identity_service):
        user = await _register(identity_service)
        token, _ = await identity_service.login("+1", "1234567890", "password123")
        await memory_store.create_kiosk(user.id, "Stand", "Fresh juice", 48.85, 2.35)

        await identity_service.delete_user(user.id)

        assert await memory_store.get_user(user.id) is None
        assert await memory_store.get_password_record(user.id) is None
        assert await memory_store.get_token(token.id) is None
        assert memory_store.kiosks == {}

    async def test_delete_missing_user(self, identity_service):
        with pytest.raises(NotFoundError):
            await identity_service.delete_user(999)
