from contextlib import asynccontextmanager
from datetime import timedelta

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from kioskapi.logging import get_logger
from kioskapi.storage.errors import ConstraintViolation, StoreUnavailable
from kioskapi.storage.models import utcnow
from kioskapi.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    async def fetchone(self):
        return self.rows[0] if self.rows else None

    async def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, cursor=None, exc=None):
        self.cursor = cursor or FakeCursor()
        self.exc = exc
        self.executed = []
        self.in_transaction = False
        self.transactions = 0

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        self.in_transaction = True
        try:
            yield self
        finally:
            self.in_transaction = False

    async def execute(self, query, params=None):
        self.executed.append((query, params, self.in_transaction))
        if self.exc is not None:
            raise self.exc
        return self.cursor


class FakePool:
    def __init__(self, conn=None, exc=None):
        self.conn = conn
        self.exc = exc

    @asynccontextmanager
    async def connection(self):
        if self.exc is not None:
            raise self.exc
        yield self.conn


def _store(pool) -> PostgresStore:
    # bypass __init__ so no real pool is built
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.logger = get_logger("test")
    store._opened = True
    return store


def _user_row(**overrides):
    row = {
        "id": 1,
        "firstname": "Ada",
        "lastname": "Lovelace",
        "country_code": "+1",
        "phone": "1234567890",
        "created_at": utcnow(),
        "updated_at": utcnow(),
    }
    row.update(overrides)
    return row


async def test_duplicate_phone_becomes_constraint_violation():
    store = _store(FakePool(FakeConnection(exc=errors.UniqueViolation())))

    with pytest.raises(ConstraintViolation):
        await store.create_user("Ada", "Lovelace", "+1", "1234567890")


async def test_token_for_missing_user_becomes_constraint_violation():
    store = _store(FakePool(FakeConnection(exc=errors.ForeignKeyViolation())))

    with pytest.raises(ConstraintViolation):
        await store.create_token(99, 60)


async def test_pool_timeout_becomes_store_unavailable():
    store = _store(FakePool(exc=PoolTimeout("no connection")))

    with pytest.raises(StoreUnavailable):
        await store.get_token("abc")


async def test_token_row_mapping():
    created = utcnow() - timedelta(seconds=30)
    row = {"id": "tok-1", "ttl": 60, "user_id": 4, "created_at": created}
    store = _store(FakePool(FakeConnection(FakeCursor(rows=[row]))))

    token = await store.get_token("tok-1")

    assert token.id == "tok-1"
    assert token.user_id == 4
    assert token.expired() is False


async def test_delete_token_returns_rowcount():
    conn = FakeConnection(FakeCursor(rowcount=0))
    store = _store(FakePool(conn))

    assert await store.delete_token("gone") == 0
    assert conn.executed[0][1] == ("gone",)


async def test_update_user_without_changes_reads_current_row():
    conn = FakeConnection(FakeCursor(rows=[_user_row()]))
    store = _store(FakePool(conn))

    user = await store.update_user(1, {"unknown": "x", "firstname": None})

    assert user.firstname == "Ada"
    assert conn.executed[0][0].startswith("SELECT")


async def test_search_with_no_rows_skips_review_lookup():
    conn = FakeConnection(FakeCursor(rows=[]))
    store = _store(FakePool(conn))

    assert await store.search_kiosks(0.0, 0.0, 100, limit=10, skip=0) == []
    assert len(conn.executed) == 1
    assert conn.executed[0][1] == (0.0, 0.0, 100, 10, 0)


async def test_create_user_writes_credential_in_same_transaction():
    conn = FakeConnection(FakeCursor(rows=[_user_row(id=7)]))
    store = _store(FakePool(conn))

    user = await store.create_user(
        "Ada", "Lovelace", "+1", "1234567890", credential=("hash", "argon2id")
    )

    assert user.id == 7
    assert conn.transactions == 1
    assert len(conn.executed) == 2
    assert all(in_tx for _, _, in_tx in conn.executed)
    assert "user_auth_credential" in conn.executed[1][0]
    assert conn.executed[1][1] == (7, "hash", "argon2id")


async def test_credential_only_update_touches_row_and_credential():
    conn = FakeConnection(FakeCursor(rows=[_user_row()]))
    store = _store(FakePool(conn))

    user = await store.update_user(1, {}, credential=("hash", "argon2id"))

    assert user.id == 1
    assert conn.transactions == 1
    assert [params for _, params, _ in conn.executed] == [
        (1,),
        (1, "hash", "argon2id"),
    ]
    assert all(in_tx for _, _, in_tx in conn.executed)


async def test_credential_update_for_missing_user_writes_nothing_else():
    conn = FakeConnection(FakeCursor(rows=[]))
    store = _store(FakePool(conn))

    assert await store.update_user(9, {"firstname": "X"}, credential=("h", "argon2id")) is None
    assert len(conn.executed) == 1
