from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from kioskapi.logging import get_logger
from kioskapi.storage.common import (
    KIOSK_PATCH_FIELDS,
    USER_PATCH_FIELDS,
    filter_patch,
    safe_row_value,
)
from kioskapi.storage.errors import ConstraintViolation, StoreUnavailable
from kioskapi.storage.models import (
    AccessToken,
    Kiosk,
    KioskOwner,
    KioskSearchResult,
    Review,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS: Sequence[str] = (
    "CREATE EXTENSION IF NOT EXISTS postgis",
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        firstname TEXT NOT NULL,
        lastname TEXT NOT NULL,
        country_code TEXT NOT NULL,
        phone TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (country_code, phone)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id BIGINT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS access_token (
        id TEXT PRIMARY KEY,
        ttl INTEGER NOT NULL,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS access_token_user_idx ON access_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS kiosk (
        id BIGSERIAL PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        geolocation geography(Point, 4326) NOT NULL,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS kiosk_geolocation_idx ON kiosk USING GIST (geolocation)",
    """
    CREATE TABLE IF NOT EXISTS review (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        author_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        comment TEXT NOT NULL,
        mark SMALLINT NOT NULL DEFAULT 0 CHECK (mark BETWEEN 0 AND 5),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS review_user_idx ON review (user_id)",
)

_KIOSK_COLUMNS = """
    id, title, description, user_id, created_at, updated_at,
    ST_Y(geolocation::geometry) AS latitude,
    ST_X(geolocation::geometry) AS longitude
"""

_POINT = "ST_SetSRID(ST_MakePoint(%s, %s), 4326)::geography"


def _user_from_row(row: Mapping[str, Any]) -> User:
    return User(
        id=int(row["id"]),
        firstname=row["firstname"],
        lastname=row["lastname"],
        country_code=row["country_code"],
        phone=row["phone"],
        created_at=safe_row_value(row, "created_at", utcnow()),
        updated_at=safe_row_value(row, "updated_at", utcnow()),
    )


def _kiosk_from_row(row: Mapping[str, Any]) -> Kiosk:
    return Kiosk(
        id=int(row["id"]),
        title=row["title"],
        description=row["description"],
        latitude=float(row["latitude"]),
        longitude=float(row["longitude"]),
        user_id=int(row["user_id"]),
        created_at=safe_row_value(row, "created_at", utcnow()),
        updated_at=safe_row_value(row, "updated_at", utcnow()),
    )


def _review_from_row(row: Mapping[str, Any]) -> Review:
    return Review(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        author_id=int(row["author_id"]),
        comment=row["comment"],
        mark=int(safe_row_value(row, "mark", 0)),
        created_at=safe_row_value(row, "created_at", utcnow()),
        updated_at=safe_row_value(row, "updated_at", utcnow()),
    )


def _token_from_row(row: Mapping[str, Any]) -> AccessToken:
    return AccessToken(
        id=str(row["id"]),
        ttl=int(row["ttl"]),
        user_id=int(row["user_id"]),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres/PostGIS-backed store for users, tokens, kiosks and reviews.

    The pool is opened lazily by :meth:`open`, which also creates any missing
    tables, so constructing the store never touches the network.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": True},
            open=False,
        )
        self._opened = False

    @asynccontextmanager
    async def _connect(self):
        try:
            async with self.pool.connection() as conn:
                yield conn
        except (PoolTimeout, errors.OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable", {"error": str(exc)}) from exc

    async def open(self) -> None:
        if self._opened:
            return
        try:
            await self.pool.open(wait=True, timeout=10.0)
            await self._ensure_schema()
        except (PoolTimeout, errors.OperationalError) as exc:
            raise StoreUnavailable("database unreachable", {"error": str(exc)}) from exc
        self._opened = True

    async def _ensure_schema(self) -> None:
        """Create tables and indexes that are missing."""

        async with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                await conn.execute(statement)

    async def verify_connection(self) -> None:
        await self.open()
        async with self._connect() as conn:
            await conn.execute("SELECT 1")

    async def close(self) -> None:
        await self.pool.close()
        self._opened = False

    # users
    async def _upsert_credential(
        self, conn, user_id: int, credential: Tuple[str, str]
    ) -> None:
        password_hash, password_algo = credential
        await conn.execute(
            """
            INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (user_id) DO UPDATE
            SET password_hash = EXCLUDED.password_hash,
                password_algo = EXCLUDED.password_algo,
                last_updated_at = now()
            """,
            (user_id, password_hash, password_algo),
        )

    async def create_user(
        self,
        firstname: str,
        lastname: str,
        country_code: str,
        phone: str,
        *,
        credential: Optional[Tuple[str, str]] = None,
    ) -> User:
        """Insert a user and, when given, its credential in one transaction."""
        try:
            async with self._connect() as conn, conn.transaction():
                cur = await conn.execute(
                    """
                    INSERT INTO app_user (firstname, lastname, country_code, phone)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (firstname, lastname, country_code, phone),
                )
                row = await cur.fetchone()
                if credential is not None:
                    await self._upsert_credential(conn, int(row["id"]), credential)
        except errors.UniqueViolation:
            raise ConstraintViolation("phone number already registered", {"field": "phone"})
        return _user_from_row(row)

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,))
            row = await cur.fetchone()
        return _user_from_row(row) if row else None

    async def get_user_by_phone(self, country_code: str, phone: str) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM app_user WHERE country_code = %s AND phone = %s",
                (country_code, phone),
            )
            row = await cur.fetchone()
        return _user_from_row(row) if row else None

    async def update_user(
        self,
        user_id: int,
        patch: Mapping[str, Any],
        *,
        credential: Optional[Tuple[str, str]] = None,
    ) -> Optional[User]:
        """Apply ``patch`` and, when given, replace the credential in one transaction."""
        changes = filter_patch(patch, USER_PATCH_FIELDS)
        if not changes and credential is None:
            return await self.get_user(user_id)
        if changes:
            assignments = sql.SQL(", ").join(
                sql.SQL("{} = %s").format(sql.Identifier(column)) for column in changes
            )
            query = sql.SQL(
                "UPDATE app_user SET {}, updated_at = now() WHERE id = %s RETURNING *"
            ).format(assignments)
            params: Tuple[Any, ...] = (*changes.values(), user_id)
        else:
            query = sql.SQL(
                "UPDATE app_user SET updated_at = now() WHERE id = %s RETURNING *"
            )
            params = (user_id,)
        try:
            async with self._connect() as conn, conn.transaction():
                cur = await conn.execute(query, params)
                row = await cur.fetchone()
                if row and credential is not None:
                    await self._upsert_credential(conn, user_id, credential)
        except errors.UniqueViolation:
            raise ConstraintViolation("phone number already registered", {"field": "phone"})
        return _user_from_row(row) if row else None

    async def delete_user(self, user_id: int) -> bool:
        # credentials, tokens, kiosks and reviews go through ON DELETE CASCADE
        async with self._connect() as conn:
            cur = await conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

    async def get_password_record(self, user_id: int) -> Optional[Tuple[str, str]]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            )
            row = await cur.fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # tokens
    async def create_token(
        self, user_id: int, ttl: int, *, created_at: Optional[datetime] = None
    ) -> AccessToken:
        token = AccessToken.new(user_id, ttl, now=created_at)
        try:
            async with self._connect() as conn:
                await conn.execute(
                    "INSERT INTO access_token (id, ttl, user_id, created_at) VALUES (%s, %s, %s, %s)",
                    (token.id, token.ttl, token.user_id, token.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return token

    async def get_token(self, token_id: str) -> Optional[AccessToken]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM access_token WHERE id = %s", (token_id,)
            )
            row = await cur.fetchone()
        return _token_from_row(row) if row else None

    async def delete_token(self, token_id: str) -> int:
        async with self._connect() as conn:
            cur = await conn.execute("DELETE FROM access_token WHERE id = %s", (token_id,))
            return cur.rowcount

    async def delete_user_tokens(self, user_id: int) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM access_token WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount

    async def purge_expired_tokens(self, now: Optional[datetime] = None) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM access_token WHERE created_at + make_interval(secs => ttl) <= %s",
                (now or utcnow(),),
            )
            return cur.rowcount

    # kiosks
    async def create_kiosk(
        self,
        user_id: int,
        title: str,
        description: str,
        latitude: float,
        longitude: float,
    ) -> Kiosk:
        try:
            async with self._connect() as conn:
                cur = await conn.execute(
                    f"""
                    INSERT INTO kiosk (title, description, geolocation, user_id)
                    VALUES (%s, %s, {_POINT}, %s)
                    RETURNING {_KIOSK_COLUMNS}
                    """,
                    (title, description, longitude, latitude, user_id),
                )
                row = await cur.fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("kiosk owner missing", {"user_id": user_id})
        return _kiosk_from_row(row)

    async def get_kiosk(self, kiosk_id: int) -> Optional[Kiosk]:
        async with self._connect() as conn:
            cur = await conn.execute(
                f"SELECT {_KIOSK_COLUMNS} FROM kiosk WHERE id = %s", (kiosk_id,)
            )
            row = await cur.fetchone()
        return _kiosk_from_row(row) if row else None

    async def update_kiosk(
        self, kiosk_id: int, user_id: int, patch: Mapping[str, Any]
    ) -> Optional[Kiosk]:
        changes = filter_patch(patch, KIOSK_PATCH_FIELDS)
        parts: List[sql.Composable] = []
        params: List[Any] = []
        for column in ("title", "description"):
            if column in changes:
                parts.append(sql.SQL("{} = %s").format(sql.Identifier(column)))
                params.append(changes[column])
        if "latitude" in changes or "longitude" in changes:
            parts.append(
                sql.SQL(
                    "geolocation = ST_SetSRID(ST_MakePoint("
                    "COALESCE(%s::double precision, ST_X(geolocation::geometry)), "
                    "COALESCE(%s::double precision, ST_Y(geolocation::geometry))"
                    "), 4326)::geography"
                )
            )
            params.extend([changes.get("longitude"), changes.get("latitude")])
        parts.append(sql.SQL("updated_at = now()"))
        query = sql.SQL(
            "UPDATE kiosk SET {} WHERE id = %s AND user_id = %s RETURNING "
            + _KIOSK_COLUMNS
        ).format(sql.SQL(", ").join(parts))
        async with self._connect() as conn:
            cur = await conn.execute(query, (*params, kiosk_id, user_id))
            row = await cur.fetchone()
        return _kiosk_from_row(row) if row else None

    async def delete_kiosk(self, kiosk_id: int, user_id: int) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM kiosk WHERE id = %s AND user_id = %s", (kiosk_id, user_id)
            )
            return cur.rowcount > 0

    async def search_kiosks(
        self,
        latitude: float,
        longitude: float,
        max_distance: float,
        *,
        limit: int,
        skip: int = 0,
    ) -> List[KioskSearchResult]:
        async with self._connect() as conn:
            cur = await conn.execute(
                f"""
                WITH origin AS (SELECT {_POINT} AS point)
                SELECT k.id, k.title, k.description, k.user_id, k.created_at, k.updated_at,
                       ST_Y(k.geolocation::geometry) AS latitude,
                       ST_X(k.geolocation::geometry) AS longitude,
                       ST_Distance(k.geolocation, origin.point) AS distance,
                       u.firstname AS owner_firstname,
                       u.lastname AS owner_lastname
                FROM kiosk k
                CROSS JOIN origin
                JOIN app_user u ON u.id = k.user_id
                WHERE ST_DWithin(k.geolocation, origin.point, %s)
                ORDER BY distance ASC, k.id ASC
                LIMIT %s OFFSET %s
                """,
                (longitude, latitude, max_distance, limit, skip),
            )
            rows = await cur.fetchall()
            owner_ids = sorted({int(row["user_id"]) for row in rows})
            reviews_by_user: Dict[int, List[Review]] = {uid: [] for uid in owner_ids}
            if owner_ids:
                cur = await conn.execute(
                    "SELECT * FROM review WHERE user_id = ANY(%s) ORDER BY created_at DESC, id DESC",
                    (owner_ids,),
                )
                for review_row in await cur.fetchall():
                    review = _review_from_row(review_row)
                    reviews_by_user[review.user_id].append(review)
        return [
            KioskSearchResult(
                kiosk=_kiosk_from_row(row),
                distance=float(row["distance"]),
                owner=KioskOwner(
                    firstname=row["owner_firstname"],
                    lastname=row["owner_lastname"],
                    reviews=reviews_by_user.get(int(row["user_id"]), []),
                ),
            )
            for row in rows
        ]

    # reviews
    async def create_review(
        self, user_id: int, author_id: int, comment: str, mark: int
    ) -> Review:
        try:
            async with self._connect() as conn:
                cur = await conn.execute(
                    """
                    INSERT INTO review (user_id, author_id, comment, mark)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, author_id, comment, mark),
                )
                row = await cur.fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("review user missing", {"user_id": user_id})
        return _review_from_row(row)

    async def get_review(self, review_id: int) -> Optional[Review]:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT * FROM review WHERE id = %s", (review_id,))
            row = await cur.fetchone()
        return _review_from_row(row) if row else None

    async def list_reviews(self, user_id: int) -> List[Review]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM review WHERE user_id = %s ORDER BY created_at DESC, id DESC",
                (user_id,),
            )
            rows = await cur.fetchall()
        return [_review_from_row(row) for row in rows]

    async def delete_review(self, review_id: int, author_id: int) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "DELETE FROM review WHERE id = %s AND author_id = %s",
                (review_id, author_id),
            )
            return cur.rowcount > 0
