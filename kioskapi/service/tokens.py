from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Tuple

from kioskapi.logging import bind_request_user, get_logger
from kioskapi.service.errors import AuthenticationError, ServerError, ServiceError, ValidationError
from kioskapi.storage.models import AccessToken, User, utcnow

logger = get_logger(__name__)

NO_TOKEN_MESSAGE = "No token provided"
INVALID_TOKEN_MESSAGE = "Invalid or expired token"
USER_NOT_FOUND_MESSAGE = "User not found"


class TokenStore(Protocol):
    async def create_token(
        self, user_id: int, ttl: int, *, created_at: Optional[datetime] = None
    ) -> AccessToken: ...

    async def get_token(self, token_id: str) -> Optional[AccessToken]: ...

    async def delete_token(self, token_id: str) -> int: ...

    async def delete_user_tokens(self, user_id: int) -> int: ...

    async def purge_expired_tokens(self, now: Optional[datetime] = None) -> int: ...

    async def get_user(self, user_id: int) -> Optional[User]: ...


@dataclass(frozen=True)
class TokenCheck:
    valid: bool
    not_found: bool = False


@dataclass(frozen=True)
class AuthContext:
    """Who is asking, as established by the bearer token. Carries no secret."""

    user_id: int
    firstname: str
    lastname: str
    country_code: str
    phone: str
    token_id: str


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    value = value.strip()
    return value or None


class TokenService:
    """Issue, validate and revoke opaque access tokens.

    A token is Active until ``created_at + ttl``; past that it is
    Expired-but-present until the next check deletes it, after which it is
    Absent. Validation never extends the TTL.
    """

    def __init__(self, store: TokenStore) -> None:
        self.store = store

    async def issue(self, ttl: int, owner_id: int) -> AccessToken:
        if ttl < 0:
            raise ValidationError("token ttl must be non-negative", detail={"ttl": ttl})
        token = await self.store.create_token(owner_id, ttl)
        logger.info("token_issued", user_id=owner_id, ttl=ttl)
        return token

    async def _load_active(
        self, token_id: str, now: Optional[datetime]
    ) -> Tuple[Optional[AccessToken], TokenCheck]:
        token = await self.store.get_token(token_id)
        if token is None:
            return None, TokenCheck(valid=False, not_found=True)
        if token.expired(now or utcnow()):
            removed = await self.store.delete_token(token_id)
            logger.info("token_expired_deleted", user_id=token.user_id, removed=removed)
            return None, TokenCheck(valid=False, not_found=False)
        return token, TokenCheck(valid=True, not_found=False)

    async def check(self, token_id: str, *, now: Optional[datetime] = None) -> TokenCheck:
        _, result = await self._load_active(token_id, now)
        return result

    async def validate(self, token_id: str, *, now: Optional[datetime] = None) -> bool:
        return (await self.check(token_id, now=now)).valid

    async def revoke(self, token_id: str) -> int:
        removed = await self.store.delete_token(token_id)
        logger.info("token_revoked", removed=removed)
        return removed

    async def revoke_all(self, user_id: int) -> int:
        removed = await self.store.delete_user_tokens(user_id)
        logger.info("user_tokens_revoked", user_id=user_id, removed=removed)
        return removed

    async def resolve_owner(
        self, token_id: str, *, now: Optional[datetime] = None
    ) -> Optional[Tuple[AccessToken, Optional[User]]]:
        """Return the active token with its owner, or None when the token is not active.

        The owner is None when the token outlived its user row.
        """
        token, _ = await self._load_active(token_id, now)
        if token is None:
            return None
        return token, await self.store.get_user(token.user_id)

    async def purge_expired(self, *, now: Optional[datetime] = None) -> int:
        removed = await self.store.purge_expired_tokens(now or utcnow())
        if removed:
            logger.info("expired_tokens_purged", removed=removed)
        return removed


class AuthGate:
    """Admit a request only when its bearer token is valid and its owner exists."""

    def __init__(self, tokens: TokenService) -> None:
        self.tokens = tokens

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token_id = extract_bearer(authorization)
        if not token_id:
            raise AuthenticationError(NO_TOKEN_MESSAGE)
        try:
            resolved = await self.tokens.resolve_owner(token_id)
        except ServiceError:
            raise
        except Exception as exc:
            logger.error("auth_gate_failed", error_type=type(exc).__name__, error=str(exc))
            raise ServerError("Internal server error") from exc
        if resolved is None:
            raise AuthenticationError(INVALID_TOKEN_MESSAGE)
        token, user = resolved
        if user is None:
            raise AuthenticationError(USER_NOT_FOUND_MESSAGE)
        bind_request_user(user.id)
        return AuthContext(
            user_id=user.id,
            firstname=user.firstname,
            lastname=user.lastname,
            country_code=user.country_code,
            phone=user.phone,
            token_id=token.id,
        )


__all__ = [
    "AuthContext",
    "AuthGate",
    "TokenCheck",
    "TokenService",
    "TokenStore",
    "extract_bearer",
]
