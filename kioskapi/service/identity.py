from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from kioskapi.logging import get_logger
from kioskapi.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from kioskapi.service.tokens import TokenService
from kioskapi.storage.errors import ConstraintViolation
from kioskapi.storage.models import AccessToken, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"
OWN_PROFILE_MESSAGE = "You can only access your own profile."


class IdentityStore(Protocol):
    async def create_user(
        self,
        firstname: str,
        lastname: str,
        country_code: str,
        phone: str,
        *,
        credential: Optional[Tuple[str, str]] = None,
    ) -> User: ...

    async def get_user(self, user_id: int) -> Optional[User]: ...

    async def get_user_by_phone(self, country_code: str, phone: str) -> Optional[User]: ...

    async def update_user(
        self,
        user_id: int,
        patch: Mapping[str, Any],
        *,
        credential: Optional[Tuple[str, str]] = None,
    ) -> Optional[User]: ...

    async def delete_user(self, user_id: int) -> bool: ...

    async def get_password_record(self, user_id: int) -> Optional[Tuple[str, str]]: ...


class IdentityService:
    """Registration, login and profile management.

    Passwords are hashed here, explicitly, before anything reaches the store.
    """

    def __init__(
        self,
        store: IdentityStore,
        tokens: TokenService,
        *,
        token_ttl_seconds: int = 3600,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.token_ttl_seconds = token_ttl_seconds
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        # verified against on unknown accounts so both failure paths cost one argon2 verify
        self._dummy_hash = self._pwd_hasher.hash("kioskapi-timing-equalizer")

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _verify_hash(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    async def register(
        self,
        firstname: str,
        lastname: str,
        country_code: str,
        phone: str,
        password: str,
    ) -> User:
        try:
            user = await self.store.create_user(
                firstname,
                lastname,
                country_code,
                phone,
                credential=self._hash_password(password),
            )
        except ConstraintViolation as exc:
            logger.info("register_conflict", country_code=country_code)
            raise ConflictError(
                "An account with this phone number already exists",
                detail=exc.detail,
            ) from exc
        logger.info("user_registered", user_id=user.id)
        return user

    async def verify_password(self, user_id: int, password: str) -> bool:
        record = await self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            self._verify_hash(self._dummy_hash, password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        return self._verify_hash(stored_hash, password)

    async def login(
        self, country_code: str, phone: str, password: str
    ) -> Tuple[AccessToken, User]:
        user = await self.store.get_user_by_phone(country_code, phone)
        if user is None:
            self._verify_hash(self._dummy_hash, password)
            logger.info("login_failed", reason="unknown_account")
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
        if not await self.verify_password(user.id, password):
            logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
        token = await self.tokens.issue(self.token_ttl_seconds, user.id)
        logger.info("login_succeeded", user_id=user.id)
        return token, user

    async def logout(self, token_id: str) -> int:
        return await self.tokens.revoke(token_id)

    @staticmethod
    def ensure_self(actor_id: int, target_id: int) -> None:
        if actor_id != target_id:
            raise ForbiddenError(OWN_PROFILE_MESSAGE)

    async def get_user(self, user_id: int) -> User:
        user = await self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def update_user(self, user_id: int, patch: Mapping[str, Any]) -> User:
        """Apply a profile patch; a new password also signs out every session."""
        changes = dict(patch)
        password = changes.pop("password", None)
        credential = self._hash_password(password) if password else None
        try:
            user = await self.store.update_user(user_id, changes, credential=credential)
        except ConstraintViolation as exc:
            raise ConflictError(
                "An account with this phone number already exists",
                detail=exc.detail,
            ) from exc
        if user is None:
            raise NotFoundError("User not found")
        if credential is not None:
            revoked = await self.tokens.revoke_all(user_id)
            logger.info("password_changed", user_id=user_id, sessions_revoked=revoked)
        logger.info("user_updated", user_id=user_id, fields=sorted(changes))
        return user

    async def delete_user(self, user_id: int) -> None:
        if not await self.store.delete_user(user_id):
            raise NotFoundError("User not found")
        logger.info("user_deleted", user_id=user_id)
