from __future__ import annotations

import itertools
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from kioskapi.logging import get_logger
from kioskapi.storage.common import (
    KIOSK_PATCH_FIELDS,
    USER_PATCH_FIELDS,
    filter_patch,
    haversine_distance_m,
)
from kioskapi.storage.errors import ConstraintViolation
from kioskapi.storage.models import (
    AccessToken,
    Kiosk,
    KioskOwner,
    KioskSearchResult,
    Review,
    User,
    utcnow,
)


class MemoryStore:
    """In-process backing store for tests and local development.

    Methods are coroutines so the store is interchangeable with
    ``PostgresStore``; they never await, so each call runs atomically under
    ``_data_lock``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, Tuple[str, str]] = {}
        self.tokens: Dict[str, AccessToken] = {}
        self.kiosks: Dict[int, Kiosk] = {}
        self.reviews: Dict[int, Review] = {}
        self._user_seq = itertools.count(1)
        self._kiosk_seq = itertools.count(1)
        self._review_seq = itertools.count(1)
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()

    async def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def _natural_key_taken(
        self, country_code: str, phone: str, *, exclude_id: Optional[int] = None
    ) -> bool:
        return any(
            u.country_code == country_code and u.phone == phone and u.id != exclude_id
            for u in self.users.values()
        )

    # users
    async def create_user(
        self,
        firstname: str,
        lastname: str,
        country_code: str,
        phone: str,
        *,
        credential: Optional[Tuple[str, str]] = None,
    ) -> User:
        """Insert a user and, when given, its ``(password_hash, password_algo)``.

        Both land or neither does: the credential is written first and the
        user row only after it.
        """
        with self._data_lock:
            if self._natural_key_taken(country_code, phone):
                raise ConstraintViolation(
                    "phone number already registered",
                    {"field": "phone"},
                )
            now = utcnow()
            user = User(
                id=next(self._user_seq),
                firstname=firstname,
                lastname=lastname,
                country_code=country_code,
                phone=phone,
                created_at=now,
                updated_at=now,
            )
            if credential is not None:
                self.credentials[user.id] = credential
            self.users[user.id] = user
            return user

    async def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    async def get_user_by_phone(self, country_code: str, phone: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.country_code == country_code and u.phone == phone
                ),
                None,
            )

    async def update_user(
        self,
        user_id: int,
        patch: Mapping[str, Any],
        *,
        credential: Optional[Tuple[str, str]] = None,
    ) -> Optional[User]:
        changes = filter_patch(patch, USER_PATCH_FIELDS)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            country_code = changes.get("country_code", user.country_code)
            phone = changes.get("phone", user.phone)
            if self._natural_key_taken(country_code, phone, exclude_id=user_id):
                raise ConstraintViolation(
                    "phone number already registered",
                    {"field": "phone"},
                )
            updated = replace(user, **changes, updated_at=utcnow())
            if credential is not None:
                self.credentials[user_id] = credential
            self.users[user_id] = updated
            return updated

    async def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.credentials.pop(user_id, None)
            for token_id, token in list(self.tokens.items()):
                if token.user_id == user_id:
                    self.tokens.pop(token_id, None)
            for kiosk_id, kiosk in list(self.kiosks.items()):
                if kiosk.user_id == user_id:
                    self.kiosks.pop(kiosk_id, None)
            for review_id, review in list(self.reviews.items()):
                if review.user_id == user_id or review.author_id == user_id:
                    self.reviews.pop(review_id, None)
            return True

    async def get_password_record(self, user_id: int) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # tokens
    async def create_token(
        self, user_id: int, ttl: int, *, created_at: Optional[datetime] = None
    ) -> AccessToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            token = AccessToken.new(user_id, ttl, now=created_at)
            self.tokens[token.id] = token
            return token

    async def get_token(self, token_id: str) -> Optional[AccessToken]:
        with self._data_lock:
            return self.tokens.get(token_id)

    async def delete_token(self, token_id: str) -> int:
        with self._data_lock:
            return 1 if self.tokens.pop(token_id, None) is not None else 0

    async def delete_user_tokens(self, user_id: int) -> int:
        with self._data_lock:
            stale = [tid for tid, tok in self.tokens.items() if tok.user_id == user_id]
            for tid in stale:
                self.tokens.pop(tid, None)
            return len(stale)

    async def purge_expired_tokens(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        with self._data_lock:
            stale = [tid for tid, tok in self.tokens.items() if tok.expired(current)]
            for tid in stale:
                self.tokens.pop(tid, None)
            return len(stale)

    # kiosks
    async def create_kiosk(
        self,
        user_id: int,
        title: str,
        description: str,
        latitude: float,
        longitude: float,
    ) -> Kiosk:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("kiosk owner missing", {"user_id": user_id})
            now = utcnow()
            kiosk = Kiosk(
                id=next(self._kiosk_seq),
                title=title,
                description=description,
                latitude=latitude,
                longitude=longitude,
                user_id=user_id,
                created_at=now,
                updated_at=now,
            )
            self.kiosks[kiosk.id] = kiosk
            return kiosk

    async def get_kiosk(self, kiosk_id: int) -> Optional[Kiosk]:
        with self._data_lock:
            return self.kiosks.get(kiosk_id)

    async def update_kiosk(
        self, kiosk_id: int, user_id: int, patch: Mapping[str, Any]
    ) -> Optional[Kiosk]:
        changes = filter_patch(patch, KIOSK_PATCH_FIELDS)
        with self._data_lock:
            kiosk = self.kiosks.get(kiosk_id)
            if not kiosk or kiosk.user_id != user_id:
                return None
            updated = replace(kiosk, **changes, updated_at=utcnow())
            self.kiosks[kiosk_id] = updated
            return updated

    async def delete_kiosk(self, kiosk_id: int, user_id: int) -> bool:
        with self._data_lock:
            kiosk = self.kiosks.get(kiosk_id)
            if not kiosk or kiosk.user_id != user_id:
                return False
            self.kiosks.pop(kiosk_id, None)
            return True

    async def search_kiosks(
        self,
        latitude: float,
        longitude: float,
        max_distance: float,
        *,
        limit: int,
        skip: int = 0,
    ) -> List[KioskSearchResult]:
        with self._data_lock:
            matches: List[Tuple[float, Kiosk]] = []
            for kiosk in self.kiosks.values():
                distance = haversine_distance_m(
                    latitude, longitude, kiosk.latitude, kiosk.longitude
                )
                if distance <= max_distance:
                    matches.append((distance, kiosk))
            matches.sort(key=lambda item: (item[0], item[1].id))
            results: List[KioskSearchResult] = []
            for distance, kiosk in matches[skip : skip + limit]:
                owner = self.users.get(kiosk.user_id)
                results.append(
                    KioskSearchResult(
                        kiosk=kiosk,
                        distance=distance,
                        owner=KioskOwner(
                            firstname=owner.firstname,
                            lastname=owner.lastname,
                            reviews=self._reviews_for(owner.id),
                        )
                        if owner
                        else None,
                    )
                )
            return results

    # reviews
    def _reviews_for(self, user_id: int) -> List[Review]:
        return sorted(
            (r for r in self.reviews.values() if r.user_id == user_id),
            key=lambda r: (r.created_at, r.id),
            reverse=True,
        )

    async def create_review(
        self, user_id: int, author_id: int, comment: str, mark: int
    ) -> Review:
        with self._data_lock:
            missing = [uid for uid in (user_id, author_id) if uid not in self.users]
            if missing:
                raise ConstraintViolation("review user missing", {"user_id": missing[0]})
            now = utcnow()
            review = Review(
                id=next(self._review_seq),
                user_id=user_id,
                author_id=author_id,
                comment=comment,
                mark=mark,
                created_at=now,
                updated_at=now,
            )
            self.reviews[review.id] = review
            return review

    async def get_review(self, review_id: int) -> Optional[Review]:
        with self._data_lock:
            return self.reviews.get(review_id)

    async def list_reviews(self, user_id: int) -> List[Review]:
        with self._data_lock:
            return self._reviews_for(user_id)

    async def delete_review(self, review_id: int, author_id: int) -> bool:
        with self._data_lock:
            review = self.reviews.get(review_id)
            if not review or review.author_id != author_id:
                return False
            self.reviews.pop(review_id, None)
            return True
