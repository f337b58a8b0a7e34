from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class User:
    id: int
    firstname: str
    lastname: str
    country_code: str
    phone: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class AccessToken:
    """Opaque bearer token; the id itself is the credential."""

    id: str
    ttl: int
    user_id: int
    created_at: datetime

    @classmethod
    def new(
        cls, user_id: int, ttl: int, *, now: Optional[datetime] = None
    ) -> "AccessToken":
        return cls(
            id=str(uuid.uuid4()),
            ttl=ttl,
            user_id=user_id,
            created_at=ensure_aware(now) if now else utcnow(),
        )

    @property
    def expires_at(self) -> datetime:
        return ensure_aware(self.created_at) + timedelta(seconds=self.ttl)

    def expired(self, now: Optional[datetime] = None) -> bool:
        current = ensure_aware(now) if now else utcnow()
        return current >= self.expires_at


@dataclass(frozen=True)
class Kiosk:
    id: int
    title: str
    description: str
    latitude: float
    longitude: float
    user_id: int
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Review:
    id: int
    user_id: int
    author_id: int
    comment: str
    mark: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class KioskOwner:
    firstname: str
    lastname: str
    reviews: List[Review] = field(default_factory=list)


@dataclass(frozen=True)
class KioskSearchResult:
    kiosk: Kiosk
    distance: float
    owner: Optional[KioskOwner] = None
