from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Protocol

from kioskapi.logging import get_logger
from kioskapi.storage.common import search_offset
from kioskapi.storage.models import Kiosk, KioskSearchResult, User

logger = get_logger(__name__)


class KioskStore(Protocol):
    async def create_kiosk(
        self,
        user_id: int,
        title: str,
        description: str,
        latitude: float,
        longitude: float,
    ) -> Kiosk: ...

    async def get_kiosk(self, kiosk_id: int) -> Optional[Kiosk]: ...

    async def update_kiosk(
        self, kiosk_id: int, user_id: int, patch: Mapping[str, Any]
    ) -> Optional[Kiosk]: ...

    async def delete_kiosk(self, kiosk_id: int, user_id: int) -> bool: ...

    async def search_kiosks(
        self,
        latitude: float,
        longitude: float,
        max_distance: float,
        *,
        limit: int,
        skip: int = 0,
    ) -> List[KioskSearchResult]: ...

    async def get_user(self, user_id: int) -> Optional[User]: ...


@dataclass(frozen=True)
class KioskView:
    kiosk: Kiosk
    owner_firstname: Optional[str] = None
    owner_lastname: Optional[str] = None


class KioskService:
    """Kiosk CRUD scoped to the owner, plus nearest-first radius search."""

    def __init__(self, store: KioskStore, *, page_size: int = 10) -> None:
        self.store = store
        self.page_size = page_size

    async def create(
        self,
        user_id: int,
        title: str,
        description: str,
        latitude: float,
        longitude: float,
    ) -> Kiosk:
        kiosk = await self.store.create_kiosk(user_id, title, description, latitude, longitude)
        logger.info("kiosk_created", kiosk_id=kiosk.id, user_id=user_id)
        return kiosk

    async def get(self, kiosk_id: int) -> Optional[KioskView]:
        kiosk = await self.store.get_kiosk(kiosk_id)
        if kiosk is None:
            return None
        owner = await self.store.get_user(kiosk.user_id)
        return KioskView(
            kiosk=kiosk,
            owner_firstname=owner.firstname if owner else None,
            owner_lastname=owner.lastname if owner else None,
        )

    async def update(
        self, kiosk_id: int, user_id: int, patch: Mapping[str, Any]
    ) -> Optional[Kiosk]:
        """Apply ``patch`` when ``user_id`` owns the kiosk; ``None`` otherwise."""
        kiosk = await self.store.update_kiosk(kiosk_id, user_id, patch)
        if kiosk is not None:
            logger.info("kiosk_updated", kiosk_id=kiosk_id, user_id=user_id)
        return kiosk

    async def delete(self, kiosk_id: int, user_id: int) -> bool:
        deleted = await self.store.delete_kiosk(kiosk_id, user_id)
        if deleted:
            logger.info("kiosk_deleted", kiosk_id=kiosk_id, user_id=user_id)
        return deleted

    async def search(
        self,
        latitude: float,
        longitude: float,
        max_distance: float,
        *,
        page: int = 1,
        offset: int = 0,
    ) -> List[KioskSearchResult]:
        skip = search_offset(page, offset, self.page_size)
        results = await self.store.search_kiosks(
            latitude, longitude, max_distance, limit=self.page_size, skip=skip
        )
        logger.debug(
            "kiosk_search",
            max_distance=max_distance,
            page=page,
            offset=offset,
            returned=len(results),
        )
        return results
