from __future__ import annotations

from typing import List, Optional, Protocol

from kioskapi.logging import get_logger
from kioskapi.service.errors import ForbiddenError, NotFoundError, ValidationError
from kioskapi.storage.errors import ConstraintViolation
from kioskapi.storage.models import Review, User

logger = get_logger(__name__)

MIN_MARK = 0
MAX_MARK = 5


class ReviewStore(Protocol):
    async def create_review(
        self, user_id: int, author_id: int, comment: str, mark: int
    ) -> Review: ...

    async def list_reviews(self, user_id: int) -> List[Review]: ...

    async def delete_review(self, review_id: int, author_id: int) -> bool: ...

    async def get_user(self, user_id: int) -> Optional[User]: ...


class ReviewService:
    def __init__(self, store: ReviewStore) -> None:
        self.store = store

    async def create(
        self, author_id: int, user_id: int, comment: str, mark: int = 0
    ) -> Review:
        if author_id == user_id:
            raise ForbiddenError("You cannot review yourself.")
        if not MIN_MARK <= mark <= MAX_MARK:
            raise ValidationError(
                f"mark must be between {MIN_MARK} and {MAX_MARK}", detail={"mark": mark}
            )
        if await self.store.get_user(user_id) is None:
            raise NotFoundError("User not found")
        try:
            review = await self.store.create_review(user_id, author_id, comment, mark)
        except ConstraintViolation as exc:
            # target deleted between the lookup and the insert
            raise NotFoundError("User not found", detail=exc.detail) from exc
        logger.info("review_created", review_id=review.id, user_id=user_id, author_id=author_id)
        return review

    async def list_for_user(self, user_id: int) -> List[Review]:
        if await self.store.get_user(user_id) is None:
            raise NotFoundError("User not found")
        return await self.store.list_reviews(user_id)

    async def delete(self, review_id: int, author_id: int) -> bool:
        deleted = await self.store.delete_review(review_id, author_id)
        if deleted:
            logger.info("review_deleted", review_id=review_id, author_id=author_id)
        return deleted
