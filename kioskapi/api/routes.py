from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from kioskapi.api.schemas import (
    KioskCreateRequest,
    KioskResponse,
    KioskSearchItem,
    KioskSearchRequest,
    KioskUpdateRequest,
    KioskUpdateResponse,
    LoginRequest,
    LoginResponse,
    RegisterRequest,
    RegisterResponse,
    ReviewCreateRequest,
    ReviewResponse,
    SuccessResponse,
    UserResponse,
    UserUpdateRequest,
    UserUpdateResponse,
)
from kioskapi.logging import get_logger
from kioskapi.service.errors import (
    NotFoundError,
    RateLimitedError,
    ServerError,
    ServiceError,
    ValidationError,
)
from kioskapi.service.runtime import check_rate_limit, get_runtime
from kioskapi.service.tokens import NO_TOKEN_MESSAGE, AuthContext, extract_bearer

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

LOGIN_RATE_LIMITED_MESSAGE = "Too many login attempts, please try again later."


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_login_rate_limit(request: Request) -> None:
    runtime = get_runtime()
    client_ip = _client_ip(request)
    allowed = await check_rate_limit(
        runtime,
        f"login:{client_ip}",
        runtime.settings.login_rate_limit_per_minute,
        runtime.settings.login_rate_limit_window_seconds,
    )
    if not allowed:
        logger.warning("login_rate_limited", client_ip=client_ip)
        raise RateLimitedError(LOGIN_RATE_LIMITED_MESSAGE)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the bearer token into the calling user or fail with 401."""
    runtime = get_runtime()
    return await runtime.auth_gate.authenticate(authorization)


# users


@router.post("/users", status_code=201, tags=["users"])
async def register(body: RegisterRequest) -> RegisterResponse:
    """Create an account.

    Raises:
        400: If a field fails validation
        409: If the phone number is already registered
    """
    runtime = get_runtime()
    user = await runtime.identity.register(
        firstname=body.firstname,
        lastname=body.lastname,
        country_code=body.country_code,
        phone=body.phone,
        password=body.password,
    )
    return RegisterResponse(user_id=user.id)


@router.post("/users/login", tags=["users"])
async def login(body: LoginRequest, request: Request) -> LoginResponse:
    """Exchange phone and password for an access token.

    Unknown accounts and wrong passwords produce the same 401.

    Raises:
        401: If credentials are invalid
        429: If this client exceeded the login attempt limit
    """
    await _enforce_login_rate_limit(request)
    runtime = get_runtime()
    token, user = await runtime.identity.login(body.country_code, body.phone, body.password)
    return LoginResponse(token=token.id, user_id=user.id, expires_in=token.ttl)


@router.post("/users/logout", tags=["users"])
async def logout(authorization: Optional[str] = Header(None)) -> SuccessResponse:
    """Revoke the presented token. Revoking an unknown or expired token still succeeds."""
    token_id = extract_bearer(authorization)
    if not token_id:
        raise ValidationError(NO_TOKEN_MESSAGE)
    runtime = get_runtime()
    try:
        await runtime.identity.logout(token_id)
    except ServiceError:
        raise
    except Exception as exc:
        logger.error("logout_failed", error_type=type(exc).__name__, error=str(exc))
        raise ServerError("Error logging out") from exc
    return SuccessResponse(success="Logged out")


@router.get("/users/me", tags=["users"])
async def read_me(principal: AuthContext = Depends(get_user)) -> UserResponse:
    runtime = get_runtime()
    user = await runtime.identity.get_user(principal.user_id)
    return UserResponse.from_user(user)


@router.get("/users/{user_id}", tags=["users"])
async def read_user(
    user_id: int = Path(..., ge=1), principal: AuthContext = Depends(get_user)
) -> UserResponse:
    runtime = get_runtime()
    runtime.identity.ensure_self(principal.user_id, user_id)
    user = await runtime.identity.get_user(user_id)
    return UserResponse.from_user(user)


@router.put("/users/{user_id}", tags=["users"])
async def update_user(
    body: UserUpdateRequest,
    user_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
) -> UserUpdateResponse:
    runtime = get_runtime()
    runtime.identity.ensure_self(principal.user_id, user_id)
    user = await runtime.identity.update_user(
        user_id, body.model_dump(by_alias=False, exclude_none=True)
    )
    return UserUpdateResponse(user=UserResponse.from_user(user))


@router.delete("/users/{user_id}", tags=["users"])
async def delete_user(
    user_id: int = Path(..., ge=1), principal: AuthContext = Depends(get_user)
) -> SuccessResponse:
    """Delete the caller's account along with its tokens, kiosks and reviews."""
    runtime = get_runtime()
    runtime.identity.ensure_self(principal.user_id, user_id)
    await runtime.identity.delete_user(user_id)
    return SuccessResponse(success="User deleted")


# reviews


@router.get("/users/{user_id}/reviews", tags=["reviews"])
async def list_user_reviews(
    user_id: int = Path(..., ge=1), principal: AuthContext = Depends(get_user)
) -> List[ReviewResponse]:
    runtime = get_runtime()
    reviews = await runtime.reviews.list_for_user(user_id)
    return [ReviewResponse.from_review(r) for r in reviews]


@router.post("/users/{user_id}/reviews", status_code=201, tags=["reviews"])
async def create_review(
    body: ReviewCreateRequest,
    user_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
) -> ReviewResponse:
    runtime = get_runtime()
    review = await runtime.reviews.create(
        author_id=principal.user_id, user_id=user_id, comment=body.comment, mark=body.mark
    )
    return ReviewResponse.from_review(review)


@router.delete("/reviews/{review_id}", tags=["reviews"])
async def delete_review(
    review_id: int = Path(..., ge=1), principal: AuthContext = Depends(get_user)
) -> SuccessResponse:
    runtime = get_runtime()
    if not await runtime.reviews.delete(review_id, principal.user_id):
        raise NotFoundError("Review not found")
    return SuccessResponse(success="Review deleted")


# kiosks


@router.post("/kiosks", status_code=201, tags=["kiosks"])
async def create_kiosk(
    body: KioskCreateRequest, principal: AuthContext = Depends(get_user)
) -> KioskResponse:
    runtime = get_runtime()
    kiosk = await runtime.kiosks.create(
        principal.user_id,
        body.title,
        body.description,
        body.geolocation.lat,
        body.geolocation.lng,
    )
    return KioskResponse.from_kiosk(kiosk)


@router.post("/kiosks/search", tags=["kiosks"])
async def search_kiosks(
    body: KioskSearchRequest, principal: AuthContext = Depends(get_user)
) -> List[KioskSearchItem]:
    """Kiosks within ``maxDistance`` metres of ``geolocation``, nearest first.

    Each page holds ``SEARCH_PAGE_SIZE`` results; ``offset`` skips extra rows
    on top of the page.
    """
    runtime = get_runtime()
    results = await runtime.kiosks.search(
        body.geolocation.lat,
        body.geolocation.lng,
        body.max_distance,
        page=body.page,
        offset=body.offset,
    )
    return [KioskSearchItem.from_result(r) for r in results]


@router.get("/kiosks/{kiosk_id}", tags=["kiosks"])
async def read_kiosk(
    kiosk_id: int = Path(..., ge=1), principal: AuthContext = Depends(get_user)
) -> KioskResponse:
    runtime = get_runtime()
    view = await runtime.kiosks.get(kiosk_id)
    if view is None:
        raise NotFoundError("Kiosk not found")
    return KioskResponse.from_view(view)


@router.put("/kiosks/{kiosk_id}", tags=["kiosks"])
async def update_kiosk(
    body: KioskUpdateRequest,
    kiosk_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_user),
) -> KioskUpdateResponse:
    """Update one of the caller's kiosks; kiosks owned by others read as not found."""
    runtime = get_runtime()
    kiosk = await runtime.kiosks.update(kiosk_id, principal.user_id, body.to_patch())
    if kiosk is None:
        raise NotFoundError("Kiosk not found")
    return KioskUpdateResponse(kiosk=KioskResponse.from_kiosk(kiosk))


@router.delete("/kiosks/{kiosk_id}", tags=["kiosks"])
async def delete_kiosk(
    kiosk_id: int = Path(..., ge=1), principal: AuthContext = Depends(get_user)
) -> SuccessResponse:
    runtime = get_runtime()
    if not await runtime.kiosks.delete(kiosk_id, principal.user_id):
        raise NotFoundError("Kiosk not found")
    return SuccessResponse(success="Kiosk deleted")
