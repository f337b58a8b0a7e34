from __future__ import annotations

import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from kioskapi.service.kiosks import KioskView
from kioskapi.storage.models import Kiosk, KioskSearchResult, Review, User

MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 128
MAX_NAME_LENGTH = 100
MAX_TITLE_LENGTH = 200
MAX_TEXT_LENGTH = 5000

_PHONE_PATTERN = re.compile(r"^[0-9]{8,15}$")
_COUNTRY_CODE_PATTERN = re.compile(r"^\+?[0-9A-Za-z]{1,4}$")


class _CamelModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        serialize_by_alias=True,
    )


def _required_text(value: str, field_name: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{field_name} must not be empty")
    return stripped


def _validate_country_code(value: str) -> str:
    value = value.strip()
    if not 2 <= len(value) <= 5:
        raise ValueError("countryCode must be between 2 and 5 characters")
    if not _COUNTRY_CODE_PATTERN.match(value):
        raise ValueError("countryCode must be a dialing prefix such as +1")
    return value


def _validate_phone(value: str) -> str:
    value = value.strip()
    if not _PHONE_PATTERN.match(value):
        raise ValueError("phone must contain 8 to 15 digits")
    return value


def _validate_password(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


# users


class RegisterRequest(_CamelModel):
    firstname: str = Field(..., max_length=MAX_NAME_LENGTH)
    lastname: str = Field(..., max_length=MAX_NAME_LENGTH)
    country_code: str
    phone: str
    password: str

    @field_validator("firstname", "lastname")
    @classmethod
    def _names(cls, value: str, info) -> str:
        return _required_text(value, info.field_name)

    @field_validator("country_code")
    @classmethod
    def _country_code(cls, value: str) -> str:
        return _validate_country_code(value)

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: str) -> str:
        return _validate_phone(value)

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _validate_password(value)


class RegisterResponse(_CamelModel):
    success: str = "account created!"
    user_id: int


class LoginRequest(_CamelModel):
    country_code: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("country_code", "phone")
    @classmethod
    def _strip(cls, value: str, info) -> str:
        return _required_text(value, info.field_name)


class LoginResponse(_CamelModel):
    message: str = "Auth success"
    token: str
    user_id: int
    expires_in: int


class UserResponse(_CamelModel):
    id: int
    firstname: str
    lastname: str
    country_code: str
    phone: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            firstname=user.firstname,
            lastname=user.lastname,
            country_code=user.country_code,
            phone=user.phone,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class UserUpdateRequest(_CamelModel):
    firstname: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    lastname: Optional[str] = Field(default=None, max_length=MAX_NAME_LENGTH)
    country_code: Optional[str] = None
    phone: Optional[str] = None
    password: Optional[str] = None

    @field_validator("firstname", "lastname")
    @classmethod
    def _names(cls, value: Optional[str], info) -> Optional[str]:
        return None if value is None else _required_text(value, info.field_name)

    @field_validator("country_code")
    @classmethod
    def _country_code(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_country_code(value)

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_phone(value)

    @field_validator("password")
    @classmethod
    def _password(cls, value: Optional[str]) -> Optional[str]:
        return None if value is None else _validate_password(value)


class UserUpdateResponse(_CamelModel):
    success: str = "User updated"
    user: UserResponse


class SuccessResponse(_CamelModel):
    success: str


# kiosks


class GeoPoint(_CamelModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class KioskCreateRequest(_CamelModel):
    title: str = Field(..., max_length=MAX_TITLE_LENGTH)
    description: str = Field(..., max_length=MAX_TEXT_LENGTH)
    geolocation: GeoPoint

    @field_validator("title", "description")
    @classmethod
    def _text(cls, value: str, info) -> str:
        return _required_text(value, info.field_name)


class KioskUpdateRequest(_CamelModel):
    title: Optional[str] = Field(default=None, max_length=MAX_TITLE_LENGTH)
    description: Optional[str] = Field(default=None, max_length=MAX_TEXT_LENGTH)
    geolocation: Optional[GeoPoint] = None

    @field_validator("title", "description")
    @classmethod
    def _text(cls, value: Optional[str], info) -> Optional[str]:
        return None if value is None else _required_text(value, info.field_name)

    def to_patch(self) -> dict:
        patch = {"title": self.title, "description": self.description}
        if self.geolocation is not None:
            patch["latitude"] = self.geolocation.lat
            patch["longitude"] = self.geolocation.lng
        return patch


class KioskSearchRequest(_CamelModel):
    geolocation: GeoPoint
    max_distance: float = Field(..., gt=0, description="Search radius in metres")
    page: int = Field(default=1, ge=1)
    offset: int = Field(default=0, ge=0)


class ReviewResponse(_CamelModel):
    id: int
    user_id: int
    author_id: int
    comment: str
    mark: int
    created_at: datetime

    @classmethod
    def from_review(cls, review: Review) -> "ReviewResponse":
        return cls(
            id=review.id,
            user_id=review.user_id,
            author_id=review.author_id,
            comment=review.comment,
            mark=review.mark,
            created_at=review.created_at,
        )


class KioskOwnerResponse(_CamelModel):
    firstname: Optional[str] = None
    lastname: Optional[str] = None
    reviews: Optional[List[ReviewResponse]] = None


class KioskResponse(_CamelModel):
    id: int
    title: str
    description: str
    geolocation: GeoPoint
    user_id: int
    created_at: datetime
    updated_at: datetime
    user: Optional[KioskOwnerResponse] = None

    @classmethod
    def from_kiosk(cls, kiosk: Kiosk, user: Optional[KioskOwnerResponse] = None) -> "KioskResponse":
        return cls(
            id=kiosk.id,
            title=kiosk.title,
            description=kiosk.description,
            geolocation=GeoPoint(lat=kiosk.latitude, lng=kiosk.longitude),
            user_id=kiosk.user_id,
            created_at=kiosk.created_at,
            updated_at=kiosk.updated_at,
            user=user,
        )

    @classmethod
    def from_view(cls, view: KioskView) -> "KioskResponse":
        return cls.from_kiosk(
            view.kiosk,
            KioskOwnerResponse(firstname=view.owner_firstname, lastname=view.owner_lastname),
        )


class KioskSearchItem(KioskResponse):
    distance: float

    @classmethod
    def from_result(cls, result: KioskSearchResult) -> "KioskSearchItem":
        owner = None
        if result.owner is not None:
            owner = KioskOwnerResponse(
                firstname=result.owner.firstname,
                lastname=result.owner.lastname,
                reviews=[ReviewResponse.from_review(r) for r in result.owner.reviews],
            )
        kiosk = result.kiosk
        return cls(
            id=kiosk.id,
            title=kiosk.title,
            description=kiosk.description,
            geolocation=GeoPoint(lat=kiosk.latitude, lng=kiosk.longitude),
            user_id=kiosk.user_id,
            created_at=kiosk.created_at,
            updated_at=kiosk.updated_at,
            user=owner,
            distance=result.distance,
        )


class KioskUpdateResponse(_CamelModel):
    success: str = "Kiosk updated"
    kiosk: KioskResponse


# reviews


class ReviewCreateRequest(_CamelModel):
    comment: str = Field(..., max_length=MAX_TEXT_LENGTH)
    mark: int = Field(default=0, ge=0, le=5)

    @field_validator("comment")
    @classmethod
    def _comment(cls, value: str) -> str:
        return _required_text(value, "comment")
