from __future__ import annotations

from datetime import date, datetime
from typing import Any, ClassVar, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from churchregistry.logging import get_correlation_id
from churchregistry.storage.common import record_to_dict
from churchregistry.storage.models import StageKind, StageRecord

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every API route."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class CamelModel(BaseModel):
    """JSON bodies use camelCase; snake_case names are accepted on input too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class LoginRequest(CamelModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("username must not be blank")
        if "\x00" in value:
            raise ValueError("username must not contain NUL characters")
        return value


class RefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = None


class AuthResponse(CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    username: str
    display_name: Optional[str] = None
    role: str
    refresh_expires_at: datetime


class PrincipalResponse(CamelModel):
    user_id: str
    username: str
    display_name: Optional[str] = None
    role: str


class StageCreateRequest(CamelModel):
    """Base for record creation bodies. ``link_field`` names the predecessor id."""

    kind: ClassVar[StageKind]
    link_field: ClassVar[Optional[str]] = None

    def predecessor_id(self) -> Optional[str]:
        return getattr(self, self.link_field) if self.link_field else None

    def record_fields(self) -> Dict[str, Any]:
        exclude = {self.link_field} if self.link_field else set()
        return self.model_dump(exclude=exclude)


class BaptismCreateRequest(StageCreateRequest):
    kind: ClassVar[StageKind] = StageKind.BAPTISM

    baptism_name: str = Field(..., min_length=1, max_length=255)
    surname: str = Field(..., min_length=1, max_length=255)
    gender: str = Field(..., min_length=1, max_length=10)
    date_of_birth: date
    fathers_name: str = Field(..., min_length=1, max_length=255)
    mothers_name: str = Field(..., min_length=1, max_length=255)
    sponsor_names: str = Field(..., min_length=1, max_length=255)
    parish_id: Optional[int] = None
    address: Optional[str] = Field(default=None, max_length=500)
    parish_address: Optional[str] = Field(default=None, max_length=500)
    parent_address: Optional[str] = Field(default=None, max_length=500)


class CommunionCreateRequest(StageCreateRequest):
    kind: ClassVar[StageKind] = StageKind.COMMUNION
    link_field: ClassVar[Optional[str]] = "baptism_id"

    baptism_id: str = Field(..., min_length=1, max_length=64)
    communion_date: date
    officiating_priest: str = Field(..., min_length=1, max_length=255)
    parish: str = Field(..., min_length=1, max_length=255)


class ConfirmationCreateRequest(StageCreateRequest):
    kind: ClassVar[StageKind] = StageKind.CONFIRMATION
    link_field: ClassVar[Optional[str]] = "communion_id"

    communion_id: str = Field(..., min_length=1, max_length=64)
    confirmation_date: date
    officiating_bishop: str = Field(..., min_length=1, max_length=255)
    parish: Optional[str] = Field(default=None, max_length=255)


class MarriageCreateRequest(StageCreateRequest):
    kind: ClassVar[StageKind] = StageKind.MARRIAGE
    link_field: ClassVar[Optional[str]] = "confirmation_id"

    confirmation_id: str = Field(..., min_length=1, max_length=64)
    partners_name: str = Field(..., min_length=1, max_length=255)
    marriage_date: date
    officiating_priest: str = Field(..., min_length=1, max_length=255)
    parish: str = Field(..., min_length=1, max_length=255)


class HolyOrderCreateRequest(StageCreateRequest):
    kind: ClassVar[StageKind] = StageKind.HOLY_ORDER
    link_field: ClassVar[Optional[str]] = "confirmation_id"

    confirmation_id: str = Field(..., min_length=1, max_length=64)
    ordination_date: date
    order_type: str = Field(..., min_length=1, max_length=20)
    officiating_bishop: str = Field(..., min_length=1, max_length=255)
    parish_id: Optional[int] = None


def serialize_record(record: Optional[StageRecord]) -> Optional[Dict[str, Any]]:
    """camelCase JSON view of a stored record, tagged with its kind."""
    if record is None:
        return None
    data = {to_camel(key): value for key, value in record_to_dict(record).items()}
    data["kind"] = record.kind.value
    return data


def serialize_records(records: List[StageRecord]) -> Dict[str, Any]:
    return {"items": [serialize_record(record) for record in records], "count": len(records)}
