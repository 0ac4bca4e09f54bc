from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import ClassVar, Dict, Optional, Type, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    display_name: Optional[str] = None
    role: str = "user"
    parish_id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    """One outstanding refresh session. The value is single-use."""

    value: str
    user_id: str
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls, user_id: str, ttl_minutes: int, *, now: Optional[datetime] = None
    ) -> "RefreshToken":
        issued = now or utcnow()
        return cls(
            value=secrets.token_urlsafe(48),
            user_id=user_id,
            issued_at=issued,
            expires_at=issued + timedelta(minutes=ttl_minutes),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class RefreshRotation:
    consumed: RefreshToken
    issued: RefreshToken


class StageKind(str, Enum):
    """Sacrament record kinds, in lineage order."""

    BAPTISM = "baptism"
    COMMUNION = "communion"
    CONFIRMATION = "confirmation"
    MARRIAGE = "marriage"
    HOLY_ORDER = "holy_order"


def new_record_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Baptism:
    id: str
    baptism_name: str
    surname: str
    gender: str
    date_of_birth: date
    fathers_name: str
    mothers_name: str
    sponsor_names: str
    parish_id: Optional[int] = None
    address: Optional[str] = None
    parish_address: Optional[str] = None
    parent_address: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    kind: ClassVar[StageKind] = StageKind.BAPTISM
    link_field: ClassVar[Optional[str]] = None

    def lineage(self) -> Dict[str, str]:
        return {"baptism_id": self.id}


@dataclass
class FirstCommunion:
    id: str
    baptism_id: str
    communion_date: date
    officiating_priest: str
    parish: str
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    kind: ClassVar[StageKind] = StageKind.COMMUNION
    link_field: ClassVar[Optional[str]] = "baptism_id"

    def lineage(self) -> Dict[str, str]:
        return {"baptism_id": self.baptism_id, "communion_id": self.id}


@dataclass
class Confirmation:
    id: str
    baptism_id: str
    communion_id: str
    confirmation_date: date
    officiating_bishop: str
    parish: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    kind: ClassVar[StageKind] = StageKind.CONFIRMATION
    link_field: ClassVar[Optional[str]] = "communion_id"

    def lineage(self) -> Dict[str, str]:
        return {
            "baptism_id": self.baptism_id,
            "communion_id": self.communion_id,
            "confirmation_id": self.id,
        }


@dataclass
class Marriage:
    id: str
    baptism_id: str
    communion_id: str
    confirmation_id: str
    partners_name: str
    marriage_date: date
    officiating_priest: str
    parish: str
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    kind: ClassVar[StageKind] = StageKind.MARRIAGE
    link_field: ClassVar[Optional[str]] = "confirmation_id"

    def lineage(self) -> Dict[str, str]:
        return {
            "baptism_id": self.baptism_id,
            "communion_id": self.communion_id,
            "confirmation_id": self.confirmation_id,
        }


@dataclass
class HolyOrder:
    id: str
    baptism_id: str
    communion_id: str
    confirmation_id: str
    ordination_date: date
    order_type: str
    officiating_bishop: str
    parish_id: Optional[int] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    kind: ClassVar[StageKind] = StageKind.HOLY_ORDER
    link_field: ClassVar[Optional[str]] = "confirmation_id"

    def lineage(self) -> Dict[str, str]:
        return {
            "baptism_id": self.baptism_id,
            "communion_id": self.communion_id,
            "confirmation_id": self.confirmation_id,
        }


StageRecord = Union[Baptism, FirstCommunion, Confirmation, Marriage, HolyOrder]

RECORD_TYPES: Dict[StageKind, Type[StageRecord]] = {
    StageKind.BAPTISM: Baptism,
    StageKind.COMMUNION: FirstCommunion,
    StageKind.CONFIRMATION: Confirmation,
    StageKind.MARRIAGE: Marriage,
    StageKind.HOLY_ORDER: HolyOrder,
}
