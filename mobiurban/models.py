"""Records mirrored from the hosted backend tables."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

MISSING_NAME = "Nome não disponível"
DEFAULT_RATING = "5.0"
AVATAR_PLACEHOLDER_URL = "https://api.dicebear.com/7.x/avataaars/svg?seed={seed}"


class ImageKind(str, Enum):
    """Photo slots available on a driver profile."""

    PROFILE = "profile"
    CAR = "car"

    @property
    def column(self) -> str:
        return "profile_photo_url" if self is ImageKind.PROFILE else "car_photo_url"

    @property
    def title(self) -> str:
        return "Foto de Perfil" if self is ImageKind.PROFILE else "Foto do Carro"


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class User:
    """Represents a row of the ``users`` table."""

    id: str
    name: str
    phone: str
    email: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "User":
        return cls(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            phone=str(row.get("phone") or ""),
            email=_optional_text(row.get("email")),
        )


@dataclass(frozen=True)
class DriverProfile:
    """Represents a row of the ``driver_profiles`` table."""

    id: str
    user_id: str
    vehicle_model: str
    vehicle_plate: str
    vehicle_color: str
    vehicle_year: int
    price_per_km: float
    rating: Optional[float] = None
    is_online: bool = False
    profile_photo_url: Optional[str] = None
    car_photo_url: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DriverProfile":
        try:
            year = int(row.get("vehicle_year") or 0)
        except (TypeError, ValueError):
            year = 0
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            vehicle_model=str(row.get("vehicle_model") or ""),
            vehicle_plate=str(row.get("vehicle_plate") or ""),
            vehicle_color=str(row.get("vehicle_color") or ""),
            vehicle_year=year,
            price_per_km=_optional_float(row.get("price_per_km")) or 0.0,
            rating=_optional_float(row.get("rating")),
            is_online=bool(row.get("is_online")),
            profile_photo_url=_optional_text(row.get("profile_photo_url")),
            car_photo_url=_optional_text(row.get("car_photo_url")),
        )

    def photo_url(self, kind: ImageKind) -> Optional[str]:
        return self.profile_photo_url if kind is ImageKind.PROFILE else self.car_photo_url


@dataclass(frozen=True)
class DriverListing:
    """A driver profile combined with the contact details of its owner."""

    profile: DriverProfile
    name: str
    phone: str

    @classmethod
    def combine(cls, profile: DriverProfile, user: Optional[User]) -> "DriverListing":
        if user is None:
            return cls(profile=profile, name=MISSING_NAME, phone="")
        return cls(profile=profile, name=user.name or MISSING_NAME, phone=user.phone or "")

    @property
    def id(self) -> str:
        return self.profile.id

    @property
    def avatar_url(self) -> str:
        if self.profile.profile_photo_url:
            return self.profile.profile_photo_url
        return AVATAR_PLACEHOLDER_URL.format(seed=quote(self.name, safe=""))

    @property
    def initials(self) -> str:
        return self.name[:2].upper()

    @property
    def vehicle_summary(self) -> str:
        profile = self.profile
        return f"{profile.vehicle_color} {profile.vehicle_model} {profile.vehicle_year}"

    @property
    def rating_label(self) -> str:
        if self.profile.rating is None:
            return DEFAULT_RATING
        return f"{self.profile.rating:.1f}"

    @property
    def price_label(self) -> str:
        return f"R$ {self.profile.price_per_km:.2f}/km"

    @property
    def phone_link(self) -> str:
        return f"tel:{self.phone}"

    @property
    def whatsapp_link(self) -> str:
        return f"https://wa.me/{re.sub(r'[^0-9]', '', self.phone)}"


def drivers_count_label(count: int) -> str:
    """Return the availability headline shown above the drivers list."""

    if count == 1:
        return "1 motorista disponível"
    return f"{count} motoristas disponíveis"


@dataclass
class AuthSession:
    """Credentials issued by the backend authentication API."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    user_id: str
    email: Optional[str] = None
    user_metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "AuthSession":
        user = payload.get("user") or {}
        if not isinstance(user, Mapping):
            user = {}
        expires_at_raw = payload.get("expires_at")
        if expires_at_raw is not None:
            expires_at = datetime.fromtimestamp(int(expires_at_raw), tz=timezone.utc)
        else:
            expires_in = int(payload.get("expires_in") or 3600)
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        metadata = user.get("user_metadata") or {}
        return cls(
            access_token=str(payload["access_token"]),
            refresh_token=str(payload.get("refresh_token") or ""),
            expires_at=expires_at,
            user_id=str(user.get("id") or ""),
            email=_optional_text(user.get("email")),
            user_metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )

    def expires_within(self, margin: timedelta) -> bool:
        return self.expires_at <= datetime.now(timezone.utc) + margin


__all__ = [
    "AuthSession",
    "DriverListing",
    "DriverProfile",
    "ImageKind",
    "MISSING_NAME",
    "User",
    "drivers_count_label",
]
