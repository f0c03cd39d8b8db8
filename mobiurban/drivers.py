"""Data-fetching glue for driver listings and the driver's own profile."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from .backend import BackendClient, BackendError
from .models import AuthSession, DriverListing, DriverProfile, ImageKind, User

logger = logging.getLogger("mobiurban.drivers")

DRIVER_PROFILES_TABLE = "driver_profiles"
USERS_TABLE = "users"

MIN_VEHICLE_YEAR = 1950


def fetch_online_drivers(
    client: BackendClient,
    *,
    access_token: Optional[str] = None,
) -> List[DriverListing]:
    """Return every online driver combined with the owner's contact details."""

    logger.debug("Fetching online drivers")
    try:
        rows = client.select(DRIVER_PROFILES_TABLE, "*", eq={"is_online": True}, access_token=access_token)
    except BackendError as exc:
        logger.error("Failed to fetch driver_profiles: %s", exc)
        raise

    if not rows:
        logger.debug("No online drivers found")
        return []

    profiles = [DriverProfile.from_row(row) for row in rows]
    user_ids = list(dict.fromkeys(profile.user_id for profile in profiles))

    try:
        user_rows = client.select(
            USERS_TABLE,
            "id, name, phone",
            in_={"id": user_ids},
            access_token=access_token,
        )
    except BackendError as exc:
        logger.error("Failed to fetch users for online drivers: %s", exc)
        raise

    users: Dict[str, User] = {}
    for row in user_rows:
        user = User.from_row(row)
        users[user.id] = user

    listings = [DriverListing.combine(profile, users.get(profile.user_id)) for profile in profiles]
    logger.debug("Combined %d online driver(s)", len(listings))
    return listings


def get_driver_listing(
    client: BackendClient,
    driver_id: str,
    *,
    access_token: Optional[str] = None,
) -> Optional[DriverListing]:
    """Return a single listing by driver profile id."""

    rows = client.select(DRIVER_PROFILES_TABLE, "*", eq={"id": driver_id}, access_token=access_token)
    if not rows:
        return None
    profile = DriverProfile.from_row(rows[0])
    user_rows = client.select(
        USERS_TABLE,
        "id, name, phone",
        eq={"id": profile.user_id},
        access_token=access_token,
    )
    user = User.from_row(user_rows[0]) if user_rows else None
    return DriverListing.combine(profile, user)


def get_profile_for_user(client: BackendClient, session: AuthSession) -> Optional[DriverProfile]:
    rows = client.select(
        DRIVER_PROFILES_TABLE,
        "*",
        eq={"user_id": session.user_id},
        access_token=session.access_token,
    )
    if not rows:
        return None
    return DriverProfile.from_row(rows[0])


def ensure_user_record(client: BackendClient, session: AuthSession) -> User:
    """Make sure the signed-in account has a ``users`` row."""

    rows = client.select(
        USERS_TABLE,
        "*",
        eq={"id": session.user_id},
        access_token=session.access_token,
    )
    if rows:
        return User.from_row(rows[0])

    metadata = session.user_metadata
    row = {
        "id": session.user_id,
        "name": str(metadata.get("name") or session.email or "").strip(),
        "phone": str(metadata.get("phone") or "").strip(),
        "email": session.email,
    }
    logger.info("Creating users row for %s", session.user_id)
    created = client.insert(USERS_TABLE, row, access_token=session.access_token)
    return User.from_row(created)


def _clean_profile_form(form: Mapping[str, object], *, now: Optional[datetime] = None) -> Dict[str, object]:
    current_year = (now or datetime.now()).year
    values: Dict[str, object] = {}
    labels = {
        "vehicle_model": "o modelo do veículo",
        "vehicle_plate": "a placa do veículo",
        "vehicle_color": "a cor do veículo",
    }
    for key, label in labels.items():
        text = str(form.get(key) or "").strip()
        if not text:
            raise ValueError(f"Informe {label}.")
        values[key] = text
    values["vehicle_plate"] = str(values["vehicle_plate"]).upper()

    try:
        year = int(str(form.get("vehicle_year") or "").strip())
    except ValueError as exc:
        raise ValueError("Ano do veículo inválido.") from exc
    if year < MIN_VEHICLE_YEAR or year > current_year + 1:
        raise ValueError(f"O ano do veículo deve estar entre {MIN_VEHICLE_YEAR} e {current_year + 1}.")
    values["vehicle_year"] = year

    raw_price = str(form.get("price_per_km") or "").strip().replace(",", ".")
    try:
        price = round(float(raw_price), 2)
    except ValueError as exc:
        raise ValueError("Preço por km inválido.") from exc
    if price <= 0:
        raise ValueError("O preço por km deve ser maior que zero.")
    values["price_per_km"] = price
    return values


def save_profile(
    client: BackendClient,
    session: AuthSession,
    form: Mapping[str, object],
    *,
    existing: Optional[DriverProfile] = None,
) -> DriverProfile:
    """Create or update the vehicle details of the signed-in driver."""

    values = _clean_profile_form(form)
    if existing is None:
        values["user_id"] = session.user_id
        values["is_online"] = False
        row = client.insert(DRIVER_PROFILES_TABLE, values, access_token=session.access_token)
        logger.info("Created driver profile %s for %s", row.get("id"), session.user_id)
        return DriverProfile.from_row(row)

    rows = client.update(
        DRIVER_PROFILES_TABLE,
        values,
        eq={"id": existing.id},
        access_token=session.access_token,
    )
    if not rows:
        raise BackendError("Perfil de motorista não encontrado.")
    return DriverProfile.from_row(rows[0])


def set_online(
    client: BackendClient,
    session: AuthSession,
    profile: DriverProfile,
    online: bool,
) -> DriverProfile:
    rows = client.update(
        DRIVER_PROFILES_TABLE,
        {"is_online": online},
        eq={"id": profile.id},
        access_token=session.access_token,
    )
    if not rows:
        raise BackendError("Perfil de motorista não encontrado.")
    logger.info("Driver %s is now %s", profile.id, "online" if online else "offline")
    return DriverProfile.from_row(rows[0])


def set_photo(
    client: BackendClient,
    session: AuthSession,
    profile: DriverProfile,
    kind: ImageKind,
    url: str,
) -> DriverProfile:
    """Point the profile's photo slot at ``url``; an empty string clears it."""

    rows = client.update(
        DRIVER_PROFILES_TABLE,
        {kind.column: url or None},
        eq={"id": profile.id},
        access_token=session.access_token,
    )
    if not rows:
        raise BackendError("Perfil de motorista não encontrado.")
    return DriverProfile.from_row(rows[0])


__all__ = [
    "DRIVER_PROFILES_TABLE",
    "USERS_TABLE",
    "ensure_user_record",
    "fetch_online_drivers",
    "get_driver_listing",
    "get_profile_for_user",
    "save_profile",
    "set_online",
    "set_photo",
]
