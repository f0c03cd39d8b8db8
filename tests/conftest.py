from __future__ import annotations

import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mobiurban.backend import AuthError, BackendError, StorageError
from mobiurban.config import AppSettings, BackendSettings
from mobiurban.models import AuthSession


BACKEND_URL = "https://example.supabase.co"
ANON_KEY = "anon-test-key"


def make_auth_session(
    user_id: str = "user-1",
    *,
    email: str = "driver@example.com",
    expires_in: timedelta = timedelta(hours=1),
    metadata: Optional[Dict[str, Any]] = None,
) -> AuthSession:
    return AuthSession(
        access_token=f"access-{user_id}",
        refresh_token=f"refresh-{user_id}",
        expires_at=datetime.now(timezone.utc) + expires_in,
        user_id=user_id,
        email=email,
        user_metadata=dict(metadata or {}),
    )


class FakeBackend:
    """In-memory stand-in for :class:`mobiurban.backend.BackendClient`."""

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {"driver_profiles": [], "users": []}
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.fail_tables: set[str] = set()
        self.fail_storage = False
        self.require_confirmation = False
        self.refresh_fails = False
        self.calls: List[tuple] = []
        self.signed_out: List[str] = []

    base_url = BACKEND_URL
    anon_key = ANON_KEY

    # tables ------------------------------------------------------------
    def _check(self, table: str) -> None:
        if table in self.fail_tables:
            raise BackendError(f"relation '{table}' is unavailable", status_code=500)

    @staticmethod
    def _matches(
        row: Mapping[str, Any],
        eq: Optional[Mapping[str, object]],
        in_: Optional[Mapping[str, Sequence[object]]],
    ) -> bool:
        for column, value in (eq or {}).items():
            if row.get(column) != value:
                return False
        for column, values in (in_ or {}).items():
            if row.get(column) not in values:
                return False
        return True

    def select(self, table, columns="*", *, eq=None, in_=None, access_token=None):
        self.calls.append(("select", table, columns, dict(eq or {}), dict(in_ or {})))
        self._check(table)
        rows = [dict(row) for row in self.tables.get(table, []) if self._matches(row, eq, in_)]
        if columns != "*":
            wanted = [name.strip() for name in columns.split(",")]
            rows = [{name: row.get(name) for name in wanted} for row in rows]
        return rows

    def insert(self, table, row, *, access_token=None):
        self.calls.append(("insert", table, dict(row)))
        self._check(table)
        stored = dict(row)
        stored.setdefault("id", str(uuid.uuid4()))
        self.tables.setdefault(table, []).append(stored)
        return dict(stored)

    def update(self, table, values, *, eq, access_token=None):
        self.calls.append(("update", table, dict(values), dict(eq)))
        self._check(table)
        updated = []
        for row in self.tables.get(table, []):
            if self._matches(row, eq, None):
                row.update(values)
                updated.append(dict(row))
        return updated

    # auth --------------------------------------------------------------
    def add_account(self, email: str, password: str, **metadata: Any) -> str:
        user_id = str(uuid.uuid4())
        self.accounts[email] = {"id": user_id, "password": password, "metadata": metadata}
        return user_id

    def _session_for(self, email: str) -> AuthSession:
        account = self.accounts[email]
        return make_auth_session(account["id"], email=email, metadata=account["metadata"])

    def sign_in_with_password(self, email, password):
        account = self.accounts.get(email.strip())
        if account is None or account["password"] != password:
            raise AuthError("Invalid login credentials", status_code=400, code="invalid_grant")
        return self._session_for(email.strip())

    def sign_up(self, email, password, metadata=None):
        if email in self.accounts:
            raise AuthError("User already registered", status_code=422)
        self.add_account(email, password, **dict(metadata or {}))
        if self.require_confirmation:
            return None
        return self._session_for(email)

    def refresh_session(self, refresh_token):
        self.calls.append(("refresh", refresh_token))
        if self.refresh_fails:
            raise AuthError("Invalid Refresh Token", status_code=400)
        user_id = refresh_token.replace("refresh-", "", 1)
        return make_auth_session(user_id)

    def sign_out(self, access_token):
        self.signed_out.append(access_token)

    # storage -----------------------------------------------------------
    def upload(self, bucket, path, data, *, content_type, cache_control="3600", upsert=True, access_token=None):
        if self.fail_storage:
            raise StorageError("Bucket not found", status_code=404)
        self.objects[f"{bucket}/{path}"] = {
            "data": data,
            "content_type": content_type,
            "cache_control": cache_control,
            "upsert": upsert,
        }
        return path

    def public_url(self, bucket, path):
        return f"{BACKEND_URL}/storage/v1/object/public/{bucket}/{path}"

    def realtime_url(self):
        return "wss://example.supabase.co/realtime/v1/websocket?apikey=anon-test-key&vsn=1.0.0"

    def close(self):
        pass


def add_driver(
    backend: FakeBackend,
    *,
    name: Optional[str] = "Maria Souza",
    phone: str = "+55 (11) 98888-7777",
    online: bool = True,
    user_id: Optional[str] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    user_id = user_id or str(uuid.uuid4())
    if name is not None:
        backend.tables["users"].append({"id": user_id, "name": name, "phone": phone})
    profile = {
        "id": str(uuid.uuid4()),
        "user_id": user_id,
        "vehicle_model": "Onix",
        "vehicle_plate": "ABC1D23",
        "vehicle_color": "Prata",
        "vehicle_year": 2021,
        "price_per_km": 2.5,
        "rating": 4.87,
        "is_online": online,
        "profile_photo_url": None,
        "car_photo_url": None,
    }
    profile.update(overrides)
    backend.tables["driver_profiles"].append(profile)
    return profile


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def settings() -> AppSettings:
    return AppSettings(
        backend=BackendSettings(url=BACKEND_URL, anon_key=ANON_KEY),
        session_secret="tests-secret-key",
        realtime_enabled=False,
    )
