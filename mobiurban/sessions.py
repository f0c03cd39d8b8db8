"""In-memory storage of backend credentials for signed-in drivers."""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from .models import AuthSession


@dataclass
class _SessionRecord:
    auth: AuthSession
    expires_at: datetime


class SessionManager:
    """Map opaque browser session tokens to backend auth sessions."""

    def __init__(self, *, ttl: timedelta = timedelta(hours=8)) -> None:
        self._ttl = ttl
        self._sessions: Dict[str, _SessionRecord] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def create(self, auth: AuthSession) -> str:
        token = secrets.token_urlsafe(32)
        now = self._now()
        record = _SessionRecord(auth=auth, expires_at=now + self._ttl)
        with self._lock:
            expired = [key for key, existing in self._sessions.items() if existing.expires_at <= now]
            for key in expired:
                del self._sessions[key]
            self._sessions[token] = record
        return token

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def resolve(self, token: str) -> Optional[AuthSession]:
        now = self._now()
        with self._lock:
            record = self._sessions.get(token)
            if record is None:
                return None
            if record.expires_at <= now:
                self._sessions.pop(token, None)
                return None
            record.expires_at = now + self._ttl
            return record.auth

    def replace(self, token: str, auth: AuthSession) -> None:
        """Store refreshed credentials under an existing token."""

        with self._lock:
            record = self._sessions.get(token)
            if record is not None:
                record.auth = auth

    def destroy(self, token: str) -> Optional[AuthSession]:
        with self._lock:
            record = self._sessions.pop(token, None)
        return record.auth if record is not None else None

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)


__all__ = ["SessionManager"]
