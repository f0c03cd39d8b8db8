"""HTTP client for the hosted backend (tables, authentication and storage)."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import quote, urlsplit, urlunsplit

import httpx

from .models import AuthSession

logger = logging.getLogger("mobiurban.backend")


class BackendError(RuntimeError):
    """Raised when the hosted backend rejects or fails a request."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class AuthError(BackendError):
    """Raised when the authentication API rejects a request."""


class StorageError(BackendError):
    """Raised when the object storage API rejects a request."""


def _normalize_base_url(base_url: str) -> str:
    cleaned = (base_url or "").strip()
    if not cleaned:
        raise ValueError("Backend URL must not be empty")
    return cleaned.rstrip("/")


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("message", "msg", "error_description", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return default


def _filter_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _in_list(values: Iterable[object]) -> str:
    rendered = []
    for value in values:
        text = _filter_value(value)
        if any(char in text for char in ',()"'):
            text = '"' + text.replace('"', '\\"') + '"'
        rendered.append(text)
    return f"in.({','.join(rendered)})"


class BackendClient:
    """Thin wrapper around the backend's REST, auth and storage endpoints."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = _normalize_base_url(base_url)
        self._anon_key = anon_key.strip()
        if not self._anon_key:
            raise ValueError("Backend anon key must not be empty")
        self._http = httpx.Client(base_url=self._base_url, timeout=timeout, transport=transport)

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def anon_key(self) -> str:
        return self._anon_key

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "BackendClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------
    def _headers(self, access_token: Optional[str], **extra: str) -> Dict[str, str]:
        headers = {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {access_token or self._anon_key}",
        }
        headers.update(extra)
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        error_cls: type[BackendError] = BackendError,
        access_token: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        request_headers = self._headers(access_token, **dict(headers or {}))
        try:
            response = self._http.request(method, path, headers=request_headers, **kwargs)
        except httpx.RequestError as exc:
            logger.error("Request to backend %s %s failed: %s", method, path, exc)
            raise error_cls(f"Failed to contact the backend: {exc}") from exc

        if response.status_code >= 400:
            try:
                parsed = response.json()
            except ValueError:
                parsed = response.text
            message = _extract_error_message(
                parsed, f"Backend request failed with status {response.status_code}"
            )
            code = None
            if isinstance(parsed, dict):
                raw_code = parsed.get("code") or parsed.get("error_code") or parsed.get("error")
                code = str(raw_code) if raw_code is not None else None
            logger.warning(
                "Backend %s %s responded with %s: %s",
                method,
                path,
                response.status_code,
                message,
            )
            raise error_cls(message, status_code=response.status_code, code=code)

        return response

    @staticmethod
    def _json(response: httpx.Response, error_cls: type[BackendError] = BackendError) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise error_cls("Backend returned an invalid response") from exc

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------
    def _filters(
        self,
        eq: Optional[Mapping[str, object]] = None,
        in_: Optional[Mapping[str, Sequence[object]]] = None,
    ) -> List[tuple[str, str]]:
        params: List[tuple[str, str]] = []
        for column, value in (eq or {}).items():
            params.append((column, f"eq.{_filter_value(value)}"))
        for column, values in (in_ or {}).items():
            params.append((column, _in_list(values)))
        return params

    def select(
        self,
        table: str,
        columns: str = "*",
        *,
        eq: Optional[Mapping[str, object]] = None,
        in_: Optional[Mapping[str, Sequence[object]]] = None,
        access_token: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return the rows of ``table`` matching the given filters."""

        params = [("select", columns), *self._filters(eq, in_)]
        response = self._request("GET", f"/rest/v1/{table}", params=params, access_token=access_token)
        data = self._json(response)
        if data is None:
            return []
        if not isinstance(data, list):
            raise BackendError("Backend returned an unexpected response payload")
        return [row for row in data if isinstance(row, dict)]

    def insert(
        self,
        table: str,
        row: Mapping[str, object],
        *,
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Insert ``row`` and return the stored representation."""

        response = self._request(
            "POST",
            f"/rest/v1/{table}",
            json=dict(row),
            access_token=access_token,
            headers={"Prefer": "return=representation"},
        )
        data = self._json(response)
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            raise BackendError(f"Insert into '{table}' returned no row")
        return data

    def update(
        self,
        table: str,
        values: Mapping[str, object],
        *,
        eq: Mapping[str, object],
        access_token: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Update the rows matching ``eq`` and return them."""

        if not eq:
            raise ValueError("Refusing to update without a filter")
        response = self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=self._filters(eq),
            json=dict(values),
            access_token=access_token,
            headers={"Prefer": "return=representation"},
        )
        data = self._json(response)
        if not isinstance(data, list):
            return []
        return [row for row in data if isinstance(row, dict)]

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    def _session_from(self, response: httpx.Response) -> AuthSession:
        data = self._json(response, AuthError)
        if not isinstance(data, dict) or not data.get("access_token"):
            raise AuthError("Authentication API returned no session")
        try:
            return AuthSession.from_payload(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise AuthError("Authentication API returned a malformed session") from exc

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        response = self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email.strip(), "password": password},
            error_cls=AuthError,
        )
        return self._session_from(response)

    def sign_up(
        self,
        email: str,
        password: str,
        metadata: Optional[Mapping[str, object]] = None,
    ) -> Optional[AuthSession]:
        """Register an account; ``None`` means e-mail confirmation is pending."""

        response = self._request(
            "POST",
            "/auth/v1/signup",
            json={"email": email.strip(), "password": password, "data": dict(metadata or {})},
            error_cls=AuthError,
        )
        data = self._json(response, AuthError)
        if isinstance(data, dict) and data.get("access_token"):
            return self._session_from(response)
        return None

    def refresh_session(self, refresh_token: str) -> AuthSession:
        if not refresh_token:
            raise AuthError("No refresh token available")
        response = self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
            error_cls=AuthError,
        )
        return self._session_from(response)

    def sign_out(self, access_token: str) -> None:
        self._request("POST", "/auth/v1/logout", access_token=access_token, error_cls=AuthError)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        *,
        content_type: str,
        cache_control: str = "3600",
        upsert: bool = True,
        access_token: Optional[str] = None,
    ) -> str:
        """Store ``data`` under ``path`` and return the object key."""

        self._request(
            "POST",
            f"/storage/v1/object/{bucket}/{quote(path)}",
            content=data,
            access_token=access_token,
            headers={
                "Content-Type": content_type,
                "Cache-Control": f"max-age={cache_control}",
                "x-upsert": "true" if upsert else "false",
            },
            error_cls=StorageError,
        )
        return path

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self._base_url}/storage/v1/object/public/{bucket}/{quote(path)}"

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------
    def realtime_url(self) -> str:
        parts = urlsplit(self._base_url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        path = parts.path.rstrip("/") + "/realtime/v1/websocket"
        query = f"apikey={quote(self._anon_key, safe='')}&vsn=1.0.0"
        return urlunsplit((scheme, parts.netloc, path, query, ""))


__all__ = ["AuthError", "BackendClient", "BackendError", "StorageError"]
