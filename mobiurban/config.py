"""Configuration management for the MobiUrban web client."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml


DEFAULT_STORAGE_BUCKET = "profiles"


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class BackendSettings:
    """Connection details for the hosted backend project."""

    url: str
    anon_key: str
    storage_bucket: str = DEFAULT_STORAGE_BUCKET

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "BackendSettings":
        """Create :class:`BackendSettings` from raw dictionary data."""
        required_fields = {"url", "anon_key"}
        missing = {key for key in required_fields if not str(data.get(key) or "").strip()}
        if missing:
            raise ValueError(f"Missing required backend configuration fields: {', '.join(sorted(missing))}")

        bucket = str(data.get("storage_bucket") or DEFAULT_STORAGE_BUCKET).strip()
        return BackendSettings(
            url=str(data["url"]).strip().rstrip("/"),
            anon_key=str(data["anon_key"]).strip(),
            storage_bucket=bucket or DEFAULT_STORAGE_BUCKET,
        )


@dataclass(frozen=True)
class AppSettings:
    """Settings for the web application as a whole."""

    backend: BackendSettings
    session_secret: str
    secure_cookies: bool = False
    realtime_enabled: bool = True
    session_ttl_hours: int = 8
    log_level: str = "INFO"


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "mobiurban.yaml").resolve(strict=False)
    return candidate


def _load_yaml(config_path: Path) -> Dict[str, object]:
    if not config_path.exists():
        return {}
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping")
    return raw


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AppSettings:
    """Load settings from YAML, letting environment variables take precedence."""

    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = resolve_config_path(env.get("MOBIURBAN_CONFIG"))
    raw = _load_yaml(config_path)

    backend_raw = raw.get("backend") or {}
    if not isinstance(backend_raw, dict):
        raise ValueError("The 'backend' configuration section must be a mapping")
    backend_data: Dict[str, object] = dict(backend_raw)
    overrides = {
        "url": env.get("MOBIURBAN_BACKEND_URL"),
        "anon_key": env.get("MOBIURBAN_BACKEND_ANON_KEY"),
        "storage_bucket": env.get("MOBIURBAN_STORAGE_BUCKET"),
    }
    for key, value in overrides.items():
        if value:
            backend_data[key] = value
    backend = BackendSettings.from_dict(backend_data)

    session_secret = env.get("MOBIURBAN_SESSION_SECRET") or str(raw.get("session_secret") or "")
    if not session_secret.strip():
        raise ValueError("MOBIURBAN_SESSION_SECRET must be configured to serve the web client")

    secure_raw = env.get("MOBIURBAN_SESSION_SECURE")
    if secure_raw is None and raw.get("secure_cookies") is not None:
        secure_raw = str(raw.get("secure_cookies"))
    realtime_raw = env.get("MOBIURBAN_REALTIME")
    if realtime_raw is None and raw.get("realtime") is not None:
        realtime_raw = str(raw.get("realtime"))

    try:
        ttl_hours = int(raw.get("session_ttl_hours", 8))
    except (TypeError, ValueError) as exc:
        raise ValueError("session_ttl_hours must be an integer") from exc

    return AppSettings(
        backend=backend,
        session_secret=session_secret.strip(),
        secure_cookies=_env_flag(secure_raw, False),
        realtime_enabled=_env_flag(realtime_raw, True),
        session_ttl_hours=ttl_hours,
        log_level=str(env.get("MOBIURBAN_LOG_LEVEL") or raw.get("log_level") or "INFO").upper(),
    )


__all__ = [
    "AppSettings",
    "BackendSettings",
    "DEFAULT_STORAGE_BUCKET",
    "load_settings",
    "resolve_config_path",
]
