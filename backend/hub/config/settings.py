"""
Engine settings loader.

Loads config/entitlements.yml (path overridable via HUB_CONFIG_PATH) and
applies environment variable overrides on top of it. The YAML file is
optional; built-in defaults apply when it is missing.

Usage:
    from hub.config.settings import get_settings

    settings = get_settings()
    settings.alert_min_failures
"""

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "entitlements.yml"

# Environment variable -> (settings attribute, converter)
_ENV_OVERRIDES = {
    "DATABASE_URL": ("database_url", str),
    "HUB_JWT_SECRET": ("jwt_secret", str),
    "HUB_JWT_ALGORITHM": ("jwt_algorithm", str),
    "HUB_JWT_ISSUER": ("jwt_issuer", str),
    "HUB_TOKEN_TTL_MINUTES": ("token_ttl_minutes", int),
    "HUB_TENANT_HEADER": ("tenant_header", str),
    "HUB_DEFAULT_CURRENCY": ("default_currency", str),
    "HUB_ALERT_MIN_FAILURES": ("alert_min_failures", int),
    "HUB_ALERT_WINDOW_HOURS": ("alert_window_hours", int),
    "HUB_ALERT_LIMIT": ("alert_limit", int),
    "HUB_ACCESS_LOG_RETENTION_DAYS": ("access_log_retention_days", int),
}


@dataclass(frozen=True)
class HubSettings:
    """Resolved engine settings."""
    database_url: Optional[str] = None
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    jwt_issuer: Optional[str] = None
    token_ttl_minutes: int = 60
    tenant_header: str = "X-Tenant-Id"
    internal_admin_roles: Tuple[str, ...] = ("super_admin", "support")
    default_currency: str = "BRL"
    alert_min_failures: int = 3
    alert_window_hours: int = 24
    alert_limit: int = 25
    access_log_retention_days: int = 365


class SettingsLoader:
    """
    Thread-safe singleton loader for config/entitlements.yml.

    YAML layout:
        identity:  jwt_algorithm, jwt_issuer, token_ttl_minutes,
                   tenant_header, internal_admin_roles
        pricing:   default_currency
        audit:     alert_min_failures, alert_window_hours, alert_limit,
                   retention_days
    """

    _instance: Optional["SettingsLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("HUB_CONFIG_PATH")
        self._settings = self._load()
        self._initialized = True

    @property
    def settings(self) -> HubSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Config resolution
    # ------------------------------------------------------------------

    def _resolve_path(self) -> Optional[Path]:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            # Repository root when installed in development mode
            Path(__file__).parent.parent.parent.parent / "config" / CONFIG_FILENAME,
            Path(os.getcwd()) / "config" / CONFIG_FILENAME,
            Path(os.getcwd()) / ".." / "config" / CONFIG_FILENAME,
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved
        return None

    def _load(self) -> HubSettings:
        path = self._resolve_path()
        raw: Dict[str, Any] = {}

        if path is None:
            logger.info("No %s found, using built-in defaults", CONFIG_FILENAME)
        elif not path.exists():
            logger.warning("Configured settings file does not exist: %s", path)
        else:
            logger.info("Loading engine settings from %s", path)
            with open(path, "r") as f:
                raw = yaml.safe_load(f) or {}

        values = self._from_yaml(raw)
        values.update(self._from_env())
        return HubSettings(**values)

    @staticmethod
    def _from_yaml(raw: Dict[str, Any]) -> Dict[str, Any]:
        identity = raw.get("identity") or {}
        pricing = raw.get("pricing") or {}
        audit = raw.get("audit") or {}

        values: Dict[str, Any] = {}
        for key in ("jwt_algorithm", "jwt_issuer", "token_ttl_minutes", "tenant_header"):
            if key in identity:
                values[key] = identity[key]
        if "internal_admin_roles" in identity:
            values["internal_admin_roles"] = tuple(identity["internal_admin_roles"])
        if "default_currency" in pricing:
            values["default_currency"] = str(pricing["default_currency"]).upper()
        for key in ("alert_min_failures", "alert_window_hours", "alert_limit"):
            if key in audit:
                values[key] = int(audit[key])
        if "retention_days" in audit:
            values["access_log_retention_days"] = int(audit["retention_days"])
        return values

    @staticmethod
    def _from_env() -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for env_name, (attr, convert) in _ENV_OVERRIDES.items():
            raw_value = os.getenv(env_name)
            if raw_value is None or raw_value == "":
                continue
            try:
                values[attr] = convert(raw_value)
            except ValueError:
                logger.warning(
                    "Ignoring invalid value for %s",
                    env_name,
                    extra={"env_var": env_name},
                )
        if "database_url" in values and values["database_url"].startswith("postgres://"):
            values["database_url"] = values["database_url"].replace("postgres://", "postgresql://", 1)
        return values


def get_settings() -> HubSettings:
    """Get the process-wide engine settings."""
    return SettingsLoader().settings


def reset_settings() -> None:
    """Drop the cached settings so the next call reloads them. Used by tests."""
    with SettingsLoader._lock:
        SettingsLoader._instance = None


def override_settings(**changes: Any) -> HubSettings:
    """Return a copy of the current settings with `changes` applied."""
    return replace(get_settings(), **changes)
