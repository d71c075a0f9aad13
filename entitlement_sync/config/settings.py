"""
Entitlement sync configuration.

Settings are resolved in three layers, later layers winning:
  1. Built-in defaults
  2. Optional YAML file (ENTITLEMENT_CONFIG_PATH, or config/entitlement_sync.yml)
  3. Environment variables

Secrets (provider API key, webhook secret) are read from the environment only.

Usage:
    from entitlement_sync.config.settings import get_settings

    settings = get_settings()
    cooldown = settings.check_cooldown
"""

import logging
import os
from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = "entitlement_sync.yml"

# Environment variable -> settings field
_ENV_OVERRIDES = {
    "DODO_API_BASE_URL": "provider_api_base_url",
    "DODO_REQUEST_TIMEOUT_SECONDS": "provider_timeout_seconds",
    "SUBSCRIPTION_CHECK_COOLDOWN_HOURS": "check_cooldown_hours",
    "FALLBACK_EXPIRY_DAYS": "fallback_expiry_days",
    "ONE_TIME_ACCESS_DAYS": "one_time_access_days",
    "MAX_WRITE_ATTEMPTS": "max_write_attempts",
    "ENTITLEMENT_RECONCILE_BATCH_SIZE": "reconcile_batch_size",
}

# YAML section -> settings fields it may set
_YAML_SECTIONS = {
    "provider": {
        "api_base_url": "provider_api_base_url",
        "timeout_seconds": "provider_timeout_seconds",
    },
    "reconciliation": {
        "check_cooldown_hours": "check_cooldown_hours",
        "fallback_expiry_days": "fallback_expiry_days",
        "one_time_access_days": "one_time_access_days",
        "max_write_attempts": "max_write_attempts",
        "reconcile_batch_size": "reconcile_batch_size",
    },
}


@dataclass(frozen=True)
class ReconciliationSettings:
    """Resolved settings for the reconciliation adapters."""
    provider_api_base_url: str = "https://test.dodopayments.com"
    provider_timeout_seconds: float = 30.0
    provider_api_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    check_cooldown_hours: float = 6.0
    fallback_expiry_days: int = 30
    one_time_access_days: int = 30
    max_write_attempts: int = 3
    reconcile_batch_size: int = 200

    @property
    def check_cooldown(self) -> timedelta:
        return timedelta(hours=self.check_cooldown_hours)

    @property
    def fallback_duration(self) -> timedelta:
        return timedelta(days=self.fallback_expiry_days)

    @property
    def one_time_access(self) -> timedelta:
        return timedelta(days=self.one_time_access_days)


def _coerce(field_name: str, value: Any) -> Any:
    """Cast a raw YAML/env value to the type of the settings field."""
    default = ReconciliationSettings.__dataclass_fields__[field_name].default
    if isinstance(default, bool):
        return str(value).lower() in ("1", "true", "yes")
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return str(value)


def _resolve_config_path(config_path: Optional[str]) -> Optional[Path]:
    if config_path:
        return Path(config_path)

    env_path = os.getenv("ENTITLEMENT_CONFIG_PATH")
    if env_path:
        return Path(env_path)

    candidate = Path(os.getcwd()) / "config" / DEFAULT_CONFIG_FILENAME
    if candidate.exists():
        return candidate
    return None


def _load_yaml_values(path: Path) -> Dict[str, Any]:
    logger.info("Loading entitlement sync config from %s", path)
    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}

    values: Dict[str, Any] = {}
    for section, mapping in _YAML_SECTIONS.items():
        section_cfg = raw.get(section) or {}
        for key, field_name in mapping.items():
            if key in section_cfg and section_cfg[key] is not None:
                values[field_name] = _coerce(field_name, section_cfg[key])
    return values


def load_settings(config_path: Optional[str] = None) -> ReconciliationSettings:
    """
    Build settings from defaults, optional YAML file, and environment.

    Args:
        config_path: Explicit YAML path; falls back to ENTITLEMENT_CONFIG_PATH

    Raises:
        FileNotFoundError: If an explicitly configured YAML path does not exist
        ValueError: If a numeric override cannot be parsed
    """
    values: Dict[str, Any] = {}

    path = _resolve_config_path(config_path)
    if path is not None:
        if not path.exists():
            raise FileNotFoundError(f"Entitlement sync config not found: {path}")
        values.update(_load_yaml_values(path))

    for env_name, field_name in _ENV_OVERRIDES.items():
        raw_value = os.getenv(env_name)
        if raw_value:
            values[field_name] = _coerce(field_name, raw_value)

    # Secrets: environment only
    values["provider_api_key"] = os.getenv("DODO_PAYMENT_SECRET_KEY") or None
    values["webhook_secret"] = os.getenv("DODO_WEBHOOK_SECRET") or None

    known = {f.name for f in fields(ReconciliationSettings)}
    return ReconciliationSettings(**{k: v for k, v in values.items() if k in known})


_settings: Optional[ReconciliationSettings] = None
_settings_lock = Lock()


def get_settings() -> ReconciliationSettings:
    """Get the process-wide settings singleton."""
    global _settings
    if _settings is None:
        with _settings_lock:
            if _settings is None:
                _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (tests, config reload)."""
    global _settings
    with _settings_lock:
        _settings = None
