"""
Configuration management and loading.

Handles service settings from YAML and secrets from the environment.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

API_TOKEN_ENV = "BENEFITS_API_TOKEN"
DB_PATH_ENV = "BENEFIT_GUARD_DB"
DEFAULT_API_URL = "https://api.ajin.io/v3/query-inss-balances/finder/await"
VALID_LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}


@dataclass(frozen=True)
class DatabaseConfig:
    """Location of the SQLite database."""
    path: str = "benefit_guard.db"

    def __post_init__(self):
        if not self.path or not str(self.path).strip():
            raise ValueError("database path cannot be empty")


@dataclass(frozen=True)
class ExternalApiConfig:
    """Settings for the billed benefit lookup service."""
    url: str = DEFAULT_API_URL
    timeout_seconds: float = 150.0
    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    pacing_delay_seconds: float = 3.0

    def __post_init__(self):
        """Validate retry and timeout values."""
        if not self.url.startswith(("http://", "https://")):
            raise ValueError("external_api url must be an http(s) URL")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_base_seconds < 0:
            raise ValueError("backoff_base_seconds cannot be negative")
        if self.pacing_delay_seconds < 0:
            raise ValueError("pacing_delay_seconds cannot be negative")


@dataclass(frozen=True)
class CacheConfig:
    """Result reuse windows."""
    validity_days: int = 30
    transient_ttl_seconds: float = 300.0
    transient_max_entries: int = 1024

    def __post_init__(self):
        if self.validity_days <= 0:
            raise ValueError("validity_days must be > 0")
        if self.transient_ttl_seconds <= 0:
            raise ValueError("transient_ttl_seconds must be > 0")
        if self.transient_max_entries <= 0:
            raise ValueError("transient_max_entries must be > 0")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "info"
    json: bool = False

    def __post_init__(self):
        if self.level not in VALID_LOG_LEVELS:
            raise ValueError(f"logging level must be one of: {sorted(VALID_LOG_LEVELS)}")


@dataclass(frozen=True)
class ServiceConfig:
    """Complete service configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    external_api: ExternalApiConfig = field(default_factory=ExternalApiConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    api_token: Optional[str] = field(default=None, repr=False)


_SECTIONS = {
    "database": DatabaseConfig,
    "external_api": ExternalApiConfig,
    "cache": CacheConfig,
    "logging": LoggingConfig,
}

_FIELD_TYPES = {
    "path": str,
    "url": str,
    "timeout_seconds": float,
    "max_attempts": int,
    "backoff_base_seconds": float,
    "pacing_delay_seconds": float,
    "validity_days": int,
    "transient_ttl_seconds": float,
    "transient_max_entries": int,
    "level": str,
    "json": bool,
}


def load_service_config(
    path: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ServiceConfig:
    """Load and validate service configuration.

    Strict validation ensures no silent misconfigurations: unknown keys and
    out-of-range values are rejected. Without a path, defaults are used.
    The API token always comes from the environment (``.env`` is honored),
    never from the YAML file.

    Args:
        path: Optional path to YAML configuration file
        env: Environment mapping (defaults to ``os.environ`` after loading ``.env``)

    Returns:
        Validated ServiceConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if env is None:
        load_dotenv()
        env = os.environ

    raw_config: Dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Service config file not found: {path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

        if not isinstance(raw_config, dict):
            raise ValueError("Configuration file must contain a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTIONS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _parse_section(name, raw_config.get(name) or {}, section_type)
        for name, section_type in _SECTIONS.items()
    }

    db_override = env.get(DB_PATH_ENV)
    if db_override:
        sections["database"] = DatabaseConfig(path=db_override)

    api_token = env.get(API_TOKEN_ENV) or None
    return ServiceConfig(api_token=api_token, **sections)


def _parse_section(name: str, data: Any, section_type: type):
    """Parse and validate one configuration section.

    Raises:
        ValueError: If the section is malformed
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    allowed_keys = set(section_type.__dataclass_fields__)
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")

    values = {}
    for key, value in data.items():
        expected = _FIELD_TYPES[key]
        if expected is bool:
            if not isinstance(value, bool):
                raise ValueError(f"'{key}' in {name} must be true or false")
        elif expected is str:
            if not isinstance(value, str):
                raise ValueError(f"'{key}' in {name} must be a string")
            if key == "level":
                value = value.lower()
        else:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"'{key}' in {name} must be a number")
            if expected is int and value != int(value):
                raise ValueError(f"'{key}' in {name} must be a whole number")
            value = expected(value)
        values[key] = value

    return section_type(**values)
