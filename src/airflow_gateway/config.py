"""Configuration management for the Airflow gateway."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from airflow_gateway.utils.env import substitute_env_vars
from airflow_gateway.utils.http import normalize_base_url

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class ServerSettings(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1, le=65535)


class StorageSettings(BaseModel):
    sqlite_path: str = Field(default="./data/airflow_gateway.sqlite")
    sqlite_wal: bool = Field(default=True)


class UpstreamSettings(BaseModel):
    """Airflow REST API connection. Credentials are sent as HTTP Basic auth."""

    base_url: str = Field(default="http://localhost:8080")
    username: str = Field(default="")
    password: str = Field(default="", repr=False)
    timeout_seconds: float = Field(default=30.0, gt=0, le=600)

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        return normalize_base_url(value, label="upstream.base_url")


class SyncEndpoints(BaseModel):
    token: str | None = Field(default=None)
    users: str | None = Field(default=None)


class SyncSettings(BaseModel):
    enabled: bool = Field(default=True)
    interval_ms: int = Field(default=900_000, ge=1_000)
    initial_delay_ms: int = Field(default=60_000, ge=0)
    endpoints: SyncEndpoints = Field(default_factory=SyncEndpoints)


class IdPSettings(BaseModel):
    """Keycloak realm settings.

    ``issuer_uri`` and the sync endpoints are derived from ``base_url`` and
    ``realm`` when they are not configured explicitly.
    """

    base_url: str = Field(default="http://localhost:8180")
    realm: str = Field(default="master", min_length=1)
    issuer_uri: str | None = Field(default=None)
    client_id: str = Field(default="")
    client_secret: str = Field(default="", repr=False)
    admin_username: str = Field(default="")
    admin_password: str = Field(default="", repr=False)
    clock_skew_seconds: int = Field(default=30, ge=0, le=600)
    jwks_ttl_seconds: int = Field(default=3600, ge=60, le=86400)
    timeout_seconds: float = Field(default=15.0, gt=0, le=600)
    sync: SyncSettings = Field(default_factory=SyncSettings)

    @field_validator("base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        return normalize_base_url(value, label="idp.base_url")

    @field_validator("issuer_uri")
    @classmethod
    def _validate_issuer_uri(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return normalize_base_url(value, label="idp.issuer_uri")

    @model_validator(mode="after")
    def _fill_derived_urls(self) -> "IdPSettings":
        if self.issuer_uri is None:
            self.issuer_uri = f"{self.base_url}/realms/{self.realm}"
        if not self.sync.endpoints.token:
            self.sync.endpoints.token = (
                f"{self.base_url}/realms/master/protocol/openid-connect/token"
            )
        if not self.sync.endpoints.users:
            self.sync.endpoints.users = f"{self.base_url}/admin/realms/{self.realm}/users"
        return self

    @property
    def token_endpoint(self) -> str:
        return f"{self.base_url}/realms/{self.realm}/protocol/openid-connect/token"


class CorsSettings(BaseModel):
    allowed_origins: tuple[str, ...] = Field(default=())

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _validate_origins(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            return tuple(_split_csv_preserve_case(value))
        return value


class Settings(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    upstream: UpstreamSettings = Field(default_factory=UpstreamSettings)
    idp: IdPSettings = Field(default_factory=IdPSettings)
    cors: CorsSettings = Field(default_factory=CorsSettings)


ENV_KEYS = {
    "config_path": "GATEWAY_CONFIG_PATH",
    "host": "GATEWAY_HOST",
    "port": "GATEWAY_PORT",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "sqlite_path": "SQLITE_PATH",
    "sqlite_wal": "SQLITE_WAL",
    "upstream_base_url": "UPSTREAM_BASE_URL",
    "upstream_username": "UPSTREAM_USERNAME",
    "upstream_password": "UPSTREAM_PASSWORD",
    "upstream_timeout": "UPSTREAM_TIMEOUT_SECONDS",
    "idp_base_url": "IDP_BASE_URL",
    "idp_realm": "IDP_REALM",
    "idp_issuer_uri": "IDP_ISSUER_URI",
    "idp_client_id": "IDP_CLIENT_ID",
    "idp_client_secret": "IDP_CLIENT_SECRET",
    "idp_admin_username": "IDP_ADMIN_USERNAME",
    "idp_admin_password": "IDP_ADMIN_PASSWORD",
    "idp_clock_skew": "IDP_CLOCK_SKEW_SECONDS",
    "idp_jwks_ttl": "IDP_JWKS_TTL_SECONDS",
    "idp_timeout": "IDP_TIMEOUT_SECONDS",
    "sync_enabled": "IDP_SYNC_ENABLED",
    "sync_interval": "IDP_SYNC_INTERVAL_MS",
    "sync_initial_delay": "IDP_SYNC_INITIAL_DELAY_MS",
    "sync_token_endpoint": "IDP_SYNC_TOKEN_ENDPOINT",
    "sync_users_endpoint": "IDP_SYNC_USERS_ENDPOINT",
    "cors_allowed_origins": "CORS_ALLOWED_ORIGINS",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _split_csv_preserve_case(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    root = _project_root().resolve()
    if candidate.is_absolute():
        resolved = candidate.resolve()
    else:
        resolved = (root / candidate).resolve()
    if not resolved.is_relative_to(root):
        raise ValueError(f"Path traversal detected: '{path}' resolves outside project root")
    return str(resolved)


def _env_str(key: str, default: Any) -> Any:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %s", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def _load_config_file(path: str | None) -> dict[str, Any]:
    """Read the optional YAML settings file, substituting ``${VAR}`` references."""
    if not path:
        return {}
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    with open(config_path, "r", encoding="utf-8") as f:
        raw_data = yaml.safe_load(f) or {}
    if not isinstance(raw_data, dict):
        raise ValueError(f"Config file must contain a mapping: {config_path}")
    return substitute_env_vars(raw_data)


def _file_value(data: Mapping[str, Any], dotted: str, default: Any) -> Any:
    """Look up a dotted key such as ``idp.sync.interval_ms`` in nested file data."""
    current: Any = data
    for part in dotted.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return default
        current = current[part]
    return default if current is None else current


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    config_path_env = os.getenv(ENV_KEYS["config_path"])
    file_data = _load_config_file(_resolve_path(config_path_env) if config_path_env else None)

    def pick(dotted: str, default: Any) -> Any:
        return _file_value(file_data, dotted, default)

    log_file = _env_str(ENV_KEYS["log_file"], pick("logging.file", None))

    settings_data: dict[str, object] = {
        "server": {
            "host": _env_str(ENV_KEYS["host"], pick("server.host", ServerSettings().host)),
            "port": _env_int(ENV_KEYS["port"], pick("server.port", ServerSettings().port)),
        },
        "logging": {
            "level": _env_str(ENV_KEYS["log_level"], pick("logging.level", LoggingSettings().level)),
            "file": _resolve_path(log_file) if log_file else None,
        },
        "storage": {
            "sqlite_path": _resolve_path(
                _env_str(
                    ENV_KEYS["sqlite_path"],
                    pick("storage.sqlite_path", StorageSettings().sqlite_path),
                )
            ),
            "sqlite_wal": _env_bool(
                ENV_KEYS["sqlite_wal"], pick("storage.sqlite_wal", StorageSettings().sqlite_wal)
            ),
        },
        "upstream": {
            "base_url": _env_str(
                ENV_KEYS["upstream_base_url"],
                pick("upstream.base_url", UpstreamSettings().base_url),
            ),
            "username": _env_str(ENV_KEYS["upstream_username"], pick("upstream.username", "")),
            "password": _env_str(ENV_KEYS["upstream_password"], pick("upstream.password", "")),
            "timeout_seconds": _env_float(
                ENV_KEYS["upstream_timeout"],
                pick("upstream.timeout_seconds", UpstreamSettings().timeout_seconds),
            ),
        },
        "idp": {
            "base_url": _env_str(
                ENV_KEYS["idp_base_url"], pick("idp.base_url", IdPSettings().base_url)
            ),
            "realm": _env_str(ENV_KEYS["idp_realm"], pick("idp.realm", IdPSettings().realm)),
            "issuer_uri": _env_str(ENV_KEYS["idp_issuer_uri"], pick("idp.issuer_uri", None)),
            "client_id": _env_str(ENV_KEYS["idp_client_id"], pick("idp.client_id", "")),
            "client_secret": _env_str(
                ENV_KEYS["idp_client_secret"], pick("idp.client_secret", "")
            ),
            "admin_username": _env_str(
                ENV_KEYS["idp_admin_username"], pick("idp.admin_username", "")
            ),
            "admin_password": _env_str(
                ENV_KEYS["idp_admin_password"], pick("idp.admin_password", "")
            ),
            "clock_skew_seconds": _env_int(
                ENV_KEYS["idp_clock_skew"],
                pick("idp.clock_skew_seconds", IdPSettings().clock_skew_seconds),
            ),
            "jwks_ttl_seconds": _env_int(
                ENV_KEYS["idp_jwks_ttl"],
                pick("idp.jwks_ttl_seconds", IdPSettings().jwks_ttl_seconds),
            ),
            "timeout_seconds": _env_float(
                ENV_KEYS["idp_timeout"],
                pick("idp.timeout_seconds", IdPSettings().timeout_seconds),
            ),
            "sync": {
                "enabled": _env_bool(
                    ENV_KEYS["sync_enabled"], pick("idp.sync.enabled", SyncSettings().enabled)
                ),
                "interval_ms": _env_int(
                    ENV_KEYS["sync_interval"],
                    pick("idp.sync.interval_ms", SyncSettings().interval_ms),
                ),
                "initial_delay_ms": _env_int(
                    ENV_KEYS["sync_initial_delay"],
                    pick("idp.sync.initial_delay_ms", SyncSettings().initial_delay_ms),
                ),
                "endpoints": {
                    "token": _env_str(
                        ENV_KEYS["sync_token_endpoint"], pick("idp.sync.endpoints.token", None)
                    ),
                    "users": _env_str(
                        ENV_KEYS["sync_users_endpoint"], pick("idp.sync.endpoints.users", None)
                    ),
                },
            },
        },
        "cors": {
            "allowed_origins": _env_str(
                ENV_KEYS["cors_allowed_origins"], pick("cors.allowed_origins", ())
            ),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    return settings
