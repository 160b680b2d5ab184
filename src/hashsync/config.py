"""Configuration management for hashsync."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_REPO_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_CONFIG_PATH = _REPO_ROOT / "config" / "hashsync.yml"
_USER_CONFIG_PATHS = [
    Path("~/.config/hashsync/hashsync.yml").expanduser(),
    Path("/config/hashsync.yml"),
]

SUPPORTED_ALGORITHMS = ("md5", "sha256")
DEFAULT_RETRY_INTERVALS = {1: 30, 2: 300, 3: 21600}


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping from disk, returning an empty mapping if missing."""
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return data


def _yaml_settings_source(paths: list[Path]):
    """Create a Pydantic settings source for a list of YAML paths."""

    def source() -> dict[str, Any]:
        merged: dict[str, Any] = {}
        for path in paths:
            merged.update(_load_yaml(path))
        return merged

    return source


def _set_nested_value(target: dict[str, Any], path: str, value: Any) -> None:
    """Set a dotted-path value on a nested mapping, creating containers."""
    parts = path.split(".")
    cursor = target
    for key in parts[:-1]:
        node = cursor.get(key)
        if not isinstance(node, dict):
            node = {}
            cursor[key] = node
        cursor = node
    cursor[parts[-1]] = value


def _parse_env_value(raw: str, kind: str) -> Any:
    """Parse an environment value into the requested primitive type."""
    if kind == "int":
        return int(raw)
    if kind == "bool":
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if kind == "json":
        return json.loads(raw)
    return raw


def _env_settings_source():
    """Create a settings source that maps environment variables to config keys."""
    mapping = {
        "HASHSYNC_DATABASE_URL": ("database.url", "str"),
        "DATABASE_URL": ("database.url", "str"),
        "HASHSYNC_HASH_ALGORITHM": ("hashing.algorithm", "str"),
        "HASHSYNC_MAX_DEPTH": ("propagation.max_depth", "int"),
        "HASHSYNC_RETRY_INTERVALS": ("delivery.retry_intervals", "json"),
        "HASHSYNC_DELIVERY_TIMEOUT": ("delivery.timeout_seconds", "int"),
        "HASHSYNC_DRIFT_CHUNK_SIZE": ("drift.chunk_size", "int"),
        "HASHSYNC_HTTP_BASE_URL": ("http.base_url", "str"),
        "HASHSYNC_HTTP_HEADERS": ("http.headers", "json"),
        "CELERY_BROKER_URL": ("celery.broker_url", "str"),
        "CELERY_RESULT_BACKEND": ("celery.result_backend", "str"),
        "HASHSYNC_REGISTRATION_MODULES": ("registration_modules", "json"),
        "HASHSYNC_LOG_LEVEL": ("log_level", "str"),
        "HASHSYNC_LOG_JSON": ("log_json", "bool"),
    }

    def source() -> dict[str, Any]:
        data: dict[str, Any] = {}
        for env_key, (path, kind) in mapping.items():
            raw = os.environ.get(env_key)
            if raw is None:
                continue
            _set_nested_value(data, path, _parse_env_value(raw, kind))
        return data

    return source


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    url: str = "sqlite:///hashsync.db"


class HashingConfig(BaseModel):
    """Digest algorithm selection."""

    algorithm: str = "md5"

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, value: str) -> str:
        """Ensure the digest algorithm is supported."""
        normalized = value.strip().lower()
        if normalized not in SUPPORTED_ALGORITHMS:
            raise ValueError(
                f"hashing.algorithm must be one of {', '.join(SUPPORTED_ALGORITHMS)}."
            )
        return normalized


class PropagationConfig(BaseModel):
    """Propagation guard and snapshot settings."""

    max_depth: int = 10
    snapshot_ttl_seconds: int = 300

    @field_validator("max_depth")
    @classmethod
    def validate_max_depth(cls, value: int) -> int:
        """Ensure the depth bound is positive."""
        if value < 1:
            raise ValueError("propagation.max_depth must be >= 1.")
        return value


class DeliveryConfig(BaseModel):
    """Delivery retry, timeout and dispatch settings."""

    retry_intervals: dict[int, int] = Field(
        default_factory=lambda: dict(DEFAULT_RETRY_INTERVALS)
    )
    timeout_seconds: float = 30
    batch_size: int = 100
    subscriber_cache_ttl_seconds: float = 30
    max_workers: int = 4

    @field_validator("retry_intervals")
    @classmethod
    def validate_retry_intervals(cls, value: dict[int, int]) -> dict[int, int]:
        """Ensure retry intervals are a contiguous 1..n table of delays."""
        if not value:
            raise ValueError("delivery.retry_intervals must not be empty.")
        keys = sorted(value)
        if keys != list(range(1, len(keys) + 1)):
            raise ValueError("delivery.retry_intervals keys must be 1..n without gaps.")
        if any(delay < 0 for delay in value.values()):
            raise ValueError("delivery.retry_intervals delays must be >= 0.")
        return {key: value[key] for key in keys}

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        """Ensure the delivery timeout is positive."""
        if value <= 0:
            raise ValueError("delivery.timeout_seconds must be > 0.")
        return value

    @field_validator("batch_size", "max_workers")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        """Ensure batch and pool sizes are positive."""
        if value < 1:
            raise ValueError("delivery batch_size and max_workers must be >= 1.")
        return value


class DriftConfig(BaseModel):
    """Drift detector scan settings."""

    chunk_size: int = 500

    @field_validator("chunk_size")
    @classmethod
    def validate_chunk_size(cls, value: int) -> int:
        """Ensure the scan chunk size is positive."""
        if value < 1:
            raise ValueError("drift.chunk_size must be >= 1.")
        return value


class HttpSinkConfig(BaseModel):
    """Built-in HTTP delivery sink settings."""

    base_url: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = 30
    max_attempts: int = 3


class CeleryConfig(BaseModel):
    """Worker pool broker and beat settings."""

    broker_url: str = "redis://localhost:6379/1"
    result_backend: str = "redis://localhost:6379/2"
    publish_queue: str = "default"
    detect_changes_queue: str = "default"
    retry_scan_interval_seconds: float = 60
    detect_interval_seconds: float = 0


class Settings(BaseSettings):
    """Application settings loaded from environment variables and YAML."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        """Layer settings sources in descending order of precedence."""
        return (
            init_settings,
            _env_settings_source(),
            _yaml_settings_source(_USER_CONFIG_PATHS),
            _yaml_settings_source([_DEFAULT_CONFIG_PATH]),
        )

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    hashing: HashingConfig = Field(default_factory=HashingConfig)
    propagation: PropagationConfig = Field(default_factory=PropagationConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    drift: DriftConfig = Field(default_factory=DriftConfig)
    http: HttpSinkConfig = Field(default_factory=HttpSinkConfig)
    celery: CeleryConfig = Field(default_factory=CeleryConfig)

    # Modules imported at runtime build to register providers and callbacks
    registration_modules: list[str] = Field(default_factory=list)


# Global settings instance
settings = Settings()
