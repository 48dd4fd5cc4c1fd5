"""
Configuration for intake services.

Settings are read from ``config/{environment}.yaml`` where the environment is taken
from ``INTAKE_ENV`` (default ``development``). String values may reference
environment variables as ``${NAME}`` or ``${NAME:-default}``.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from intake_common.errors import ConfigurationError
from intake_common.infrastructure.database import DatabaseConfig
from intake_common.infrastructure.object_storage import ObjectStorageConfig

_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


class CsvSettings(BaseModel):
    """Batch ingestion knobs."""

    chunk_size: int = Field(default=200, description="Rows per bulk insert")
    row_max: int = Field(default=4000, description="Maximum rows accepted per batch")
    batch_max_error_threshold: int = Field(
        default=20, description="Failures after which a batch run is abandoned"
    )
    process_min_interval: float = Field(
        default=0.15, description="Minimum seconds between two processed rows"
    )
    readback_attempts: int = Field(default=3, description="Queue read-back attempts")
    readback_delay: float = Field(default=1.0, description="Seconds between read-back attempts")

    @field_validator("chunk_size", "batch_max_error_threshold", "readback_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            msg = "Value must be at least 1"
            raise ValueError(msg)
        return v


class ConsentSettings(BaseModel):
    clock_skew_seconds: int = Field(default=5, description="Tolerance for future timestamps")
    retention_weeks: int = Field(default=8, description="Maximum consent receipt age")


class OutboundSettings(BaseModel):
    """Timeouts, retries and endpoints for external services."""

    timeout: float = Field(default=10.0, description="Per-request timeout in seconds")
    retry_attempts: int = Field(default=3, description="Attempts for transient failures")
    retry_delay: float = Field(default=1.0, description="Fixed delay between attempts")
    postbox_url: str = Field(default="http://localhost:8081/api/v1")
    issuer_api_url: str = Field(default="http://localhost:8082")

    @field_validator("retry_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            msg = "retry_attempts must be at least 1"
            raise ValueError(msg)
        return v


class CacheSettings(BaseModel):
    enabled: bool = Field(default=True, description="Cache mappers and issuer keys")
    max_size: int = Field(default=500)
    ttl_seconds: float = Field(default=3600.0)


class IntakeSettings(BaseModel):
    """Top level settings for the intake pipeline."""

    service_name: str = Field(default="credential-intake")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    csv: CsvSettings = Field(default_factory=CsvSettings)
    consent: ConsentSettings = Field(default_factory=ConsentSettings)
    outbound: OutboundSettings = Field(default_factory=OutboundSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    database: dict[str, Any] = Field(default_factory=lambda: {"url": "sqlite+aiosqlite:///:memory:"})
    object_storage: dict[str, Any] = Field(default_factory=dict)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        valid_environments = {"development", "testing", "staging", "production"}
        if v not in valid_environments:
            msg = f"Environment must be one of {valid_environments}"
            raise ValueError(msg)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"}
        if v.upper() not in valid_levels:
            msg = f"Log level must be one of {valid_levels}"
            raise ValueError(msg)
        return v.upper()

    def database_config(self) -> DatabaseConfig:
        return DatabaseConfig.from_dict(self.database)

    def object_storage_config(self) -> ObjectStorageConfig:
        return ObjectStorageConfig.from_dict(self.object_storage)


def get_environment() -> str:
    return os.environ.get("INTAKE_ENV", "development").lower()


def get_config_path(environment: str | None = None) -> Path:
    if environment is None:
        environment = get_environment()
    project_root = Path(__file__).parent.parent.parent
    config_path = project_root / "config" / f"{environment}.yaml"
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise ConfigurationError(msg)
    return config_path


def _expand_value(value: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        env_value = os.environ.get(match.group(1))
        if env_value is not None:
            return env_value
        return match.group(2) or ""

    return _ENV_PATTERN.sub(_replace, value)


def _expand_env_vars(config: Any) -> Any:
    """Recursively expand environment variables in configuration strings."""
    if isinstance(config, dict):
        return {key: _expand_env_vars(value) for key, value in config.items()}
    if isinstance(config, list):
        return [_expand_env_vars(value) for value in config]
    if isinstance(config, str) and "${" in config:
        return _expand_value(config)
    return config


def load_settings(environment: str | None = None, path: str | Path | None = None) -> IntakeSettings:
    """Load and validate settings from YAML.

    Args:
        environment: Environment name, defaults to ``INTAKE_ENV``
        path: Explicit file path, overrides the environment lookup

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    config_path = Path(path) if path is not None else get_config_path(environment)
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise ConfigurationError(msg)
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        msg = f"Error loading configuration: {e!s}"
        raise ConfigurationError(msg) from e

    try:
        return IntakeSettings.model_validate(_expand_env_vars(raw))
    except ValidationError as e:
        msg = f"Invalid configuration in {config_path}: {e}"
        raise ConfigurationError(msg) from e
