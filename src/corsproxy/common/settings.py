"""Application configuration loaded from the process environment."""

from __future__ import annotations

import re
from typing import Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigError(Exception):
    """Raised when a required setting is missing or malformed."""


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


_STRING_FIELDS = ("environment", "log_level", "redis_url", "user_agent")
_NUMERIC_FIELDS = (
    "port",
    "cache_duration_seconds",
    "timeout_ms",
    "rate_limit_window_seconds",
    "rate_limit_max",
)

# optional sign and ASCII digits only
_BASE10_INT = re.compile(r"[+-]?[0-9]+")


class ProxySettings(BaseSettings):
    """Runtime settings for the image proxy service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        frozen=True,
        extra="ignore",
    )

    environment: str = env_field(..., "CORSPROXY_ENV")
    log_level: str = env_field(..., "CORSPROXY_LOG_LEVEL")
    port: int = env_field(..., "CORSPROXY_PORT")
    redis_url: str = env_field(..., "CORSPROXY_REDIS_URL")
    cache_duration_seconds: int = env_field(..., "CORSPROXY_CACHE_DURATION")
    timeout_ms: int = env_field(..., "CORSPROXY_TIMEOUT")
    rate_limit_window_seconds: int = env_field(..., "CORSPROXY_RATE_LIMIT_WINDOW")
    rate_limit_max: int = env_field(..., "CORSPROXY_RATE_LIMIT_MAX")
    user_agent: str = env_field(..., "CORSPROXY_USER_AGENT")

    host: str = env_field("0.0.0.0", "CORSPROXY_HOST")
    redis_command_timeout_ms: int = env_field(1000, "CORSPROXY_REDIS_COMMAND_TIMEOUT")
    egress_denylist_raw: str = env_field("", "CORSPROXY_EGRESS_DENYLIST")
    otel_exporter_endpoint: Optional[str] = env_field(None, "CORSPROXY_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "CORSPROXY_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "CORSPROXY_OTEL_SAMPLER_RATIO")

    @field_validator(*_STRING_FIELDS, mode="before")
    @classmethod
    def _require_non_empty(cls, value):
        if value is None or value == "":
            raise ValueError("is missing or empty")
        return value

    @field_validator(*_NUMERIC_FIELDS, mode="before")
    @classmethod
    def _parse_base10(cls, value):
        if value is None or value == "":
            raise ValueError("is missing or empty")
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        text = str(value)
        if not _BASE10_INT.fullmatch(text):
            raise ValueError(f'must be a valid number, got "{value}"')
        return int(text, 10)

    @property
    def egress_denylist(self) -> list[str]:
        return [item.strip() for item in self.egress_denylist_raw.split(",") if item.strip()]

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def redis_command_timeout_seconds(self) -> float:
        return self.redis_command_timeout_ms / 1000


def _env_name(location: tuple) -> str:
    if not location:
        return "<unknown>"
    name = str(location[0])
    field = ProxySettings.model_fields.get(name)
    if field is not None and isinstance(field.validation_alias, str):
        return field.validation_alias
    return name


def load_settings() -> ProxySettings:
    """Load settings from the environment, raising ConfigError on the first bad value."""

    try:
        return ProxySettings()
    except ValidationError as exc:
        error = exc.errors()[0]
        name = _env_name(tuple(error.get("loc", ())))
        if error.get("type") == "missing":
            raise ConfigError(f"Environment variable {name} is missing or empty") from exc
        cause = error.get("ctx", {}).get("error")
        detail = str(cause) if cause is not None else error.get("msg", "is invalid")
        raise ConfigError(f"Environment variable {name} {detail}") from exc
