"""Sync engine configuration loading and validation.

Reads a ``calsync.toml`` file (the ``[calsync]`` table), resolves
``${VAR_NAME}`` references from the environment, and returns a validated
:class:`SyncConfig`. :meth:`SyncConfig.from_env` builds the same model from
environment variables alone for serverless/cron invocations.
"""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

from calsync.errors import CalendarCredentialError

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_CONFIG_FILENAME = "calsync.toml"
DEFAULT_TIMEZONE = "Asia/Seoul"
DEFAULT_CALENDAR_ID = "primary"
DEFAULT_PUSH_BATCH_SIZE = 10
DEFAULT_SYNC_WINDOW_DAYS = 365
DEFAULT_REFRESH_MARGIN_SECONDS = 300
DEFAULT_PAGE_SIZE = 250

CLIENT_ID_ENV = "GOOGLE_CLIENT_ID"
CLIENT_SECRET_ENV = "GOOGLE_CLIENT_SECRET"
REDIRECT_URI_ENV = "GOOGLE_REDIRECT_URI"
TIMEZONE_ENV = "CALSYNC_TIMEZONE"


class ConfigError(Exception):
    """Raised when sync configuration is missing, malformed, or invalid."""


class LoggingConfig(BaseModel):
    """Logging configuration from the [calsync.logging] section."""

    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    format: Literal["text", "json"] = "text"
    log_root: str | None = None

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"


class SyncConfig(BaseModel):
    """Configuration for the calendar sync engine."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    timezone: str = DEFAULT_TIMEZONE
    default_calendar_id: str = DEFAULT_CALENDAR_ID
    push_batch_size: int = Field(default=DEFAULT_PUSH_BATCH_SIZE, ge=1)
    sync_window_days: int = Field(default=DEFAULT_SYNC_WINDOW_DAYS, ge=1)
    refresh_margin_seconds: int = Field(default=DEFAULT_REFRESH_MARGIN_SECONDS, ge=0)
    page_size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1, le=2500)
    max_retries: int = Field(default=3, ge=0)
    retry_base_seconds: float = Field(default=1.0, ge=0)
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("client_id", "client_secret", "redirect_uri")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = value.strip()
        try:
            ZoneInfo(normalized)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"timezone must be a valid IANA timezone: {value}") from exc
        return normalized

    @field_validator("default_calendar_id")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def require_client_credentials(self) -> tuple[str, str]:
        """Return ``(client_id, client_secret)`` or raise when either is unset."""
        pairs = ((CLIENT_ID_ENV, self.client_id), (CLIENT_SECRET_ENV, self.client_secret))
        missing = [env for env, value in pairs if not value]
        if missing:
            raise CalendarCredentialError(
                f"Google OAuth credentials not configured ({', '.join(missing)})"
            )
        return self.client_id, self.client_secret

    @classmethod
    def from_env(cls, **overrides: Any) -> SyncConfig:
        """Build a config from ``GOOGLE_*`` / ``CALSYNC_*`` environment variables."""
        data: dict[str, Any] = {
            "client_id": os.environ.get(CLIENT_ID_ENV, ""),
            "client_secret": os.environ.get(CLIENT_SECRET_ENV, ""),
            "redirect_uri": os.environ.get(REDIRECT_URI_ENV, ""),
        }
        timezone = os.environ.get(TIMEZONE_ENV)
        if timezone:
            data["timezone"] = timezone
        data.update(overrides)
        try:
            return cls(**data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid sync configuration: {exc}") from exc


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def load_config(path: Path) -> SyncConfig:
    """Load and validate sync configuration.

    Parameters
    ----------
    path:
        Either a ``calsync.toml`` file or a directory containing one.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    data = resolve_env_vars(data)

    section = data.get("calsync")
    if not isinstance(section, dict):
        raise ConfigError("Missing [calsync] section in config")

    try:
        return SyncConfig(**section)
    except ValidationError as exc:
        raise ConfigError(f"Invalid [calsync] section in {toml_path}: {exc}") from exc
