"""Calendar server configuration loading and validation.

Reads a TOML file, resolves ``${VAR}`` references from the environment, and
returns a validated :class:`AppConfig`.
"""

from __future__ import annotations

import os
import re
import tomllib
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from fastmail_calendar.calendar.timeutil import is_valid_timezone

DEFAULT_CONFIG_PATH = Path("calendar.toml")
DEFAULT_TIMEZONE = "America/St_Johns"
DEFAULT_CALDAV_SERVER_URL = "https://caldav.fastmail.com/"
DEFAULT_JMAP_SESSION_URL = "https://api.fastmail.com/jmap/session"

# Matches ${VAR_NAME}; names are alphanumeric plus underscore.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when calendar configuration is missing, malformed, or invalid."""


class Protocol(StrEnum):
    caldav = "caldav"
    jmap = "jmap"


class CalDavConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    server_url: str = DEFAULT_CALDAV_SERVER_URL
    username: str = Field(min_length=1)
    password: str = Field(min_length=1, repr=False)


class JmapConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_url: str = DEFAULT_JMAP_SESSION_URL
    token: str = Field(min_length=1, repr=False)


class CalendarConfig(BaseModel):
    """The ``[calendar]`` section."""

    model_config = ConfigDict(extra="forbid")

    protocol: Protocol = Protocol.caldav
    timezone: str = DEFAULT_TIMEZONE
    calendar_cache_ttl_seconds: float = Field(default=60.0, ge=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    caldav: CalDavConfig | None = None
    jmap: JmapConfig | None = None

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = value.strip()
        if not is_valid_timezone(normalized):
            raise ValueError(f"unknown IANA timezone: {value!r}")
        return normalized

    @model_validator(mode="after")
    def _require_protocol_section(self) -> CalendarConfig:
        if getattr(self, self.protocol.value) is None:
            raise ValueError(
                f"protocol is {self.protocol.value!r} but [calendar.{self.protocol.value}] is missing"
            )
        return self


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    format: str = "text"
    # Optional JSON log file, written alongside the console handler.
    file: Path | None = None

    @field_validator("format")
    @classmethod
    def _validate_format(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in ("text", "json"):
            raise ValueError("logging.format must be 'text' or 'json'")
        return normalized


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    calendar: CalendarConfig
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values pass through
    unchanged.

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
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    The unresolved value itself is not echoed; it usually names a credential.
    """
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
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "<root>"
        problems.append(f"{location}: {error['msg']}")
    return "; ".join(problems)


def parse_config(data: dict[str, Any]) -> AppConfig:
    """Validate an already-decoded config mapping."""
    data = resolve_env_vars(data)
    if not isinstance(data.get("calendar"), dict):
        raise ConfigError("Missing [calendar] section in config")
    try:
        return AppConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {_format_validation_error(exc)}") from exc


def load_config(path: Path | str = DEFAULT_CONFIG_PATH) -> AppConfig:
    """Load and validate the TOML config at *path*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = Path(path)
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
