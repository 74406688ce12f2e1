"""Calwatch configuration loading and validation.

Reads a ``calwatch.toml`` file, resolves ``${VAR}`` references, and returns an
immutable :class:`CalwatchConfig`. The config is loaded once at startup and
passed explicitly to every component that needs it.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_FILENAME = "calwatch.toml"

# Pattern matching ${VAR_NAME}; alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_STORE_BACKENDS = ("memory", "postgres")
_SINK_BACKENDS = ("log", "mattermost")


class ConfigError(Exception):
    """Raised when calwatch configuration is missing, malformed, or invalid."""


@dataclass(frozen=True)
class OAuthConfig:
    """Google OAuth client from [calwatch.oauth]."""

    client_id: str
    client_secret: str

    def __repr__(self) -> str:
        return f"OAuthConfig(client_id={self.client_id!r}, client_secret=<REDACTED>)"


@dataclass(frozen=True)
class SchedulerConfig:
    """Tick cadence and timing margins from [calwatch.scheduler]."""

    tick_period_seconds: int = 60
    notify_lead_minutes: int = 10
    renewal_margin_seconds: int = 600
    token_expiry_margin_seconds: int = 60
    fetch_window_minutes: int = 60
    window_refresh_minutes: int = 30
    sync_on_tick: bool = True

    @property
    def tick_period(self) -> timedelta:
        return timedelta(seconds=self.tick_period_seconds)

    @property
    def notify_lead(self) -> timedelta:
        return timedelta(minutes=self.notify_lead_minutes)

    @property
    def renewal_margin(self) -> timedelta:
        return timedelta(seconds=self.renewal_margin_seconds)

    @property
    def token_expiry_margin(self) -> timedelta:
        return timedelta(seconds=self.token_expiry_margin_seconds)

    @property
    def fetch_window(self) -> timedelta:
        return timedelta(minutes=self.fetch_window_minutes)

    @property
    def window_refresh_interval(self) -> timedelta:
        return timedelta(minutes=self.window_refresh_minutes)


@dataclass(frozen=True)
class StoreConfig:
    """Key-value backend from [calwatch.store]."""

    backend: str = "memory"  # "memory" or "postgres"
    dsn: str | None = None


@dataclass(frozen=True)
class SinkConfig:
    """Notification sink from [calwatch.sink]."""

    backend: str = "log"  # "log" or "mattermost"
    base_url: str | None = None
    bot_token: str | None = None
    bot_user_id: str | None = None

    def __repr__(self) -> str:
        token = "<REDACTED>" if self.bot_token else None
        return (
            f"SinkConfig(backend={self.backend!r}, base_url={self.base_url!r}, "
            f"bot_token={token}, bot_user_id={self.bot_user_id!r})"
        )


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration from [calwatch.logging]."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass(frozen=True)
class CalwatchConfig:
    """Parsed representation of ``calwatch.toml``."""

    site_url: str
    oauth: OAuthConfig
    bot_username: str = "calendar-bot"
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    sink: SinkConfig = field(default_factory=SinkConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def watch_callback_base(self) -> str:
        return f"{self.site_url}/watch"

    @property
    def oauth_redirect_url(self) -> str:
        return f"{self.site_url}/oauth/complete"

    @property
    def connect_url(self) -> str:
        return f"{self.site_url}/oauth/connect"


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values (int, bool,
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
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
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
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(parent: dict[str, Any], name: str, path: str) -> dict[str, Any]:
    value = parent.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"{path}.{name} must be a TOML table")
    return value


def _require_string(section: dict[str, Any], key: str, path: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Missing required field: {path}.{key}")
    return value.strip()


def _optional_string(section: dict[str, Any], key: str, path: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{path}.{key} must be a string when set")
    return value.strip() or None


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a positive integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _parse_scheduler(section: dict[str, Any]) -> SchedulerConfig:
    path = "calwatch.scheduler"
    sync_on_tick = section.get("sync_on_tick", True)
    if not isinstance(sync_on_tick, bool):
        raise ConfigError(f"{path}.sync_on_tick must be a boolean")
    return SchedulerConfig(
        tick_period_seconds=_positive_int(section, "tick_period_seconds", 60, path),
        notify_lead_minutes=_positive_int(section, "notify_lead_minutes", 10, path),
        renewal_margin_seconds=_positive_int(section, "renewal_margin_seconds", 600, path),
        token_expiry_margin_seconds=_positive_int(
            section, "token_expiry_margin_seconds", 60, path
        ),
        fetch_window_minutes=_positive_int(section, "fetch_window_minutes", 60, path),
        window_refresh_minutes=_positive_int(section, "window_refresh_minutes", 30, path),
        sync_on_tick=sync_on_tick,
    )


def _parse_store(section: dict[str, Any]) -> StoreConfig:
    path = "calwatch.store"
    backend = str(section.get("backend", "memory")).strip().lower()
    if backend not in _STORE_BACKENDS:
        raise ConfigError(
            f"Invalid {path}.backend: {backend!r}. Expected 'memory' or 'postgres'."
        )
    dsn = _optional_string(section, "dsn", path)
    if backend == "postgres" and dsn is None:
        raise ConfigError(f"{path}.dsn is required when backend='postgres'")
    return StoreConfig(backend=backend, dsn=dsn)


def _parse_sink(section: dict[str, Any]) -> SinkConfig:
    path = "calwatch.sink"
    backend = str(section.get("backend", "log")).strip().lower()
    if backend not in _SINK_BACKENDS:
        raise ConfigError(f"Invalid {path}.backend: {backend!r}. Expected 'log' or 'mattermost'.")
    base_url = _optional_string(section, "base_url", path)
    bot_token = _optional_string(section, "bot_token", path)
    bot_user_id = _optional_string(section, "bot_user_id", path)
    if backend == "mattermost":
        for key, value in (
            ("base_url", base_url),
            ("bot_token", bot_token),
            ("bot_user_id", bot_user_id),
        ):
            if value is None:
                raise ConfigError(f"{path}.{key} is required when backend='mattermost'")
    return SinkConfig(
        backend=backend,
        base_url=base_url.rstrip("/") if base_url else None,
        bot_token=bot_token,
        bot_user_id=bot_user_id,
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    path = "calwatch.logging"
    level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid {path}.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(
        level=level,
        format=log_format,
        log_root=_optional_string(section, "log_root", path),
    )


def parse_config(data: dict[str, Any]) -> CalwatchConfig:
    """Validate an already-loaded TOML mapping into a :class:`CalwatchConfig`."""
    data = resolve_env_vars(data)

    calwatch_section = data.get("calwatch")
    if not isinstance(calwatch_section, dict):
        raise ConfigError("Missing [calwatch] section in config")

    site_url = _require_string(calwatch_section, "site_url", "calwatch").rstrip("/")
    bot_username = _optional_string(calwatch_section, "bot_username", "calwatch")

    oauth_section = _section(calwatch_section, "oauth", "calwatch")
    oauth = OAuthConfig(
        client_id=_require_string(oauth_section, "client_id", "calwatch.oauth"),
        client_secret=_require_string(oauth_section, "client_secret", "calwatch.oauth"),
    )

    return CalwatchConfig(
        site_url=site_url,
        oauth=oauth,
        bot_username=bot_username or "calendar-bot",
        scheduler=_parse_scheduler(_section(calwatch_section, "scheduler", "calwatch")),
        store=_parse_store(_section(calwatch_section, "store", "calwatch")),
        sink=_parse_sink(_section(calwatch_section, "sink", "calwatch")),
        logging=_parse_logging(_section(calwatch_section, "logging", "calwatch")),
    )


def load_config(path: Path) -> CalwatchConfig:
    """Load and validate a calwatch config.

    Parameters
    ----------
    path:
        Either the TOML file itself or a directory containing ``calwatch.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
