"""Service configuration loading and validation.

Reads ``calsync.toml`` (or the file named by ``CALSYNC_CONFIG``), resolves
``${VAR}`` references from the environment, and returns a validated
``CalsyncConfig`` dataclass.  A missing file yields all defaults.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from calsync.sync.provider import (
    DEFAULT_PAGE_SIZE,
    GOOGLE_CALENDAR_API_BASE_URL,
    GOOGLE_OAUTH_TOKEN_URL,
)

DEFAULT_CONFIG_FILE = "calsync.toml"
CONFIG_PATH_ENV = "CALSYNC_CONFIG"

# Pattern matching ${VAR_NAME}: supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is malformed or invalid."""


@dataclass
class SyncConfig:
    """Sync pass behaviour from the [sync] section."""

    window_past_days: int = 30
    window_future_days: int = 365
    page_size: int = DEFAULT_PAGE_SIZE
    provider_timeout_s: float = 30.0
    max_attempts: int = 3
    backoff_base_s: float = 1.0
    backoff_cap_s: float = 300.0
    lock_wait_s: float = 0.0
    token_refresh_skew_s: float = 60.0


@dataclass
class SchedulerConfig:
    """Background scheduler configuration from the [scheduler] section.

    ``enabled`` controls whether ``calsync serve`` also runs the periodic
    loops; ``calsync scheduler`` always runs them.
    """

    enabled: bool = False
    incremental_interval_s: float = 900
    full_interval_s: float = 21600
    token_refresh_lead_s: float = 300
    max_concurrent_jobs: int = 3
    retry_attempts: int = 3
    retry_base_delay_s: float = 30.0
    retry_max_delay_s: float = 300.0


@dataclass
class GoogleConfig:
    """OAuth client and endpoint settings from the [google] section."""

    client_id: str = ""
    client_secret: str = ""
    api_base_url: str = GOOGLE_CALENDAR_API_BASE_URL
    token_url: str = GOOGLE_OAUTH_TOKEN_URL


@dataclass
class TaskServiceConfig:
    """Study-task collaborator from the [tasks] section; no URL means log-only."""

    base_url: str | None = None
    timeout_s: float = 10.0


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class ServerConfig:
    """HTTP surface configuration from the [server] section."""

    host: str = "0.0.0.0"
    port: int = 8080
    cors_origins: list[str] = field(default_factory=list)


@dataclass
class DatabaseConfig:
    """Database settings from the [database] section.

    When ``url`` is unset, connection parameters come from ``DATABASE_URL``
    or the ``POSTGRES_*`` environment variables.
    """

    url: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class CalsyncConfig:
    """Parsed and validated service configuration."""

    sync: SyncConfig = field(default_factory=SyncConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    tasks: TaskServiceConfig = field(default_factory=TaskServiceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float) are returned unchanged.

    Raises
    ------
    ConfigError
        If any referenced environment variable is not set.  Every missing
        name is reported in a single error.
    """
    missing: list[str] = []
    resolved = _resolve(value, missing)
    if missing:
        names = ", ".join(dict.fromkeys(missing))
        raise ConfigError(f"Unresolved environment variable(s) in config: {names}")
    return resolved


def _resolve(value: Any, missing: list[str]) -> Any:
    if isinstance(value, dict):
        return {k: _resolve(v, missing) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve(item, missing) for item in value]
    if isinstance(value, str):
        return _resolve_string(value, missing)
    return value


def _resolve_string(s: str, missing: list[str]) -> str:
    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)  # keep placeholder for error reporting
        return env_value

    return _ENV_VAR_PATTERN.sub(_replace, s)


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _number(section: dict[str, Any], key: str, default: float, *, where: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"{where}.{key} must be a number, got {raw!r}")
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{where}.{key} must be a number, got {raw!r}") from exc


def _positive_int(section: dict[str, Any], key: str, default: int, *, where: str) -> int:
    value = _number(section, key, default, where=where)
    if value != int(value) or value <= 0:
        raise ConfigError(f"{where}.{key} must be a positive integer, got {section.get(key)!r}")
    return int(value)


def _non_negative(section: dict[str, Any], key: str, default: float, *, where: str) -> float:
    value = _number(section, key, default, where=where)
    if value < 0:
        raise ConfigError(f"{where}.{key} must be >= 0, got {value!r}")
    return value


def _positive(section: dict[str, Any], key: str, default: float, *, where: str) -> float:
    value = _number(section, key, default, where=where)
    if value <= 0:
        raise ConfigError(f"{where}.{key} must be > 0, got {value!r}")
    return value


def _optional_str(section: dict[str, Any], key: str) -> str | None:
    raw = section.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ConfigError(f"{key} must be a string when set")
    return raw.strip() or None


def _parse_sync(data: dict[str, Any]) -> SyncConfig:
    s = _section(data, "sync")
    d = SyncConfig()
    return SyncConfig(
        window_past_days=_positive_int(s, "window_past_days", d.window_past_days, where="sync"),
        window_future_days=_positive_int(
            s, "window_future_days", d.window_future_days, where="sync"
        ),
        page_size=_positive_int(s, "page_size", d.page_size, where="sync"),
        provider_timeout_s=_positive(s, "provider_timeout_s", d.provider_timeout_s, where="sync"),
        max_attempts=_positive_int(s, "max_attempts", d.max_attempts, where="sync"),
        backoff_base_s=_non_negative(s, "backoff_base_s", d.backoff_base_s, where="sync"),
        backoff_cap_s=_non_negative(s, "backoff_cap_s", d.backoff_cap_s, where="sync"),
        lock_wait_s=_non_negative(s, "lock_wait_s", d.lock_wait_s, where="sync"),
        token_refresh_skew_s=_non_negative(
            s, "token_refresh_skew_s", d.token_refresh_skew_s, where="sync"
        ),
    )


def _parse_scheduler(data: dict[str, Any]) -> SchedulerConfig:
    s = _section(data, "scheduler")
    d = SchedulerConfig()
    enabled = s.get("enabled", d.enabled)
    if not isinstance(enabled, bool):
        raise ConfigError(f"scheduler.enabled must be a boolean, got {enabled!r}")
    return SchedulerConfig(
        enabled=enabled,
        incremental_interval_s=_positive(
            s, "incremental_interval_s", d.incremental_interval_s, where="scheduler"
        ),
        full_interval_s=_positive(s, "full_interval_s", d.full_interval_s, where="scheduler"),
        token_refresh_lead_s=_non_negative(
            s, "token_refresh_lead_s", d.token_refresh_lead_s, where="scheduler"
        ),
        max_concurrent_jobs=_positive_int(
            s, "max_concurrent_jobs", d.max_concurrent_jobs, where="scheduler"
        ),
        retry_attempts=_positive_int(s, "retry_attempts", d.retry_attempts, where="scheduler"),
        retry_base_delay_s=_non_negative(
            s, "retry_base_delay_s", d.retry_base_delay_s, where="scheduler"
        ),
        retry_max_delay_s=_non_negative(
            s, "retry_max_delay_s", d.retry_max_delay_s, where="scheduler"
        ),
    )


def _parse_google(data: dict[str, Any]) -> GoogleConfig:
    s = _section(data, "google")
    d = GoogleConfig()
    return GoogleConfig(
        client_id=_optional_str(s, "client_id") or d.client_id,
        client_secret=_optional_str(s, "client_secret") or d.client_secret,
        api_base_url=_optional_str(s, "api_base_url") or d.api_base_url,
        token_url=_optional_str(s, "token_url") or d.token_url,
    )


def _parse_tasks(data: dict[str, Any]) -> TaskServiceConfig:
    s = _section(data, "tasks")
    d = TaskServiceConfig()
    return TaskServiceConfig(
        base_url=_optional_str(s, "base_url"),
        timeout_s=_positive(s, "timeout_s", d.timeout_s, where="tasks"),
    )


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    s = _section(data, "logging")
    log_level = str(s.get("level", "INFO")).upper()
    log_format = str(s.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=log_level, format=log_format, log_root=_optional_str(s, "log_root"))


def _parse_server(data: dict[str, Any]) -> ServerConfig:
    s = _section(data, "server")
    d = ServerConfig()
    raw_origins = s.get("cors_origins", [])
    if not isinstance(raw_origins, list) or not all(isinstance(o, str) for o in raw_origins):
        raise ConfigError("server.cors_origins must be a list of strings")
    port = _positive_int(s, "port", d.port, where="server")
    if port > 65535:
        raise ConfigError(f"server.port must be <= 65535, got {port}")
    return ServerConfig(
        host=_optional_str(s, "host") or d.host,
        port=port,
        cors_origins=[o.strip() for o in raw_origins if o.strip()],
    )


def _parse_database(data: dict[str, Any]) -> DatabaseConfig:
    s = _section(data, "database")
    d = DatabaseConfig()
    min_pool = _positive_int(s, "min_pool_size", d.min_pool_size, where="database")
    max_pool = _positive_int(s, "max_pool_size", d.max_pool_size, where="database")
    if min_pool > max_pool:
        raise ConfigError(
            f"database.min_pool_size ({min_pool}) exceeds database.max_pool_size ({max_pool})"
        )
    return DatabaseConfig(
        url=_optional_str(s, "url"), min_pool_size=min_pool, max_pool_size=max_pool
    )


def default_config_path() -> Path:
    return Path(os.environ.get(CONFIG_PATH_ENV, DEFAULT_CONFIG_FILE))


def load_config(path: Path | None = None) -> CalsyncConfig:
    """Load and validate the service configuration.

    Parameters
    ----------
    path:
        TOML file to read.  Defaults to ``$CALSYNC_CONFIG`` or
        ``./calsync.toml``.  A missing file yields the defaults.

    Raises
    ------
    ConfigError
        If the file contains invalid TOML, references unset environment
        variables, or holds invalid values.
    """
    toml_path = path if path is not None else default_config_path()
    if not toml_path.exists():
        return CalsyncConfig()

    try:
        data = tomllib.loads(toml_path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    # --- Resolve env var references before any validation ---
    data = resolve_env_vars(data)

    return CalsyncConfig(
        sync=_parse_sync(data),
        scheduler=_parse_scheduler(data),
        google=_parse_google(data),
        tasks=_parse_tasks(data),
        logging=_parse_logging(data),
        server=_parse_server(data),
        database=_parse_database(data),
    )
