"""
YAML configuration and component wiring.

Example ``foreman.yaml``::

    data_dir: data
    scripts_dir: scripts
    timezone: Europe/Berlin
    poll_seconds: 1
    interpreters:
      python: .venv/bin/python
      bash: /bin/bash
    logs:
      max_bytes: 5242880
      backup_count: 10
      max_age_days: 30
    notifications:
      settings_file: data/settings.json
      timeout_ms: 5000

Every key is optional. Relative paths resolve against the config file's
directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from foreman.controller import SchedulerController
from foreman.errors import ConfigError
from foreman.executor import ScriptExecutor, default_python
from foreman.logs import DEFAULT_BACKUP_COUNT, DEFAULT_MAX_AGE_DAYS, DEFAULT_MAX_BYTES, LOG_FILE, EventLog
from foreman.notify import DEFAULT_TIMEOUT_MS, DiscordNotifier
from foreman.registry import JobRegistry
from foreman.state import SchedulerStateStore
from foreman.store import ScriptStore

DEFAULT_CONFIG = "foreman.yaml"
DEFAULT_POLL_SECONDS = 1
SCRIPTS_FILE = "scripts.json"
STATE_FILE = "scheduler-state.json"
SETTINGS_FILE = "settings.json"

TOP_LEVEL_KEYS = {
    "data_dir",
    "scripts_dir",
    "logs_dir",
    "timezone",
    "poll_seconds",
    "interpreters",
    "logs",
    "notifications",
}


@dataclass(frozen=True)
class ForemanConfig:
    base_dir: Path
    data_dir: Path
    scripts_dir: Path
    logs_dir: Path
    timezone: ZoneInfo
    timezone_name: str
    poll_seconds: int = DEFAULT_POLL_SECONDS
    python: Optional[str] = None
    bash: str = "bash"
    log_max_bytes: int = DEFAULT_MAX_BYTES
    log_backup_count: int = DEFAULT_BACKUP_COUNT
    log_max_age_days: int = DEFAULT_MAX_AGE_DAYS
    settings_file: Optional[Path] = None
    notify_timeout_ms: int = DEFAULT_TIMEOUT_MS

    @property
    def scripts_file(self) -> Path:
        return self.data_dir / SCRIPTS_FILE

    @property
    def state_file(self) -> Path:
        return self.data_dir / STATE_FILE

    @property
    def process_log_file(self) -> Path:
        return self.logs_dir / LOG_FILE


LOCALTIME = Path("/etc/localtime")


def _zone(name: str) -> Optional[ZoneInfo]:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def system_timezone(environ: Optional[Mapping[str, str]] = None, localtime: Path = LOCALTIME) -> Tuple[ZoneInfo, str]:
    """Host zone for cron evaluation: ``$TZ``, then the ``/etc/localtime`` link, then UTC."""
    environ = os.environ if environ is None else environ
    name = environ.get("TZ", "").lstrip(":").strip()
    if name and _zone(name) is not None:
        return ZoneInfo(name), name
    if localtime.is_symlink():
        target = str(localtime.resolve())
        _, marker, name = target.partition("zoneinfo/")
        if marker and _zone(name) is not None:
            return ZoneInfo(name), name
    return ZoneInfo("UTC"), "UTC"


def parse_timezone(name: Any, field_path: str) -> ZoneInfo:
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"Error: {field_path} must be a timezone string.")
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_mapping(value: Any, field_path: str, allowed: set) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(value.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return value


def resolve_path(value: Any, base_dir: Path, field_path: str) -> Path:
    raw = Path(ensure_str(value, field_path)).expanduser()
    return raw if raw.is_absolute() else (base_dir / raw).resolve()


def _load_config_payload(config_path: Path, explicit: bool) -> Dict[str, Any]:
    if not config_path.exists():
        if explicit:
            raise ConfigError(f"Error: Config file not found: {config_path}")
        return {}

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Error: Failed to read {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def load_config(config_path: Path, explicit: bool = False) -> ForemanConfig:
    """Parse ``config_path``; a missing file is only an error when ``explicit``."""
    payload = _load_config_payload(config_path, explicit)

    unknown_top = set(payload.keys()) - TOP_LEVEL_KEYS
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    base_dir = config_path.parent.resolve()
    data_dir = resolve_path(payload.get("data_dir", "data"), base_dir, "data_dir")
    scripts_dir = resolve_path(payload.get("scripts_dir", "scripts"), base_dir, "scripts_dir")
    logs_dir = (
        resolve_path(payload["logs_dir"], base_dir, "logs_dir")
        if payload.get("logs_dir") is not None
        else data_dir / "logs"
    )

    if payload.get("timezone") is None:
        zone, zone_name = system_timezone()
    else:
        zone = parse_timezone(payload["timezone"], "timezone")
        zone_name = zone.key

    interpreters = ensure_mapping(payload.get("interpreters"), "interpreters", {"python", "bash"})
    logs = ensure_mapping(payload.get("logs"), "logs", {"max_bytes", "backup_count", "max_age_days"})
    notifications = ensure_mapping(payload.get("notifications"), "notifications", {"settings_file", "timeout_ms"})

    python = None
    if interpreters.get("python") is not None:
        python = ensure_str(interpreters["python"], "interpreters.python")
    bash = "bash"
    if interpreters.get("bash") is not None:
        bash = ensure_str(interpreters["bash"], "interpreters.bash")

    settings_file = data_dir / SETTINGS_FILE
    if notifications.get("settings_file") is not None:
        settings_file = resolve_path(notifications["settings_file"], base_dir, "notifications.settings_file")

    return ForemanConfig(
        base_dir=base_dir,
        data_dir=data_dir,
        scripts_dir=scripts_dir,
        logs_dir=logs_dir,
        timezone=zone,
        timezone_name=zone_name,
        poll_seconds=ensure_int(payload.get("poll_seconds"), "poll_seconds", DEFAULT_POLL_SECONDS),
        python=python,
        bash=bash,
        log_max_bytes=ensure_int(logs.get("max_bytes"), "logs.max_bytes", DEFAULT_MAX_BYTES),
        log_backup_count=ensure_int(logs.get("backup_count"), "logs.backup_count", DEFAULT_BACKUP_COUNT),
        log_max_age_days=ensure_int(logs.get("max_age_days"), "logs.max_age_days", DEFAULT_MAX_AGE_DAYS),
        settings_file=settings_file,
        notify_timeout_ms=ensure_int(notifications.get("timeout_ms"), "notifications.timeout_ms", DEFAULT_TIMEOUT_MS),
    )


def build_event_log(config: ForemanConfig) -> EventLog:
    return EventLog(
        config.logs_dir,
        max_bytes=config.log_max_bytes,
        backup_count=config.log_backup_count,
        max_age_days=config.log_max_age_days,
    )


def build_controller(config: ForemanConfig, events: Optional[EventLog] = None) -> SchedulerController:
    events = events if events is not None else build_event_log(config)
    store = ScriptStore(config.scripts_file)
    executor = ScriptExecutor(
        store,
        config.scripts_dir,
        events=events,
        notifier=DiscordNotifier(config.settings_file, timeout_ms=config.notify_timeout_ms),
        python=config.python or default_python(),
        bash=config.bash,
    )
    registry = JobRegistry(timezone=config.timezone, events=events)
    return SchedulerController(store, SchedulerStateStore(config.state_file), registry, executor, events=events)
