from __future__ import annotations

import json
import os
import warnings
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/tasksync/config.json").expanduser()

CONFIG_ENV_OVERRIDES = {
    "server_url": "TASKSYNC_SERVER_URL",
    "participant_id": "TASKSYNC_PARTICIPANT_ID",
    "data_dir": "TASKSYNC_DATA_DIR",
    "sync_enabled": "TASKSYNC_SYNC_ENABLED",
    "push_interval_s": "TASKSYNC_PUSH_INTERVAL_S",
    "pull_interval_s": "TASKSYNC_PULL_INTERVAL_S",
    "autosave_interval_s": "TASKSYNC_AUTOSAVE_INTERVAL_S",
    "retry_attempts": "TASKSYNC_RETRY_ATTEMPTS",
    "retry_delay_s": "TASKSYNC_RETRY_DELAY_S",
    "request_timeout_s": "TASKSYNC_REQUEST_TIMEOUT_S",
    "shutdown_grace_s": "TASKSYNC_SHUTDOWN_GRACE_S",
    "default_collection": "TASKSYNC_DEFAULT_COLLECTION",
    "server_host": "TASKSYNC_SERVER_HOST",
    "server_port": "TASKSYNC_SERVER_PORT",
    "max_body_bytes": "TASKSYNC_MAX_BODY_BYTES",
}

INT_KEYS = {
    "push_interval_s",
    "pull_interval_s",
    "autosave_interval_s",
    "retry_attempts",
    "server_port",
    "max_body_bytes",
}
FLOAT_KEYS = {"retry_delay_s", "request_timeout_s", "shutdown_grace_s"}
BOOL_KEYS = {"sync_enabled"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("TASKSYNC_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class TaskSyncConfig:
    server_url: str = "http://localhost:8080"
    participant_id: str | None = None
    data_dir: str = "~/.tasksync"
    sync_enabled: bool = True
    push_interval_s: int = 3
    pull_interval_s: int = 5
    autosave_interval_s: int = 2
    retry_attempts: int = 3
    retry_delay_s: float = 2.0
    request_timeout_s: float = 10.0
    shutdown_grace_s: float = 1.0
    # Created on first start when no collection of this name exists.
    default_collection: str = "Inbox"
    server_host: str = "127.0.0.1"
    server_port: int = 8080
    max_body_bytes: int = 4 * 1024 * 1024

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "off", "no"}


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in TRUE_VALUES:
        return True
    if value.lower() in FALSE_VALUES:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def load_config(path: Path | None = None) -> TaskSyncConfig:
    cfg = TaskSyncConfig()
    config_path = get_config_path(path)
    try:
        data = read_config_file(config_path)
    except ValueError:
        warnings.warn(f"Invalid config file {config_path}", RuntimeWarning, stacklevel=2)
        data = {}
    cfg = _apply_dict(cfg, data)
    cfg = _apply_dict(cfg, get_env_overrides())
    return cfg


def _apply_dict(cfg: TaskSyncConfig, data: dict[str, Any]) -> TaskSyncConfig:
    known = {f.name for f in fields(cfg)}
    for key, value in data.items():
        if key not in known:
            continue
        if key in INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if key in BOOL_KEYS:
            setattr(cfg, key, _coerce_bool(value, getattr(cfg, key), key=key))
            continue
        if value is not None and not isinstance(value, str):
            warnings.warn(f"Invalid string for {key}: {value!r}", RuntimeWarning, stacklevel=2)
            continue
        setattr(cfg, key, value)
    return cfg


def parse_config_value(key: str, raw: str) -> Any:
    """Strictly convert a command-line value for ``key``; raises ValueError when invalid."""
    if key not in {f.name for f in fields(TaskSyncConfig)}:
        raise ValueError(f"unknown config key: {key}")
    if key in INT_KEYS:
        try:
            return int(raw)
        except ValueError as exc:
            raise ValueError(f"{key} must be an integer") from exc
    if key in FLOAT_KEYS:
        try:
            return float(raw)
        except ValueError as exc:
            raise ValueError(f"{key} must be a number") from exc
    if key in BOOL_KEYS:
        lowered = raw.strip().lower()
        if lowered in TRUE_VALUES:
            return True
        if lowered in FALSE_VALUES:
            return False
        raise ValueError(f"{key} must be true or false")
    return raw
