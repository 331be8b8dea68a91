from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/projectsync/config.json").expanduser()
DEFAULT_STORE_PATH = Path.home() / ".projectsync.sqlite"

CONFIG_ENV_OVERRIDES = {
    "store_path": "PROJECTSYNC_STORE",
    "api_url": "PROJECTSYNC_API_URL",
    "api_timeout_s": "PROJECTSYNC_API_TIMEOUT_S",
    "username": "PROJECTSYNC_USERNAME",
    "default_target": "PROJECTSYNC_DEFAULT_TARGET",
    "shared_initial_limit": "PROJECTSYNC_SHARED_INITIAL_LIMIT",
    "shared_page_limit": "PROJECTSYNC_SHARED_PAGE_LIMIT",
}

INT_KEYS = {"shared_initial_limit", "shared_page_limit"}
FLOAT_KEYS = {"api_timeout_s"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("PROJECTSYNC_CONFIG", DEFAULT_CONFIG_PATH))
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


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class ProjectSyncConfig:
    store_path: str = str(DEFAULT_STORE_PATH)
    # Empty means local-only mode: no shared projects registry.
    api_url: str = ""
    api_timeout_s: float = 10.0
    username: str | None = None
    default_target: str = "esp32"
    shared_initial_limit: int = 5
    shared_page_limit: int = 10

    @property
    def networked(self) -> bool:
        return bool(self.api_url.strip())


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def load_config(path: Path | None = None) -> ProjectSyncConfig:
    cfg = ProjectSyncConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = read_config_file(config_path)
        except ValueError:
            warnings.warn(
                f"Invalid config file {config_path}, using defaults", RuntimeWarning, stacklevel=2
            )
            data = {}
        cfg = _apply_dict(cfg, data)
    cfg = _apply_dict(cfg, get_env_overrides())
    return cfg


def _apply_dict(cfg: ProjectSyncConfig, data: dict[str, Any]) -> ProjectSyncConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if value is None:
            continue
        setattr(cfg, key, str(value))
    return cfg
