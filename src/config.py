"""Runtime settings for the ordering application.

Settings come from three layers, later ones winning:

1. built-in defaults,
2. an optional JSON file (``POS_SETTINGS_FILE``, or ``appsettings.json``
   in the working directory when it exists),
3. ``POS_*`` environment variables.

Example ``appsettings.json``::

    {"db_path": "db/pos.db", "log_level": "DEBUG", "ad_seconds": 3}
"""

from __future__ import annotations

import functools
import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

_THIS_FILE = Path(__file__).resolve()
DEFAULT_DB_PATH = (_THIS_FILE.parent / ".." / "db" / "pos.db").resolve()
DEFAULT_SETTINGS_FILE = "appsettings.json"

_ENV_VARS = {
    "db_path": "POS_DB_PATH",
    "log_dir": "POS_LOG_DIR",
    "log_level": "POS_LOG_LEVEL",
    "busy_timeout_ms": "POS_BUSY_TIMEOUT_MS",
    "ad_seconds": "POS_AD_SECONDS",
}


@dataclass(frozen=True)
class Settings:
    db_path: str = str(DEFAULT_DB_PATH)
    log_dir: str = "logs"
    log_level: str = "INFO"
    busy_timeout_ms: int = 10000
    ad_seconds: int = 5

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level)


def _read_settings_file(path: str | None) -> Dict[str, Any]:
    if path is None:
        path = DEFAULT_SETTINGS_FILE
        if not os.path.isfile(path):
            return {}
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a JSON object")
    return data


def _coerce(name: str, raw: Any) -> Any:
    if name in ("busy_timeout_ms", "ad_seconds"):
        try:
            value = int(raw)
        except (TypeError, ValueError):
            raise ValueError(f"Setting {name} must be an integer, got {raw!r}")
        if value < 0:
            raise ValueError(f"Setting {name} cannot be negative")
        return value
    if name == "log_level":
        level = str(raw).strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Setting log_level has unknown level {raw!r}")
        return level
    return str(raw)


def load_settings(environ: Dict[str, str] | None = None) -> Settings:
    """Resolve settings from defaults, the JSON file and the environment."""
    env = os.environ if environ is None else environ
    values: Dict[str, Any] = {}
    known = {f.name for f in fields(Settings)}

    for key, raw in _read_settings_file(env.get("POS_SETTINGS_FILE")).items():
        if key not in known:
            raise ValueError(f"Unknown setting {key!r} in settings file")
        values[key] = _coerce(key, raw)

    for name, var in _ENV_VARS.items():
        if var in env and env[var] != "":
            values[name] = _coerce(name, env[var])

    return Settings(**values)


# Variables that can change what load_settings() returns.
_CACHE_VARS = ("POS_SETTINGS_FILE",) + tuple(_ENV_VARS.values())


@functools.lru_cache(maxsize=16)
def _settings_for(key: Tuple[Optional[str], ...]) -> Settings:
    return load_settings({var: value for var, value in zip(_CACHE_VARS, key) if value is not None})


def current_settings() -> Settings:
    """Settings for the current environment, resolved once per set of ``POS_*`` values.

    The settings file is read the first time a given environment is seen.
    """
    return _settings_for(tuple(os.environ.get(var) for var in _CACHE_VARS))
