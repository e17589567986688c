"""Configuration.

Loaded from a JSON file, then overridden by HERMIT_<SECTION>_<KEY>
environment variables, then defaults:

    {
      "store": {"root": "~/.cache/hermit/store"},
      "fetch": {"timeout": 30, "retries": 3, "backoff": 0.5},
      "build": {"jobs": 8, "keep_logs": true},
      "recipes": "hermit.json",
      "platform": "",
      "log_level": "WARNING"
    }

e.g. HERMIT_STORE_ROOT=/tmp/store, HERMIT_BUILD_JOBS=2, HERMIT_LOG_LEVEL=DEBUG.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "hermit.config.json"


def _default_store_root() -> str:
    cache = os.environ.get("XDG_CACHE_HOME") or os.path.join(os.path.expanduser("~"), ".cache")
    return os.path.join(cache, "hermit", "store")


@dataclass(frozen=True)
class StoreConfig:
    root: str = field(default_factory=_default_store_root)


@dataclass(frozen=True)
class FetchConfig:
    timeout: float = 30.0
    retries: int = 3
    backoff: float = 0.5


@dataclass(frozen=True)
class BuildConfig:
    jobs: int = field(default_factory=lambda: os.cpu_count() or 1)
    keep_logs: bool = True


@dataclass(frozen=True)
class HermitConfig:
    store: StoreConfig = field(default_factory=StoreConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    recipes: str = "hermit.json"
    platform: str = ""  # empty: detect the host
    log_level: str = "WARNING"


_SECTIONS = {"store": StoreConfig, "fetch": FetchConfig, "build": BuildConfig}


def _env_override(data: dict, prefix: str = "HERMIT") -> dict:
    for key, value in os.environ.items():
        if not key.startswith(f"{prefix}_"):
            continue
        rest = key[len(prefix) + 1:].lower()
        section, _, field_name = rest.partition("_")
        if section in _SECTIONS and field_name:
            if not isinstance(data.get(section), dict):
                data[section] = {}
            data[section][field_name] = value
        else:
            data[rest] = value
    return data


def _parse_config_file(path: Path) -> dict:
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.debug("Config file not found: %s", path)
        return {}
    except json.JSONDecodeError as e:
        logger.warning("Invalid config file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Invalid config file %s: top level must be an object", path)
        return {}
    return data


def _coerce(value, type_name: str):
    if not isinstance(value, str):
        return value
    if type_name == "int":
        return int(value)
    if type_name == "float":
        return float(value)
    if type_name == "bool":
        return value.lower() in ("true", "1", "yes")
    return value


def _build_sub_config(cls, data: dict):
    """Build a section dataclass from a dict, ignoring unknown keys."""
    if not isinstance(data, dict):
        logger.warning("Invalid config section for %s: expected an object", cls.__name__)
        return cls()
    values = {}
    for f in dataclasses.fields(cls):
        if f.name not in data:
            continue
        try:
            values[f.name] = _coerce(data[f.name], f.type)
        except ValueError:
            logger.warning("Invalid value for %s.%s: %r, using the default", cls.__name__, f.name, data[f.name])
    return cls(**values)


def load_config(path: Optional[str] = None, env_prefix: str = "HERMIT") -> HermitConfig:
    config_path = Path(path) if path else Path(DEFAULT_CONFIG_FILE)
    data = _env_override(_parse_config_file(config_path), env_prefix)

    store = _build_sub_config(StoreConfig, data.get("store", {}))
    store = dataclasses.replace(store, root=os.path.expanduser(store.root))
    return HermitConfig(
        store=store,
        fetch=_build_sub_config(FetchConfig, data.get("fetch", {})),
        build=_build_sub_config(BuildConfig, data.get("build", {})),
        recipes=data.get("recipes", "hermit.json"),
        platform=data.get("platform", ""),
        log_level=data.get("log_level", "WARNING"),
    )
