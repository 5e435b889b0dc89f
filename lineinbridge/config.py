"""Persistent bridge configuration stored as TOML."""

from __future__ import annotations

import os
import shutil
import time
import tomllib
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import tomli_w

SYSTEM_CONFIG_DIR = Path("/etc/lox-linein-bridge")
FALLBACK_CONFIG_DIR = Path(".config/lox-linein-bridge")
CONFIG_FILE = "config.toml"


class ConfigError(Exception):
    """Raised when the configuration cannot be read, parsed or written."""


@dataclass
class Config:
    """Identity of this bridge and the server it prefers."""

    bridge_id: str
    preferred_server_name: str | None = None
    preferred_server_mac: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"bridge_id": self.bridge_id}
        if self.preferred_server_name is not None:
            data["preferred_server_name"] = self.preferred_server_name
        if self.preferred_server_mac is not None:
            data["preferred_server_mac"] = self.preferred_server_mac
        return data

    @classmethod
    def from_dict(cls, data: Any) -> Config:
        if not isinstance(data, dict):
            raise ConfigError("config must be a table")
        bridge_id = data.get("bridge_id")
        if not isinstance(bridge_id, str):
            raise ConfigError("bridge_id: expected a string")
        optional = {}
        for key in ("preferred_server_name", "preferred_server_mac"):
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise ConfigError(f"{key}: expected a string")
            optional[key] = value
        return cls(bridge_id=bridge_id, **optional)


def preferred_config_path() -> Path:
    """System-wide configuration location."""
    return SYSTEM_CONFIG_DIR / CONFIG_FILE


def fallback_config_path() -> Path:
    """Per-user configuration location under ``$HOME``."""
    home = os.environ.get("HOME")
    if home is None:
        raise ConfigError("HOME is not set")
    return Path(home) / FALLBACK_CONFIG_DIR / CONFIG_FILE


def _try_write(path: Path, contents: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents, encoding="utf-8")


def write_config(config: Config) -> Path:
    """Write the configuration, preferring the system location; return the path used."""
    contents = tomli_w.dumps(config.to_dict())
    preferred = preferred_config_path()
    try:
        _try_write(preferred, contents)
        return preferred
    except OSError:
        pass
    fallback = fallback_config_path()
    try:
        _try_write(fallback, contents)
    except OSError as err:
        raise ConfigError(f"write fallback config {fallback}: {err}") from err
    return fallback


def _load_config_file(path: Path) -> Config:
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as err:
        raise ConfigError(f"read {path}: {err}") from err
    try:
        return Config.from_dict(tomllib.loads(text))
    except (tomllib.TOMLDecodeError, ConfigError) as err:
        raise ConfigError(f"parse {path}: {err}") from err


def _backup_invalid_config(path: Path, reason: Exception) -> None:
    backup = path.with_suffix(f".invalid.{int(time.time())}")
    try:
        path.replace(backup)
        return
    except OSError:
        pass
    try:
        shutil.copyfile(path, backup)
        path.unlink()
    except OSError as err:
        raise ConfigError(f"backup invalid config {path}: {reason}") from err


def load_or_create_config() -> tuple[Config, Path]:
    """Load an existing configuration, or create one with a fresh bridge id.

    A file that cannot be parsed is moved aside as ``*.invalid.<timestamp>``.
    """
    preferred = preferred_config_path()
    if preferred.exists():
        try:
            return _load_config_file(preferred), preferred
        except ConfigError as err:
            _backup_invalid_config(preferred, err)

    fallback = fallback_config_path()
    if fallback.exists():
        try:
            return _load_config_file(fallback), fallback
        except ConfigError as err:
            _backup_invalid_config(fallback, err)

    config = Config(bridge_id=str(uuid.uuid4()))
    return config, write_config(config)