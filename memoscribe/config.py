"""Persisted configuration management."""

from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Any, Optional

from .models import Config

CONFIG_PATH = (Path.home() / ".memoscribe" / "config.json").expanduser()
VOICE_MEMOS_DIR = (
    Path.home() / "Library" / "Group Containers" / "group.com.apple.VoiceMemos.shared" / "Recordings"
)
VOICE_MEMOS_DB = VOICE_MEMOS_DIR / "CloudRecordings.db"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or saved."""


def load_config() -> Config:
    if not CONFIG_PATH.exists():
        return Config()
    try:
        payload = json.loads(CONFIG_PATH.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse configuration file: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("Configuration file must contain a JSON object")
    try:
        return Config(**payload)
    except TypeError as exc:
        raise ConfigError(f"Invalid configuration file: {exc}") from exc


def save_config(config: Config) -> None:
    CONFIG_PATH.parent.mkdir(parents=True, exist_ok=True)
    data = {k: v for k, v in asdict(config).items() if v is not None}
    CONFIG_PATH.write_text(json.dumps(data, indent=2))


def update_config(**kwargs: Any) -> Config:
    config = load_config()
    for key, value in kwargs.items():
        if hasattr(config, key):
            setattr(config, key, value)
        else:
            raise ConfigError(f"Unknown configuration key: {key}")
    save_config(config)
    return config


def resolve_store_path(config: Config, override: Optional[Path] = None) -> Path:
    """Return the vendor store location, preferring an explicit override."""

    if override is not None:
        return override.expanduser()
    if config.store_path:
        return Path(config.store_path).expanduser()
    return VOICE_MEMOS_DB


def resolve_recordings_dir(config: Config, store_path: Path) -> Path:
    if config.recordings_dir:
        return Path(config.recordings_dir).expanduser()
    return store_path.parent
