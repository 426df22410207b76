"""Settings storage for application configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "VM_PROVISIONER_SETTINGS_PATH",
        Path.home() / ".config" / "vm-provisioner" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_DISK_HELPER_PATH = "/usr/sbin/diskutil"
DEFAULT_DISK_IMAGE_FORMAT = "ASIF"
DEFAULT_STORAGE_GIB = 64
DEFAULT_DOWNLOAD_CHUNK_SIZE = 1024 * 1024

DEFAULT_SETTINGS: dict[str, Any] = {
    "disk_helper_path": DEFAULT_DISK_HELPER_PATH,
    "disk_helper_privilege_command": [],
    "disk_image_format": DEFAULT_DISK_IMAGE_FORMAT,
    "default_storage_gib": DEFAULT_STORAGE_GIB,
    "download_chunk_size": DEFAULT_DOWNLOAD_CHUNK_SIZE,
    "download_timeout_seconds": None,
    "instance_store_path": str(
        Path.home() / ".local" / "share" / "vm-provisioner" / "instances.json"
    ),
    "virtualization_engine": None,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


load_settings()
