"""Settings storage for build defaults."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "VM_IMAGE_BUILDER_SETTINGS_PATH",
        Path.home() / ".config" / "vm-image-builder" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_EFI_SIZE_MIB = 270
DEFAULT_NBD_DEVICE = "/dev/nbd0"
DEFAULT_MOUNTPOINT = "/mnt/vm-image-builder"
DEFAULT_MIRROR = "http://deb.debian.org/debian"

DEFAULT_SETTINGS: dict[str, Any] = {
    "nbd_device": DEFAULT_NBD_DEVICE,
    "mountpoint": DEFAULT_MOUNTPOINT,
    "efi_size_mib": DEFAULT_EFI_SIZE_MIB,
    "image_format": "qcow2",
    "mirror": DEFAULT_MIRROR,
    "security_mirror": "http://security.debian.org/debian-security",
    "timezone": "Etc/UTC",
    "locale": "en_US.UTF-8",
    "keyboard_layout": "us",
    "network_interface": "ens3",
    "kernel_package": "linux-image-amd64",
    "serial_console": "ttyS0",
    "serial_speed": 115200,
    "bootstrap_include": ["ifupdown", "isc-dhcp-client", "systemd-sysv"],
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Path | None = None) -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def get_list(key: str) -> list[str]:
    value = get_setting(key)
    if value is None:
        return []
    if isinstance(value, str):
        return [item for item in value.split(",") if item]
    return [str(item) for item in value]


load_settings()
