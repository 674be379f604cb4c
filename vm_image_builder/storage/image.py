"""Virtual disk image allocation with qemu-img."""

from __future__ import annotations

import re

from vm_image_builder.domain.models import ImageSpec
from vm_image_builder.logging import LoggerFactory
from vm_image_builder.storage.command_runners import run_command
from vm_image_builder.storage.exceptions import LayoutError


log = LoggerFactory.for_device()

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([KMGT]?)(?:i?B)?\s*$", re.IGNORECASE)
_UNIT_KIB = {"K": 1, "M": 1024, "G": 1024**2, "T": 1024**3}


def parse_size_mib(value: str) -> int:
    """Convert a qemu-img style size (binary suffixes, default MiB) to MiB.

    >>> parse_size_mib("20G")
    20480
    """
    match = _SIZE_RE.match(str(value))
    if not match:
        raise LayoutError(f"Invalid size: {value!r}")
    number = int(match.group(1))
    unit = (match.group(2) or "M").upper()
    kib = number * _UNIT_KIB[unit]
    if kib % 1024:
        raise LayoutError(f"Size must be a whole number of MiB: {value!r}")
    mib = kib // 1024
    if mib <= 0:
        raise LayoutError(f"Size must be positive: {value!r}")
    return mib


def create_image(spec: ImageSpec) -> None:
    """Allocate a sparse image of ``spec.size_mib`` MiB at ``spec.path``."""
    log.info(f"Creating {spec.image_format} image {spec.path} ({spec.size_mib}MiB)")
    spec.path.parent.mkdir(parents=True, exist_ok=True)
    run_command(
        [
            "qemu-img",
            "create",
            "-f",
            spec.image_format,
            str(spec.path),
            f"{spec.size_mib}M",
        ]
    )
