"""Network block device attachment for disk images.

Binds an image file to ``/dev/nbdN`` with qemu-nbd so the kernel exposes the
image and its partitions (``/dev/nbdNpM``) as ordinary block devices.

The device is a host-wide exclusive resource. Nothing here locks it; a single
build per host is assumed and concurrent runs must serialize externally.
"""

from __future__ import annotations

import os
from pathlib import Path

from vm_image_builder.logging import LoggerFactory
from vm_image_builder.storage.command_runners import run_command
from vm_image_builder.storage.exceptions import DeviceNotFoundError


log = LoggerFactory.for_device()

NBD_MODULE_PATH = Path("/sys/module/nbd")
NBD_MAX_PARTITIONS = 16


class AttachedDevice:
    """Handle for an image bound to a network block device.

    ``detach()`` releases the device exactly once; later calls are no-ops.
    """

    def __init__(self, device_path: str, image_path: Path):
        self.device_path = device_path
        self.image_path = Path(image_path)
        self.attached = True

    def partition_path(self, index: int) -> str:
        return f"{self.device_path}p{index}"

    @property
    def release_command(self) -> str:
        return f"qemu-nbd --disconnect {self.device_path}"

    def detach(self) -> None:
        if not self.attached:
            return
        log.info(f"Detaching {self.image_path} from {self.device_path}")
        run_command(["qemu-nbd", "--disconnect", self.device_path])
        self.attached = False

    def __repr__(self) -> str:
        state = "attached" if self.attached else "detached"
        return f"AttachedDevice({self.device_path!r}, {str(self.image_path)!r}, {state})"


def ensure_nbd_module() -> None:
    """Load the nbd kernel module with partition support if it is not loaded."""
    if NBD_MODULE_PATH.exists():
        log.debug("nbd module already loaded")
        return
    log.info("Loading nbd kernel module")
    run_command(["modprobe", "nbd", f"max_part={NBD_MAX_PARTITIONS}"])


def attach(image_path: Path, device_path: str, image_format: str = "qcow2") -> AttachedDevice:
    """Bind ``image_path`` to ``device_path``.

    Raises:
        DeviceNotFoundError: If the device node is missing after loading the module
        CommandFailedError: If qemu-nbd fails (e.g. the device is busy)
    """
    ensure_nbd_module()
    if not os.path.exists(device_path):  # noqa: PTH110
        raise DeviceNotFoundError(device_path)
    log.info(f"Attaching {image_path} to {device_path}")
    run_command(
        [
            "qemu-nbd",
            f"--connect={device_path}",
            f"--format={image_format}",
            str(image_path),
        ]
    )
    return AttachedDevice(device_path, Path(image_path))
