"""Mounting of the target root for chroot execution.

Setup order:
    1. root partition (by UUID)         -> <target>
    2. EFI partition (by UUID)          -> <target>/boot/efi
    3. host /dev, bind read-only        -> <target>/dev
    4. fresh proc                       -> <target>/proc
    5. fresh sysfs                      -> <target>/sys

Teardown unmounts in exactly the reverse order. Unmounting root before the
filesystems stacked on it fails with "target is busy", so the order is kept
as an explicit stack of handles rather than recomputed.

Every mount and unmount is appended to ``history`` as a (resource, action)
pair.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from vm_image_builder.logging import LoggerFactory
from vm_image_builder.storage.command_runners import run_command
from vm_image_builder.storage.exceptions import CommandFailedError, MountError


log = LoggerFactory.for_mount()

EFI_SUBPATH = Path("boot") / "efi"


@dataclass(frozen=True)
class MountPoint:
    """A single active mount owned by the orchestrator."""

    resource: str  # "root", "efi", "dev", "proc", "sys"
    source: str
    target: Path


class MountOrchestrator:
    def __init__(self, target_root: Path):
        self.target_root = Path(target_root)
        self._stack: list[MountPoint] = []
        self.history: list[tuple[str, str]] = []

    @property
    def active(self) -> list[MountPoint]:
        return list(self._stack)

    def _mount(
        self,
        resource: str,
        source: str,
        target: Path,
        options: Optional[list[str]] = None,
    ) -> MountPoint:
        target.mkdir(parents=True, exist_ok=True)
        log.info(f"Mounting {resource} ({source}) on {target}")
        try:
            run_command(["mount", *(options or []), source, str(target)])
        except CommandFailedError as error:
            raise MountError(str(target), error.output or str(error)) from error
        mount_point = MountPoint(resource=resource, source=source, target=target)
        self._stack.append(mount_point)
        self.history.append((resource, "mount"))
        return mount_point

    def mount_root(self, uuid: str) -> MountPoint:
        return self._mount("root", f"UUID={uuid}", self.target_root)

    def mount_efi(self, uuid: str) -> MountPoint:
        return self._mount("efi", f"UUID={uuid}", self.target_root / EFI_SUBPATH)

    def mount_pseudo_filesystems(self) -> None:
        """Bind host /dev read-only and mount fresh proc and sysfs."""
        self._mount("dev", "/dev", self.target_root / "dev", ["-o", "bind,ro"])
        self._mount("proc", "proc", self.target_root / "proc", ["-t", "proc"])
        self._mount("sys", "sysfs", self.target_root / "sys", ["-t", "sysfs"])

    def teardown(self) -> None:
        """Unmount everything still mounted, most recent first.

        Stops at the first failure; mounts below it stay on the stack.

        Raises:
            MountError: If umount fails
        """
        while self._stack:
            mount_point = self._stack[-1]
            log.info(f"Unmounting {mount_point.resource} from {mount_point.target}")
            try:
                run_command(["umount", str(mount_point.target)])
            except CommandFailedError as error:
                raise MountError(
                    str(mount_point.target), error.output or str(error)
                ) from error
            self._stack.pop()
            self.history.append((mount_point.resource, "umount"))

    def describe_live(self) -> list[str]:
        return [str(mount_point.target) for mount_point in reversed(self._stack)]

    @property
    def release_command(self) -> str:
        """Shell command that unmounts the live mounts in a safe order."""
        targets = " ".join(self.describe_live())
        return f"umount {targets}" if targets else ""
