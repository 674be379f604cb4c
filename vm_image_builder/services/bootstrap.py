"""Base system population with debootstrap."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from vm_image_builder.logging import LoggerFactory
from vm_image_builder.storage.command_runners import run_streaming_command


log = LoggerFactory.for_stage2()


def debootstrap_command(
    suite: str,
    target_root: Path,
    mirror: str,
    include: Iterable[str] = (),
    arch: str = "amd64",
) -> list[str]:
    command = ["debootstrap", f"--arch={arch}"]
    packages = [package for package in include if package]
    if packages:
        command.append(f"--include={','.join(packages)}")
    command.extend([suite, str(target_root), mirror])
    return command


def populate_base_system(
    suite: str,
    target_root: Path,
    mirror: str,
    include: Iterable[str] = (),
) -> None:
    """Install a minimal ``suite`` tree into the mounted target root."""
    log.info(f"Bootstrapping {suite} into {target_root} from {mirror}")
    run_streaming_command(debootstrap_command(suite, target_root, mirror, include))
