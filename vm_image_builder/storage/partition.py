"""GPT partition planning and creation for VM disk images.

Layout:
    #1 EFI   [1MiB, 1+EFI)              fat32, ESP flag
    #2 swap  [1+EFI, 1+EFI+SWAP)        only when swap is requested
    #2/#3 root [..., end of device)     ext4

The first MiB is left free for the GPT header and alignment. Root takes
whatever remains, so its index (2 or 3) depends on whether swap exists; the
formatter and UUID resolver read it from the layout rather than assuming it.

Operations:
    - plan_layout(): pure offset/size computation
    - apply_layout(): write the table with parted and wait for partition nodes
"""

from __future__ import annotations

import contextlib
import os
import shutil
import time

from vm_image_builder.domain.models import Partition, PartitionLayout, VolumeRole
from vm_image_builder.logging import LoggerFactory
from vm_image_builder.storage.command_runners import run_command
from vm_image_builder.storage.exceptions import (
    CommandFailedError,
    DeviceNotFoundError,
    LayoutError,
)
from vm_image_builder.storage.nbd import AttachedDevice


log = LoggerFactory.for_device()

ALIGNMENT_MIB = 1
PARTITION_NODE_RETRIES = 10
PARTITION_NODE_DELAY = 0.5


def plan_layout(total_mib: int, swap_mib: int, efi_mib: int) -> PartitionLayout:
    """Compute the partition layout for an image of ``total_mib`` MiB.

    ``swap_mib`` of 0 disables swap. Root must end up with at least 1 MiB.

    Raises:
        LayoutError: If sizes are negative or leave no room for root
    """
    if efi_mib <= 0:
        raise LayoutError(f"EFI partition size must be positive, got {efi_mib}MiB")
    if swap_mib < 0:
        raise LayoutError(f"Swap size cannot be negative, got {swap_mib}MiB")
    reserved = ALIGNMENT_MIB + efi_mib + swap_mib
    if total_mib <= reserved:
        raise LayoutError(
            f"Image size {total_mib}MiB leaves no room for root: "
            f"{reserved}MiB reserved for alignment, EFI and swap"
        )

    efi_end = ALIGNMENT_MIB + efi_mib
    partitions = [Partition(1, VolumeRole.EFI, ALIGNMENT_MIB, efi_end)]
    root_start = efi_end
    if swap_mib > 0:
        root_start = efi_end + swap_mib
        partitions.append(Partition(2, VolumeRole.SWAP, efi_end, root_start))
    partitions.append(
        Partition(len(partitions) + 1, VolumeRole.ROOT, root_start, total_mib)
    )
    return PartitionLayout(partitions=tuple(partitions), total_mib=total_mib)


def _parted_commands(layout: PartitionLayout) -> list[str]:
    args = ["mklabel", "gpt"]
    for partition in layout.partitions:
        end = "100%" if partition.role == VolumeRole.ROOT else f"{partition.end_mib}MiB"
        args.extend(
            [
                "mkpart",
                partition.label,
                partition.fs_type,
                f"{partition.start_mib}MiB",
                end,
            ]
        )
    args.extend(["set", str(layout.efi.index), "esp", "on"])
    return args


def settle_device(device_path: str) -> None:
    """Ask the kernel to re-read the table and wait for udev to finish."""
    for cmd in (
        ["sync"],
        ["partprobe", device_path],
        ["udevadm", "settle", "--timeout=10"],
    ):
        if shutil.which(cmd[0]):
            with contextlib.suppress(CommandFailedError):
                run_command(cmd, log_output=False)


def wait_for_partitions(device: AttachedDevice, layout: PartitionLayout) -> None:
    """Wait until every planned partition node exists.

    Raises:
        DeviceNotFoundError: If a node is still missing after the retries
    """
    paths = [device.partition_path(p.index) for p in layout.partitions]
    for _ in range(PARTITION_NODE_RETRIES):
        missing = [path for path in paths if not os.path.exists(path)]  # noqa: PTH110
        if not missing:
            log.debug(f"Partition nodes present: {', '.join(paths)}")
            return
        time.sleep(PARTITION_NODE_DELAY)
    raise DeviceNotFoundError(", ".join(missing))


def apply_layout(device: AttachedDevice, layout: PartitionLayout) -> None:
    """Write a fresh GPT with ``layout`` to the attached device. Destructive."""
    for partition in layout.partitions:
        log.info(
            f"Partition #{partition.index} {partition.role.value}: "
            f"[{partition.start_mib}MiB, {partition.end_mib}MiB)"
        )
    run_command(
        ["parted", "-s", "-a", "optimal", device.device_path, "--"]
        + _parted_commands(layout)
    )
    settle_device(device.device_path)
    wait_for_partitions(device, layout)
