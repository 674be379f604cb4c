"""Filesystem creation for planned partitions.

Each role gets one filesystem and one fixed label:

    EFI   mkfs.fat -F 32   label "EFI"
    swap  mkswap           label "swap"   (only when the layout has swap)
    root  mkfs.ext4        label "root"

The labels are what the UUID resolver matches on afterwards, so they must be
unique within the attached device.
"""

from __future__ import annotations

from vm_image_builder.domain.models import Partition, PartitionLayout, VolumeRole
from vm_image_builder.logging import LoggerFactory
from vm_image_builder.storage.command_runners import run_command
from vm_image_builder.storage.nbd import AttachedDevice


log = LoggerFactory.for_device()


def _mkfs_command(partition: Partition, partition_path: str) -> list[str]:
    if partition.role == VolumeRole.EFI:
        return ["mkfs.fat", "-F", "32", "-n", partition.label, partition_path]
    if partition.role == VolumeRole.SWAP:
        return ["mkswap", "-L", partition.label, partition_path]
    return ["mkfs.ext4", "-F", "-q", "-L", partition.label, partition_path]


def format_partition(device: AttachedDevice, partition: Partition) -> None:
    partition_path = device.partition_path(partition.index)
    log.info(
        f"Formatting {partition_path} as {partition.fs_type} "
        f"(label {partition.label})"
    )
    run_command(_mkfs_command(partition, partition_path))


def format_partitions(device: AttachedDevice, layout: PartitionLayout) -> None:
    for partition in layout.partitions:
        format_partition(device, partition)
