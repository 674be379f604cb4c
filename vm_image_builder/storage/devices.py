"""Partition identity lookup using lsblk.

After formatting, each partition carries a filesystem UUID that stays valid
however the image is attached later. fstab and the mounts of the target root
refer to partitions by that UUID, so this module maps each planned role to
its UUID through the label the formatter wrote.

Resolution rules:
    - Only partitions below the attached device are considered
    - Each role in the layout needs exactly one partition with its label
    - Zero or several matches abort the build; a guessed identity would end
      up in the image's fstab
    - Swap is only looked up when the layout has a swap partition

Example:
    >>> identity = resolve_volume_identity(device, layout)
    >>> identity.root
    'deadbeef-1234-5678-90ab-cdef12345678'
"""

from __future__ import annotations

import json

from vm_image_builder.domain.models import PartitionLayout, VolumeIdentity, VolumeRole
from vm_image_builder.logging import LoggerFactory
from vm_image_builder.storage.command_runners import run_command
from vm_image_builder.storage.exceptions import (
    BlockDeviceQueryError,
    UuidResolutionError,
)
from vm_image_builder.storage.nbd import AttachedDevice
from vm_image_builder.storage.partition import settle_device


log = LoggerFactory.for_device()


def get_children(device: dict) -> list[dict]:
    return device.get("children", []) or []


def get_block_devices(device_path: str) -> list[dict]:
    """Return lsblk data for ``device_path`` and its partitions.

    Raises:
        BlockDeviceQueryError: If lsblk prints something that is not lsblk JSON
    """
    result = run_command(
        ["lsblk", "-J", "-o", "NAME,PATH,TYPE,LABEL,UUID,FSTYPE", device_path],
        log_output=False,
    )
    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as error:
        log.error(f"lsblk returned invalid JSON: {error}")
        raise BlockDeviceQueryError(device_path, str(error)) from error
    if not isinstance(data, dict):
        raise BlockDeviceQueryError(device_path, "expected a JSON object")
    return data.get("blockdevices", []) or []


def list_partitions(devices: list[dict]) -> list[dict]:
    """Flatten lsblk output to the partitions below the top-level disks."""
    partitions: list[dict] = []
    for device in devices:
        for child in get_children(device):
            partitions.append(child)
            partitions.extend(list_partitions([child]))
    return partitions


def find_uuid(partitions: list[dict], role: VolumeRole) -> str:
    """Return the UUID of the single partition labelled for ``role``.

    Raises:
        UuidResolutionError: On zero or multiple matches
    """
    matches = [
        partition
        for partition in partitions
        if partition.get("label") == role.label and partition.get("uuid")
    ]
    if len(matches) != 1:
        raise UuidResolutionError(role.value, role.label, len(matches))
    return matches[0]["uuid"]


def resolve_volume_identity(
    device: AttachedDevice, layout: PartitionLayout
) -> VolumeIdentity:
    """Map every role in ``layout`` to its UUID on ``device``."""
    settle_device(device.device_path)
    partitions = list_partitions(get_block_devices(device.device_path))
    uuids = {role: find_uuid(partitions, role) for role in layout.roles}
    for role, value in uuids.items():
        log.info(f"{role.value} UUID={value}")
    return VolumeIdentity(
        root=uuids[VolumeRole.ROOT],
        efi=uuids[VolumeRole.EFI],
        swap=uuids.get(VolumeRole.SWAP),
    )
