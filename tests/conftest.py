"""
Pytest configuration and shared fixtures for vm-image-builder tests.

This module provides common fixtures and utilities used across all test modules.
No fixture touches a real block device: every external command is mocked.
"""

import json
from pathlib import Path
from typing import Any, Dict, List

import pytest

from vm_image_builder.domain.models import (
    BuildRequest,
    ImageSpec,
    PipelineOptions,
    StageTwoConfig,
    VolumeIdentity,
)


ROOT_UUID = "deadbeef-1234-5678-90ab-cdef12345678"
EFI_UUID = "ABCD-1234"
SWAP_UUID = "0badc0de-aaaa-bbbb-cccc-111122223333"
PASSWORD_HASH = "$6$saltsalt$Q9bXr0lU2x4E1oRrZ.wQm/8c0o8q2n7d1f5a3b9c6e4g"


# ==============================================================================
# lsblk Fixtures
# ==============================================================================


def _partition(name: str, label: str, uuid: str, fstype: str) -> Dict[str, Any]:
    return {
        "name": name,
        "path": f"/dev/{name}",
        "type": "part",
        "label": label,
        "uuid": uuid,
        "fstype": fstype,
    }


@pytest.fixture
def lsblk_partitions_with_swap() -> List[Dict[str, Any]]:
    """Partitions of /dev/nbd0 as lsblk reports them after formatting with swap."""
    return [
        _partition("nbd0p1", "EFI", EFI_UUID, "vfat"),
        _partition("nbd0p2", "swap", SWAP_UUID, "swap"),
        _partition("nbd0p3", "root", ROOT_UUID, "ext4"),
    ]


@pytest.fixture
def lsblk_partitions_without_swap() -> List[Dict[str, Any]]:
    return [
        _partition("nbd0p1", "EFI", EFI_UUID, "vfat"),
        _partition("nbd0p2", "root", ROOT_UUID, "ext4"),
    ]


@pytest.fixture
def make_lsblk_output():
    """
    Fixture returning a builder for lsblk JSON output.

    Returns:
        Callable taking a list of partition dicts and returning the JSON text
        lsblk prints for /dev/nbd0 with those children.
    """

    def build(partitions: List[Dict[str, Any]]) -> str:
        return json.dumps(
            {
                "blockdevices": [
                    {
                        "name": "nbd0",
                        "path": "/dev/nbd0",
                        "type": "disk",
                        "label": None,
                        "uuid": None,
                        "fstype": None,
                        "children": partitions,
                    }
                ]
            }
        )

    return build


# ==============================================================================
# Domain Fixtures
# ==============================================================================


@pytest.fixture
def identity_with_swap() -> VolumeIdentity:
    return VolumeIdentity(root=ROOT_UUID, efi=EFI_UUID, swap=SWAP_UUID)


@pytest.fixture
def identity_without_swap() -> VolumeIdentity:
    return VolumeIdentity(root=ROOT_UUID, efi=EFI_UUID)


@pytest.fixture
def stage_two_config(identity_with_swap) -> StageTwoConfig:
    """Fixture providing a typical stage-2 config with swap and a root password."""
    return StageTwoConfig(
        identity=identity_with_swap,
        hostname="web01",
        domain="example.org",
        suite="bookworm",
        root_password_hash=PASSWORD_HASH,
    )


@pytest.fixture
def target_root(tmp_path) -> Path:
    """Fixture providing an empty directory standing in for the mounted root."""
    root = tmp_path / "mnt" / "target"
    root.mkdir(parents=True)
    return root


@pytest.fixture
def make_request(tmp_path, target_root):
    """
    Fixture returning a builder for BuildRequest objects.

    The image lives under tmp_path and the target root is ``target_root``.
    """

    def build(swap_mib: int = 753, **options) -> BuildRequest:
        return BuildRequest(
            image=ImageSpec(
                path=tmp_path / "web01.qcow2", size_mib=20480, suite="bookworm"
            ),
            hostname="web01",
            domain="example.org",
            swap_mib=swap_mib,
            options=PipelineOptions(**options),
            target_root=target_root,
        )

    return build
