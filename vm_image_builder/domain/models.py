"""Domain model for disk image provisioning.

Type-safe objects passed between pipeline stages, replacing loose dicts and
bare strings for layouts, device handles and the stage-2 inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


# ==============================================================================
# Image Domain
# ==============================================================================


@dataclass(frozen=True)
class ImageSpec:
    """The disk image to build."""

    path: Path  # Target image filename
    size_mib: int  # Total virtual size
    suite: str  # e.g., "bookworm"
    image_format: str = "qcow2"


# ==============================================================================
# Partition Domain
# ==============================================================================


class VolumeRole(Enum):
    """Logical role of a partition in the image."""

    EFI = "efi"
    SWAP = "swap"
    ROOT = "root"

    @property
    def label(self) -> str:
        """Filesystem label written by the formatter for this role."""
        return VOLUME_LABELS[self]

    @property
    def fs_type(self) -> str:
        return VOLUME_FS_TYPES[self]


VOLUME_LABELS = {
    VolumeRole.EFI: "EFI",
    VolumeRole.SWAP: "swap",
    VolumeRole.ROOT: "root",
}

VOLUME_FS_TYPES = {
    VolumeRole.EFI: "fat32",
    VolumeRole.SWAP: "linux-swap",
    VolumeRole.ROOT: "ext4",
}


@dataclass(frozen=True)
class Partition:
    """One planned partition, offsets in MiB, end exclusive."""

    index: int
    role: VolumeRole
    start_mib: int
    end_mib: int

    @property
    def size_mib(self) -> int:
        return self.end_mib - self.start_mib

    @property
    def label(self) -> str:
        return self.role.label

    @property
    def fs_type(self) -> str:
        return self.role.fs_type


@dataclass(frozen=True)
class PartitionLayout:
    """Ordered partitions of an image; root always runs to the end."""

    partitions: tuple[Partition, ...]
    total_mib: int

    def by_role(self, role: VolumeRole) -> Partition | None:
        for partition in self.partitions:
            if partition.role == role:
                return partition
        return None

    @property
    def efi(self) -> Partition:
        return self.by_role(VolumeRole.EFI)

    @property
    def root(self) -> Partition:
        return self.by_role(VolumeRole.ROOT)

    @property
    def swap(self) -> Partition | None:
        return self.by_role(VolumeRole.SWAP)

    @property
    def has_swap(self) -> bool:
        return self.swap is not None

    @property
    def roles(self) -> tuple[VolumeRole, ...]:
        return tuple(partition.role for partition in self.partitions)


# ==============================================================================
# Identity Domain
# ==============================================================================


@dataclass(frozen=True)
class VolumeIdentity:
    """Stable UUID per role, populated after formatting.

    Only built by the UUID resolver, which refuses partial results.
    """

    root: str
    efi: str
    swap: str | None = None


@dataclass(frozen=True)
class StageTwoConfig:
    """Everything the stage-2 script is rendered from.

    Host-provided values are validated before construction; see
    ``vm_image_builder.storage.validation``.
    """

    identity: VolumeIdentity
    hostname: str
    domain: str
    suite: str
    root_password_hash: str | None = None
    mirror: str = "http://deb.debian.org/debian"
    security_mirror: str = "http://security.debian.org/debian-security"
    timezone: str = "Etc/UTC"
    locale: str = "en_US.UTF-8"
    keyboard_layout: str = "us"
    network_interface: str = "ens3"
    kernel_package: str = "linux-image-amd64"
    serial_console: str = "ttyS0"
    serial_speed: int = 115200

    @property
    def fqdn(self) -> str:
        return f"{self.hostname}.{self.domain}"


# ==============================================================================
# Pipeline Domain
# ==============================================================================


@dataclass(frozen=True)
class PipelineOptions:
    """Independent skip flags; every combination is valid."""

    reuse_image: bool = False  # skip create/partition/format/populate
    stop_after_bootstrap: bool = False  # write stage 2 but do not run it
    leave_mounted: bool = False  # skip teardown and detach


class Stage(Enum):
    """Pipeline stages in execution order."""

    CREATE_IMAGE = "create-image"
    ATTACH = "attach"
    PARTITION = "partition"
    FORMAT = "format"
    RESOLVE_UUIDS = "resolve-uuids"
    MOUNT = "mount"
    POPULATE_BASE_SYSTEM = "populate-base-system"
    MOUNT_PSEUDO_FS = "mount-pseudo-fs"
    SYNTHESIZE_STAGE2 = "synthesize-stage2"
    EXECUTE_STAGE2 = "execute-stage2"
    REMOVE_STAGE2_SCRIPT = "remove-stage2-script"
    TEARDOWN_MOUNTS = "teardown-mounts"
    DETACH = "detach"


@dataclass
class PipelineResult:
    ran_stages: list[Stage] = field(default_factory=list)
    skipped_stages: list[Stage] = field(default_factory=list)
    script_path: Path | None = None
    left_live: bool = False


@dataclass(frozen=True)
class BuildRequest:
    """Everything the operator asked for, fixed before the first stage runs."""

    image: ImageSpec
    hostname: str
    domain: str
    swap_mib: int = 0
    root_password_hash: str | None = None
    options: PipelineOptions = field(default_factory=PipelineOptions)
    nbd_device: str = "/dev/nbd0"
    target_root: Path = Path("/mnt/vm-image-builder")
    efi_mib: int = 270
    bootstrap_include: tuple[str, ...] = ()
    # StageTwoConfig site values: mirror, timezone, locale, ...
    site: dict[str, object] = field(default_factory=dict)

    def stage_two_config(self, identity: VolumeIdentity) -> StageTwoConfig:
        return StageTwoConfig(
            identity=identity,
            hostname=self.hostname,
            domain=self.domain,
            suite=self.image.suite,
            root_password_hash=self.root_password_hash,
            **self.site,
        )
