"""Domain models for disk image provisioning.

This package contains the type-safe objects passed between pipeline stages.
"""

from __future__ import annotations

from .models import (
    BuildRequest,
    ImageSpec,
    Partition,
    PartitionLayout,
    PipelineOptions,
    PipelineResult,
    Stage,
    StageTwoConfig,
    VolumeIdentity,
    VolumeRole,
)


__all__ = [
    "BuildRequest",
    "ImageSpec",
    "Partition",
    "PartitionLayout",
    "PipelineOptions",
    "PipelineResult",
    "Stage",
    "StageTwoConfig",
    "VolumeIdentity",
    "VolumeRole",
]
