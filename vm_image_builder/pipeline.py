"""Stage controller for building a VM disk image.

Stages run strictly in ``Stage`` order. Whether a stage runs is decided once,
up front, from ``STAGE_GATES``: each gated stage names the skip flag that
elides it and the reason logged when it does. Any flag combination therefore
maps to a fixed, enumerable stage list (see ``plan_stages``).

    reuse_image           create-image, partition, format, populate-base-system
    stop_after_bootstrap  execute-stage2, remove-stage2-script
    leave_mounted         teardown-mounts, detach

There are no retries. When a stage raises, the mounts and the nbd device
acquired so far are released in reverse order (unless ``leave_mounted``
hands them to the operator) and the original error propagates.
"""

from __future__ import annotations

import uuid
from typing import Callable, Optional

from vm_image_builder.domain.models import (
    BuildRequest,
    PipelineOptions,
    PipelineResult,
    Stage,
    VolumeIdentity,
)
from vm_image_builder.logging import EventLogger, LoggerFactory, operation_context
from vm_image_builder.services import stage2
from vm_image_builder.services.bootstrap import populate_base_system
from vm_image_builder.storage import nbd
from vm_image_builder.storage.devices import resolve_volume_identity
from vm_image_builder.storage.exceptions import ProvisioningError
from vm_image_builder.storage.format import format_partitions
from vm_image_builder.storage.image import create_image
from vm_image_builder.storage.mount import MountOrchestrator
from vm_image_builder.storage.partition import apply_layout, plan_layout
from vm_image_builder.storage.validation import (
    validate_image_exists,
    validate_stage_two_config,
)


# Stand-in identity used to validate the stage-2 inputs before any disk work
_PENDING_IDENTITY = VolumeIdentity(root="pending", efi="pending")

STAGE_GATES: dict[Stage, tuple[Callable[[PipelineOptions], bool], str]] = {
    Stage.CREATE_IMAGE: (lambda o: o.reuse_image, "reusing existing image"),
    Stage.PARTITION: (lambda o: o.reuse_image, "reusing existing image"),
    Stage.FORMAT: (lambda o: o.reuse_image, "reusing existing image"),
    Stage.POPULATE_BASE_SYSTEM: (lambda o: o.reuse_image, "reusing existing image"),
    Stage.EXECUTE_STAGE2: (
        lambda o: o.stop_after_bootstrap,
        "stopping after bootstrap",
    ),
    Stage.REMOVE_STAGE2_SCRIPT: (
        lambda o: o.stop_after_bootstrap,
        "stopping after bootstrap",
    ),
    Stage.TEARDOWN_MOUNTS: (lambda o: o.leave_mounted, "leaving mounts in place"),
    Stage.DETACH: (lambda o: o.leave_mounted, "leaving device attached"),
}


def skip_reason(stage: Stage, options: PipelineOptions) -> Optional[str]:
    gate = STAGE_GATES.get(stage)
    if gate is None:
        return None
    predicate, reason = gate
    return reason if predicate(options) else None


def plan_stages(options: PipelineOptions) -> list[Stage]:
    """Return the stages that will run for ``options``, in order."""
    return [stage for stage in Stage if skip_reason(stage, options) is None]


class PipelineController:
    """Runs one build described by a ``BuildRequest``.

    Owns the attached device and the mount stack for the whole run.
    """

    def __init__(self, request: BuildRequest):
        self.request = request
        self.options = request.options
        self.job_id = f"build-{uuid.uuid4().hex[:8]}"
        self.log = LoggerFactory.for_pipeline(self.job_id)
        self.layout = plan_layout(
            request.image.size_mib, request.swap_mib, request.efi_mib
        )
        self.mounts = MountOrchestrator(request.target_root)
        self.device: Optional[nbd.AttachedDevice] = None
        self.identity: Optional[VolumeIdentity] = None
        self.script_text: Optional[str] = None
        self._handlers: dict[Stage, Callable[[], None]] = {
            Stage.CREATE_IMAGE: self._create_image,
            Stage.ATTACH: self._attach,
            Stage.PARTITION: self._partition,
            Stage.FORMAT: self._format,
            Stage.RESOLVE_UUIDS: self._resolve_uuids,
            Stage.MOUNT: self._mount,
            Stage.POPULATE_BASE_SYSTEM: self._populate_base_system,
            Stage.MOUNT_PSEUDO_FS: self._mount_pseudo_fs,
            Stage.SYNTHESIZE_STAGE2: self._synthesize_stage2,
            Stage.EXECUTE_STAGE2: self._execute_stage2,
            Stage.REMOVE_STAGE2_SCRIPT: self._remove_stage2_script,
            Stage.TEARDOWN_MOUNTS: self._teardown_mounts,
            Stage.DETACH: self._detach,
        }

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    def check_preconditions(self) -> None:
        """Checks that must pass before anything is created or attached.

        Raises:
            ImageNotFoundError: When reusing an image that does not exist
            ConfigurationError: When a stage-2 value is unsafe to render
        """
        if self.options.reuse_image:
            validate_image_exists(self.request.image.path)
        validate_stage_two_config(self.request.stage_two_config(_PENDING_IDENTITY))

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self) -> PipelineResult:
        self.check_preconditions()
        result = PipelineResult()
        self.log.info(
            f"Building {self.request.image.path} for {self.request.hostname} "
            f"({self.request.image.suite}, {self.request.image.size_mib}MiB)"
        )
        try:
            for stage in Stage:
                reason = skip_reason(stage, self.options)
                if reason is not None:
                    EventLogger.log_stage_skipped(self.log, stage.value, reason)
                    result.skipped_stages.append(stage)
                    continue
                with operation_context(stage.value, job_id=self.job_id):
                    self._handlers[stage]()
                result.ran_stages.append(stage)
        except Exception:
            if self.options.leave_mounted:
                self._report_live_resources()
            else:
                self._release_after_failure()
            raise

        if self.options.leave_mounted:
            self._report_live_resources()
            result.left_live = True
        if self.script_text is not None:
            result.script_path = stage2.host_script_path(self.request.target_root)
        return result

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _require_device(self) -> nbd.AttachedDevice:
        if self.device is None:
            raise ProvisioningError("No device attached")
        return self.device

    def _require_identity(self) -> VolumeIdentity:
        if self.identity is None:
            raise ProvisioningError("Partition UUIDs have not been resolved")
        return self.identity

    def _create_image(self) -> None:
        create_image(self.request.image)

    def _attach(self) -> None:
        self.device = nbd.attach(
            self.request.image.path,
            self.request.nbd_device,
            self.request.image.image_format,
        )

    def _partition(self) -> None:
        apply_layout(self._require_device(), self.layout)

    def _format(self) -> None:
        format_partitions(self._require_device(), self.layout)

    def _resolve_uuids(self) -> None:
        self.identity = resolve_volume_identity(self._require_device(), self.layout)

    def _mount(self) -> None:
        identity = self._require_identity()
        self.mounts.mount_root(identity.root)
        self.mounts.mount_efi(identity.efi)

    def _populate_base_system(self) -> None:
        populate_base_system(
            self.request.image.suite,
            self.request.target_root,
            self.request.stage_two_config(self._require_identity()).mirror,
            self.request.bootstrap_include,
        )

    def _mount_pseudo_fs(self) -> None:
        self.mounts.mount_pseudo_filesystems()

    def _synthesize_stage2(self) -> None:
        config = self.request.stage_two_config(self._require_identity())
        validate_stage_two_config(config)
        self.script_text = stage2.synthesize(config)
        stage2.write_script(self.request.target_root, self.script_text)

    def _execute_stage2(self) -> None:
        stage2.execute_script(self.request.target_root)

    def _remove_stage2_script(self) -> None:
        stage2.remove_script(self.request.target_root)

    def _teardown_mounts(self) -> None:
        self.mounts.teardown()

    def _detach(self) -> None:
        self._require_device().detach()

    # ------------------------------------------------------------------
    # Resource hand-off
    # ------------------------------------------------------------------

    def _release_after_failure(self) -> None:
        """Release what the failed run acquired; the caller re-raises."""
        try:
            self.mounts.teardown()
        except ProvisioningError as error:
            self.log.error(f"Cleanup after failure could not unmount: {error}")
            self._report_live_resources()
            return
        if self.device is not None and self.device.attached:
            try:
                self.device.detach()
            except ProvisioningError as error:
                self.log.error(f"Cleanup after failure could not detach: {error}")
                self._report_live_resources()

    def _report_live_resources(self) -> None:
        live_mounts = self.mounts.describe_live()
        if live_mounts:
            EventLogger.log_resource_left_live(
                self.log,
                f"Mounts {', '.join(live_mounts)}",
                self.mounts.release_command,
            )
        if self.device is not None and self.device.attached:
            EventLogger.log_resource_left_live(
                self.log,
                f"Device {self.device.device_path} ({self.device.image_path})",
                self.device.release_command,
            )
