"""Custom exceptions for image provisioning.

This module defines a hierarchy of exceptions for the provisioning pipeline to
provide specific error handling and clear operator-facing messages.

Exception Hierarchy:
    ProvisioningError (base)
        ├── PreconditionError
        │   ├── PrivilegeError
        │   ├── ImageNotFoundError
        │   └── DeviceNotFoundError
        ├── CommandFailedError
        ├── LayoutError
        ├── UuidResolutionError
        ├── BlockDeviceQueryError
        ├── MountError
        └── ConfigurationError

Usage:
    from vm_image_builder.storage.exceptions import ImageNotFoundError

    if not image_path.exists():
        raise ImageNotFoundError(image_path)
"""


class ProvisioningError(Exception):
    """Base exception for all provisioning operations."""



class PreconditionError(ProvisioningError):
    """A check that must pass before any work is attempted failed."""



class PrivilegeError(PreconditionError):
    """The process does not have the privilege required to build images."""

    def __init__(self, euid: int):
        self.euid = euid
        super().__init__(f"Must be run as root (effective uid is {euid})")


class ImageNotFoundError(PreconditionError):
    """An existing image was requested but does not exist."""

    def __init__(self, image_path):
        self.image_path = str(image_path)
        super().__init__(f"Image not found: {self.image_path}")


class DeviceNotFoundError(PreconditionError):
    """Block device node does not exist after loading its kernel module."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Device not found: {device_name}")


class CommandFailedError(ProvisioningError):
    """An external tool returned a failure status."""

    def __init__(self, command: list[str], returncode: int, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        message = output or "Command failed"
        super().__init__(
            f"Command failed ({' '.join(self.command)}) "
            f"with code {returncode}: {message}"
        )


class LayoutError(ProvisioningError):
    """Requested sizes cannot produce a valid partition layout."""



class UuidResolutionError(ProvisioningError):
    """A partition label did not map to exactly one UUID."""

    def __init__(self, role: str, label: str, matches: int):
        self.role = role
        self.label = label
        self.matches = matches
        super().__init__(
            f"Expected exactly one {role} partition labelled '{label}', "
            f"found {matches}"
        )


class BlockDeviceQueryError(ProvisioningError):
    """lsblk output for a device could not be parsed."""

    def __init__(self, device_path: str, reason: str):
        self.device_path = device_path
        self.reason = reason
        super().__init__(f"Could not parse lsblk output for {device_path}: {reason}")


class MountError(ProvisioningError):
    """Mounting or unmounting part of the target root failed."""

    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Mount operation on {target} failed: {reason}")


class ConfigurationError(ProvisioningError):
    """A user-supplied value is not safe to render into the image."""

    def __init__(self, field_name: str, value: str, reason: str):
        self.field_name = field_name
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field_name} {value!r}: {reason}")
