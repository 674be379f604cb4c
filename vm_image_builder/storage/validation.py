"""Safety validation functions for image provisioning.

This module provides validation functions run before any work is attempted
and at the boundary where operator input is rendered into the image:
- Verifies the process runs as root
- Verifies a reused image actually exists
- Validates every stage-2 value (hostname, domain, suite, mirrors, locale,
  root password hash, ...) so it can be written into configuration files
  and shell commands safely

All validation functions raise specific exceptions from the exceptions module
rather than returning boolean values, making error handling more explicit.

Example:
    from vm_image_builder.storage.validation import validate_hostname

    validate_hostname("web01")
"""

import os
import re
from pathlib import Path

from vm_image_builder.domain.models import StageTwoConfig

from .exceptions import ConfigurationError, ImageNotFoundError, PrivilegeError


# RFC 1123 host label
_LABEL_RE = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")
_SUITE_RE = re.compile(r"^[a-z][a-z0-9-]*$")
# crypt(3) hashes: $id$[params$]salt$hash, e.g. sha512 ($6$) or yescrypt ($y$)
_PASSWORD_HASH_RE = re.compile(r"^\$[0-9a-z]+\$[./A-Za-z0-9=,$]+$")
_INTERFACE_RE = re.compile(r"^[A-Za-z0-9_.:-]{1,15}$")
_MIRROR_RE = re.compile(r"^https?://[^\s'\"`$\\]+$")
_TIMEZONE_RE = re.compile(r"^[A-Za-z_]+/[A-Za-z0-9_+/-]+$")
_LOCALE_RE = re.compile(r"^[a-z]{2,3}_[A-Z]{2}\.[A-Za-z0-9-]+$")
_KEYMAP_RE = re.compile(r"^[a-z]{2,8}$")
_PACKAGE_RE = re.compile(r"^[a-z0-9][a-z0-9+.-]+$")
_SERIAL_RE = re.compile(r"^tty[A-Za-z]+[0-9]*$")


def _check_pattern(field_name: str, value, pattern: re.Pattern, reason: str) -> None:
    if not isinstance(value, str) or not pattern.fullmatch(value):
        raise ConfigurationError(field_name, value, reason)


def validate_privileges() -> None:
    """Validate that the process runs with root privileges.

    Raises:
        PrivilegeError: If the effective uid is not 0
    """
    euid = os.geteuid()
    if euid != 0:
        raise PrivilegeError(euid)


def validate_image_exists(image_path) -> None:
    """Validate that an image to reuse exists as a regular file.

    Raises:
        ImageNotFoundError: If the image is missing
    """
    if not Path(image_path).is_file():
        raise ImageNotFoundError(image_path)


def validate_hostname(hostname: str) -> None:
    """Validate a short hostname (single RFC 1123 label).

    Raises:
        ConfigurationError: If the hostname is empty, dotted or has invalid characters
    """
    _check_pattern(
        "hostname", hostname, _LABEL_RE, "must be 1-63 letters, digits or hyphens"
    )


def validate_domain(domain: str) -> None:
    """Validate a dotted domain name.

    Raises:
        ConfigurationError: If any label is invalid or the name is too long
    """
    if not isinstance(domain, str) or not domain or len(domain) > 253:
        raise ConfigurationError("domain", domain, "must be 1-253 characters")
    for label in domain.split("."):
        if not _LABEL_RE.fullmatch(label):
            raise ConfigurationError(
                "domain", domain, f"label {label!r} is not a valid DNS label"
            )


def validate_suite(suite: str) -> None:
    _check_pattern("suite", suite, _SUITE_RE, "must be a lowercase suite codename")


def validate_network_interface(name: str) -> None:
    _check_pattern(
        "network interface", name, _INTERFACE_RE, "must be a kernel interface name"
    )


def validate_password_hash(password_hash: str) -> None:
    """Validate that a root password is pre-encrypted in crypt(3) format.

    The value itself is never included in the error.

    Raises:
        ConfigurationError: If the value does not look like a crypt hash
    """
    if not isinstance(password_hash, str) or not _PASSWORD_HASH_RE.fullmatch(password_hash):
        raise ConfigurationError(
            "root password hash",
            "<redacted>",
            "must be a pre-encrypted crypt(3) hash such as one from 'mkpasswd'",
        )


def validate_mirror(field_name: str, url: str) -> None:
    _check_pattern(field_name, url, _MIRROR_RE, "must be an http(s) URL")


def validate_stage_two_config(config: StageTwoConfig) -> None:
    """Perform all validations required before rendering the stage-2 script.

    Every value checked here ends up in a configuration file or on a shell
    command line inside the image.

    Raises:
        ConfigurationError: On the first invalid value
    """
    validate_hostname(config.hostname)
    validate_domain(config.domain)
    validate_suite(config.suite)
    validate_network_interface(config.network_interface)
    validate_mirror("mirror", config.mirror)
    validate_mirror("security mirror", config.security_mirror)
    _check_pattern("timezone", config.timezone, _TIMEZONE_RE, "must look like Area/Zone")
    _check_pattern("locale", config.locale, _LOCALE_RE, "must look like en_US.UTF-8")
    _check_pattern(
        "keyboard layout", config.keyboard_layout, _KEYMAP_RE, "must be an XKB layout code"
    )
    _check_pattern(
        "kernel package", config.kernel_package, _PACKAGE_RE, "must be a Debian package name"
    )
    _check_pattern(
        "serial console", config.serial_console, _SERIAL_RE, "must be a tty device name"
    )
    if not isinstance(config.serial_speed, int) or config.serial_speed <= 0:
        raise ConfigurationError(
            "serial speed", str(config.serial_speed), "must be a positive baud rate"
        )
    if config.root_password_hash is not None:
        validate_password_hash(config.root_password_hash)
