import argparse
import os
import sys
from pathlib import Path

from vm_image_builder.config import settings
from vm_image_builder.domain.models import BuildRequest, ImageSpec, PipelineOptions
from vm_image_builder.logging import LoggerFactory, setup_logging
from vm_image_builder.pipeline import PipelineController
from vm_image_builder.services.stage2 import STAGE2_SCRIPT_PATH
from vm_image_builder.storage.exceptions import ProvisioningError
from vm_image_builder.storage.image import parse_size_mib
from vm_image_builder.storage.validation import validate_privileges

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

# Settings forwarded to the stage-2 script unchanged
SITE_SETTING_KEYS = (
    "mirror",
    "security_mirror",
    "timezone",
    "locale",
    "keyboard_layout",
    "network_interface",
    "kernel_package",
    "serial_console",
)


class _ArgumentParser(argparse.ArgumentParser):
    """Argument parser that exits with status 1 on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_FAILURE, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="vm-image-builder",
        description="Build a bootable Debian VM disk image (UEFI, serial console)",
    )
    parser.add_argument("hostname", help="Hostname of the new machine")
    parser.add_argument("-s", "--suite", default="bookworm", help="Debian suite")
    parser.add_argument(
        "-o", "--output", help="Image filename (default: <hostname>.qcow2)"
    )
    parser.add_argument(
        "-S", "--size", default="20G", help="Image size, e.g. 20G or 8192M"
    )
    parser.add_argument(
        "-w", "--swap", type=int, default=0, help="Swap size in MiB, 0 disables swap"
    )
    parser.add_argument(
        "-p",
        "--root-password-env",
        metavar="VAR",
        help="Environment variable holding a pre-encrypted root password",
    )
    parser.add_argument(
        "-d", "--domain", default="localdomain", help="Domain name of the machine"
    )
    parser.add_argument(
        "-n",
        "--skip-initial-provisioning",
        action="store_true",
        help="Reuse an existing, already populated image",
    )
    parser.add_argument(
        "-b",
        "--stop-after-bootstrap",
        action="store_true",
        help="Write the stage 2 script but do not run it",
    )
    parser.add_argument(
        "-m",
        "--leave-mounted",
        action="store_true",
        help="Leave the image mounted and attached when done",
    )
    parser.add_argument("--nbd-device", help="Network block device to use")
    parser.add_argument("--mountpoint", help="Where to mount the target root")
    parser.add_argument("--mirror", help="Debian mirror URL")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--trace", action="store_true", help="Also show tool output on the console"
    )
    return parser


def read_root_password_hash(env_name):
    """Return the pre-encrypted password from ``env_name``, or None.

    A missing or empty variable leaves the root password untouched.
    """
    if not env_name:
        return None
    value = os.environ.get(env_name)
    if not value:
        LoggerFactory.for_system().info(
            f"Environment variable {env_name} is empty or unset; "
            "root password will not be set"
        )
        return None
    return value


def build_request(args) -> BuildRequest:
    """Combine command line arguments and settings into a ``BuildRequest``."""
    output = Path(args.output or f"{args.hostname}.{settings.get_setting('image_format')}")
    site = {key: settings.get_setting(key) for key in SITE_SETTING_KEYS}
    if args.mirror:
        site["mirror"] = args.mirror
    site["serial_speed"] = settings.get_int("serial_speed", 115200)
    return BuildRequest(
        image=ImageSpec(
            path=output.resolve(),
            size_mib=parse_size_mib(args.size),
            suite=args.suite,
            image_format=settings.get_setting("image_format"),
        ),
        hostname=args.hostname,
        domain=args.domain,
        swap_mib=args.swap,
        root_password_hash=read_root_password_hash(args.root_password_env),
        options=PipelineOptions(
            reuse_image=args.skip_initial_provisioning,
            stop_after_bootstrap=args.stop_after_bootstrap,
            leave_mounted=args.leave_mounted,
        ),
        nbd_device=args.nbd_device or settings.get_setting("nbd_device"),
        target_root=Path(args.mountpoint or settings.get_setting("mountpoint")),
        efi_mib=settings.get_int("efi_size_mib", settings.DEFAULT_EFI_SIZE_MIB),
        bootstrap_include=tuple(settings.get_list("bootstrap_include")),
        site=site,
    )


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace)
    log = LoggerFactory.for_system()

    try:
        validate_privileges()
        request = build_request(args)
        result = PipelineController(request).run()
    except ProvisioningError as error:
        log.error(str(error))
        return EXIT_FAILURE

    if request.options.stop_after_bootstrap and result.script_path is not None:
        log.warning(
            f"Stage 2 script left at {result.script_path}; run it with: "
            f"chroot {request.target_root} /bin/bash {STAGE2_SCRIPT_PATH}"
        )
    log.success(f"Finished building {request.image.path}")
    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
