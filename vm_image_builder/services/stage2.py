"""Stage-2 configuration script: rendering, placement and chroot execution.

The stage-2 script runs inside the freshly bootstrapped root (with /dev,
/proc and /sys mounted) and turns it into a bootable VM:

    1.  /etc/fstab from the resolved UUIDs (swap line only with swap)
    2.  timezone, after removing any pre-existing localtime/timezone files
    3.  /etc/network/interfaces: loopback + DHCP on the primary interface
    4.  /etc/hostname and /etc/hosts (short name + FQDN on 127.0.1.1, IPv6)
    5.  /etc/apt/sources.list: suite, suite-security, suite-updates
    6.  locale and keyboard, after removing conflicting config files
    7.  kernel package
    8.  GRUB for UEFI with a serial console, grub-install, update-grub
    9.  copy of the GRUB binary to the removable-media fallback path
    10. serial getty
    11. root password from a pre-encrypted hash, when one was supplied
    12. apt cache cleanup

``synthesize()`` is a pure function of ``StageTwoConfig``. Values coming
from the operator are validated before the config is built and are shell
quoted wherever they reach a command line.
"""

from __future__ import annotations

import os
import re
import shlex
from pathlib import Path

from vm_image_builder.domain.models import StageTwoConfig
from vm_image_builder.logging import LoggerFactory
from vm_image_builder.storage.command_runners import run_streaming_command


log = LoggerFactory.for_stage2()

# Location inside the target root
STAGE2_SCRIPT_PATH = Path("/root/vm-image-stage2.sh")

EFI_FALLBACK_DIR = "/boot/efi/EFI/BOOT"
EFI_FALLBACK_BINARY = f"{EFI_FALLBACK_DIR}/BOOTX64.EFI"
GRUB_EFI_BINARY = "/boot/efi/EFI/debian/grubx64.efi"

CHROOT_ENV = {
    "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
    "HOME": "/root",
    "LC_ALL": "C",
    "DEBIAN_FRONTEND": "noninteractive",
}


# Heredoc terminator; hostnames and interface names cannot contain it
HEREDOC_MARKER = "VM_IMAGE_BUILDER_EOF"


def _heredoc(path: str, lines: list[str], append: bool = False) -> list[str]:
    redirect = ">>" if append else ">"
    return [f"cat {redirect} {path} <<'{HEREDOC_MARKER}'", *lines, HEREDOC_MARKER]


def _debconf(selections: list[str]) -> list[str]:
    return [f"debconf-set-selections <<'{HEREDOC_MARKER}'", *selections, HEREDOC_MARKER]


def _serial_unit(console: str) -> int:
    match = re.search(r"(\d+)$", console)
    return int(match.group(1)) if match else 0


def _fstab_section(config: StageTwoConfig) -> list[str]:
    identity = config.identity
    entries = [
        f"UUID={identity.root}\t/\text4\terrors=remount-ro\t0\t1",
        f"UUID={identity.efi}\t/boot/efi\tvfat\tumask=0077\t0\t2",
    ]
    if identity.swap:
        entries.append(f"UUID={identity.swap}\tnone\tswap\tsw\t0\t0")
    return ["# fstab", *_heredoc("/etc/fstab", entries)]


def _timezone_section(config: StageTwoConfig) -> list[str]:
    area, _, zone = config.timezone.partition("/")
    return [
        "# timezone",
        "rm -f /etc/localtime /etc/timezone",
        *_debconf(
            [
                f"tzdata tzdata/Areas select {area}",
                f"tzdata tzdata/Zones/{area} select {zone}",
            ]
        ),
        "dpkg-reconfigure -f noninteractive tzdata",
    ]


def _network_section(config: StageTwoConfig) -> list[str]:
    interface = config.network_interface
    return [
        "# network",
        *_heredoc(
            "/etc/network/interfaces",
            [
                "auto lo",
                "iface lo inet loopback",
                "",
                f"allow-hotplug {interface}",
                f"iface {interface} inet dhcp",
            ],
        ),
    ]


def _hostname_section(config: StageTwoConfig) -> list[str]:
    return [
        "# hostname",
        *_heredoc("/etc/hostname", [config.hostname]),
        *_heredoc(
            "/etc/hosts",
            [
                "127.0.0.1\tlocalhost",
                f"127.0.1.1\t{config.fqdn}\t{config.hostname}",
                "",
                "::1\tlocalhost ip6-localhost ip6-loopback",
                "ff02::1\tip6-allnodes",
                "ff02::2\tip6-allrouters",
            ],
        ),
    ]


def _apt_section(config: StageTwoConfig) -> list[str]:
    suite = config.suite
    return [
        "# apt sources",
        *_heredoc(
            "/etc/apt/sources.list",
            [
                f"deb {config.mirror} {suite} main",
                f"deb {config.security_mirror} {suite}-security main",
                f"deb {config.mirror} {suite}-updates main",
            ],
        ),
        "apt-get update",
    ]


def _locale_section(config: StageTwoConfig) -> list[str]:
    charset = config.locale.partition(".")[2] or "UTF-8"
    layout = config.keyboard_layout
    return [
        "# locale and keyboard",
        "rm -f /etc/default/locale /etc/locale.gen /etc/default/keyboard",
        *_debconf(
            [
                f"locales locales/locales_to_be_generated multiselect {config.locale} {charset}",
                f"locales locales/default_environment_locale select {config.locale}",
                f"keyboard-configuration keyboard-configuration/xkb-keymap select {layout}",
                f"keyboard-configuration keyboard-configuration/layoutcode string {layout}",
            ]
        ),
        "apt-get install -y locales console-setup keyboard-configuration",
    ]


def _kernel_section(config: StageTwoConfig) -> list[str]:
    return ["# kernel", f"apt-get install -y {shlex.quote(config.kernel_package)}"]


def _bootloader_section(config: StageTwoConfig) -> list[str]:
    console = config.serial_console
    speed = config.serial_speed
    cmdline = f'GRUB_CMDLINE_LINUX="console=tty0 console={console},{speed}n8"'
    serial_command = (
        f"serial --speed={speed} --unit={_serial_unit(console)} "
        "--word=8 --parity=no --stop=1"
    )
    return [
        "# bootloader",
        "apt-get install -y grub-efi-amd64",
        f"sed -i {shlex.quote('s/^GRUB_CMDLINE_LINUX=.*/' + cmdline + '/')} /etc/default/grub",
        *_heredoc(
            "/etc/default/grub",
            [
                'GRUB_TERMINAL="console serial"',
                f'GRUB_SERIAL_COMMAND="{serial_command}"',
            ],
            append=True,
        ),
        "grub-install --target=x86_64-efi --efi-directory=/boot/efi "
        "--bootloader-id=debian --no-nvram",
        "update-grub",
        f"mkdir -p {EFI_FALLBACK_DIR}",
        f"cp {GRUB_EFI_BINARY} {EFI_FALLBACK_BINARY}",
    ]


def _serial_getty_section(config: StageTwoConfig) -> list[str]:
    return [
        "# serial console",
        f"systemctl enable serial-getty@{config.serial_console}.service",
    ]


def _credentials_section(config: StageTwoConfig) -> list[str]:
    if not config.root_password_hash:
        return []
    return [
        "# root password",
        f"usermod -p {shlex.quote(config.root_password_hash)} root",
    ]


def synthesize(config: StageTwoConfig) -> str:
    """Render the stage-2 script for ``config``. Deterministic."""
    sections = [
        [
            "#!/bin/bash",
            f"# Stage 2 configuration for {config.fqdn}",
            "set -euo pipefail",
            "export DEBIAN_FRONTEND=noninteractive",
            "export LC_ALL=C",
        ],
        _fstab_section(config),
        _timezone_section(config),
        _network_section(config),
        _hostname_section(config),
        _apt_section(config),
        _locale_section(config),
        _kernel_section(config),
        _bootloader_section(config),
        _serial_getty_section(config),
        _credentials_section(config),
        ["# cleanup", "apt-get clean"],
    ]
    return "\n\n".join("\n".join(section) for section in sections if section) + "\n"


def host_script_path(target_root: Path) -> Path:
    return Path(target_root) / STAGE2_SCRIPT_PATH.relative_to("/")


def write_script(target_root: Path, text: str) -> Path:
    """Write the script into the target root, readable by root only."""
    path = host_script_path(target_root)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    os.chmod(path, 0o700)
    log.info(f"Stage 2 script written to {path}")
    return path


def execute_script(target_root: Path) -> None:
    """Run the stage-2 script inside ``target_root`` with chroot."""
    log.info(f"Running {STAGE2_SCRIPT_PATH} in {target_root}")
    run_streaming_command(
        ["chroot", str(target_root), "/bin/bash", str(STAGE2_SCRIPT_PATH)],
        env=CHROOT_ENV,
    )


def remove_script(target_root: Path) -> None:
    path = host_script_path(target_root)
    log.info(f"Removing {path}")
    path.unlink(missing_ok=True)
