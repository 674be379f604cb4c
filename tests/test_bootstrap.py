"""Tests for services/bootstrap.py."""

from pathlib import Path
from unittest.mock import patch

from vm_image_builder.services import bootstrap


class TestDebootstrapCommand:
    def test_minimal_command(self):
        assert bootstrap.debootstrap_command(
            "bookworm", Path("/mnt/target"), "http://deb.debian.org/debian"
        ) == [
            "debootstrap",
            "--arch=amd64",
            "bookworm",
            "/mnt/target",
            "http://deb.debian.org/debian",
        ]

    def test_include_packages(self):
        command = bootstrap.debootstrap_command(
            "bookworm",
            Path("/mnt/target"),
            "http://deb.debian.org/debian",
            include=["ifupdown", "", "systemd-sysv"],
        )

        assert command[2] == "--include=ifupdown,systemd-sysv"


@patch("vm_image_builder.services.bootstrap.run_streaming_command")
def test_populate_base_system_streams_debootstrap(mock_stream, target_root):
    bootstrap.populate_base_system(
        "bookworm", target_root, "http://deb.debian.org/debian", ("ifupdown",)
    )

    command = mock_stream.call_args[0][0]
    assert command[0] == "debootstrap"
    assert command[-2:] == [str(target_root), "http://deb.debian.org/debian"]
