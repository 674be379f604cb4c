"""Tests for the command line entry point."""

from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import PASSWORD_HASH
from vm_image_builder import main
from vm_image_builder.domain.models import PipelineResult
from vm_image_builder.storage.exceptions import ImageNotFoundError, PrivilegeError


@pytest.fixture(autouse=True)
def no_log_files():
    """Keep setup_logging from writing to the real log directory."""
    with patch("vm_image_builder.main.setup_logging") as mocked:
        yield mocked


# ==============================================================================
# Argument Parsing
# ==============================================================================


class TestParser:
    """Tests for build_parser()."""

    def test_defaults(self):
        args = main.build_parser().parse_args(["web01"])

        assert args.hostname == "web01"
        assert args.suite == "bookworm"
        assert args.size == "20G"
        assert args.swap == 0
        assert args.domain == "localdomain"
        assert args.output is None
        assert not args.skip_initial_provisioning
        assert not args.stop_after_bootstrap
        assert not args.leave_mounted

    def test_short_flags(self):
        args = main.build_parser().parse_args(
            ["-s", "trixie", "-o", "x.qcow2", "-S", "8G", "-w", "512", "-d", "example.org",
             "-p", "ROOT_HASH", "-n", "-b", "-m", "web01"]
        )

        assert args.suite == "trixie"
        assert args.output == "x.qcow2"
        assert args.size == "8G"
        assert args.swap == 512
        assert args.domain == "example.org"
        assert args.root_password_env == "ROOT_HASH"
        assert args.skip_initial_provisioning
        assert args.stop_after_bootstrap
        assert args.leave_mounted

    def test_option_missing_argument_exits_with_1(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main.build_parser().parse_args(["web01", "-S"])

        assert exc_info.value.code == 1
        assert "error" in capsys.readouterr().err

    def test_missing_hostname_exits_with_1(self):
        with pytest.raises(SystemExit) as exc_info:
            main.main([])

        assert exc_info.value.code == 1


# ==============================================================================
# Request Building
# ==============================================================================


class TestBuildRequest:
    """Tests for build_request() and read_root_password_hash()."""

    def test_output_defaults_to_hostname(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        args = main.build_parser().parse_args(["web01"])

        request = main.build_request(args)

        assert request.image.path == tmp_path / "web01.qcow2"
        assert request.image.size_mib == 20480
        assert request.options.reuse_image is False

    def test_flags_map_to_options(self):
        args = main.build_parser().parse_args(["-n", "-b", "-m", "-w", "753", "web01"])

        request = main.build_request(args)

        assert request.options.reuse_image
        assert request.options.stop_after_bootstrap
        assert request.options.leave_mounted
        assert request.swap_mib == 753

    def test_overrides(self):
        args = main.build_parser().parse_args(
            ["--nbd-device", "/dev/nbd3", "--mountpoint", "/mnt/x",
             "--mirror", "http://mirror.example/debian", "web01"]
        )

        request = main.build_request(args)

        assert request.nbd_device == "/dev/nbd3"
        assert request.target_root == Path("/mnt/x")
        assert request.site["mirror"] == "http://mirror.example/debian"

    def test_password_read_from_environment(self, monkeypatch):
        monkeypatch.setenv("ROOT_HASH", PASSWORD_HASH)
        args = main.build_parser().parse_args(["-p", "ROOT_HASH", "web01"])

        request = main.build_request(args)

        assert request.root_password_hash == PASSWORD_HASH

    @pytest.mark.parametrize("value", [None, ""])
    def test_missing_password_is_not_fatal(self, monkeypatch, value):
        if value is None:
            monkeypatch.delenv("ROOT_HASH", raising=False)
        else:
            monkeypatch.setenv("ROOT_HASH", value)

        assert main.read_root_password_hash("ROOT_HASH") is None

    def test_no_password_option(self):
        assert main.read_root_password_hash(None) is None


# ==============================================================================
# Entry Point
# ==============================================================================


class TestMain:
    """Tests for main() exit codes."""

    @patch("vm_image_builder.main.validate_privileges", side_effect=PrivilegeError(1000))
    @patch("vm_image_builder.main.PipelineController")
    def test_non_root_exits_with_1(self, mock_controller, mock_privileges):
        assert main.main(["web01"]) == 1

        mock_controller.assert_not_called()

    @patch("vm_image_builder.main.validate_privileges")
    @patch("vm_image_builder.pipeline.nbd.attach")
    def test_reuse_missing_image_exits_with_1(
        self, mock_attach, mock_privileges, tmp_path
    ):
        image = tmp_path / "absent.qcow2"

        assert main.main(["-n", "-o", str(image), "web01"]) == 1

        mock_attach.assert_not_called()

    @patch("vm_image_builder.main.validate_privileges")
    @patch("vm_image_builder.main.PipelineController")
    def test_success_exits_with_0(self, mock_controller, mock_privileges):
        mock_controller.return_value.run.return_value = PipelineResult()

        assert main.main(["web01"]) == 0

        mock_controller.return_value.run.assert_called_once()

    @patch("vm_image_builder.main.validate_privileges")
    @patch("vm_image_builder.main.PipelineController")
    def test_pipeline_error_exits_with_1(self, mock_controller, mock_privileges):
        mock_controller.return_value.run.side_effect = ImageNotFoundError("x.qcow2")

        assert main.main(["web01"]) == 1

    @patch("vm_image_builder.main.validate_privileges")
    def test_bad_size_exits_with_1(self, mock_privileges):
        assert main.main(["-S", "twenty", "web01"]) == 1

    @patch("vm_image_builder.main.validate_privileges")
    def test_size_too_small_exits_with_1(self, mock_privileges):
        assert main.main(["-S", "100M", "web01"]) == 1

    @patch("vm_image_builder.main.validate_privileges")
    @patch("vm_image_builder.pipeline.nbd.attach")
    def test_null_setting_exits_with_1(self, mock_attach, mock_privileges, monkeypatch):
        monkeypatch.setitem(main.settings.settings_store.values, "timezone", None)

        assert main.main(["web01"]) == 1

        mock_attach.assert_not_called()
