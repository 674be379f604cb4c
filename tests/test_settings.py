"""Tests for config/settings.py."""

import json

import pytest

from vm_image_builder.config import settings


@pytest.fixture(autouse=True)
def restore_settings():
    yield
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


def test_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "missing.json")

    settings.load_settings()

    assert settings.get_setting("nbd_device") == "/dev/nbd0"
    assert settings.get_setting("network_interface") == "ens3"
    assert settings.get_int("efi_size_mib") == 270


def test_file_overrides_defaults(tmp_path, monkeypatch):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"network_interface": "enp1s0", "serial_speed": "9600"}))
    monkeypatch.setattr(settings, "SETTINGS_PATH", path)

    settings.load_settings()

    assert settings.get_setting("network_interface") == "enp1s0"
    assert settings.get_int("serial_speed") == 9600
    assert settings.get_setting("timezone") == "Etc/UTC"


def test_invalid_json_falls_back_to_defaults(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("{not json")

    settings.load_settings(path)

    assert settings.settings_store.values == settings.DEFAULT_SETTINGS


def test_non_object_json_is_ignored(tmp_path):
    path = tmp_path / "settings.json"
    path.write_text("[1, 2, 3]")

    settings.load_settings(path)

    assert settings.get_setting("mirror") == settings.DEFAULT_MIRROR


def test_get_int_falls_back_on_garbage():
    settings.settings_store.values["efi_size_mib"] = "lots"

    assert settings.get_int("efi_size_mib", 270) == 270


@pytest.mark.parametrize(
    "value,expected",
    [
        (["ifupdown", "sudo"], ["ifupdown", "sudo"]),
        ("ifupdown,,sudo", ["ifupdown", "sudo"]),
        (None, []),
    ],
)
def test_get_list(value, expected):
    settings.settings_store.values["bootstrap_include"] = value

    assert settings.get_list("bootstrap_include") == expected
