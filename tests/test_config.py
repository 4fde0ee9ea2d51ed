"""Tests for vmmanager.config module."""

from __future__ import annotations

import pytest

from vmmanager.config import get_distro, load_distro_catalog, load_runtime_settings
from vmmanager.exceptions import ManagerError


class TestDistroCatalog:
    def test_bundled_catalog(self, monkeypatch):
        monkeypatch.delenv("VM_DISTRO_CONFIG", raising=False)
        catalog = load_distro_catalog()
        assert len(catalog) == 9
        kali = catalog["kali-2025.3"]
        assert kali.url.endswith(".tar.xz")
        assert kali.codename == "2025.3"
        assert catalog["fedora-40"].codename == "40"
        assert catalog["ubuntu-2204"].default_hostname == "ubuntu22"

    def test_env_override(self, monkeypatch, tmp_path):
        config = tmp_path / "distros.yaml"
        config.write_text(
            "distributions:\n"
            "  tiny:\n"
            "    name: Tiny\n"
            "    os_type: tiny\n"
            "    codename: t1\n"
            "    url: https://example.com/tiny.qcow2\n"
            "    hostname: tiny\n"
        )
        monkeypatch.setenv("VM_DISTRO_CONFIG", str(config))
        assert list(load_distro_catalog()) == ["tiny"]

    def test_missing_field(self, tmp_path):
        config = tmp_path / "distros.yaml"
        config.write_text("distributions:\n  broken:\n    name: Broken\n    url: https://x/y.img\n")
        with pytest.raises(ManagerError, match="missing: os_type, codename, hostname"):
            load_distro_catalog(config)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ManagerError, match="Distribution config missing"):
            load_distro_catalog(tmp_path / "nope.yaml")

    def test_unknown_distro_lists_available(self, monkeypatch):
        monkeypatch.delenv("VM_DISTRO_CONFIG", raising=False)
        with pytest.raises(ManagerError, match="debian-12"):
            get_distro("plan9")


class TestRuntimeSettings:
    def test_defaults(self, monkeypatch):
        for key in ("VM_BOOT_DELAY", "VM_BOOTSTRAP_ATTEMPTS", "VM_BOOTSTRAP_INTERVAL",
                    "VM_SSH_CONNECT_TIMEOUT", "VM_STOP_GRACE"):
            monkeypatch.delenv(key, raising=False)
        settings = load_runtime_settings()
        assert settings.boot_delay == 10
        assert settings.bootstrap_attempts == 30
        assert settings.bootstrap_interval == 5
        assert settings.ssh_connect_timeout == 5
        assert settings.stop_grace == 2

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("VM_BOOT_DELAY", "0")
        monkeypatch.setenv("VM_BOOTSTRAP_ATTEMPTS", "3")
        settings = load_runtime_settings()
        assert settings.boot_delay == 0
        assert settings.bootstrap_attempts == 3

    def test_zero_attempts_rejected(self, monkeypatch):
        monkeypatch.setenv("VM_BOOTSTRAP_ATTEMPTS", "0")
        with pytest.raises(ManagerError, match="must be >= 1"):
            load_runtime_settings()
