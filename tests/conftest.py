"""Shared test fixtures."""

from __future__ import annotations

import pytest

from vmmanager.actions import StartupActions
from vmmanager.config import RuntimeSettings
from vmmanager.models import DistroOption, VMRecord
from vmmanager.store import ConfigStore


@pytest.fixture
def vm_store(tmp_path) -> ConfigStore:
    return ConfigStore(tmp_path / "vms")


@pytest.fixture
def fast_settings() -> RuntimeSettings:
    """Bootstrap/stop timings small enough that nothing waits long even unpatched."""
    return RuntimeSettings(
        boot_delay=10,
        bootstrap_attempts=3,
        bootstrap_interval=5,
        ssh_connect_timeout=5,
        stop_grace=0,
    )


@pytest.fixture
def ubuntu_distro() -> DistroOption:
    return DistroOption(
        label="Ubuntu 24.04",
        os_type="ubuntu",
        codename="noble",
        url="https://cloud-images.ubuntu.com/noble/current/noble-server-cloudimg-amd64.img",
        default_hostname="ubuntu24",
    )


@pytest.fixture
def make_record(vm_store):
    """Factory for VMRecords stored under ``vm_store``."""

    def _make(name: str = "web1", **overrides) -> VMRecord:
        actions = overrides.pop("actions", None)
        record = VMRecord(
            name=name,
            os_type="ubuntu",
            codename="noble",
            img_url="https://example.com/noble.img",
            hostname=overrides.pop("hostname", name),
            img_file=vm_store.disk_path(name),
            seed_file=vm_store.seed_path(name),
            created="Mon Jan  1 00:00:00 UTC 2024",
            actions=StartupActions(actions or {}),
            **overrides,
        )
        return record

    return _make


@pytest.fixture
def saved_record(vm_store, make_record):
    """Factory that also persists the record."""

    def _save(name: str = "web1", **overrides) -> VMRecord:
        record = make_record(name, **overrides)
        vm_store.save(record)
        return record

    return _save
