"""Configuration loading and environment variable parsing for vm-manager."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmmanager.constants import (
    DEFAULT_BOOT_DELAY,
    DEFAULT_BOOTSTRAP_ATTEMPTS,
    DEFAULT_BOOTSTRAP_INTERVAL,
    DEFAULT_DISTRO_CONFIG,
    DEFAULT_SSH_CONNECT_TIMEOUT,
    DEFAULT_STOP_GRACE,
)
from vmmanager.exceptions import ManagerError
from vmmanager.models import DistroOption
from vmmanager.utils import get_env, parse_int_env

_REQUIRED_DISTRO_KEYS = ("os_type", "codename", "url", "hostname")


@dataclass
class RuntimeSettings:
    boot_delay: int
    bootstrap_attempts: int
    bootstrap_interval: int
    ssh_connect_timeout: int
    stop_grace: int


def load_runtime_settings() -> RuntimeSettings:
    return RuntimeSettings(
        boot_delay=parse_int_env("VM_BOOT_DELAY", DEFAULT_BOOT_DELAY, min_val=0),
        bootstrap_attempts=parse_int_env("VM_BOOTSTRAP_ATTEMPTS", DEFAULT_BOOTSTRAP_ATTEMPTS),
        bootstrap_interval=parse_int_env("VM_BOOTSTRAP_INTERVAL", DEFAULT_BOOTSTRAP_INTERVAL, min_val=0),
        ssh_connect_timeout=parse_int_env("VM_SSH_CONNECT_TIMEOUT", DEFAULT_SSH_CONNECT_TIMEOUT),
        stop_grace=parse_int_env("VM_STOP_GRACE", DEFAULT_STOP_GRACE, min_val=0),
    )


def load_distro_catalog(config_path: Optional[Path] = None) -> Dict[str, DistroOption]:
    """Load the OS catalog keyed by distro id."""
    if config_path is None:
        override = get_env("VM_DISTRO_CONFIG")
        config_path = Path(override) if override else DEFAULT_DISTRO_CONFIG
    if not config_path.exists():
        raise ManagerError(f"Distribution config missing: {config_path}")
    data = yaml.safe_load(config_path.read_text()) or {}
    distros = data.get("distributions") or {}
    catalog: Dict[str, DistroOption] = {}
    for key, info in distros.items():
        missing = [field for field in _REQUIRED_DISTRO_KEYS if not info.get(field)]
        if missing:
            raise ManagerError(f"Distribution '{key}' in {config_path} is missing: {', '.join(missing)}")
        catalog[key] = DistroOption(
            label=str(info.get("name", key)),
            os_type=str(info["os_type"]),
            codename=str(info["codename"]),
            url=str(info["url"]),
            default_hostname=str(info["hostname"]),
        )
    return catalog


def get_distro(distro: str, config_path: Optional[Path] = None) -> DistroOption:
    catalog = load_distro_catalog(config_path)
    if distro not in catalog:
        available_list = "\n    ".join(sorted(catalog))
        raise ManagerError(
            f"Unknown distro '{distro}'.\n"
            f"  Available distributions:\n"
            f"    {available_list}"
        )
    return catalog[distro]
