"""Data models for vm-manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import NamedTuple

from vmmanager.actions import StartupActions
from vmmanager.constants import (
    DEFAULT_CPUS,
    DEFAULT_DISK_SIZE,
    DEFAULT_MEMORY_MB,
    DEFAULT_SSH_PORT,
    ROOT_PASSWORD,
    ROOT_USER,
)


class PortForward(NamedTuple):
    host_port: int
    guest_port: int


@dataclass
class DistroOption:
    label: str
    os_type: str
    codename: str
    url: str
    default_hostname: str


@dataclass
class VMRecord:
    name: str
    os_type: str
    codename: str
    img_url: str
    hostname: str
    img_file: Path
    seed_file: Path
    disk_size: str = DEFAULT_DISK_SIZE
    memory_mb: int = DEFAULT_MEMORY_MB
    cpus: int = DEFAULT_CPUS
    ssh_port: int = DEFAULT_SSH_PORT
    gui_mode: bool = False
    auto_login: bool = True
    auto_start: bool = False
    # Raw "host:guest[,host:guest...]" text as entered by the operator.
    port_forwards: str = ""
    created: str = ""
    actions: StartupActions = field(default_factory=StartupActions)

    # Credentials are fixed for every VM and never stored per record.
    @property
    def username(self) -> str:
        return ROOT_USER

    @property
    def password(self) -> str:
        return ROOT_PASSWORD


@dataclass
class ProvisioningPayload:
    user_data: str
    meta_data: str
    instance_id: str


class VMSummary(NamedTuple):
    name: str
    running: bool
    auto_login: bool
    auto_start: bool
    action_count: int
