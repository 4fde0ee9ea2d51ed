"""Global constants and path configuration for vm-manager."""

from __future__ import annotations

import os
import re
from pathlib import Path

# VM_DIR holds every record file and its disk/seed artifacts.
VM_DIR = Path(os.environ.get("VM_DIR") or Path.home() / "vms").expanduser()
DEFAULT_DISTRO_CONFIG = Path(__file__).resolve().parent / "distros.yaml"

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# Names, hostnames and startup action names share one character class.
NAME_RE = re.compile(r"^[A-Za-z0-9_-]+\Z")
DISK_SIZE_RE = re.compile(r"^[0-9]+[GgMm]\Z")
NUMBER_RE = re.compile(r"^[0-9]+\Z")

SSH_PORT_MIN = 23
SSH_PORT_MAX = 65535

ROOT_USER = "root"
ROOT_PASSWORD = "root"

RECORD_SUFFIX = ".conf"
DISK_SUFFIX = ".img"
SEED_SUFFIX = "-seed.iso"
BACKING_SUFFIX = ".base.qcow2"

QEMU_BINARY = "qemu-system-x86_64"
QEMU_IMG = "qemu-img"
# Preferred first; the other two are equivalent fallbacks.
SEED_TOOLS = ("cloud-localds", "genisoimage", "mkisofs")
IMAGE_SUFFIXES = (".qcow2",)
ARCHIVE_SUFFIXES = (".tar.xz", ".txz", ".tar.gz", ".tgz", ".tar")

# In-guest dispatcher layout.
DISPATCHER_PATH = "/usr/local/bin/vm-startup"
ACTIONS_DIR = "/etc/vm-startup-commands"
DISPATCHER_LOG = "/var/log/vm-startup.log"
DISPATCHER_ALIASES = ("vm-start", "vmstart")

# Remote bootstrap defaults (seconds / attempts).
DEFAULT_BOOT_DELAY = "10"
DEFAULT_BOOTSTRAP_ATTEMPTS = "30"
DEFAULT_BOOTSTRAP_INTERVAL = "5"
DEFAULT_SSH_CONNECT_TIMEOUT = "5"
DEFAULT_STOP_GRACE = "2"

DEFAULT_DISK_SIZE = "20G"
DEFAULT_MEMORY_MB = 2048
DEFAULT_CPUS = 2
DEFAULT_SSH_PORT = 2222
