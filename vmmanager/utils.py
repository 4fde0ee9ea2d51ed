"""Utility functions for vm-manager."""

from __future__ import annotations

import os
import shutil
import socket
import subprocess
import tempfile
import time
from pathlib import Path
from typing import List, Optional, Union
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from vmmanager.constants import (
    _LOG_VERBOSE,
    DISK_SIZE_RE,
    NAME_RE,
    NUMBER_RE,
    SSH_PORT_MAX,
    SSH_PORT_MIN,
    TRUTHY,
)
from vmmanager.exceptions import ManagerError, ProvisioningError, ValidationError


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[1;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[1;31m",
        "SUCCESS": "\033[1;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_name(raw: str, label: str = "VM name") -> str:
    if not raw or not NAME_RE.match(raw):
        raise ValidationError(f"{label} can only contain letters, numbers, hyphens, and underscores")
    return raw


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw or ""):
        raise ValidationError(f"Invalid disk size '{raw}'. Must be a size with unit (e.g., 100G, 512M)")
    return raw


def validate_positive_int(raw: Union[str, int], label: str) -> int:
    text = str(raw).strip()
    if not NUMBER_RE.match(text) or int(text) < 1:
        raise ValidationError(f"{label} must be a positive number (got '{raw}')")
    return int(text)


def validate_port(raw: Union[str, int]) -> int:
    text = str(raw).strip()
    if not NUMBER_RE.match(text) or not SSH_PORT_MIN <= int(text) <= SSH_PORT_MAX:
        raise ValidationError(f"Must be a valid port number ({SSH_PORT_MIN}-{SSH_PORT_MAX}), got '{raw}'")
    return int(text)


def port_in_use(port: int, host: str = "0.0.0.0") -> bool:
    """Return True if a TCP listener already holds ``port`` on the host."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return True
    return False


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def find_tool(*names: str) -> Optional[str]:
    """Return the first of ``names`` present on PATH."""
    for name in names:
        if shutil.which(name):
            return name
    return None


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download ``url`` next to ``destination`` and rename it into place."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "vm-manager/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise ProvisioningError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise ProvisioningError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent, suffix=".part") as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)

                elapsed = time.time() - start_time
                speed = downloaded / elapsed if elapsed > 0 else 0
                downloaded_mb = downloaded / (1024 * 1024)
                if total_bytes:
                    pct = downloaded * 100 / total_bytes
                    bar_len = 30
                    filled = int(bar_len * downloaded / total_bytes)
                    bar = "#" * filled + "-" * (bar_len - filled)
                    print(
                        f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f} MiB "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
                else:
                    print(f"\r  {downloaded_mb:.1f} MiB downloaded", end="", flush=True)
            print(flush=True)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(destination)
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {time.time() - start_time:.1f}s")


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
