"""QEMU process launch, liveness detection and termination.

Liveness is never tracked through a held handle alone: a VM started by an
earlier run of vm-manager is found again by scanning the process table for a
``qemu-system-x86_64`` command line that mentions the VM's disk image.
"""

from __future__ import annotations

import re
import subprocess
import time
from pathlib import Path
from typing import Dict, List, Optional

from vmmanager.constants import QEMU_BINARY
from vmmanager.exceptions import ProcessError
from vmmanager.models import PortForward, VMRecord
from vmmanager.utils import log

# Characters with special meaning in the POSIX extended regex used by pgrep/pkill.
_ERE_SPECIAL = re.compile(r"([.\[\]()*+?{}|^$\\])")


def ere_escape(text: str) -> str:
    return _ERE_SPECIAL.sub(r"\\\1", text)


def liveness_pattern(image: Path) -> str:
    return f"{QEMU_BINARY}.*{ere_escape(str(image))}"


def parse_port_forwards(spec: str) -> List[PortForward]:
    """Parse ``host:guest[,host:guest...]``; malformed entries are skipped with a warning."""
    forwards: List[PortForward] = []
    for entry in (spec or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(":")
        host_raw = parts[0].strip()
        guest_raw = parts[1].strip() if len(parts) > 1 else ""
        if not host_raw.isdigit() or not guest_raw.isdigit():
            log("WARN", f"Skipping malformed port forward '{entry}' (expected host:guest)")
            continue
        forwards.append(PortForward(int(host_raw), int(guest_raw)))
    return forwards


def build_qemu_command(record: VMRecord) -> List[str]:
    cmd = [
        QEMU_BINARY,
        "-enable-kvm",
        "-m", str(record.memory_mb),
        "-smp", str(record.cpus),
        "-cpu", "host",
        "-drive", f"file={record.img_file},format=qcow2,if=virtio",
        "-cdrom", str(record.seed_file),
        "-boot", "order=c",
        "-device", "virtio-net-pci,netdev=n0",
        "-netdev", f"user,id=n0,hostfwd=tcp::{record.ssh_port}-:22",
    ]
    for index, forward in enumerate(parse_port_forwards(record.port_forwards), start=1):
        cmd += [
            "-device", f"virtio-net-pci,netdev=n{index}",
            "-netdev", f"user,id=n{index},hostfwd=tcp::{forward.host_port}-:{forward.guest_port}",
        ]
    if record.gui_mode:
        cmd += ["-vga", "virtio", "-display", "gtk,gl=on"]
    else:
        cmd += ["-nographic", "-serial", "mon:stdio"]
    cmd += [
        "-device", "virtio-balloon-pci",
        "-object", "rng-random,filename=/dev/urandom,id=rng0",
        "-device", "virtio-rng-pci,rng=rng0",
    ]
    return cmd


def find_pids(image: Path) -> List[int]:
    result = subprocess.run(
        ["pgrep", "-f", liveness_pattern(image)],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        return []
    pids = []
    for line in result.stdout.splitlines():
        line = line.strip()
        if line.isdigit():
            pids.append(int(line))
    return pids


def is_running(image: Path) -> bool:
    return bool(find_pids(image))


def launch(record: VMRecord) -> subprocess.Popen:
    cmd = build_qemu_command(record)
    log("DEBUG", f"Running: {' '.join(cmd)}")
    try:
        return subprocess.Popen(cmd)
    except OSError as exc:
        raise ProcessError(f"Failed to launch {QEMU_BINARY}: {exc}") from exc


def wait(process: subprocess.Popen, name: str) -> int:
    """Block until the QEMU process exits."""
    returncode = process.wait()
    if returncode != 0:
        raise ProcessError(f"QEMU for VM '{name}' exited with code {returncode}")
    log("INFO", f"VM '{name}' has been shut down")
    return returncode


def _signal(image: Path, force: bool) -> None:
    cmd = ["pkill"]
    if force:
        cmd.append("-9")
    cmd += ["-f", liveness_pattern(image)]
    subprocess.run(cmd, capture_output=True, text=True, check=False)


def stop(image: Path, grace: float) -> bool:
    """Terminate the QEMU process for ``image``.

    Returns False when nothing was running. A process that survives SIGKILL
    raises :class:`ProcessError`.
    """
    if not is_running(image):
        return False
    _signal(image, force=False)
    time.sleep(grace)
    if is_running(image):
        log("WARN", "VM did not stop gracefully, forcing termination...")
        _signal(image, force=True)
        time.sleep(grace)
        if is_running(image):
            raise ProcessError(f"QEMU process for {image} is still running after SIGKILL")
    return True


def process_stats(pid: int) -> Optional[Dict[str, str]]:
    """Return ``ps`` figures for ``pid`` or None if it has gone away."""
    result = subprocess.run(
        ["ps", "-p", str(pid), "-o", "pid=,%cpu=,%mem=,rss=,vsz="],
        capture_output=True,
        text=True,
        check=False,
    )
    fields = result.stdout.split()
    if result.returncode != 0 or len(fields) < 5:
        return None
    return {
        "pid": fields[0],
        "cpu_percent": fields[1],
        "mem_percent": fields[2],
        "rss_kb": fields[3],
        "vsz_kb": fields[4],
    }
