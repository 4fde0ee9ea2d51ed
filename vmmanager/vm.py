"""VM lifecycle orchestration."""

from __future__ import annotations

import shutil
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from vmmanager import qemu
from vmmanager.actions import StartupActions
from vmmanager.bootstrap import BootstrapDriver, ssh_login_hint
from vmmanager.cloudinit import build_payload
from vmmanager.config import RuntimeSettings, load_runtime_settings
from vmmanager.constants import (
    DEFAULT_CPUS,
    DEFAULT_DISK_SIZE,
    DEFAULT_MEMORY_MB,
    DEFAULT_SSH_PORT,
    QEMU_BINARY,
    QEMU_IMG,
    SEED_TOOLS,
)
from vmmanager.exceptions import ManagerError, NotFoundError, ToolingError, ValidationError
from vmmanager.images import backing_path, ensure_disk_image, resize_disk
from vmmanager.models import DistroOption, VMRecord, VMSummary
from vmmanager.seed import pack_seed
from vmmanager.store import ConfigStore
from vmmanager.utils import (
    find_tool,
    log,
    port_in_use,
    validate_disk_size,
    validate_name,
    validate_port,
    validate_positive_int,
)


def check_dependencies() -> None:
    """Raise ToolingError naming every required host tool that is missing."""
    missing = [tool for tool in (QEMU_BINARY, QEMU_IMG) if shutil.which(tool) is None]
    if find_tool(*SEED_TOOLS) is None:
        missing.append(" or ".join(SEED_TOOLS))
    if missing:
        raise ToolingError(
            f"Missing dependencies: {', '.join(missing)}. "
            "On Ubuntu/Debian try: sudo apt install qemu-system cloud-image-utils"
        )
    if shutil.which("sshpass") is None:
        log("WARN", "sshpass not found. Automatic startup command execution via SSH will not work.")


class VMManager:
    def __init__(self, store: Optional[ConfigStore] = None, settings: Optional[RuntimeSettings] = None) -> None:
        self.store = store or ConfigStore()
        self.settings = settings or load_runtime_settings()

    # ------------------------------------------------------------------
    # validation helpers

    def _check_port(self, raw, current: Optional[int] = None) -> int:
        port = validate_port(raw)
        if port != current and port_in_use(port):
            raise ValidationError(f"Port {port} is already in use")
        return port

    def _check_auto_start(self, name: str) -> None:
        for other in self.store.list_names():
            if other == name:
                continue
            if self.store.load(other).auto_start:
                raise ValidationError(
                    f"VM '{other}' is already set to auto-start; disable it there first"
                )

    def _update(self, name: str, mutate: Callable[[VMRecord], None]) -> VMRecord:
        record = self.store.load(name)
        mutate(record)
        self.store.save(record)
        return record

    # ------------------------------------------------------------------
    # create / delete

    def create(
        self,
        name: str,
        distro: DistroOption,
        hostname: Optional[str] = None,
        disk_size: str = DEFAULT_DISK_SIZE,
        memory_mb=DEFAULT_MEMORY_MB,
        cpus=DEFAULT_CPUS,
        ssh_port=DEFAULT_SSH_PORT,
        gui_mode: bool = False,
        auto_login: bool = True,
        auto_start: bool = False,
        port_forwards: str = "",
        actions: Optional[Dict[str, str]] = None,
    ) -> VMRecord:
        validate_name(name)
        if self.store.exists(name):
            raise ValidationError(f"VM with name '{name}' already exists")
        hostname = validate_name(hostname or name, label="Hostname")
        registry = StartupActions()
        for action_name, command in (actions or {}).items():
            registry.add(action_name, command)
        if auto_start:
            self._check_auto_start(name)
        qemu.parse_port_forwards(port_forwards)

        record = VMRecord(
            name=name,
            os_type=distro.os_type,
            codename=distro.codename,
            img_url=distro.url,
            hostname=hostname,
            img_file=self.store.disk_path(name),
            seed_file=self.store.seed_path(name),
            disk_size=validate_disk_size(disk_size),
            memory_mb=validate_positive_int(memory_mb, "Memory"),
            cpus=validate_positive_int(cpus, "Number of CPUs"),
            ssh_port=self._check_port(ssh_port),
            gui_mode=gui_mode,
            auto_login=auto_login,
            auto_start=auto_start,
            port_forwards=port_forwards,
            created=time.strftime("%a %b %d %H:%M:%S %Z %Y"),
            actions=registry,
        )

        log("INFO", f"Creating VM '{name}' from {distro.label}")
        ensure_disk_image(record.img_url, record.img_file, record.disk_size)
        pack_seed(build_payload(record), record.seed_file)
        self.store.save(record)
        log("SUCCESS", f"VM '{name}' created with {record.username}/{record.password} credentials")
        return record

    def delete(self, name: str) -> None:
        record = self.store.load(name)
        if qemu.is_running(record.img_file):
            log("INFO", f"Stopping VM '{name}' before deleting it")
            qemu.stop(record.img_file, self.settings.stop_grace)
        for artifact in (record.img_file, record.seed_file, backing_path(record.img_file)):
            artifact.unlink(missing_ok=True)
        self.store.remove(name)
        log("SUCCESS", f"VM '{name}' has been deleted")

    # ------------------------------------------------------------------
    # start / stop

    def start(self, name: str, action: Optional[str] = None, wait: bool = True) -> Optional[int]:
        """Boot ``name`` with a fresh seed and optionally run one startup action.

        Blocks until QEMU exits unless ``wait`` is False.
        """
        record = self.store.load(name)
        if qemu.is_running(record.img_file):
            log("WARN", f"VM '{name}' is already running")
            return None
        if not record.img_file.exists():
            raise NotFoundError(f"Disk image {record.img_file} for VM '{name}' not found")

        log("INFO", f"Starting VM: {name}")
        pack_seed(build_payload(record), record.seed_file)
        log("INFO", f"SSH: {ssh_login_hint(record.ssh_port)} (password: {record.password})")
        if record.auto_login:
            log("INFO", "Console auto-login is enabled")

        process = qemu.launch(record)
        if action:
            if action in record.actions:
                BootstrapDriver(self.settings).run(record.ssh_port, action)
            else:
                available = ", ".join(record.actions.names()) or "none"
                log("WARN", f"Startup command '{action}' not found for VM '{name}' (available: {available})")
        if not wait:
            return None
        return qemu.wait(process, name)

    def stop(self, name: str) -> bool:
        record = self.store.load(name)
        log("INFO", f"Stopping VM: {name}")
        if not qemu.stop(record.img_file, self.settings.stop_grace):
            log("INFO", f"VM '{name}' is not running")
            return False
        log("SUCCESS", f"VM '{name}' stopped")
        return True

    def is_running(self, name: str) -> bool:
        return qemu.is_running(self.store.load(name).img_file)

    def auto_start(self, action: Optional[str] = None, wait: bool = True) -> Optional[str]:
        """Start the VM flagged for auto-start; extra flagged VMs are skipped."""
        flagged: List[str] = []
        for name in self.store.list_names():
            try:
                record = self.store.load(name)
            except ManagerError as exc:
                log("WARN", f"Skipping unreadable record '{name}': {exc}")
                continue
            if record.auto_start:
                flagged.append(name)
        if not flagged:
            log("INFO", "No VM is configured for auto-start")
            return None
        chosen = flagged[0]
        for skipped in flagged[1:]:
            log("WARN", f"VM '{skipped}' is also set to auto-start; skipped (only '{chosen}' is started)")
        log("INFO", f"Auto-starting VM: {chosen}")
        self.start(chosen, action, wait=wait)
        return chosen

    # ------------------------------------------------------------------
    # edit

    def set_hostname(self, name: str, hostname: str) -> VMRecord:
        validate_name(hostname, label="Hostname")

        def mutate(record: VMRecord) -> None:
            record.hostname = hostname

        return self._update(name, mutate)

    def set_ssh_port(self, name: str, port) -> VMRecord:
        def mutate(record: VMRecord) -> None:
            record.ssh_port = self._check_port(port, current=record.ssh_port)

        return self._update(name, mutate)

    def set_gui_mode(self, name: str, enabled: bool) -> VMRecord:
        def mutate(record: VMRecord) -> None:
            record.gui_mode = enabled

        return self._update(name, mutate)

    def set_auto_login(self, name: str, enabled: bool) -> VMRecord:
        def mutate(record: VMRecord) -> None:
            record.auto_login = enabled

        return self._update(name, mutate)

    def toggle_auto_login(self, name: str) -> bool:
        record = self.store.load(name)
        record = self.set_auto_login(name, not record.auto_login)
        state = "enabled" if record.auto_login else "disabled"
        log("INFO", f"Auto-login {state} for VM '{name}'; takes effect on next start")
        return record.auto_login

    def set_auto_start(self, name: str, enabled: bool) -> VMRecord:
        if enabled:
            self._check_auto_start(name)

        def mutate(record: VMRecord) -> None:
            record.auto_start = enabled

        return self._update(name, mutate)

    def set_port_forwards(self, name: str, spec: str) -> VMRecord:
        qemu.parse_port_forwards(spec)

        def mutate(record: VMRecord) -> None:
            record.port_forwards = spec.strip()

        return self._update(name, mutate)

    def set_memory(self, name: str, memory_mb) -> VMRecord:
        value = validate_positive_int(memory_mb, "Memory")

        def mutate(record: VMRecord) -> None:
            record.memory_mb = value

        return self._update(name, mutate)

    def set_cpus(self, name: str, cpus) -> VMRecord:
        value = validate_positive_int(cpus, "Number of CPUs")

        def mutate(record: VMRecord) -> None:
            record.cpus = value

        return self._update(name, mutate)

    def resize(self, name: str, new_size: str) -> bool:
        """Grow the disk to ``new_size``; returns False when the size is unchanged."""
        validate_disk_size(new_size)
        record = self.store.load(name)
        if new_size == record.disk_size:
            log("INFO", f"New disk size is the same as current size ({new_size}). No changes made.")
            return False
        if qemu.is_running(record.img_file):
            raise ValidationError(f"VM '{name}' is running; stop it before resizing the disk")
        log("INFO", f"Resizing disk to {new_size}...")
        resize_disk(record.img_file, new_size)
        record.disk_size = new_size
        self.store.save(record)
        log("SUCCESS", f"Disk resized successfully to {new_size}")
        return True

    # ------------------------------------------------------------------
    # startup actions

    def add_action(self, name: str, action_name: str, command: str) -> VMRecord:
        record = self._update(name, lambda r: r.actions.add(action_name, command))
        log("SUCCESS", f"Startup command '{action_name}' added")
        return record

    def edit_action(self, name: str, index: int, command: str) -> Optional[str]:
        record = self.store.load(name)
        edited = record.actions.edit(index, command)
        if edited is None:
            log("INFO", "Command unchanged")
            return None
        self.store.save(record)
        log("SUCCESS", f"Startup command '{edited}' updated")
        return edited

    def delete_action(self, name: str, index: int) -> str:
        record = self.store.load(name)
        deleted = record.actions.delete(index)
        self.store.save(record)
        log("SUCCESS", f"Startup command '{deleted}' deleted")
        return deleted

    def test_action(self, name: str, index: int) -> int:
        return self.store.load(name).actions.run_on_host(index)

    # ------------------------------------------------------------------
    # queries

    def info(self, name: str) -> VMRecord:
        return self.store.load(name)

    def list_vms(self) -> List[VMSummary]:
        summaries = []
        for name in self.store.list_names():
            record = self.store.load(name)
            summaries.append(
                VMSummary(
                    name=name,
                    running=qemu.is_running(record.img_file),
                    auto_login=record.auto_login,
                    auto_start=record.auto_start,
                    action_count=len(record.actions),
                )
            )
        return summaries

    def performance(self, name: str) -> Dict[str, object]:
        record = self.store.load(name)
        report: Dict[str, object] = {
            "name": name,
            "memory_mb": record.memory_mb,
            "cpus": record.cpus,
            "disk_size": record.disk_size,
            "running": False,
        }
        if record.img_file.exists():
            report["disk_usage_bytes"] = _disk_usage(record.img_file)
        pids = qemu.find_pids(record.img_file)
        if pids:
            report["running"] = True
            stats = qemu.process_stats(pids[0])
            if stats:
                report.update(stats)
        return report


def _disk_usage(path: Path) -> int:
    """Allocated bytes on disk (qcow2 images are sparse)."""
    stat = path.stat()
    blocks = getattr(stat, "st_blocks", None)
    return blocks * 512 if blocks is not None else stat.st_size
