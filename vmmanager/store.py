"""Per-VM record persistence for vm-manager.

Each VM lives in ``<VM_DIR>/<name>.conf`` as shell-quoted ``KEY="value"``
lines. Loading always builds a fresh :class:`VMRecord`, so a file missing a
newer field gets that field's default instead of a value left over from an
earlier load.
"""

from __future__ import annotations

import shlex
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from vmmanager.actions import StartupActions, deserialize
from vmmanager.constants import (
    DISK_SUFFIX,
    NAME_RE,
    RECORD_SUFFIX,
    ROOT_PASSWORD,
    ROOT_USER,
    SEED_SUFFIX,
    TRUTHY,
    VM_DIR,
)
from vmmanager.exceptions import ManagerError, NotFoundError
from vmmanager.models import VMRecord
from vmmanager.utils import ensure_directory, log, validate_name

FIELD_ORDER = (
    "VM_NAME",
    "OS_TYPE",
    "CODENAME",
    "IMG_URL",
    "HOSTNAME",
    "USERNAME",
    "PASSWORD",
    "DISK_SIZE",
    "MEMORY",
    "CPUS",
    "SSH_PORT",
    "GUI_MODE",
    "AUTO_LOGIN",
    "AUTO_START",
    "PORT_FORWARDS",
    "IMG_FILE",
    "SEED_FILE",
    "CREATED",
    "STARTUP_COMMANDS_SERIALIZED",
)
LEGACY_ACTION_FIELD = "STARTUP_COMMAND"
LEGACY_ACTION_NAME = "default"


def quote_value(value: str) -> str:
    """Double-quote ``value`` so that :func:`parse_record_text` reads it back unchanged."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_record_text(text: str) -> Dict[str, str]:
    """Parse ``KEY="value"`` assignments; tokens that are not assignments are ignored."""
    try:
        tokens = shlex.split(text, posix=True)
    except ValueError as exc:
        raise ManagerError(f"Unparseable record: {exc}") from exc
    fields: Dict[str, str] = {}
    for token in tokens:
        key, sep, value = token.partition("=")
        if sep and key.isidentifier():
            fields[key] = value
    return fields


def _as_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None or raw == "":
        return default
    return raw.lower() in TRUTHY


def _as_int(fields: Dict[str, str], key: str, default: int, path: Path) -> int:
    raw = fields.get(key, "")
    if raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ManagerError(f"{path}: {key} must be an integer (got '{raw}')")


def migrate_actions(fields: Dict[str, str]) -> StartupActions:
    """Build the action mapping, promoting the single legacy command when needed."""
    serialized = fields.get("STARTUP_COMMANDS_SERIALIZED", "")
    if serialized:
        return StartupActions(deserialize(serialized))
    legacy = fields.get(LEGACY_ACTION_FIELD, "")
    if legacy:
        log("DEBUG", f"Promoting legacy {LEGACY_ACTION_FIELD} to action '{LEGACY_ACTION_NAME}'")
        return StartupActions({LEGACY_ACTION_NAME: legacy})
    return StartupActions()


class ConfigStore:
    """Reads and writes VM records under a single storage root."""

    def __init__(self, root: Optional[Path] = None) -> None:
        self.root = Path(root) if root is not None else VM_DIR

    def record_path(self, name: str) -> Path:
        return self.root / f"{name}{RECORD_SUFFIX}"

    def disk_path(self, name: str) -> Path:
        return self.root / f"{name}{DISK_SUFFIX}"

    def seed_path(self, name: str) -> Path:
        return self.root / f"{name}{SEED_SUFFIX}"

    def exists(self, name: str) -> bool:
        return self.record_path(name).is_file()

    def list_names(self) -> List[str]:
        """Return every stored VM name, sorted."""
        if not self.root.is_dir():
            return []
        names = [
            path.name[: -len(RECORD_SUFFIX)]
            for path in self.root.iterdir()
            if path.is_file() and path.name.endswith(RECORD_SUFFIX)
        ]
        return sorted(name for name in names if NAME_RE.match(name))

    def load(self, name: str) -> VMRecord:
        validate_name(name)
        path = self.record_path(name)
        if not path.is_file():
            raise NotFoundError(f"Configuration for VM '{name}' not found")
        fields = parse_record_text(path.read_text(encoding="utf-8"))

        stored_name = fields.get("VM_NAME") or name
        if stored_name != name:
            log("WARN", f"{path}: VM_NAME '{stored_name}' differs from file name; using '{name}'")
        if fields.get("USERNAME", ROOT_USER) != ROOT_USER or fields.get("PASSWORD", ROOT_PASSWORD) != ROOT_PASSWORD:
            log("DEBUG", f"{path}: ignoring stored credentials; {ROOT_USER}/{ROOT_PASSWORD} is enforced")

        defaults = VMRecord(
            name=name,
            os_type="",
            codename="",
            img_url="",
            hostname=name,
            img_file=self.disk_path(name),
            seed_file=self.seed_path(name),
        )
        return VMRecord(
            name=name,
            os_type=fields.get("OS_TYPE", ""),
            codename=fields.get("CODENAME", ""),
            img_url=fields.get("IMG_URL", ""),
            hostname=fields.get("HOSTNAME") or defaults.hostname,
            img_file=Path(fields.get("IMG_FILE") or defaults.img_file),
            seed_file=Path(fields.get("SEED_FILE") or defaults.seed_file),
            disk_size=fields.get("DISK_SIZE") or defaults.disk_size,
            memory_mb=_as_int(fields, "MEMORY", defaults.memory_mb, path),
            cpus=_as_int(fields, "CPUS", defaults.cpus, path),
            ssh_port=_as_int(fields, "SSH_PORT", defaults.ssh_port, path),
            gui_mode=_as_bool(fields.get("GUI_MODE"), defaults.gui_mode),
            auto_login=_as_bool(fields.get("AUTO_LOGIN"), defaults.auto_login),
            auto_start=_as_bool(fields.get("AUTO_START"), defaults.auto_start),
            port_forwards=fields.get("PORT_FORWARDS", ""),
            created=fields.get("CREATED", ""),
            actions=migrate_actions(fields),
        )

    def render(self, record: VMRecord) -> str:
        values = {
            "VM_NAME": record.name,
            "OS_TYPE": record.os_type,
            "CODENAME": record.codename,
            "IMG_URL": record.img_url,
            "HOSTNAME": record.hostname,
            "USERNAME": ROOT_USER,
            "PASSWORD": ROOT_PASSWORD,
            "DISK_SIZE": record.disk_size,
            "MEMORY": str(record.memory_mb),
            "CPUS": str(record.cpus),
            "SSH_PORT": str(record.ssh_port),
            "GUI_MODE": "true" if record.gui_mode else "false",
            "AUTO_LOGIN": "true" if record.auto_login else "false",
            "AUTO_START": "true" if record.auto_start else "false",
            "PORT_FORWARDS": record.port_forwards,
            "IMG_FILE": str(record.img_file),
            "SEED_FILE": str(record.seed_file),
            "CREATED": record.created,
            "STARTUP_COMMANDS_SERIALIZED": record.actions.serialize(),
        }
        return "".join(f"{key}={quote_value(values[key])}\n" for key in FIELD_ORDER)

    def save(self, record: VMRecord) -> Path:
        validate_name(record.name)
        ensure_directory(self.root)
        path = self.record_path(record.name)
        content = self.render(record)
        tmp_path: Optional[Path] = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", delete=False, dir=self.root, suffix=".tmp"
            ) as tmp:
                tmp_path = Path(tmp.name)
                tmp.write(content)
            tmp_path.replace(path)
        except OSError as exc:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise ManagerError(f"Failed to save configuration {path}: {exc}") from exc
        log("SUCCESS", f"Configuration saved to {path}")
        return path

    def remove(self, name: str) -> None:
        self.record_path(name).unlink(missing_ok=True)
