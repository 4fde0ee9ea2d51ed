"""First-boot payload generation (cloud-init user-data and meta-data).

The documents are a function of the VM record plus a freshness token. The
token ends up in the instance id, so the guest treats every start as a new
instance and re-applies credentials and startup actions.
"""

from __future__ import annotations

import time
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from vmmanager.constants import (
    ACTIONS_DIR,
    DISPATCHER_ALIASES,
    DISPATCHER_LOG,
    DISPATCHER_PATH,
    ROOT_PASSWORD,
    ROOT_USER,
)
from vmmanager.models import ProvisioningPayload, VMRecord
from vmmanager.utils import hash_password

SSHD_DROPIN_PATH = "/etc/ssh/sshd_config.d/99-root-login.conf"
CONSOLE_AUTOLOGIN_PATH = "/etc/systemd/system/getty@tty1.service.d/autologin.conf"
SERIAL_AUTOLOGIN_PATH = "/etc/systemd/system/serial-getty@ttyS0.service.d/autologin.conf"

SSHD_DROPIN = "PermitRootLogin yes\nPasswordAuthentication yes\nPubkeyAuthentication yes\n"

CONSOLE_AUTOLOGIN = (
    "[Service]\n"
    "ExecStart=\n"
    f"ExecStart=-/sbin/agetty --autologin {ROOT_USER} --noclear %I $TERM\n"
)
SERIAL_AUTOLOGIN = (
    "[Service]\n"
    "ExecStart=\n"
    f"ExecStart=-/sbin/agetty --autologin {ROOT_USER} --noclear --keep-baud 115200,38400,9600 %I $TERM\n"
)

DISPATCHER_TEMPLATE = """#!/bin/bash
# Runs a named startup command from {commands_dir}
COMMANDS_DIR="{commands_dir}"
LOG_FILE="{log_file}"

log_message() {{
    echo "$(date '+%Y-%m-%d %H:%M:%S') - $1" | tee -a "$LOG_FILE"
}}

list_commands() {{
    echo "Available startup commands:"
    for cmd_file in "$COMMANDS_DIR"/*; do
        [ -f "$cmd_file" ] && echo "  $(basename "$cmd_file")"
    done
}}

execute_command() {{
    local name="$1"
    local cmd_file="$COMMANDS_DIR/$name"
    if [ ! -f "$cmd_file" ]; then
        log_message "ERROR: startup command '$name' not found"
        list_commands
        return 1
    fi
    log_message "Executing startup command: $name"
    bash "$cmd_file" 2>&1 | tee -a "$LOG_FILE"
    local status=${{PIPESTATUS[0]}}
    if [ "$status" -eq 0 ]; then
        log_message "SUCCESS: startup command '$name' completed"
    else
        log_message "ERROR: startup command '$name' failed with exit code $status"
    fi
    return "$status"
}}

if [ $# -eq 0 ]; then
    echo "Usage: $(basename "$0") <command-name>"
    list_commands
    exit 1
fi

execute_command "$1"
"""


class _CloudConfigDumper(yaml.SafeDumper):
    """SafeDumper that writes multi-line strings as literal blocks."""


def _represent_str(dumper: yaml.SafeDumper, data: str) -> yaml.ScalarNode:
    if "\n" in data:
        return dumper.represent_scalar("tag:yaml.org,2002:str", data, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", data)


_CloudConfigDumper.add_representer(str, _represent_str)


def freshness_token(now: Optional[float] = None) -> str:
    """Millisecond timestamp used to make each instance id unique."""
    if now is None:
        return str(time.time_ns() // 1_000_000)
    return str(int(now * 1000))


def action_file_content(name: str, command: str) -> str:
    body = command if command.endswith("\n") else command + "\n"
    return f"#!/bin/bash\n# Startup command: {name}\n{body}"


def render_dispatcher() -> str:
    return DISPATCHER_TEMPLATE.format(commands_dir=ACTIONS_DIR, log_file=DISPATCHER_LOG)


def _write_files(record: VMRecord) -> List[Dict[str, str]]:
    files = [{"path": SSHD_DROPIN_PATH, "content": SSHD_DROPIN, "permissions": "0644"}]
    if record.auto_login:
        files.append({"path": CONSOLE_AUTOLOGIN_PATH, "content": CONSOLE_AUTOLOGIN})
        files.append({"path": SERIAL_AUTOLOGIN_PATH, "content": SERIAL_AUTOLOGIN})
    if record.actions:
        files.append({"path": DISPATCHER_PATH, "content": render_dispatcher(), "permissions": "0755"})
        files.append({"path": f"{ACTIONS_DIR}/.keep", "content": ""})
        for name, command in record.actions.items():
            files.append(
                {
                    "path": f"{ACTIONS_DIR}/{name}",
                    "content": action_file_content(name, command),
                    "permissions": "0755",
                }
            )
    return files


def _runcmd(record: VMRecord) -> List[str]:
    commands = [
        f"echo '{ROOT_USER}:{ROOT_PASSWORD}' | chpasswd",
        f"passwd -u {ROOT_USER}",
        "sed -i 's/^#\\?PermitRootLogin.*/PermitRootLogin yes/' /etc/ssh/sshd_config",
        "sed -i 's/^#\\?PasswordAuthentication.*/PasswordAuthentication yes/' /etc/ssh/sshd_config",
        "sed -i 's/^#\\?PubkeyAuthentication.*/PubkeyAuthentication yes/' /etc/ssh/sshd_config",
        "systemctl restart ssh || systemctl restart sshd || service ssh restart || service sshd restart",
    ]
    if record.auto_login:
        commands += [
            "mkdir -p /etc/systemd/system/getty@tty1.service.d",
            "mkdir -p /etc/systemd/system/serial-getty@ttyS0.service.d",
            "systemctl daemon-reload",
            "systemctl enable getty@tty1.service",
            "systemctl enable serial-getty@ttyS0.service",
            "systemctl restart getty@tty1.service || true",
            "systemctl restart serial-getty@ttyS0.service || true",
        ]
    if record.actions:
        commands += [
            f"chmod +x {DISPATCHER_PATH}",
            f"mkdir -p {ACTIONS_DIR}",
        ]
        commands += [
            f"echo \"alias {alias}='{DISPATCHER_PATH}'\" >> /{ROOT_USER}/.bashrc"
            for alias in DISPATCHER_ALIASES
        ]

    commands.append(f"echo 'VM setup complete with {ROOT_USER}/{ROOT_PASSWORD} credentials'")
    if record.auto_login:
        commands.append("echo 'Auto-login enabled for console access'")
    if record.actions:
        names = " ".join(record.actions.names())
        commands += [
            f"echo 'Startup commands configured: {names}'",
            "echo 'Usage: vm-startup <command-name>'",
            f"echo 'Aliases: {' '.join(DISPATCHER_ALIASES)}'",
        ]
    return commands


def build_user_data_config(record: VMRecord) -> Dict[str, object]:
    """Return the cloud-config mapping for ``record`` before serialization."""
    config: Dict[str, object] = {
        "hostname": record.hostname,
        "ssh_pwauth": True,
        "disable_root": False,
        "users": [
            {
                "name": ROOT_USER,
                "lock_passwd": False,
                "passwd": hash_password(ROOT_PASSWORD),
                "shell": "/bin/bash",
                "sudo": "ALL=(ALL) NOPASSWD:ALL",
            }
        ],
        "chpasswd": {"list": [f"{ROOT_USER}:{ROOT_PASSWORD}"], "expire": False},
        "write_files": _write_files(record),
        "runcmd": _runcmd(record),
        "preserve_hostname": False,
    }
    return config


def build_user_data(record: VMRecord) -> str:
    body = yaml.dump(
        build_user_data_config(record),
        Dumper=_CloudConfigDumper,
        sort_keys=False,
        default_flow_style=False,
        width=4096,
    )
    return "#cloud-config\n" + body


def build_meta_data(record: VMRecord, token: str) -> str:
    instance_id = f"{record.name}-{token}"
    return yaml.safe_dump(
        {"instance-id": instance_id, "local-hostname": record.hostname},
        sort_keys=False,
        default_flow_style=False,
    )


def build_payload(record: VMRecord, token: Optional[str] = None) -> ProvisioningPayload:
    """Build both first-boot documents for ``record``."""
    token = token or freshness_token()
    return ProvisioningPayload(
        user_data=build_user_data(record),
        meta_data=build_meta_data(record, token),
        instance_id=f"{record.name}-{token}",
    )
