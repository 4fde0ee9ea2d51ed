"""Command-line entry point for vm-manager."""

from __future__ import annotations

import argparse
import sys
import traceback
from typing import List, Optional

from vmmanager.bootstrap import ssh_login_hint
from vmmanager.config import get_distro, load_distro_catalog
from vmmanager.constants import (
    DEFAULT_CPUS,
    DEFAULT_DISK_SIZE,
    DEFAULT_MEMORY_MB,
    DEFAULT_SSH_PORT,
    TRUTHY,
)
from vmmanager.exceptions import ManagerError
from vmmanager.models import VMRecord
from vmmanager.utils import log
from vmmanager.vm import VMManager, check_dependencies


def print_vm_list(mgr: VMManager) -> None:
    summaries = mgr.list_vms()
    if not summaries:
        log("INFO", f"No VMs found in {mgr.store.root}")
        return
    print("Existing VMs:")
    for index, summary in enumerate(summaries, start=1):
        tags = []
        if summary.auto_login:
            tags.append("auto-login")
        if summary.auto_start:
            tags.append("auto-start")
        if summary.action_count:
            tags.append(f"{summary.action_count} startup command(s)")
        status = "Running" if summary.running else "Stopped"
        suffix = f" [{', '.join(tags)}]" if tags else ""
        print(f"  {index:2d}) {summary.name} ({status}){suffix}")


def print_distros() -> None:
    catalog = load_distro_catalog()
    print("Available distributions:")
    for key, option in catalog.items():
        print(f"  {key:<18} {option.label}")


def print_info(record: VMRecord) -> None:
    rows = [
        ("Name", record.name),
        ("OS", f"{record.os_type} {record.codename}"),
        ("Hostname", record.hostname),
        ("Username", record.username),
        ("Password", record.password),
        ("SSH port", str(record.ssh_port)),
        ("Memory", f"{record.memory_mb} MB"),
        ("CPUs", str(record.cpus)),
        ("Disk", record.disk_size),
        ("GUI mode", "yes" if record.gui_mode else "no"),
        ("Auto-login", "yes" if record.auto_login else "no"),
        ("Auto-start", "yes" if record.auto_start else "no"),
        ("Port forwards", record.port_forwards or "none"),
        ("Disk image", str(record.img_file)),
        ("Seed image", str(record.seed_file)),
        ("Created", record.created or "unknown"),
    ]
    print(f"VM information: {record.name}")
    for label, value in rows:
        print(f"  {label + ':':<15} {value}")
    if record.actions:
        print("  Startup commands:")
        for index, (name, command) in enumerate(record.actions.items(), start=1):
            print(f"    {index}) {name}: {command}")
    else:
        print("  Startup commands: none")
    print(f"  Connect:        {ssh_login_hint(record.ssh_port)}")


def print_performance(mgr: VMManager, name: str) -> None:
    report = mgr.performance(name)
    print(f"Performance: {name}")
    for key, value in report.items():
        if key != "name":
            print(f"  {key:<17} {value}")


class _ArgumentParser(argparse.ArgumentParser):
    """Argument errors exit with status 1 like every other failure."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="vm-manager",
        description="Local QEMU VM manager with cloud-init provisioning and startup commands",
    )
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--autostart", nargs="?", const="", metavar="ACTION",
                       help="Start the VM flagged for auto-start, optionally running a startup command")
    group.add_argument("--start", nargs="+", metavar=("VM", "ACTION"),
                       help="Start a VM, optionally running a startup command")
    group.add_argument("--stop", metavar="VM", help="Stop a running VM")
    group.add_argument("--list", action="store_true", help="List VMs (default)")
    group.add_argument("--list-distros", action="store_true", help="List available cloud images")
    group.add_argument("--info", metavar="VM", help="Show VM configuration")
    group.add_argument("--performance", metavar="VM", help="Show resource usage")
    group.add_argument("--delete", metavar="VM", help="Delete a VM and its disk images")
    group.add_argument("--resize", nargs=2, metavar=("VM", "SIZE"), help="Resize a VM disk (e.g. 40G)")
    group.add_argument("--toggle-auto-login", metavar="VM", help="Toggle console auto-login")
    group.add_argument("--add-command", nargs=3, metavar=("VM", "NAME", "COMMAND"),
                       help="Add a startup command")
    group.add_argument("--edit-command", nargs=3, metavar=("VM", "INDEX", "COMMAND"),
                       help="Replace a startup command by its listed number")
    group.add_argument("--delete-command", nargs=2, metavar=("VM", "INDEX"),
                       help="Delete a startup command by its listed number")
    group.add_argument("--test-command", nargs=2, metavar=("VM", "INDEX"),
                       help="Run a startup command on the host to check it")
    group.add_argument("--set", nargs=3, metavar=("VM", "FIELD", "VALUE"),
                       help="Change a setting: " + ", ".join(SETTABLE_FIELDS))
    group.add_argument("--create", metavar="VM", help="Create a new VM")

    create = parser.add_argument_group("create options")
    create.add_argument("--distro", help="Distribution key (see --list-distros)")
    create.add_argument("--hostname", help="Guest hostname (default: VM name)")
    create.add_argument("--disk-size", default=DEFAULT_DISK_SIZE)
    create.add_argument("--memory", default=str(DEFAULT_MEMORY_MB), help="Memory in MB")
    create.add_argument("--cpus", default=str(DEFAULT_CPUS))
    create.add_argument("--ssh-port", default=str(DEFAULT_SSH_PORT))
    create.add_argument("--gui", action="store_true", help="Graphical display instead of serial console")
    create.add_argument("--no-auto-login", action="store_true")
    create.add_argument("--auto-start", action="store_true")
    create.add_argument("--port-forwards", default="", help="Extra forwards, e.g. 8080:80,8443:443")
    return parser


_FALSY = {"0", "false", "no", "off"}


def _switch(raw: str) -> bool:
    value = raw.lower()
    if value in TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ManagerError(f"Invalid value '{raw}': expected on or off")


# field -> (VMManager method, value parser)
SETTABLE_FIELDS = {
    "hostname": ("set_hostname", str),
    "ssh-port": ("set_ssh_port", str),
    "memory": ("set_memory", str),
    "cpus": ("set_cpus", str),
    "gui": ("set_gui_mode", _switch),
    "auto-login": ("set_auto_login", _switch),
    "auto-start": ("set_auto_start", _switch),
    "port-forwards": ("set_port_forwards", str),
}


def _set_field(mgr: VMManager, name: str, field: str, raw: str) -> None:
    try:
        method, parse = SETTABLE_FIELDS[field]
    except KeyError:
        raise ManagerError(
            f"Unknown setting '{field}'. Available: {', '.join(SETTABLE_FIELDS)}"
        )
    getattr(mgr, method)(name, parse(raw))


def _index(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ManagerError(f"Invalid selection '{raw}': expected a number")


def _dispatch(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    if args.list_distros:
        print_distros()
        return 0

    mgr = VMManager()
    if args.autostart is not None:
        check_dependencies()
        mgr.auto_start(args.autostart or None)
    elif args.start:
        if len(args.start) > 2:
            parser.error("--start takes a VM name and at most one startup command")
        check_dependencies()
        mgr.start(args.start[0], args.start[1] if len(args.start) == 2 else None)
    elif args.stop:
        mgr.stop(args.stop)
    elif args.info:
        print_info(mgr.info(args.info))
    elif args.performance:
        print_performance(mgr, args.performance)
    elif args.delete:
        mgr.delete(args.delete)
    elif args.resize:
        mgr.resize(args.resize[0], args.resize[1])
    elif args.toggle_auto_login:
        mgr.toggle_auto_login(args.toggle_auto_login)
    elif args.add_command:
        vm_name, action_name, command = args.add_command
        mgr.add_action(vm_name, action_name, command)
    elif args.delete_command:
        mgr.delete_action(args.delete_command[0], _index(args.delete_command[1]))
    elif args.edit_command:
        vm_name, raw_index, command = args.edit_command
        mgr.edit_action(vm_name, _index(raw_index), command)
    elif args.test_command:
        exit_code = mgr.test_action(args.test_command[0], _index(args.test_command[1]))
        return 0 if exit_code == 0 else 1
    elif args.set:
        _set_field(mgr, *args.set)
    elif args.create:
        if not args.distro:
            parser.error("--create requires --distro")
        check_dependencies()
        mgr.create(
            args.create,
            get_distro(args.distro),
            hostname=args.hostname,
            disk_size=args.disk_size,
            memory_mb=args.memory,
            cpus=args.cpus,
            ssh_port=args.ssh_port,
            gui_mode=args.gui,
            auto_login=not args.no_auto_login,
            auto_start=args.auto_start,
            port_forwards=args.port_forwards,
        )
    else:
        print_vm_list(mgr)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return _dispatch(args, parser)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:  # pragma: no cover
        log("ERROR", f"Unexpected error: {exc}")
        traceback.print_exc()
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
