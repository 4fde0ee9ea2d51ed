"""Post-boot startup action invocation over SSH."""

from __future__ import annotations

import shutil
import subprocess
import time
from typing import List

from vmmanager.config import RuntimeSettings
from vmmanager.constants import ROOT_PASSWORD, ROOT_USER
from vmmanager.exceptions import RemoteExecutionError
from vmmanager.utils import log

DISPATCHER_COMMAND = "vm-startup"
# sshpass: 5 wrong password (cloud-init has not set it yet), 6 host key problem.
# ssh: 255 connection or transport error.
RETRYABLE_EXIT_CODES = frozenset({5, 6, 255})


def ssh_login_hint(port: int) -> str:
    return f"ssh -p {port} {ROOT_USER}@localhost"


def build_remote_command(port: int, action: str, connect_timeout: int) -> List[str]:
    return [
        "sshpass",
        "-p",
        ROOT_PASSWORD,
        "ssh",
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        "UserKnownHostsFile=/dev/null",
        "-o",
        f"ConnectTimeout={connect_timeout}",
        "-p",
        str(port),
        f"{ROOT_USER}@localhost",
        f"{DISPATCHER_COMMAND} {action}",
    ]


class BootstrapDriver:
    """Runs one startup action in a freshly booted guest with bounded retries."""

    def __init__(self, settings: RuntimeSettings) -> None:
        self.initial_delay = settings.boot_delay
        self.attempts = settings.bootstrap_attempts
        self.interval = settings.bootstrap_interval
        self.connect_timeout = settings.ssh_connect_timeout

    def max_wall_clock(self) -> int:
        return self.initial_delay + self.attempts * (self.connect_timeout + self.interval)

    def _attempt(self, port: int, action: str) -> None:
        cmd = build_remote_command(port, action, self.connect_timeout)
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, check=False, stdin=subprocess.DEVNULL)
        except OSError as exc:
            raise RemoteExecutionError(f"could not run sshpass: {exc}") from exc
        if result.returncode != 0:
            raise RemoteExecutionError(f"exit code {result.returncode}", result.returncode)

    def run(self, port: int, action: str) -> bool:
        """Invoke ``action`` through the dispatcher; True once it succeeds.

        Failure never raises: the VM keeps running and the operator is told
        how to run the action by hand.
        """
        manual = f'{ssh_login_hint(port)} "{DISPATCHER_COMMAND} {action}"'
        if shutil.which("sshpass") is None:
            log("WARN", f"sshpass not found; run the startup command manually: {manual}")
            return False

        deadline = time.monotonic() + self.max_wall_clock()
        log("INFO", f"Waiting {self.initial_delay}s for the VM to boot before running '{action}'...")
        time.sleep(self.initial_delay)

        for attempt in range(1, self.attempts + 1):
            if time.monotonic() >= deadline:
                log("INFO", "Startup command window elapsed")
                break
            try:
                self._attempt(port, action)
            except RemoteExecutionError as exc:
                if exc.exit_code is not None and exc.exit_code not in RETRYABLE_EXIT_CODES:
                    log("WARN", f"Startup command '{action}' ran but failed ({exc}). Check /var/log/vm-startup.log")
                    return False
                log("INFO", f"Attempt {attempt}/{self.attempts}: SSH not ready ({exc})")
            else:
                log("SUCCESS", f"Startup command '{action}' executed")
                return True
            if attempt < self.attempts:
                time.sleep(min(self.interval, max(0.0, deadline - time.monotonic())))

        log("WARN", f"Could not run startup command '{action}' after {self.attempts} attempts")
        log("INFO", f"Run it manually once the VM is up: {manual}")
        return False
