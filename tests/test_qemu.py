"""Tests for vmmanager.qemu module."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from vmmanager import qemu
from vmmanager.exceptions import ProcessError
from vmmanager.models import PortForward


def _completed(returncode=0, stdout=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr="")


def _arg_after(cmd, flag, occurrence=0):
    positions = [i for i, value in enumerate(cmd) if value == flag]
    return cmd[positions[occurrence] + 1]


class TestPortForwards:
    def test_parses_pairs(self):
        assert qemu.parse_port_forwards("8080:80, 8443:443") == [
            PortForward(8080, 80),
            PortForward(8443, 443),
        ]

    def test_guest_qualifier_ignored(self):
        assert qemu.parse_port_forwards("5353:53:udp") == [PortForward(5353, 53)]

    @pytest.mark.parametrize("spec", [":80", "8080", "8080:", "abc:80", "80:xyz"])
    def test_malformed_entries_skipped(self, spec, capsys):
        assert qemu.parse_port_forwards(f"{spec},9000:90") == [PortForward(9000, 90)]
        assert "Skipping malformed port forward" in capsys.readouterr().out

    def test_empty(self):
        assert qemu.parse_port_forwards("") == []


class TestBuildCommand:
    def test_headless_defaults(self, make_record):
        record = make_record("web1", memory_mb=4096, cpus=4, ssh_port=2250)
        cmd = qemu.build_qemu_command(record)
        assert cmd[0] == "qemu-system-x86_64"
        assert "-enable-kvm" in cmd
        assert _arg_after(cmd, "-m") == "4096"
        assert _arg_after(cmd, "-smp") == "4"
        assert _arg_after(cmd, "-drive") == f"file={record.img_file},format=qcow2,if=virtio"
        assert _arg_after(cmd, "-cdrom") == str(record.seed_file)
        assert _arg_after(cmd, "-boot") == "order=c"
        assert _arg_after(cmd, "-netdev") == "user,id=n0,hostfwd=tcp::2250-:22"
        assert "-nographic" in cmd
        assert _arg_after(cmd, "-serial") == "mon:stdio"
        assert "-display" not in cmd

    def test_gui_mode(self, make_record):
        cmd = qemu.build_qemu_command(make_record(gui_mode=True))
        assert _arg_after(cmd, "-display") == "gtk,gl=on"
        assert _arg_after(cmd, "-vga") == "virtio"
        assert "-nographic" not in cmd

    def test_extra_forwards_get_own_nics(self, make_record):
        cmd = qemu.build_qemu_command(make_record(port_forwards="8080:80,bogus,8443:443"))
        assert _arg_after(cmd, "-netdev", 1) == "user,id=n1,hostfwd=tcp::8080-:80"
        assert _arg_after(cmd, "-netdev", 2) == "user,id=n2,hostfwd=tcp::8443-:443"
        assert "virtio-net-pci,netdev=n2" in cmd

    def test_auxiliary_devices(self, make_record):
        cmd = qemu.build_qemu_command(make_record())
        assert "virtio-balloon-pci" in cmd
        assert "rng-random,filename=/dev/urandom,id=rng0" in cmd
        assert "virtio-rng-pci,rng=rng0" in cmd


class TestLiveness:
    def test_ere_escape(self):
        assert qemu.ere_escape("/vms/a.b[1]+(x)") == r"/vms/a\.b\[1\]\+\(x\)"

    def test_pattern_includes_binary_and_image(self):
        assert qemu.liveness_pattern(Path("/vms/web1.img")) == r"qemu-system-x86_64.*/vms/web1\.img"

    @patch("vmmanager.qemu.subprocess.run")
    def test_find_pids(self, mock_run):
        mock_run.return_value = _completed(0, "123\n456\n")
        assert qemu.find_pids(Path("/vms/web1.img")) == [123, 456]
        assert mock_run.call_args[0][0] == ["pgrep", "-f", r"qemu-system-x86_64.*/vms/web1\.img"]

    @patch("vmmanager.qemu.subprocess.run")
    def test_not_running(self, mock_run):
        mock_run.return_value = _completed(1, "")
        assert qemu.is_running(Path("/vms/web1.img")) is False


class TestStop:
    def _fake_ps(self, alive_checks):
        """subprocess.run stand-in: pgrep answers from ``alive_checks``, pkill is recorded."""
        answers = iter(alive_checks)
        signals = []

        def fake_run(cmd, **kwargs):
            if cmd[0] == "pgrep":
                return _completed(0, "99\n") if next(answers) else _completed(1)
            signals.append(cmd)
            return _completed(0)

        return fake_run, signals

    def test_already_stopped_is_noop(self):
        fake_run, signals = self._fake_ps([False])
        with patch("vmmanager.qemu.subprocess.run", side_effect=fake_run), \
                patch("vmmanager.qemu.time.sleep") as mock_sleep:
            assert qemu.stop(Path("/vms/web1.img"), grace=2) is False
        assert signals == []
        mock_sleep.assert_not_called()

    def test_graceful_stop(self):
        fake_run, signals = self._fake_ps([True, False])
        with patch("vmmanager.qemu.subprocess.run", side_effect=fake_run), \
                patch("vmmanager.qemu.time.sleep") as mock_sleep:
            assert qemu.stop(Path("/vms/web1.img"), grace=2) is True
        assert signals == [["pkill", "-f", r"qemu-system-x86_64.*/vms/web1\.img"]]
        mock_sleep.assert_called_once_with(2)

    def test_escalates_to_sigkill(self, capsys):
        fake_run, signals = self._fake_ps([True, True, False])
        with patch("vmmanager.qemu.subprocess.run", side_effect=fake_run), \
                patch("vmmanager.qemu.time.sleep"):
            assert qemu.stop(Path("/vms/web1.img"), grace=2) is True
        assert [cmd[1] for cmd in signals] == ["-f", "-9"]
        assert "forcing termination" in capsys.readouterr().out

    def test_survives_sigkill(self):
        fake_run, _ = self._fake_ps([True, True, True])
        with patch("vmmanager.qemu.subprocess.run", side_effect=fake_run), \
                patch("vmmanager.qemu.time.sleep"):
            with pytest.raises(ProcessError):
                qemu.stop(Path("/vms/web1.img"), grace=2)


class TestLaunchAndWait:
    @patch("vmmanager.qemu.subprocess.Popen")
    def test_launch(self, mock_popen, make_record):
        record = make_record()
        qemu.launch(record)
        mock_popen.assert_called_once_with(qemu.build_qemu_command(record))

    @patch("vmmanager.qemu.subprocess.Popen", side_effect=FileNotFoundError("qemu-system-x86_64"))
    def test_launch_missing_binary(self, mock_popen, make_record):
        with pytest.raises(ProcessError, match="Failed to launch"):
            qemu.launch(make_record())

    def test_wait_nonzero_raises(self):
        process = MagicMock()
        process.wait.return_value = 1
        with pytest.raises(ProcessError, match="exited with code 1"):
            qemu.wait(process, "web1")

    def test_wait_clean_exit(self):
        process = MagicMock()
        process.wait.return_value = 0
        assert qemu.wait(process, "web1") == 0


class TestProcessStats:
    @patch("vmmanager.qemu.subprocess.run")
    def test_parses_ps_output(self, mock_run):
        mock_run.return_value = _completed(0, "  4242  12.5  3.1 204800 4194304\n")
        assert qemu.process_stats(4242) == {
            "pid": "4242",
            "cpu_percent": "12.5",
            "mem_percent": "3.1",
            "rss_kb": "204800",
            "vsz_kb": "4194304",
        }

    @patch("vmmanager.qemu.subprocess.run")
    def test_gone(self, mock_run):
        mock_run.return_value = _completed(1, "")
        assert qemu.process_stats(4242) is None
