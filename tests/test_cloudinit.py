"""Tests for vmmanager.cloudinit module."""

from __future__ import annotations

from unittest.mock import patch

import bcrypt
import pytest
import yaml

from vmmanager.cloudinit import (
    CONSOLE_AUTOLOGIN_PATH,
    SERIAL_AUTOLOGIN_PATH,
    SSHD_DROPIN_PATH,
    action_file_content,
    build_meta_data,
    build_payload,
    build_user_data,
    build_user_data_config,
    freshness_token,
    render_dispatcher,
)
from vmmanager.constants import ACTIONS_DIR, DISPATCHER_PATH


def _user_data(record) -> dict:
    text = build_user_data(record)
    assert text.startswith("#cloud-config\n")
    return yaml.safe_load(text)


def _files(config: dict) -> dict:
    return {entry["path"]: entry for entry in config["write_files"]}


@pytest.fixture
def fixed_hash():
    with patch("vmmanager.cloudinit.hash_password", return_value="$2b$12$fixed"):
        yield


class TestUserData:
    def test_base_document(self, make_record):
        config = _user_data(make_record("web1", hostname="webhost"))
        assert config["hostname"] == "webhost"
        assert config["ssh_pwauth"] is True
        assert config["disable_root"] is False
        assert config["preserve_hostname"] is False
        user = config["users"][0]
        assert user["name"] == "root"
        assert user["lock_passwd"] is False
        assert user["sudo"] == "ALL=(ALL) NOPASSWD:ALL"
        assert bcrypt.checkpw(b"root", user["passwd"].encode())
        assert config["chpasswd"] == {"list": ["root:root"], "expire": False}

    def test_sshd_dropin_always_written(self, make_record):
        files = _files(_user_data(make_record(auto_login=False)))
        assert "PermitRootLogin yes" in files[SSHD_DROPIN_PATH]["content"]
        assert "PasswordAuthentication yes" in files[SSHD_DROPIN_PATH]["content"]

    def test_runcmd_reasserts_credentials_and_restarts_ssh(self, make_record):
        runcmd = _user_data(make_record())["runcmd"]
        assert runcmd[0] == "echo 'root:root' | chpasswd"
        assert "passwd -u root" in runcmd
        restart = [cmd for cmd in runcmd if cmd.startswith("systemctl restart ssh")]
        assert restart == ["systemctl restart ssh || systemctl restart sshd || service ssh restart || service sshd restart"]
        assert "echo 'VM setup complete with root/root credentials'" in runcmd

    def test_auto_login_adds_both_console_dropins(self, make_record):
        config = _user_data(make_record(auto_login=True))
        files = _files(config)
        assert "--autologin root" in files[CONSOLE_AUTOLOGIN_PATH]["content"]
        assert "--keep-baud 115200,38400,9600" in files[SERIAL_AUTOLOGIN_PATH]["content"]
        assert "systemctl enable serial-getty@ttyS0.service" in config["runcmd"]

    def test_auto_login_off_only_changes_console_parts(self, make_record, fixed_hash):
        with_login = build_user_data_config(make_record(auto_login=True))
        without = build_user_data_config(make_record(auto_login=False))
        paths = {entry["path"] for entry in without["write_files"]}
        assert CONSOLE_AUTOLOGIN_PATH not in paths
        assert SERIAL_AUTOLOGIN_PATH not in paths
        assert not any("getty" in cmd for cmd in without["runcmd"])
        assert not any("Auto-login" in cmd for cmd in without["runcmd"])
        for key in ("hostname", "ssh_pwauth", "disable_root", "users", "chpasswd", "preserve_hostname"):
            assert with_login[key] == without[key]
        login_paths = {entry["path"] for entry in with_login["write_files"]}
        assert login_paths - paths == {CONSOLE_AUTOLOGIN_PATH, SERIAL_AUTOLOGIN_PATH}

    def test_no_actions_means_no_dispatcher(self, make_record):
        config = _user_data(make_record())
        assert DISPATCHER_PATH not in _files(config)
        assert not any(DISPATCHER_PATH in cmd for cmd in config["runcmd"])

    def test_action_files_and_dispatcher(self, make_record):
        record = make_record("web1", disk_size="10G", memory_mb=2048, actions={"deploy": "echo hi"})
        config = _user_data(record)
        files = _files(config)

        dispatcher = files[DISPATCHER_PATH]
        assert dispatcher["permissions"] == "0755"
        assert dispatcher["content"].startswith("#!/bin/bash\n")

        action = files[f"{ACTIONS_DIR}/deploy"]
        assert action["permissions"] == "0755"
        lines = action["content"].splitlines()
        assert lines[0] == "#!/bin/bash"
        assert lines[1] == "# Startup command: deploy"
        assert "\n".join(lines[2:]) == "echo hi"
        assert f"{ACTIONS_DIR}/.keep" in files

        runcmd = config["runcmd"]
        assert f"chmod +x {DISPATCHER_PATH}" in runcmd
        assert any("alias vm-start=" in cmd for cmd in runcmd)
        assert any("alias vmstart=" in cmd for cmd in runcmd)

    def test_status_line_lists_sorted_action_names(self, make_record):
        runcmd = _user_data(make_record(actions={"zeta": "true", "build": "make"}))["runcmd"]
        assert "echo 'Startup commands configured: build zeta'" in runcmd

    @pytest.mark.parametrize(
        "command",
        [
            'echo "double" \'single\' \\backslash',
            "cat <<'EOF'\nmulti\n  indented\nEOF",
            "echo a: b # not a comment",
            "  leading and trailing spaces  ",
        ],
    )
    def test_commands_embedded_verbatim(self, make_record, command):
        files = _files(_user_data(make_record(actions={"x": command})))
        content = files[f"{ACTIONS_DIR}/x"]["content"]
        assert content == action_file_content("x", command)
        assert content.split("\n", 2)[2].rstrip("\n") == command.rstrip("\n")

    def test_multiline_content_uses_literal_block(self, make_record):
        text = build_user_data(make_record(actions={"x": "true"}))
        assert "content: |" in text


class TestDispatcher:
    def test_dispatcher_paths(self):
        script = render_dispatcher()
        assert f'COMMANDS_DIR="{ACTIONS_DIR}"' in script
        assert 'LOG_FILE="/var/log/vm-startup.log"' in script
        assert "${PIPESTATUS[0]}" in script
        assert "Usage:" in script
        assert "{" in script and "{{" not in script


class TestMetaData:
    def test_instance_id_and_hostname(self, make_record):
        meta = yaml.safe_load(build_meta_data(make_record("web1", hostname="h1"), "1700000000123"))
        assert meta == {"instance-id": "web1-1700000000123", "local-hostname": "h1"}

    def test_freshness_token_milliseconds(self):
        assert freshness_token(1.5) == "1500"
        assert freshness_token().isdigit()

    def test_payload_uses_token(self, make_record):
        payload = build_payload(make_record("web1"), token="42")
        assert payload.instance_id == "web1-42"
        assert "instance-id: web1-42" in payload.meta_data
        assert payload.user_data.startswith("#cloud-config\n")

    def test_payloads_differ_only_by_freshness(self, make_record, fixed_hash):
        record = make_record("web1", actions={"deploy": "echo hi"})
        first = build_payload(record, token="1")
        second = build_payload(record, token="2")
        assert first.user_data == second.user_data
        assert first.meta_data != second.meta_data
