"""Tests for LocalHost and host construction."""
import os
import stat
import subprocess
import sys

import pytest

from hostwright.errors import CommandNotFound, CommandTimeout
from hostwright.hosts import HostConfig, LocalHost, create_host
from hostwright.hosts import local as local_module
from hostwright.hosts.ssh import SSHHost


@pytest.fixture
def local():
    return LocalHost()


class TestLocalCommands:
    """Running commands on this machine."""

    def test_run_captures_output(self, local):
        """stdout, stderr and exit code are returned."""
        result = local.run([sys.executable, "-c", "import sys; print('out'); sys.exit(3)"])

        assert result.returncode == 3
        assert result.stdout == "out\n"

    def test_input_env_and_cwd(self, local, tmp_path):
        """stdin, extra environment and working directory are honoured."""
        code = "import os, sys; print(sys.stdin.read(), os.environ['HW_TEST'], os.getcwd())"

        result = local.run([sys.executable, "-c", code], input="data", env={"HW_TEST": "1"}, cwd=str(tmp_path))

        assert result.stdout.split() == ["data", "1", str(tmp_path)]

    def test_missing_command(self, local):
        """Unknown executables raise CommandNotFound."""
        with pytest.raises(CommandNotFound):
            local.run(["hostwright-no-such-tool"])

    def test_timeout(self, local):
        """Commands exceeding the timeout raise CommandTimeout."""
        with pytest.raises(CommandTimeout):
            local.run([sys.executable, "-c", "import time; time.sleep(5)"], timeout=0.2)


class TestLocalFiles:
    """File operations."""

    def test_write_read_stat(self, local, tmp_path):
        """Writes are atomic replacements with the requested mode."""
        path = str(tmp_path / "motd")

        local.write_file(path, b"hello\n", mode=0o600)

        assert local.read_file(path) == b"hello\n"
        info = local.stat(path)
        assert info.mode == 0o600
        assert not info.is_dir
        assert info.size == 6
        assert os.listdir(tmp_path) == ["motd"]

    def test_write_keeps_existing_mode(self, local, tmp_path):
        """Without a mode, the existing file's mode is kept."""
        path = tmp_path / "conf"
        path.write_text("old")
        os.chmod(path, 0o640)

        local.write_file(str(path), b"new")

        assert stat.S_IMODE(os.stat(path).st_mode) == 0o640

    def test_missing_paths(self, local, tmp_path):
        """Missing paths read and stat as None."""
        assert local.read_file(str(tmp_path / "nope")) is None
        assert local.stat(str(tmp_path / "nope")) is None

    def test_directory_and_remove(self, local, tmp_path):
        """Directories are created with parents and removed recursively."""
        path = str(tmp_path / "srv" / "ts3")

        local.make_directory(path, mode=0o750)

        assert local.stat(path).is_dir
        assert local.stat(path).mode == 0o750
        local.remove(str(tmp_path / "srv"))
        assert local.stat(path) is None

    def test_set_attributes(self, local, tmp_path):
        """Mode can be changed in place."""
        path = tmp_path / "f"
        path.write_text("x")

        local.set_attributes(str(path), mode=0o604)

        assert local.stat(str(path)).mode == 0o604


class TestCreateHost:
    """Host factory."""

    def test_local(self):
        """local connections build a LocalHost."""
        assert isinstance(create_host(HostConfig()), LocalHost)

    def test_ssh(self):
        """ssh connections build an SSHHost without connecting."""
        host = create_host(HostConfig(name="voice", connection="ssh", address="203.0.113.10"))

        assert type(host).__name__ == "SSHHost"
        assert not host.is_connected

    def test_unknown(self):
        """Other connection types are rejected."""
        with pytest.raises(ValueError):
            create_host(HostConfig(connection="telnet"))

    def test_password_from_env(self, monkeypatch):
        """Passwords can come from the environment."""
        monkeypatch.setenv("HOSTWRIGHT_SSH_PASSWORD", "pw")

        assert HostConfig().get_password() == "pw"


class _Stream:
    def __init__(self, data=b""):
        self.data = data
        self.channel = self

    def read(self):
        return self.data

    def write(self, data):
        self.data += data

    def shutdown_write(self):
        pass

    def recv_exit_status(self):
        return 0


class _RecordingClient:
    """Stands in for paramiko.SSHClient, recording the remote command line."""

    def __init__(self):
        self.commands = []

    def exec_command(self, command, timeout=None):
        self.commands.append(command)
        return _Stream(), _Stream(), _Stream()


class TestBecome:
    """Privilege escalation with sudo."""

    APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}

    def test_local_env_passed_inside_sudo(self, monkeypatch):
        """sudo resets the environment, so variables are set by env under sudo."""
        seen = {}

        def fake_run(argv, **kwargs):
            seen["argv"] = argv
            seen["env"] = kwargs.get("env")
            return subprocess.CompletedProcess(argv, 0, "", "")

        monkeypatch.setattr(local_module.os, "geteuid", lambda: 1000)
        monkeypatch.setattr(local_module.subprocess, "run", fake_run)
        host = LocalHost(HostConfig(become=True))

        host.run(["apt-get", "install", "-y", "git"], env=self.APT_ENV)

        assert seen["argv"] == [
            "sudo", "-n", "--", "env", "DEBIAN_FRONTEND=noninteractive",
            "apt-get", "install", "-y", "git",
        ]
        assert seen["env"] is None

    def test_local_root_skips_sudo(self, monkeypatch):
        """Running as root needs no sudo; env goes to the process directly."""
        seen = {}

        def fake_run(argv, **kwargs):
            seen["argv"] = argv
            seen["env"] = kwargs.get("env")
            return subprocess.CompletedProcess(argv, 0, "", "")

        monkeypatch.setattr(local_module.os, "geteuid", lambda: 0)
        monkeypatch.setattr(local_module.subprocess, "run", fake_run)

        LocalHost(HostConfig(become=True)).run(["apt-get", "update"], env=self.APT_ENV)

        assert seen["argv"] == ["apt-get", "update"]
        assert seen["env"]["DEBIAN_FRONTEND"] == "noninteractive"

    def test_ssh_env_passed_inside_sudo(self):
        """The remote command line sets env after sudo, not before it."""
        host = SSHHost(HostConfig(name="voice", connection="ssh", address="203.0.113.10", become=True))
        client = _RecordingClient()
        host._ssh = client

        result = host.run(["apt-get", "install", "-y", "git"], env=self.APT_ENV)

        assert result.returncode == 0
        assert client.commands == [
            "sudo -n -- env DEBIAN_FRONTEND=noninteractive apt-get install -y git"
        ]

    def test_ssh_env_without_become(self):
        """Without become the variables are set by env directly."""
        host = SSHHost(HostConfig(name="voice", connection="ssh", address="203.0.113.10"))
        client = _RecordingClient()
        host._ssh = client

        host.run(["apt-get", "update"], env=self.APT_ENV, cwd="/tmp")

        assert client.commands == ["cd /tmp && env DEBIAN_FRONTEND=noninteractive apt-get update"]
