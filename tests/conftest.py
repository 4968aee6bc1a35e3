"""Shared fixtures: an in-memory host that imitates the tools hostwright drives."""
import ipaddress
import posixpath
import re
from typing import Callable, Optional, Union

import pytest

from hostwright.errors import CommandNotFound, CommandTimeout
from hostwright.hosts.base import FileStat, Host, HostConfig
from hostwright.utils.connection import CommandResult

EMPTY_RULESET = (
    "*filter\n"
    ":INPUT ACCEPT [0:0]\n"
    ":FORWARD ACCEPT [0:0]\n"
    ":OUTPUT ACCEPT [0:0]\n"
    "COMMIT\n"
)

CommandStub = Union[tuple[int, str, str], Callable[[list[str]], CommandResult]]


class FakeHost(Host):
    """Host whose packages, services, files and packet filter live in memory.

    Every command is recorded in ``calls`` so tests can assert on exactly
    which tools ran, and in which order.
    """

    def __init__(self):
        super().__init__(HostConfig(name="fake"))
        self.calls: list[list[str]] = []
        self.inputs: list[Optional[str]] = []
        self.files: dict[str, bytes] = {}
        self.dirs: set[str] = {"/", "/etc", "/etc/systemd", "/etc/systemd/system", "/tmp"}
        self.attrs: dict[str, tuple[int, str, str]] = {}
        self.packages: dict[str, str] = {}
        self.available: dict[str, str] = {}
        self.services: dict[str, dict[str, bool]] = {}
        self.live_rules: dict[str, str] = {"ipv4": EMPTY_RULESET, "ipv6": EMPTY_RULESET}
        self.fail_restore_test = False
        self.fail_restore_load = False
        self.corrupt_on_failure = False
        self.missing_tools: set[str] = set()
        self.slow_tools: set[str] = set()
        self.commands: dict[str, CommandStub] = {}
        self.writes: list[str] = []

    # --- connection ---

    def connect(self) -> None:
        self._connected = True

    def disconnect(self) -> None:
        self._connected = False

    # --- helpers for tests ---

    def add_file(self, path: str, content: bytes, mode: int = 0o644, owner="root", group="root"):
        self.files[path] = content
        self.attrs[path] = (mode, owner, group)

    def add_service(self, name: str, active: bool = False, enabled: bool = False):
        unit = name if "." in name else f"{name}.service"
        self.services[unit] = {"active": active, "enabled": enabled}

    def service(self, name: str) -> dict[str, bool]:
        return self.services[name if "." in name else f"{name}.service"]

    def commands_run(self, tool: str) -> list[list[str]]:
        return [argv for argv in self.calls if argv[0] == tool]

    # --- Host interface ---

    def run(self, argv, input=None, timeout=None, env=None, cwd=None) -> CommandResult:
        argv = list(argv)
        self.calls.append(argv)
        self.inputs.append(input)
        tool = argv[0]
        if tool in self.missing_tools:
            raise CommandNotFound(f"{tool}: command not found")
        if tool in self.slow_tools:
            raise CommandTimeout(argv, timeout or 0)

        if tool in self.commands:
            stub = self.commands[tool]
            if callable(stub):
                return stub(argv)
            returncode, stdout, stderr = stub
            return CommandResult(argv, returncode, stdout, stderr)

        handler = {
            "dpkg-query": self._dpkg_query,
            "apt-get": self._apt_get,
            "systemctl": self._systemctl,
            "iptables-save": self._save,
            "ip6tables-save": self._save,
            "iptables-restore": self._restore,
            "ip6tables-restore": self._restore,
        }.get(tool)
        if handler is None:
            return CommandResult(argv, 0)
        return handler(argv, input)

    def read_file(self, path: str) -> Optional[bytes]:
        return self.files.get(path)

    def write_file(self, path, content, mode=None, owner=None, group=None) -> None:
        old_mode, old_owner, old_group = self.attrs.get(path, (0o644, "root", "root"))
        self.files[path] = content
        self.attrs[path] = (
            mode if mode is not None else old_mode,
            owner or old_owner,
            group or old_group,
        )
        self.writes.append(path)

    def stat(self, path: str) -> Optional[FileStat]:
        if path in self.dirs:
            mode, owner, group = self.attrs.get(path, (0o755, "root", "root"))
            return FileStat(path=path, is_dir=True, mode=mode, owner=owner, group=group)
        if path in self.files:
            mode, owner, group = self.attrs[path]
            return FileStat(
                path=path, is_dir=False, mode=mode, owner=owner, group=group,
                size=len(self.files[path]),
            )
        return None

    def set_attributes(self, path, mode=None, owner=None, group=None) -> None:
        old_mode, old_owner, old_group = self.attrs.get(path, (0o644, "root", "root"))
        self.attrs[path] = (
            mode if mode is not None else old_mode,
            owner or old_owner,
            group or old_group,
        )
        self.calls.append(["<set_attributes>", path])

    def make_directory(self, path, mode=None, owner=None, group=None) -> None:
        while path not in self.dirs and path != "/":
            self.dirs.add(path)
            path = posixpath.dirname(path)
        self.calls.append(["<make_directory>", path])

    def remove(self, path: str) -> None:
        self.files.pop(path, None)
        self.attrs.pop(path, None)
        self.dirs.discard(path)
        self.calls.append(["<remove>", path])

    # --- fake tools ---

    def _dpkg_query(self, argv, input):
        name = argv[-1]
        if name in self.packages:
            return CommandResult(argv, 0, f"install ok installed\t{self.packages[name]}\n")
        return CommandResult(argv, 1, "", f"dpkg-query: no packages found matching {name}\n")

    def _apt_get(self, argv, input):
        action, spec = argv[1], argv[-1]
        if action == "update":
            return CommandResult(argv, 0, "Reading package lists... Done\n")
        name, _, version = spec.partition("=")
        if action == "install":
            if name not in self.available and not version:
                return CommandResult(argv, 100, "", f"E: Unable to locate package {name}\n")
            self.packages[name] = version or self.available[name]
        elif action == "remove":
            self.packages.pop(name, None)
        return CommandResult(argv, 0, "")

    def _unit_known(self, unit: str) -> bool:
        return unit in self.services or f"/etc/systemd/system/{unit}" in self.files

    def _systemctl(self, argv, input):
        verb = argv[1]
        if verb == "daemon-reload":
            for path in self.files:
                if path.startswith("/etc/systemd/system/"):
                    self.services.setdefault(
                        posixpath.basename(path), {"active": False, "enabled": False}
                    )
            return CommandResult(argv, 0)

        unit = argv[2]
        if verb == "is-active":
            state = self.services.get(unit, {}).get("active", False)
            return CommandResult(argv, 0 if state else 3, "active\n" if state else "inactive\n")
        if verb == "is-enabled":
            if not self._unit_known(unit) or unit not in self.services:
                return CommandResult(
                    argv, 1, "",
                    f"Failed to get unit file state for {unit}: No such file or directory\n",
                )
            enabled = self.services[unit]["enabled"]
            return CommandResult(argv, 0 if enabled else 1, "enabled\n" if enabled else "disabled\n")

        if unit not in self.services:
            return CommandResult(argv, 5, "", f"Failed to {verb} {unit}: Unit {unit} not found.\n")
        service = self.services[unit]
        if verb in ("start", "restart", "reload"):
            service["active"] = True
        elif verb == "stop":
            service["active"] = False
        elif verb == "enable":
            service["enabled"] = True
        elif verb == "disable":
            service["enabled"] = False
        return CommandResult(argv, 0)

    def _family(self, tool: str) -> str:
        return "ipv6" if tool.startswith("ip6") else "ipv4"

    def _save(self, argv, input):
        text = "# Generated by iptables-save v1.8.7 on Sat Oct 17 12:00:00 2026\n"
        text += self.live_rules[self._family(argv[0])]
        text += "# Completed on Sat Oct 17 12:00:00 2026\n"
        return CommandResult(argv, 0, text)

    def _restore(self, argv, input):
        family = self._family(argv[0])
        if "--test" in argv:
            if self.fail_restore_test:
                return CommandResult(argv, 1, "", "iptables-restore: line 6 failed\n")
            return CommandResult(argv, 0)
        if self.fail_restore_load:
            if self.corrupt_on_failure:
                self.live_rules[family] = EMPTY_RULESET.replace(
                    "COMMIT", "-A INPUT -i lo -j ACCEPT\nCOMMIT"
                )
                # Only the first failing load corrupts; the rollback load succeeds
                self.fail_restore_load = False
            return CommandResult(argv, 4, "", "iptables-restore: unable to initialize table\n")
        self.live_rules[family] = self._as_saved(input, family)
        return CommandResult(argv, 0)

    @staticmethod
    def _as_saved(text: str, family: str) -> str:
        """Rewrite restore input the way iptables-save prints it back."""
        reject_with = "icmp6-port-unreachable" if family == "ipv6" else "icmp-port-unreachable"
        lines = []
        for line in text.splitlines():
            if line.startswith("-A "):
                line = re.sub(
                    r"-s (\S+)",
                    lambda m: f"-s {ipaddress.ip_network(m.group(1), strict=False)}",
                    line,
                )
                if line.endswith("-j REJECT"):
                    line += f" --reject-with {reject_with}"
            lines.append(line)
        return "\n".join(lines) + "\n"


@pytest.fixture
def host():
    """A fresh in-memory host."""
    return FakeHost()
