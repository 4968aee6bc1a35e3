"""Base host abstraction: the only path through which the engine touches a machine."""
import logging
import os
import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..errors import HostError
from ..utils.connection import CommandResult

logger = logging.getLogger(__name__)


@dataclass
class HostConfig:
    """Connection settings for the target host."""
    name: str = "localhost"
    connection: str = "local"  # local, ssh
    address: Optional[str] = None
    port: int = 22
    username: Optional[str] = None
    password: Optional[str] = None
    password_env: str = "HOSTWRIGHT_SSH_PASSWORD"
    key_filename: Optional[str] = None
    timeout: int = 30
    retries: int = 3
    become: bool = False  # prefix commands with sudo -n

    def get_password(self) -> Optional[str]:
        """Get password from config or environment variable."""
        if self.password:
            return self.password
        return os.environ.get(self.password_env) or None


@dataclass
class FileStat:
    """Attributes of a path on the host."""
    path: str
    is_dir: bool
    mode: int
    owner: str
    group: str
    size: int = 0


class Host(ABC):
    """Abstract base class for a provisioning target."""

    def __init__(self, config: HostConfig):
        self.config = config
        self._connected = False

    @property
    def host_name(self) -> str:
        return self.config.name

    @property
    def is_connected(self) -> bool:
        return self._connected

    # Connection management
    @abstractmethod
    def connect(self) -> None:
        """Establish connection to the host."""

    @abstractmethod
    def disconnect(self) -> None:
        """Close connection to the host."""

    # Command execution
    @abstractmethod
    def run(
        self,
        argv: list[str],
        input: Optional[str] = None,
        timeout: Optional[float] = None,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        """Run a command without a shell.

        Raises:
            CommandNotFound: If argv[0] does not exist on the host
            CommandTimeout: If the command exceeds timeout
            HostError: For any other transport failure
        """

    @staticmethod
    def sudo_argv(argv: list[str], env: Optional[dict[str, str]] = None) -> list[str]:
        """Wrap argv in ``sudo -n``, setting env inside sudo since it resets the environment."""
        if env:
            argv = ["env", *[f"{k}={v}" for k, v in env.items()], *argv]
        return ["sudo", "-n", "--", *argv]

    # File access
    @abstractmethod
    def read_file(self, path: str) -> Optional[bytes]:
        """Return file content, or None if the path does not exist."""

    @abstractmethod
    def write_file(
        self,
        path: str,
        content: bytes,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        """Atomically replace path with content, then apply attributes."""

    def stat(self, path: str) -> Optional[FileStat]:
        """Return attributes of path, or None if it does not exist."""
        result = self.run(["stat", "-L", "-c", "%F|%a|%U|%G|%s", "--", path])
        if not result.success:
            if "No such file" in result.stderr:
                return None
            raise HostError(f"stat {path} failed: {result.output}")
        kind, mode, owner, group, size = result.stdout.strip().split("|")
        return FileStat(
            path=path,
            is_dir=kind == "directory",
            mode=int(mode, 8),
            owner=owner,
            group=group,
            size=int(size),
        )

    def set_attributes(
        self,
        path: str,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        """Set mode and ownership on an existing path."""
        if mode is not None:
            self._checked(["chmod", f"{mode:04o}", "--", path])
        if owner or group:
            spec = f"{owner or ''}:{group or ''}" if group else owner
            self._checked(["chown", spec, "--", path])

    def make_directory(
        self,
        path: str,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        self._checked(["mkdir", "-p", "--", path])
        self.set_attributes(path, mode, owner, group)

    def remove(self, path: str) -> None:
        self._checked(["rm", "-rf", "--", path])

    def _checked(self, argv: list[str], input: Optional[str] = None) -> CommandResult:
        result = self.run(argv, input=input)
        if not result.success:
            raise HostError(f"{result.command} failed: {result.output}")
        return result

    @staticmethod
    def staging_path(path: str, token: str) -> str:
        """Sibling path used for write-then-rename."""
        directory, name = posixpath.split(path)
        return posixpath.join(directory, f".{name}.hostwright-{token}")

    # Context manager support
    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False
