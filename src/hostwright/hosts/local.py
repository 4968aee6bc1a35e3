"""Local host: runs commands and file operations on this machine."""
import grp
import logging
import os
import pwd
import shutil
import stat as stat_mod
import subprocess
import tempfile
from typing import Optional

from .base import FileStat, Host, HostConfig
from ..errors import CommandNotFound, CommandTimeout, HostError
from ..utils.connection import CommandResult

logger = logging.getLogger(__name__)


class LocalHost(Host):
    """Provision the machine hostwright runs on."""

    def __init__(self, config: Optional[HostConfig] = None):
        super().__init__(config or HostConfig())

    def connect(self) -> None:
        self._connected = True

    def disconnect(self) -> None:
        self._connected = False

    def run(
        self,
        argv: list[str],
        input: Optional[str] = None,
        timeout: Optional[float] = None,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        full_env = None
        if self.config.become and os.geteuid() != 0:
            argv = self.sudo_argv(argv, env)
        elif env:
            full_env = {**os.environ, **env}

        logger.debug(f"[{self.host_name}] exec: {argv[0]} ({len(argv) - 1} args)")
        try:
            # Own session: a terminal Ctrl-C must not kill a half-done mutation
            proc = subprocess.run(
                argv,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=full_env,
                cwd=cwd,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise CommandNotFound(f"{argv[0]}: command not found") from e
        except subprocess.TimeoutExpired as e:
            raise CommandTimeout(argv, timeout or 0) from e
        except PermissionError as e:
            raise HostError(f"{argv[0]}: permission denied") from e

        return CommandResult(argv, proc.returncode, proc.stdout, proc.stderr)

    def read_file(self, path: str) -> Optional[bytes]:
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except IsADirectoryError:
            return None
        except PermissionError as e:
            raise HostError(f"Cannot read {path}: permission denied") from e

    def stat(self, path: str) -> Optional[FileStat]:
        try:
            st = os.stat(path)
        except FileNotFoundError:
            return None
        except PermissionError as e:
            raise HostError(f"Cannot stat {path}: permission denied") from e
        return FileStat(
            path=path,
            is_dir=stat_mod.S_ISDIR(st.st_mode),
            mode=stat_mod.S_IMODE(st.st_mode),
            owner=_user_name(st.st_uid),
            group=_group_name(st.st_gid),
            size=st.st_size,
        )

    def write_file(
        self,
        path: str,
        content: bytes,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        directory = os.path.dirname(path) or "."
        existing = self.stat(path)
        if mode is None:
            mode = existing.mode if existing else 0o644

        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=directory, prefix=f".{os.path.basename(path)}.hostwright-"
            )
        except (FileNotFoundError, PermissionError) as e:
            raise HostError(f"Cannot write {path}: {e}") from e

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, mode)
            if owner or group:
                shutil.chown(tmp_path, user=owner, group=group)
            os.replace(tmp_path, path)
        except (OSError, LookupError) as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise HostError(f"Cannot write {path}: {e}") from e

    def set_attributes(
        self,
        path: str,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        try:
            if mode is not None:
                os.chmod(path, mode)
            if owner or group:
                shutil.chown(path, user=owner, group=group)
        except (OSError, LookupError) as e:
            raise HostError(f"Cannot set attributes on {path}: {e}") from e

    def make_directory(
        self,
        path: str,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise HostError(f"Cannot create {path}: {e}") from e
        self.set_attributes(path, mode, owner, group)

    def remove(self, path: str) -> None:
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            elif os.path.lexists(path):
                os.unlink(path)
        except OSError as e:
            raise HostError(f"Cannot remove {path}: {e}") from e


def _user_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)
