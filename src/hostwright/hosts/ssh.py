"""Remote host over SSH (paramiko) with SCP uploads for file content."""
import io
import logging
import shlex
import socket
import uuid
from typing import Optional

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError
from scp import SCPClient, SCPException

from .base import Host, HostConfig
from ..errors import CommandNotFound, CommandTimeout, HostError
from ..utils.connection import CommandResult, RETRYABLE_EXCEPTIONS, with_retry

logger = logging.getLogger(__name__)

SSH_RETRYABLE = RETRYABLE_EXCEPTIONS + (NoValidConnectionsError, socket.timeout)


class SSHHost(Host):
    """Provision a remote machine through an SSH session."""

    def __init__(self, config: HostConfig):
        super().__init__(config)
        self._ssh: Optional[paramiko.SSHClient] = None
        self._scp: Optional[SCPClient] = None

    @with_retry(max_attempts=3, min_wait=1, max_wait=10, exceptions=SSH_RETRYABLE)
    def connect(self) -> None:
        """Connect to the host via SSH."""
        address = self.config.address or self.config.name
        logger.info(f"Connecting to {self.host_name} at {address}:{self.config.port}")

        ssh = paramiko.SSHClient()
        ssh.load_system_host_keys()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(
                hostname=address,
                port=self.config.port,
                username=self.config.username,
                password=self.config.get_password(),
                key_filename=self.config.key_filename,
                timeout=self.config.timeout,
                allow_agent=True,
                look_for_keys=self.config.key_filename is None,
            )
        except paramiko.AuthenticationException as e:
            ssh.close()
            raise HostError(f"SSH authentication to {self.host_name} failed") from e
        except paramiko.SSHException as e:
            ssh.close()
            raise HostError(f"SSH connection to {self.host_name} failed: {e}") from e

        transport = ssh.get_transport()
        if transport is None:
            ssh.close()
            raise ConnectionError("Failed to get SSH transport")
        self._ssh = ssh
        self._scp = SCPClient(transport)
        self._connected = True
        logger.info(f"Connected to {self.host_name}")

    def disconnect(self) -> None:
        if self._scp:
            self._scp.close()
            self._scp = None
        if self._ssh:
            self._ssh.close()
            self._ssh = None
        self._connected = False
        logger.info(f"Disconnected from {self.host_name}")

    def _exec(
        self,
        argv: list[str],
        input: Optional[bytes] = None,
        timeout: Optional[float] = None,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> tuple[int, bytes, bytes]:
        if not self._ssh:
            raise HostError(f"Not connected to {self.host_name}")

        if self.config.become:
            command = shlex.join(self.sudo_argv(argv, env))
        elif env:
            command = shlex.join(["env", *[f"{k}={v}" for k, v in env.items()], *argv])
        else:
            command = shlex.join(argv)
        if cwd:
            command = f"cd {shlex.quote(cwd)} && {command}"

        try:
            stdin, stdout, stderr = self._ssh.exec_command(command, timeout=timeout)
            if input is not None:
                stdin.write(input)
            stdin.channel.shutdown_write()
            out = stdout.read()
            err = stderr.read()
            rc = stdout.channel.recv_exit_status()
        except socket.timeout as e:
            raise CommandTimeout(argv, timeout or 0) from e
        except paramiko.SSHException as e:
            raise HostError(f"SSH command failed on {self.host_name}: {e}") from e

        if rc == 127:
            raise CommandNotFound(f"{argv[0]}: command not found")
        return rc, out, err

    def run(
        self,
        argv: list[str],
        input: Optional[str] = None,
        timeout: Optional[float] = None,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        logger.debug(f"[{self.host_name}] exec: {argv[0]} ({len(argv) - 1} args)")
        rc, out, err = self._exec(
            argv,
            input=input.encode() if input is not None else None,
            timeout=timeout,
            env=env,
            cwd=cwd,
        )
        return CommandResult(
            argv,
            rc,
            out.decode("utf-8", errors="replace"),
            err.decode("utf-8", errors="replace"),
        )

    def read_file(self, path: str) -> Optional[bytes]:
        rc, out, err = self._exec(["cat", "--", path])
        if rc != 0:
            message = err.decode("utf-8", errors="replace")
            if "No such file" in message or "Is a directory" in message:
                return None
            raise HostError(f"Cannot read {path}: {message.strip()}")
        return out

    def write_file(
        self,
        path: str,
        content: bytes,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        if not self._scp:
            raise HostError(f"Not connected to {self.host_name}")

        if mode is None:
            existing = self.stat(path)
            mode = existing.mode if existing else 0o644

        token = uuid.uuid4().hex[:8]
        upload_path = f"/tmp/.hostwright-upload-{token}"
        staging = self.staging_path(path, token)

        try:
            self._scp.putfo(io.BytesIO(content), upload_path, mode="0600")
        except (SCPException, socket.timeout, paramiko.SSHException) as e:
            raise HostError(f"Upload of {path} failed: {e}") from e

        try:
            install = ["install", "-m", f"{mode:04o}"]
            if owner:
                install += ["-o", owner]
            if group:
                install += ["-g", group]
            self._checked(install + [upload_path, staging])
            # Same filesystem: rename replaces the target atomically
            self._checked(["mv", "-f", "--", staging, path])
        finally:
            self.run(["rm", "-f", "--", upload_path, staging])
