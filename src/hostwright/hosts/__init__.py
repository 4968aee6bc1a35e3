"""Host connections: how hostwright reaches the machine it provisions."""
from .base import Host, HostConfig, FileStat
from .local import LocalHost

__all__ = [
    "Host",
    "HostConfig",
    "FileStat",
    "LocalHost",
    "create_host",
]


def create_host(config: HostConfig) -> Host:
    """Factory function to create host instances."""
    connection = config.connection.lower()
    if connection == "local":
        return LocalHost(config)
    if connection == "ssh":
        # paramiko is only imported when a remote host is requested
        from .ssh import SSHHost
        return SSHHost(config)
    raise ValueError(f"Unknown connection type: {config.connection}")
