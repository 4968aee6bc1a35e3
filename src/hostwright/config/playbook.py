"""Playbook loading from YAML.

A playbook describes one host and the tasks to apply to it:

```yaml
name: voice server
connection:
  type: ssh
  address: 203.0.113.10
  username: deploy
  become: true
vars:
  voice_port: 9987
secrets_file: secrets.enc
tasks:
  - name: Install git
    package: {name: git}
handlers:
  - name: restart fail2ban
    service: {name: fail2ban, state: restarted}
```
"""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from ..engine.parser import ParseError, TaskParser
from ..engine.planner import PlanBuilder
from ..engine.schema import ExecutionPlan
from ..hosts.base import HostConfig

logger = logging.getLogger(__name__)

PLAYBOOK_KEYS = {"name", "connection", "vars", "secrets_file", "tasks", "handlers"}
CONNECTION_KEYS = {
    "type", "name", "address", "port", "username", "password_env",
    "key_filename", "timeout", "retries", "become",
}


@dataclass
class Playbook:
    """A loaded playbook, not yet validated into an execution plan."""
    path: Path
    name: str
    host: HostConfig
    variables: dict[str, Any] = field(default_factory=dict)
    secrets_file: Optional[Path] = None
    tasks: list[dict[str, Any]] = field(default_factory=list)
    handlers: list[dict[str, Any]] = field(default_factory=list)

    @property
    def base_dir(self) -> Path:
        return self.path.parent

    def build_plan(self) -> ExecutionPlan:
        """
        Parse and validate tasks and handlers.

        Raises:
            PlanError: Malformed tasks, unknown handlers or handler cycles
            RuleOrderError: Misordered static firewall rules
        """
        parser = TaskParser(self.base_dir)
        return PlanBuilder().build(
            parser.parse_tasks(self.tasks),
            parser.parse_handlers(self.handlers),
        )


def parse_connection(raw: Any) -> HostConfig:
    """Build a HostConfig from the ``connection`` section."""
    if raw is None or raw == "local":
        return HostConfig()
    if raw == "ssh":
        raise ParseError("ssh connection requires an 'address'")
    if not isinstance(raw, dict):
        raise ParseError(f"Invalid connection: {raw!r}")

    unknown = set(raw) - CONNECTION_KEYS
    if unknown:
        raise ParseError(f"Unknown connection field(s): {', '.join(sorted(unknown))}")

    connection = str(raw.get("type", "local")).lower()
    if connection not in ("local", "ssh"):
        raise ParseError(f"Unknown connection type: {connection}")
    if connection == "ssh" and not raw.get("address"):
        raise ParseError("ssh connection requires an 'address'")

    defaults = HostConfig()
    key_filename = raw.get("key_filename")
    return HostConfig(
        name=str(raw.get("name") or raw.get("address") or defaults.name),
        connection=connection,
        address=raw.get("address"),
        port=int(raw.get("port", defaults.port)),
        username=raw.get("username"),
        password_env=raw.get("password_env", defaults.password_env),
        key_filename=os.path.expanduser(key_filename) if key_filename else None,
        timeout=int(raw.get("timeout", defaults.timeout)),
        retries=int(raw.get("retries", defaults.retries)),
        become=bool(raw.get("become", False)),
    )


def load_playbook(path: str | Path) -> Playbook:
    """
    Load a playbook file.

    Raises:
        PlanError: If the file is missing, not YAML, or malformed
    """
    path = Path(path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ParseError(f"Playbook not found: {path}") from None
    except yaml.YAMLError as e:
        raise ParseError(f"Playbook {path} is not valid YAML: {e}") from e

    if not isinstance(data, dict):
        raise ParseError(f"Playbook {path} must be a mapping")

    unknown = set(data) - PLAYBOOK_KEYS
    if unknown:
        raise ParseError(f"Unknown playbook field(s): {', '.join(sorted(unknown))}")

    variables = data.get("vars") or {}
    if not isinstance(variables, dict):
        raise ParseError("'vars' must be a mapping")

    secrets_file = data.get("secrets_file")
    if secrets_file:
        secrets_file = Path(os.path.expanduser(str(secrets_file)))
        if not secrets_file.is_absolute():
            secrets_file = path.parent / secrets_file

    playbook = Playbook(
        path=path,
        name=str(data.get("name") or path.stem),
        host=parse_connection(data.get("connection")),
        variables=variables,
        secrets_file=secrets_file or None,
        tasks=data.get("tasks") or [],
        handlers=data.get("handlers") or [],
    )
    logger.info(
        f"Loaded playbook '{playbook.name}' from {path}: "
        f"{len(playbook.tasks)} task(s), {len(playbook.handlers)} handler(s)"
    )
    return playbook
