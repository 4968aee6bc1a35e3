"""Schema definitions for the provisioning engine.

Task parameters are a tagged variant: one dataclass per module type, built
and validated when the plan is built.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from ..errors import HostwrightError
from ..firewall.rules import FirewallRule, Ruleset


class ModuleType(str, Enum):
    """Kind of resource a task manages."""
    PACKAGE = "package"
    FILE = "file"
    TEMPLATE = "template"
    SERVICE = "service"
    COMMAND = "command"
    FIREWALL = "firewall"


class TaskStatus(str, Enum):
    """Outcome of a task in the run summary."""
    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Fields whose metadata carries RAW are not rendered as templates before
# execution; the template module renders its body itself.
RAW = {"raw": True}


# --- Module parameters ---

@dataclass
class PackageParams:
    name: str
    state: str = "present"  # present, absent
    version: Optional[str] = None
    update_cache: bool = False


@dataclass
class FileParams:
    path: str
    content: Optional[str] = None
    state: str = "file"  # file, directory, absent
    mode: Optional[str] = None
    owner: Optional[str] = None
    group: Optional[str] = None


@dataclass
class TemplateParams:
    path: str
    template: str = field(default="", metadata=RAW)
    mode: Optional[str] = None
    owner: Optional[str] = None
    group: Optional[str] = None


@dataclass
class UnitDescriptor:
    """Systemd service unit to be written before the service is managed."""
    exec_start: str
    description: str = ""
    working_directory: Optional[str] = None
    user: Optional[str] = None
    group: Optional[str] = None
    restart: str = "on-failure"
    after: str = "network.target"
    wanted_by: str = "multi-user.target"
    environment: dict[str, str] = field(default_factory=dict)
    enable: bool = True

    def render(self, name: str) -> str:
        """Render as a systemd unit file."""
        lines = [
            "# Managed by hostwright",
            "[Unit]",
            f"Description={self.description or name}",
            f"After={self.after}",
            "",
            "[Service]",
            "Type=simple",
        ]
        if self.user:
            lines.append(f"User={self.user}")
        if self.group:
            lines.append(f"Group={self.group}")
        if self.working_directory:
            lines.append(f"WorkingDirectory={self.working_directory}")
        for key, value in sorted(self.environment.items()):
            lines.append(f'Environment="{key}={value}"')
        lines.append(f"ExecStart={self.exec_start}")
        lines.append(f"Restart={self.restart}")
        lines += ["", "[Install]", f"WantedBy={self.wanted_by}", ""]
        return "\n".join(lines)


@dataclass
class ServiceParams:
    name: str
    state: Optional[str] = None  # started, stopped, restarted, reloaded, absent
    enabled: Optional[bool] = None
    unit: Optional[UnitDescriptor] = None

    @property
    def unit_name(self) -> str:
        return self.name if "." in self.name else f"{self.name}.service"

    @property
    def unit_path(self) -> str:
        return f"/etc/systemd/system/{self.unit_name}"


@dataclass
class CommandParams:
    argv: list[str]
    creates: Optional[str] = None
    removes: Optional[str] = None
    unless: Optional[list[str]] = None
    chdir: Optional[str] = None


@dataclass
class FirewallParams:
    rules: list[FirewallRule] = field(default_factory=list)
    policies: dict[str, str] = field(default_factory=dict)
    family: str = "ipv4"
    persist_path: Optional[str] = None


ModuleParams = Union[
    PackageParams, FileParams, TemplateParams, ServiceParams, CommandParams, FirewallParams
]


# --- Tasks and handlers ---

@dataclass
class Task:
    """One declared unit of work."""
    name: str
    module: ModuleType
    params: ModuleParams
    when: Optional[str] = None
    notify: list[str] = field(default_factory=list)
    ignore_errors: bool = False
    best_effort: bool = False
    timeout: Optional[float] = None
    register: Optional[str] = None
    uses_secrets: bool = False


@dataclass
class Handler:
    """Deferred action run at most once, after all tasks."""
    name: str
    module: ModuleType
    params: ModuleParams
    notify: list[str] = field(default_factory=list)
    timeout: Optional[float] = None
    uses_secrets: bool = False

    def as_task(self) -> Task:
        return Task(
            name=self.name,
            module=self.module,
            params=self.params,
            notify=list(self.notify),
            timeout=self.timeout,
            uses_secrets=self.uses_secrets,
        )


@dataclass
class ExecutionPlan:
    """Ordered tasks plus the handlers they may notify."""
    tasks: list[Task] = field(default_factory=list)
    handlers: dict[str, Handler] = field(default_factory=dict)

    @property
    def requires_secrets(self) -> bool:
        return any(t.uses_secrets for t in self.tasks) or any(
            h.uses_secrets for h in self.handlers.values()
        )

    def describe(self) -> list[str]:
        lines = []
        for index, task in enumerate(self.tasks, start=1):
            extras = []
            if task.when:
                extras.append(f"when: {task.when}")
            if task.notify:
                extras.append(f"notify: {', '.join(task.notify)}")
            suffix = f"  ({'; '.join(extras)})" if extras else ""
            lines.append(f"{index:3d}. [{task.module.value}] {task.name}{suffix}")
        for name, handler in self.handlers.items():
            lines.append(f"  handler [{handler.module.value}] {name}")
        return lines


# --- Probed state ---

@dataclass
class PackageState:
    name: str
    installed: bool
    version: Optional[str] = None


@dataclass
class FileState:
    path: str
    exists: bool
    is_dir: bool = False
    sha256: Optional[str] = None
    mode: Optional[int] = None
    owner: Optional[str] = None
    group: Optional[str] = None


@dataclass
class ServiceState:
    name: str
    exists: bool
    active: bool = False
    enabled: bool = False
    unit_file: Optional[FileState] = None


@dataclass
class CommandState:
    creates_exists: Optional[bool] = None
    removes_exists: Optional[bool] = None
    unless_ok: Optional[bool] = None


@dataclass
class FirewallState:
    family: str
    ruleset: Ruleset


ActualState = Union[PackageState, FileState, ServiceState, CommandState, FirewallState]


# --- Results ---

@dataclass
class TaskResult:
    """Result of executing (or skipping) one task."""
    task: str
    module: str
    status: TaskStatus
    msg: str = ""
    diff: list[str] = field(default_factory=list)
    error: Optional[str] = None
    ignored: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.status == TaskStatus.CHANGED

    @property
    def failed(self) -> bool:
        return self.status == TaskStatus.FAILED

    def to_dict(self) -> dict:
        return {
            "task": self.task,
            "module": self.module,
            "status": self.status.value,
            "changed": self.changed,
            "failed": self.failed,
            "msg": self.msg,
            "diff": self.diff,
            "error": self.error,
            "ignored": self.ignored,
        }


@dataclass
class RunOptions:
    """Options for a provisioning run."""
    check: bool = False
    force_handlers: bool = False
    default_timeout: Optional[float] = 300


@dataclass
class RunReport:
    """Everything that happened during one run."""
    host: str
    check_mode: bool = False
    results: list[TaskResult] = field(default_factory=list)
    handler_results: list[TaskResult] = field(default_factory=list)
    error: Optional[HostwrightError] = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.error is None and not self.cancelled

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return 130
        if self.error is None:
            return 0
        effective = getattr(self.error, "effective_exit_code", None)
        return effective if effective is not None else self.error.exit_code

    def recap(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for result in self.results + self.handler_results:
            counts[result.status.value] += 1
        return counts

    def summary(self) -> str:
        counts = self.recap()
        return (
            f"{self.host}: ok={counts['ok']} changed={counts['changed']} "
            f"failed={counts['failed']} skipped={counts['skipped']}"
        )

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "check_mode": self.check_mode,
            "success": self.success,
            "cancelled": self.cancelled,
            "error": str(self.error) if self.error else None,
            "recap": self.recap(),
            "results": [r.to_dict() for r in self.results],
            "handlers": [r.to_dict() for r in self.handler_results],
        }
