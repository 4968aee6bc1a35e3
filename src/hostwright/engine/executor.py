"""Idempotent Task Executor.

Compares rendered desired parameters with probed actual state and mutates
the host only when they differ. In check mode the same comparison runs but
nothing is changed.
"""
import hashlib
import logging
from typing import Any, Callable, Mapping, Optional

from ..errors import (
    CommandTimeout,
    HostError,
    HostwrightError,
    TaskError,
    TaskErrorKind,
)
from ..firewall.reconciler import FirewallReconciler
from ..hosts.base import Host
from ..utils.connection import CommandResult, with_retry
from .schema import (
    ActualState,
    CommandParams,
    CommandState,
    FileParams,
    FileState,
    FirewallParams,
    FirewallState,
    PackageParams,
    PackageState,
    ServiceParams,
    ServiceState,
    Task,
    TaskResult,
    TaskStatus,
    TemplateParams,
)
from .templating import TemplateRenderError, render_string

logger = logging.getLogger(__name__)

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
APT_LOCK_MARKERS = ("could not get lock", "unable to acquire the dpkg frontend lock")


class PackageLocked(HostError):
    """Another process holds the dpkg lock."""


def _short(digest: Optional[str]) -> str:
    return digest[:12] if digest else "none"


class TaskExecutor:
    """Apply one task to a host."""

    def __init__(
        self,
        host: Host,
        default_timeout: Optional[float] = None,
        redact: Optional[Callable[[str], str]] = None,
    ):
        """
        Args:
            host: Connected host to apply tasks to
            default_timeout: Per-command timeout when the task sets none
            redact: Masks secret values in messages and errors
        """
        self.host = host
        self.default_timeout = default_timeout
        self.redact = redact or (lambda text: text)
        self._timeout = default_timeout

    @property
    def host_name(self) -> str:
        return self.host.host_name

    def execute(
        self,
        task: Task,
        actual: Optional[ActualState],
        check: bool = False,
        context: Optional[Mapping[str, Any]] = None,
    ) -> TaskResult:
        """
        Bring one resource to its desired state.

        Args:
            task: Task whose params are already rendered
            actual: Probed state (None when probing was skipped)
            check: Report what would change without mutating
            context: Variables for template bodies

        Returns:
            TaskResult with status ok or changed

        Raises:
            TaskError: If applying the task fails or times out
        """
        self._timeout = task.timeout or self.default_timeout
        apply = getattr(self, f"_apply_{task.module.value}")
        try:
            status, msg, diff, data = apply(task.params, actual, check, context or {})
        except TaskError:
            raise
        except CommandTimeout as e:
            raise TaskError(task.name, self.redact(str(e)), TaskErrorKind.TIMEOUT, e) from e
        except (HostwrightError, TemplateRenderError, ValueError) as e:
            raise TaskError(task.name, self.redact(str(e)), TaskErrorKind.EXEC_FAILURE, e) from e

        return TaskResult(
            task=task.name,
            module=task.module.value,
            status=status,
            msg=self.redact(msg),
            diff=[self.redact(line) for line in diff],
            data=data,
        )

    # --- Host helpers ---

    def _run(
        self,
        argv: list[str],
        env: Optional[dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        """Run a command, raising HostError on non-zero exit."""
        result = self.host.run(argv, timeout=self._timeout, env=env, cwd=cwd)
        if not result.success:
            raise HostError(
                f"{result.command} exited {result.returncode}: {result.output or 'no output'}"
            )
        return result

    @with_retry(max_attempts=5, min_wait=2, max_wait=30, exceptions=(PackageLocked,))
    def _apt(self, args: list[str]) -> CommandResult:
        result = self.host.run(["apt-get", *args], timeout=self._timeout, env=APT_ENV)
        if not result.success:
            if any(marker in result.stderr.lower() for marker in APT_LOCK_MARKERS):
                raise PackageLocked(f"dpkg lock held: {result.stderr.strip()}")
            raise HostError(
                f"{result.command} exited {result.returncode}: {result.output or 'no output'}"
            )
        return result

    @staticmethod
    def _ok(msg: str, diff: Optional[list[str]] = None, data: Optional[dict] = None):
        return TaskStatus.OK, msg, diff or [], data or {}

    @staticmethod
    def _changed(msg: str, diff: Optional[list[str]] = None, data: Optional[dict] = None):
        return TaskStatus.CHANGED, msg, diff or [], data or {}

    # --- package ---

    def _apply_package(
        self, params: PackageParams, actual: PackageState, check: bool, context
    ):
        if params.state == "absent":
            if not actual.installed:
                return self._ok(f"{params.name} is not installed")
            diff = [f"- {params.name} {actual.version or ''}".rstrip()]
            if not check:
                self._apt(["remove", "-y", "-q", params.name])
                logger.info(f"[{self.host_name}] removed package {params.name}")
            return self._changed(f"removed {params.name}", diff)

        if actual.installed and (params.version is None or actual.version == params.version):
            return self._ok(f"{params.name} {actual.version} already installed")

        spec = f"{params.name}={params.version}" if params.version else params.name
        if actual.installed:
            diff = [f"~ {params.name} {actual.version} -> {params.version}"]
        else:
            diff = [f"+ {spec}"]
        if not check:
            if params.update_cache:
                self._apt(["update", "-q"])
            self._apt(["install", "-y", "-q", "--allow-downgrades", spec])
            logger.info(f"[{self.host_name}] installed package {spec}")
        return self._changed(f"installed {spec}", diff)

    # --- file / template ---

    @staticmethod
    def _mode(value: Optional[str]) -> Optional[int]:
        if value is None:
            return None
        try:
            mode = int(str(value), 8)
        except ValueError:
            raise ValueError(f"Invalid mode: {value}") from None
        if not 0 <= mode <= 0o7777:
            raise ValueError(f"Invalid mode: {value}")
        return mode

    @staticmethod
    def _attribute_diff(
        actual: FileState,
        mode: Optional[int],
        owner: Optional[str],
        group: Optional[str],
    ) -> list[str]:
        diff = []
        if mode is not None and actual.mode != mode:
            current = f"{actual.mode:04o}" if actual.mode is not None else "none"
            diff.append(f"~ mode {current} -> {mode:04o}")
        if owner and actual.owner != owner:
            diff.append(f"~ owner {actual.owner} -> {owner}")
        if group and actual.group != group:
            diff.append(f"~ group {actual.group} -> {group}")
        return diff

    def _apply_file(self, params: FileParams, actual: FileState, check: bool, context):
        path = params.path
        mode = self._mode(params.mode)

        if params.state == "absent":
            if not actual.exists:
                return self._ok(f"{path} is absent")
            if not check:
                self.host.remove(path)
                logger.info(f"[{self.host_name}] removed {path}")
            return self._changed(f"removed {path}", [f"- {path}"])

        if params.state == "directory":
            if actual.exists and not actual.is_dir:
                raise HostError(f"{path} exists and is not a directory")
            if not actual.exists:
                if not check:
                    self.host.make_directory(path, mode, params.owner, params.group)
                return self._changed(f"created directory {path}", [f"+ {path}/"])
            return self._sync_attributes(path, actual, mode, params.owner, params.group, check)

        if actual.is_dir:
            raise HostError(f"{path} is a directory")
        if params.content is None and actual.exists:
            return self._sync_attributes(path, actual, mode, params.owner, params.group, check)
        return self._sync_content(
            path, (params.content or "").encode("utf-8"), actual, mode,
            params.owner, params.group, check,
        )

    def _apply_template(self, params: TemplateParams, actual: FileState, check: bool, context):
        mode = self._mode(params.mode)
        if actual.is_dir:
            raise HostError(f"{params.path} is a directory")
        content = render_string(params.template, context).encode("utf-8")
        return self._sync_content(
            params.path, content, actual, mode, params.owner, params.group, check
        )

    def _sync_attributes(
        self,
        path: str,
        actual: FileState,
        mode: Optional[int],
        owner: Optional[str],
        group: Optional[str],
        check: bool,
    ):
        diff = self._attribute_diff(actual, mode, owner, group)
        if not diff:
            return self._ok(f"{path} is up to date")
        if not check:
            self.host.set_attributes(path, mode, owner, group)
            logger.info(f"[{self.host_name}] updated attributes of {path}")
        return self._changed(f"updated attributes of {path}", diff)

    def _sync_content(
        self,
        path: str,
        content: bytes,
        actual: FileState,
        mode: Optional[int],
        owner: Optional[str],
        group: Optional[str],
        check: bool,
    ):
        digest = hashlib.sha256(content).hexdigest()
        if actual.exists and actual.sha256 == digest:
            return self._sync_attributes(path, actual, mode, owner, group, check)

        if actual.exists:
            diff = [f"~ content {_short(actual.sha256)} -> {_short(digest)}"]
        else:
            diff = [f"+ {path} ({len(content)} bytes)"]
        diff += self._attribute_diff(actual, mode, owner, group) if actual.exists else []

        if not check:
            self.host.write_file(path, content, mode=mode, owner=owner, group=group)
            logger.info(f"[{self.host_name}] wrote {path} ({len(content)} bytes)")
        return self._changed(f"wrote {path}", diff, {"sha256": digest})

    # --- service ---

    def _apply_service(self, params: ServiceParams, actual: ServiceState, check: bool, context):
        unit = params.unit_name
        diff: list[str] = []
        actions: list[list[str]] = []

        if params.state == "absent":
            if actual.active:
                actions.append(["systemctl", "stop", unit])
                diff.append(f"~ {unit}: active -> inactive")
            if actual.enabled:
                actions.append(["systemctl", "disable", unit])
                diff.append(f"~ {unit}: enabled -> disabled")
            return self._service_actions(unit, actions, diff, check)

        exists = actual.exists
        if params.unit is not None:
            content = params.unit.render(params.name).encode("utf-8")
            unit_file = actual.unit_file or FileState(path=params.unit_path, exists=False)
            unit_result = self._sync_content(
                params.unit_path, content, unit_file, 0o644, None, None, check
            )
            if unit_result[0] == TaskStatus.CHANGED:
                diff += unit_result[2]
                if not check:
                    self._run(["systemctl", "daemon-reload"])
                exists = True

        if not exists and not check:
            raise HostError(f"Unit {unit} not found")

        if params.enabled is True and not actual.enabled:
            actions.append(["systemctl", "enable", unit])
            diff.append(f"~ {unit}: disabled -> enabled")
        elif params.enabled is False and actual.enabled:
            actions.append(["systemctl", "disable", unit])
            diff.append(f"~ {unit}: enabled -> disabled")

        if params.state == "started" and not actual.active:
            actions.append(["systemctl", "start", unit])
            diff.append(f"~ {unit}: inactive -> active")
        elif params.state == "stopped" and actual.active:
            actions.append(["systemctl", "stop", unit])
            diff.append(f"~ {unit}: active -> inactive")
        elif params.state == "restarted":
            actions.append(["systemctl", "restart", unit])
            diff.append(f"~ {unit}: restarted")
        elif params.state == "reloaded":
            verb = "reload" if actual.active else "start"
            actions.append(["systemctl", verb, unit])
            diff.append(f"~ {unit}: {verb}ed")

        return self._service_actions(unit, actions, diff, check)

    def _service_actions(self, unit: str, actions: list[list[str]], diff: list[str], check: bool):
        if not diff:
            return self._ok(f"{unit} is in desired state")
        if not check:
            for argv in actions:
                self._run(argv)
                logger.info(f"[{self.host_name}] {' '.join(argv[1:])}")
        return self._changed(f"{unit}: {len(diff)} change(s)", diff)

    # --- command ---

    def _apply_command(self, params: CommandParams, actual: CommandState, check: bool, context):
        if actual.creates_exists:
            return self._ok(f"skipped, {params.creates} exists")
        if params.removes and actual.removes_exists is False:
            return self._ok(f"skipped, {params.removes} does not exist")
        if actual.unless_ok:
            return self._ok("skipped, unless check succeeded")

        command = " ".join(params.argv)
        if check:
            return self._changed(f"would run: {command}", [f"+ {command}"])

        result = self._run(params.argv, cwd=params.chdir)
        logger.info(f"[{self.host_name}] ran {params.argv[0]} (rc={result.returncode})")
        return self._changed(
            f"ran {command}",
            [f"+ {command}"],
            {"rc": result.returncode, "stdout": result.stdout, "stderr": result.stderr},
        )

    # --- firewall ---

    def _apply_firewall(self, params: FirewallParams, actual: FirewallState, check: bool, context):
        reconciler = FirewallReconciler(
            self.host, params.family, params.persist_path, timeout=self._timeout
        )
        outcome = reconciler.reconcile(
            params.rules,
            actual=actual.ruleset if actual is not None else None,
            policies=params.policies,
            check=check,
        )
        summary = f"{len(outcome.applied.rules)} {params.family} rule(s)"
        if outcome.changed:
            return self._changed(f"reconciled {summary}", outcome.diff, outcome.to_dict())
        return self._ok(f"{summary} already in place", data=outcome.to_dict())
