"""Main Provision Engine - orchestrates one run against one host.

Provides a single entry point for:
1. Resolving secrets (once, before any task)
2. Evaluating guards and rendering parameters per task
3. Probing actual state
4. Applying the task idempotently
5. Running notified handlers
"""
import logging
from pathlib import Path
from typing import Any, Optional

from ..errors import HostError, HostwrightError, ProbeError, SecretError, TaskError
from ..hosts.base import Host
from ..utils.audit_log import AuditTrail
from ..utils.logging_config import global_stats, timed_section
from ..vault.resolver import SecretResolver, Secrets
from .executor import TaskExecutor
from .prober import StateProber
from .schema import (
    ExecutionPlan,
    RunOptions,
    RunReport,
    Task,
    TaskResult,
    TaskStatus,
)
from .templating import SECRETS_VAR, TemplateRenderError, evaluate_condition, render_params

logger = logging.getLogger(__name__)


def _register_value(result: TaskResult) -> dict[str, Any]:
    """Shape of a registered result as seen by later ``when`` guards and templates."""
    value = {
        "status": result.status.value,
        "changed": result.changed,
        "failed": result.failed,
        "skipped": result.status == TaskStatus.SKIPPED,
        "msg": result.msg,
    }
    for key in ("rc", "stdout", "stderr"):
        if key in result.data:
            value[key] = result.data[key]
    return value


class ProvisionEngine:
    """
    Provision Engine for applying an execution plan to one host.

    Usage:
        engine = ProvisionEngine(host)
        report = engine.run(plan, variables, secrets_file, passphrase)
    """

    def __init__(
        self,
        host: Host,
        resolver: Optional[SecretResolver] = None,
        audit: bool = True,
    ):
        """
        Initialize the Provision Engine.

        Args:
            host: Host to provision (connected for the duration of run)
            resolver: Secret resolver (default: openssl on PATH)
            audit: Write change records to the audit log
        """
        self.host = host
        self.resolver = resolver or SecretResolver()
        self.audit = audit
        self._cancel_requested = False

    @property
    def host_name(self) -> str:
        return self.host.host_name

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def request_cancel(self) -> None:
        """Stop before the next task or handler. Safe to call from a signal handler."""
        self._cancel_requested = True

    def run(
        self,
        plan: ExecutionPlan,
        variables: Optional[dict[str, Any]] = None,
        secrets_file: Optional[str | Path] = None,
        passphrase: Optional[str] = None,
        options: Optional[RunOptions] = None,
    ) -> RunReport:
        """
        Apply an execution plan.

        Args:
            plan: Validated execution plan
            variables: Playbook variables for templates and guards
            secrets_file: Encrypted secrets store
            passphrase: Passphrase for the secrets store
            options: Check mode, handler and timeout options

        Returns:
            RunReport with per-task results; ``report.error`` holds the
            fatal error, if any
        """
        options = options or RunOptions()
        report = RunReport(host=self.host_name, check_mode=options.check)
        self._cancel_requested = False

        try:
            secrets = self._resolve_secrets(plan, secrets_file, passphrase)
        except SecretError as e:
            logger.error(f"Aborting before any task: {e}")
            report.error = e
            return report

        context: dict[str, Any] = dict(variables or {})
        context[SECRETS_VAR] = secrets

        trail = AuditTrail(self.host_name, redact=secrets.redact) if self.audit else None
        mode = "CHECK MODE: " if options.check else ""
        logger.info(f"{mode}Running {len(plan.tasks)} task(s) on {self.host_name}")

        try:
            with secrets.redacting(), self.host:
                executor = TaskExecutor(self.host, options.default_timeout, secrets.redact)
                prober = StateProber(self.host, options.default_timeout)
                notified = self._run_tasks(plan, report, context, prober, executor, trail, options)

                if report.cancelled:
                    logger.warning("Run cancelled; handlers not run")
                elif report.error is not None and not options.force_handlers:
                    if notified:
                        logger.warning(f"Skipping {len(notified)} notified handler(s) after failure")
                else:
                    self._run_handlers(plan, notified, report, context, prober, executor, trail, options)
        except (HostError, OSError) as e:
            # Connecting or disconnecting failed outside any task
            logger.error(f"Host {self.host_name}: {secrets.redact(str(e))}")
            if report.error is None:
                report.error = HostError(secrets.redact(str(e)))
        finally:
            secrets.wipe()
            context.clear()

        logger.info(report.summary())
        logger.debug(global_stats.summary())
        return report

    def _resolve_secrets(
        self,
        plan: ExecutionPlan,
        secrets_file: Optional[str | Path],
        passphrase: Optional[str],
    ) -> Secrets:
        if not plan.requires_secrets:
            return Secrets()
        if not secrets_file:
            raise SecretError("Tasks reference secrets but no secrets_file is configured")
        return self.resolver.resolve(secrets_file, passphrase or "")

    def _run_tasks(
        self,
        plan: ExecutionPlan,
        report: RunReport,
        context: dict[str, Any],
        prober: StateProber,
        executor: TaskExecutor,
        trail: Optional[AuditTrail],
        options: RunOptions,
    ) -> list[str]:
        """Run tasks in order; returns notified handler names in first-notified order."""
        notified: list[str] = []
        for task in plan.tasks:
            if self._cancel_requested:
                report.cancelled = True
                logger.warning(f"Cancelled before task '{task.name}'")
                break

            result, fatal = self._run_task(task, context, prober, executor, trail, options)
            report.results.append(result)
            if fatal is not None:
                report.error = fatal
                break
            if result.changed:
                for name in task.notify:
                    if name not in notified:
                        notified.append(name)
        return notified

    def _run_handlers(
        self,
        plan: ExecutionPlan,
        notified: list[str],
        report: RunReport,
        context: dict[str, Any],
        prober: StateProber,
        executor: TaskExecutor,
        trail: Optional[AuditTrail],
        options: RunOptions,
    ) -> None:
        """Run each notified handler once; handlers may notify further handlers."""
        queue = list(notified)
        index = 0
        while index < len(queue):
            handler = plan.handlers[queue[index]]
            index += 1
            if self._cancel_requested:
                report.cancelled = True
                logger.warning(f"Cancelled before handler '{handler.name}'")
                return

            result, fatal = self._run_task(
                handler.as_task(), context, prober, executor, trail, options
            )
            report.handler_results.append(result)
            if fatal is not None:
                if report.error is None:
                    report.error = fatal
                return
            if result.changed:
                queue.extend(name for name in handler.notify if name not in queue)

    def _run_task(
        self,
        task: Task,
        context: dict[str, Any],
        prober: StateProber,
        executor: TaskExecutor,
        trail: Optional[AuditTrail],
        options: RunOptions,
    ) -> tuple[TaskResult, Optional[HostwrightError]]:
        """
        Run one task through guard, render, probe and apply.

        Returns:
            The task result and the fatal error that should stop the run
        """
        redact = executor.redact
        fatal: Optional[HostwrightError] = None

        with timed_section("task", host=self.host_name, task=redact(task.name)):
            try:
                result = self._apply(task, context, prober, executor, options)
            except ProbeError as e:
                if task.best_effort:
                    logger.warning(f"[{self.host_name}] {task.name}: {redact(str(e))} (best effort, skipped)")
                    result = TaskResult(
                        task=task.name,
                        module=task.module.value,
                        status=TaskStatus.SKIPPED,
                        msg=redact(f"probe failed: {e.reason}"),
                    )
                else:
                    fatal = ProbeError(redact(e.resource), redact(e.reason))
                    result = self._failed(task, fatal, redact)
            except TaskError as e:
                result = self._failed(task, e, redact)
                if task.ignore_errors:
                    result.ignored = True
                else:
                    fatal = e

        self._log_result(result, options, redact)
        if trail is not None and result.status in (TaskStatus.CHANGED, TaskStatus.FAILED):
            trail.log_change(
                task=task.name,
                module=task.module.value,
                status=result.status.value,
                parameters={"diff": result.diff},
                message=result.msg,
                error=result.error,
                check_mode=options.check,
            )
        if task.register:
            context[task.register] = _register_value(result)
        return result, fatal

    def _apply(
        self,
        task: Task,
        context: dict[str, Any],
        prober: StateProber,
        executor: TaskExecutor,
        options: RunOptions,
    ) -> TaskResult:
        redact = executor.redact
        try:
            if task.when is not None and not evaluate_condition(task.when, context):
                return TaskResult(
                    task=task.name,
                    module=task.module.value,
                    status=TaskStatus.SKIPPED,
                    msg=f"condition false: {task.when}",
                )
            params = render_params(task.params, context)
        except TemplateRenderError as e:
            raise TaskError(task.name, redact(str(e)), original=e) from e

        rendered = Task(
            name=task.name,
            module=task.module,
            params=params,
            timeout=task.timeout,
        )
        actual = prober.probe(params, task.timeout or options.default_timeout)
        return executor.execute(rendered, actual, check=options.check, context=context)

    @staticmethod
    def _failed(task: Task, error: HostwrightError, redact) -> TaskResult:
        return TaskResult(
            task=task.name,
            module=task.module.value,
            status=TaskStatus.FAILED,
            msg=redact(str(error)),
            error=redact(str(error)),
        )

    def _log_result(self, result: TaskResult, options: RunOptions, redact) -> None:
        label = result.status.value.upper()
        if result.ignored:
            label += " (ignored)"
        line = f"[{self.host_name}] {label}: {redact(result.task)}"
        if result.msg:
            line += f" - {result.msg}"
        if result.failed and not result.ignored:
            logger.error(line)
        elif result.failed:
            logger.warning(line)
        else:
            logger.info(line)
        for diff_line in result.diff:
            logger.debug(f"    {diff_line}")
