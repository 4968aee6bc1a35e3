"""Error taxonomy for hostwright.

Every error carries the process exit code the CLI reports for it, so a
caller can tell probe, plan, task, rule and secret failures apart.
"""
from enum import Enum
from typing import Optional


class HostwrightError(Exception):
    """Base class for all hostwright errors."""
    exit_code = 1


class ProbeError(HostwrightError):
    """Current host state could not be inspected."""
    exit_code = 3

    def __init__(self, resource: str, reason: str):
        self.resource = resource
        self.reason = reason
        super().__init__(f"Cannot probe {resource}: {reason}")


class PlanError(HostwrightError):
    """Declared tasks or handlers do not form a valid execution plan."""
    exit_code = 4


class TaskErrorKind(str, Enum):
    """Why a task failed."""
    EXEC_FAILURE = "exec_failure"
    TIMEOUT = "timeout"


class TaskError(HostwrightError):
    """A task failed while being applied."""
    exit_code = 5

    def __init__(
        self,
        task_name: str,
        cause: str,
        kind: TaskErrorKind = TaskErrorKind.EXEC_FAILURE,
        original: Optional[BaseException] = None,
    ):
        self.task_name = task_name
        self.cause = cause
        self.kind = kind
        self.original = original
        super().__init__(f"Task '{task_name}' failed ({kind.value}): {cause}")

    @property
    def effective_exit_code(self) -> int:
        """Exit code of the underlying error when it is more specific than a task failure."""
        if isinstance(self.original, HostwrightError) and \
                self.original.exit_code != HostwrightError.exit_code:
            return self.original.exit_code
        return self.exit_code


class RuleOrderError(HostwrightError):
    """A REJECT/DROP rule would shadow a later overlapping ACCEPT rule."""
    exit_code = 6


class RuleApplyError(HostwrightError):
    """A firewall ruleset could not be loaded into the kernel."""
    exit_code = 7


class SecretError(HostwrightError):
    """The secrets store could not be decrypted or parsed."""
    exit_code = 8


class HostError(HostwrightError):
    """A host-level operation (command, file transfer) failed."""


class CommandNotFound(HostError):
    """The requested executable does not exist on the host."""


class CommandTimeout(HostError):
    """A host command exceeded its timeout."""

    def __init__(self, argv: list[str], timeout: float):
        self.argv = argv
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout:g}s: {argv[0]}")
