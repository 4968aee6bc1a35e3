"""Provision Engine - declarative single-host configuration.

The Provision Engine applies an ordered list of tasks to one host:
- Declare desired state, not individual commands
- Probe actual state and change only what differs
- Deferred, deduplicated handlers
- Check mode that reports without mutating

Usage:
    from hostwright.engine import PlanBuilder, ProvisionEngine, TaskParser

    parser = TaskParser()
    plan = PlanBuilder().build(
        parser.parse_tasks([{"name": "Install git", "package": {"name": "git"}}]),
        parser.parse_handlers([]),
    )
    report = ProvisionEngine(LocalHost()).run(plan)
"""

from .engine import ProvisionEngine
from .schema import (
    ModuleType,
    TaskStatus,
    PackageParams,
    FileParams,
    TemplateParams,
    UnitDescriptor,
    ServiceParams,
    CommandParams,
    FirewallParams,
    Task,
    Handler,
    ExecutionPlan,
    PackageState,
    FileState,
    ServiceState,
    CommandState,
    FirewallState,
    TaskResult,
    RunOptions,
    RunReport,
)
from .parser import TaskParser, ParseError
from .planner import PlanBuilder
from .prober import StateProber
from .executor import TaskExecutor
from .templating import TemplateRenderError

__all__ = [
    # Main engine
    "ProvisionEngine",
    # Schema classes
    "ModuleType",
    "TaskStatus",
    "PackageParams",
    "FileParams",
    "TemplateParams",
    "UnitDescriptor",
    "ServiceParams",
    "CommandParams",
    "FirewallParams",
    "Task",
    "Handler",
    "ExecutionPlan",
    "PackageState",
    "FileState",
    "ServiceState",
    "CommandState",
    "FirewallState",
    "TaskResult",
    "RunOptions",
    "RunReport",
    # Parser
    "TaskParser",
    "ParseError",
    # Components (for advanced use)
    "PlanBuilder",
    "StateProber",
    "TaskExecutor",
    "TemplateRenderError",
]
