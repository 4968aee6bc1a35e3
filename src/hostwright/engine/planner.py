"""Task Graph Builder.

Turns parsed tasks and handlers into an ExecutionPlan, checking the
cross-task constraints the parser cannot see on its own.
"""
import logging
from typing import Optional

from ..firewall.reconciler import validate_rule_order
from .schema import ExecutionPlan, FirewallParams, Handler, Task
from .parser import ParseError
from .templating import is_templated

logger = logging.getLogger(__name__)


class PlanBuilder:
    """Build and validate an execution plan."""

    def build(self, tasks: list[Task], handlers: Optional[list[Handler]] = None) -> ExecutionPlan:
        """
        Build an execution plan in declaration order.

        Raises:
            PlanError: Duplicate or unknown handler, or a handler notify cycle
            RuleOrderError: A firewall task's rules are misordered
        """
        handler_map: dict[str, Handler] = {}
        for handler in handlers or []:
            if handler.name in handler_map:
                raise ParseError(f"Duplicate handler name: {handler.name}")
            handler_map[handler.name] = handler

        for task in tasks:
            self._check_notify(f"Task '{task.name}'", task.notify, handler_map)
            self._check_firewall(task)
        for handler in handler_map.values():
            self._check_notify(f"Handler '{handler.name}'", handler.notify, handler_map)
            self._check_firewall(handler)

        self._check_cycles(handler_map)

        plan = ExecutionPlan(tasks=list(tasks), handlers=handler_map)
        logger.info(
            f"Built plan: {len(plan.tasks)} task(s), {len(plan.handlers)} handler(s)"
            + (", secrets required" if plan.requires_secrets else "")
        )
        return plan

    @staticmethod
    def _check_notify(owner: str, notify: list[str], handlers: dict[str, Handler]) -> None:
        for name in notify:
            if name not in handlers:
                raise ParseError(f"{owner} notifies unknown handler '{name}'")

    @staticmethod
    def _check_firewall(item) -> None:
        """Order-check static rule lists; templated ones are checked at apply time."""
        params = item.params
        if not isinstance(params, FirewallParams):
            return
        if any(is_templated(v) for rule in params.rules for v in vars(rule).values()):
            return
        validate_rule_order(params.rules)

    @staticmethod
    def _check_cycles(handlers: dict[str, Handler]) -> None:
        """Depth-first search over handler notify edges."""
        visiting: list[str] = []
        done: set[str] = set()

        def visit(name: str) -> None:
            if name in done:
                return
            if name in visiting:
                cycle = visiting[visiting.index(name):] + [name]
                raise ParseError(f"Handler notify cycle: {' -> '.join(cycle)}")
            visiting.append(name)
            for target in handlers[name].notify:
                visit(target)
            visiting.pop()
            done.add(name)

        for name in handlers:
            visit(name)
