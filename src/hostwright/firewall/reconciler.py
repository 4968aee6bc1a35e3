"""Firewall Rule Reconciler.

Builds the full replacement ruleset from the desired rules, checks the
ACCEPT-before-REJECT invariant, loads it with a single iptables-restore
call and persists it so a reboot restores the same state.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from ..errors import (
    CommandNotFound,
    CommandTimeout,
    HostError,
    ProbeError,
    RuleApplyError,
    RuleOrderError,
)
from ..hosts.base import Host
from ..utils.logging_config import timed
from .rules import (
    BUILTIN_CHAINS,
    FirewallRule,
    IMPLICIT_RULES,
    RuleParseError,
    Ruleset,
    number_rules,
    parse_ruleset,
)

logger = logging.getLogger(__name__)

FAMILY_TOOLS = {
    "ipv4": ("iptables-save", "iptables-restore"),
    "ipv6": ("ip6tables-save", "ip6tables-restore"),
}

DEFAULT_PERSIST_PATHS = {
    "ipv4": "/etc/iptables/rules.v4",
    "ipv6": "/etc/iptables/rules.v6",
}

VALID_POLICIES = ("ACCEPT", "DROP")

PERSIST_HEADER = "Managed by hostwright - changes will be overwritten"


@dataclass
class ReconcileResult:
    """Outcome of one reconcile call."""
    applied: Ruleset
    previous: Ruleset
    changed: bool = False
    persisted: bool = False
    check_mode: bool = False
    diff: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "changed": self.changed,
            "persisted": self.persisted,
            "check_mode": self.check_mode,
            "diff": self.diff,
            "rules": self.applied.describe(),
        }


def validate_rule_order(rules: list[FirewallRule]) -> None:
    """Reject rule lists where a REJECT/DROP shadows a later overlapping ACCEPT.

    Raises:
        RuleOrderError: Naming the first offending pair
    """
    for i, blocker in enumerate(rules):
        if not blocker.is_blocking:
            continue
        for later in rules[i + 1:]:
            if later.action == "ACCEPT" and blocker.overlaps(later):
                raise RuleOrderError(
                    f"Rule '{blocker.describe()}' (#{i + 1}) precedes overlapping "
                    f"'{later.describe()}' in chain {blocker.chain}; "
                    f"ACCEPT rules must come first"
                )


def build_ruleset(
    desired: list[FirewallRule],
    policies: Optional[dict[str, str]] = None,
    family: str = "ipv4",
) -> Ruleset:
    """Compute the complete replacement ruleset for the desired rules.

    Loopback and established/related accepts come first, then desired
    ACCEPT rules in declared order, then desired REJECT/DROP rules.

    Raises:
        RuleOrderError: If the declared order violates the invariant
        ValueError: If a source address does not belong to the family
    """
    desired = [rule.with_defaults(family) for rule in desired if rule not in IMPLICIT_RULES]
    validate_rule_order(desired)

    chains = {chain: "ACCEPT" for chain in BUILTIN_CHAINS["filter"]}
    for chain, policy in (policies or {}).items():
        policy = policy.upper()
        if chain not in chains:
            raise RuleOrderError(f"Cannot set policy on non-builtin chain {chain}")
        if policy not in VALID_POLICIES:
            raise RuleOrderError(f"Invalid policy {policy} for chain {chain}")
        chains[chain] = policy

    accepts = [rule for rule in desired if not rule.is_blocking]
    blocks = [rule for rule in desired if rule.is_blocking]

    ordered = number_rules(list(IMPLICIT_RULES) + accepts + blocks)
    ruleset = Ruleset(table="filter", chains=chains, rules=ordered)

    for chain in chains:
        validate_rule_order(ruleset.chain_rules(chain))

    return ruleset


def diff_rulesets(actual: Ruleset, desired: Ruleset) -> list[str]:
    """Human-readable differences, in ``+``/``-`` form."""
    lines = []
    for chain, policy in desired.chains.items():
        current = actual.chains.get(chain)
        if current != policy:
            lines.append(f"~ policy {chain}: {current or 'none'} -> {policy}")
    for chain in actual.chains:
        if chain not in desired.chains:
            lines.append(f"- chain {chain}")
    actual_lines = [r.render() for r in actual.rules]
    desired_lines = [r.render() for r in desired.rules]
    if actual_lines != desired_lines:
        removed = [f"- {line}" for line in actual_lines if line not in desired_lines]
        added = [f"+ {line}" for line in desired_lines if line not in actual_lines]
        lines.extend(removed + added)
        if not removed and not added:
            lines.append("~ rule order")
    return lines


class FirewallReconciler:
    """Reconcile the live packet filter of one host against desired rules."""

    def __init__(
        self,
        host: Host,
        family: str = "ipv4",
        persist_path: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        if family not in FAMILY_TOOLS:
            raise ValueError(f"Unknown address family: {family}")
        self.host = host
        self.family = family
        self.save_tool, self.restore_tool = FAMILY_TOOLS[family]
        self.persist_path = persist_path or DEFAULT_PERSIST_PATHS[family]
        self.timeout = timeout

    @property
    def host_name(self) -> str:
        return self.host.host_name

    @timed("firewall_probe")
    def probe(self) -> Ruleset:
        """Dump and parse the live filter table.

        Raises:
            ProbeError: If the tool is missing, fails, or prints garbage
        """
        resource = f"firewall:{self.family}"
        try:
            result = self.host.run([self.save_tool, "-t", "filter"], timeout=self.timeout)
        except CommandNotFound as e:
            raise ProbeError(resource, f"{self.save_tool} not installed") from e
        except (CommandTimeout, HostError) as e:
            raise ProbeError(resource, str(e)) from e

        if not result.success:
            raise ProbeError(resource, result.output or f"{self.save_tool} exited {result.returncode}")

        try:
            return parse_ruleset(result.stdout)
        except RuleParseError as e:
            raise ProbeError(resource, f"unparseable ruleset: {e}") from e

    def reconcile(
        self,
        desired: list[FirewallRule],
        actual: Optional[Ruleset] = None,
        policies: Optional[dict[str, str]] = None,
        check: bool = False,
    ) -> ReconcileResult:
        """Bring the live ruleset and its persisted copy in line with desired.

        Args:
            desired: Desired rules in declared order
            actual: Live ruleset if already probed
            policies: Built-in chain policies (default ACCEPT)
            check: Compute the result without touching the host

        Raises:
            RuleOrderError: Before any kernel call, for misordered input
            RuleApplyError: If the load fails (previous ruleset is restored)
        """
        planned = build_ruleset(desired, policies, self.family)
        if actual is None:
            actual = self.probe()

        diff = diff_rulesets(actual, planned)
        needs_load = actual != planned
        result = ReconcileResult(
            applied=planned,
            previous=actual,
            changed=needs_load,
            check_mode=check,
            diff=diff,
        )

        if check:
            result.changed = needs_load or self._persisted_differs(planned)
            return result

        if needs_load:
            self.apply(planned, actual)
        else:
            logger.info(f"[{self.host_name}] live {self.family} ruleset already matches")

        result.persisted = self.persist(planned)
        result.changed = needs_load or result.persisted
        return result

    @timed("firewall_apply")
    def apply(self, ruleset: Ruleset, previous: Ruleset) -> None:
        """Load ruleset in a single iptables-restore transaction.

        Raises:
            RuleApplyError: If the ruleset is rejected or the load fails
        """
        text = ruleset.render()

        test = self._restore(text, "--test")
        if not test.success:
            raise RuleApplyError(
                f"{self.restore_tool} rejected ruleset: {test.output or 'no output'}"
            )

        load = self._restore(text)
        if load.success:
            logger.info(f"[{self.host_name}] loaded {len(ruleset.rules)} {self.family} rules")
            return

        logger.error(f"[{self.host_name}] ruleset load failed: {load.output}")
        self._rollback(previous)
        raise RuleApplyError(f"{self.restore_tool} failed: {load.output or 'no output'}")

    def persist(self, ruleset: Ruleset) -> bool:
        """Write the ruleset to the rules file if it differs; True if written."""
        content = ruleset.render(header=PERSIST_HEADER).encode()
        try:
            existing = self.host.read_file(self.persist_path)
            if existing == content:
                return False
            parent = self.persist_path.rsplit("/", 1)[0] or "/"
            if self.host.stat(parent) is None:
                self.host.make_directory(parent, mode=0o755)
            self.host.write_file(self.persist_path, content, mode=0o640)
        except HostError as e:
            raise RuleApplyError(f"Ruleset loaded but not persisted to {self.persist_path}: {e}") from e
        logger.info(f"[{self.host_name}] persisted ruleset to {self.persist_path}")
        return True

    def _persisted_differs(self, ruleset: Ruleset) -> bool:
        try:
            existing = self.host.read_file(self.persist_path)
        except HostError:
            return True
        return existing != ruleset.render(header=PERSIST_HEADER).encode()

    def _restore(self, text: str, *flags: str):
        argv = [self.restore_tool, *flags]
        try:
            return self.host.run(argv, input=text, timeout=self.timeout)
        except CommandNotFound as e:
            raise RuleApplyError(f"{self.restore_tool} not installed") from e
        except (CommandTimeout, HostError) as e:
            raise RuleApplyError(f"{self.restore_tool} failed: {e}") from e

    def _rollback(self, previous: Ruleset) -> None:
        """Reload the previous ruleset if the kernel no longer holds it."""
        try:
            current = self.probe()
        except ProbeError as e:
            logger.warning(f"[{self.host_name}] cannot verify ruleset after failure: {e}")
            current = None

        if current == previous:
            logger.info(f"[{self.host_name}] previous ruleset still active")
            return

        logger.warning(f"[{self.host_name}] restoring previous ruleset")
        try:
            restored = self._restore(previous.render())
        except RuleApplyError as e:
            logger.error(f"[{self.host_name}] rollback failed: {e}")
            return
        if not restored.success:
            logger.error(f"[{self.host_name}] rollback failed: {restored.output}")
