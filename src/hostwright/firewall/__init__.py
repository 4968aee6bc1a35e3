"""Firewall rule model, iptables-save codec and reconciler."""
from .rules import (
    FirewallRule,
    Ruleset,
    RuleParseError,
    LOOPBACK_RULE,
    ESTABLISHED_RULE,
    parse_rule,
    parse_ruleset,
)
from .reconciler import (
    FirewallReconciler,
    ReconcileResult,
    build_ruleset,
    diff_rulesets,
    validate_rule_order,
)

__all__ = [
    "FirewallRule",
    "Ruleset",
    "RuleParseError",
    "LOOPBACK_RULE",
    "ESTABLISHED_RULE",
    "parse_rule",
    "parse_ruleset",
    "FirewallReconciler",
    "ReconcileResult",
    "build_ruleset",
    "diff_rulesets",
    "validate_rule_order",
]
