"""Firewall rule model and the iptables-save text format.

A Ruleset renders to exactly the text ``iptables-save`` prints for the same
rules (minus counters and comments), so probe -> reconcile -> apply -> probe
round-trips without spurious differences.
"""
import ipaddress
import re
import shlex
from dataclasses import dataclass, field, replace
from typing import Any, Optional

BUILTIN_CHAINS = {
    "filter": ("INPUT", "FORWARD", "OUTPUT"),
}

TERMINAL_ACTIONS = ("ACCEPT", "REJECT", "DROP")
BLOCKING_ACTIONS = ("REJECT", "DROP")

# Order in which iptables prints conntrack states
CTSTATE_ORDER = ("INVALID", "NEW", "RELATED", "ESTABLISHED", "UNTRACKED", "SNAT", "DNAT")

DEFAULT_REJECT_WITH = {
    "ipv4": "icmp-port-unreachable",
    "ipv6": "icmp6-port-unreachable",
}

FAMILY_VERSIONS = {"ipv4": 4, "ipv6": 6}

_SAFE_TOKEN = re.compile(r"^[A-Za-z0-9_@%+=:,./-]+$")


class RuleParseError(ValueError):
    """A line of iptables-save output could not be understood."""


@dataclass(frozen=True)
class FirewallRule:
    """A single rule in a chain.

    ``position`` is the rule's index within its chain and does not take part
    in equality, so the same rule compares equal wherever it sits.
    """
    chain: str = "INPUT"
    action: str = "ACCEPT"
    protocol: Optional[str] = None
    dport: Optional[str] = None
    source: Optional[str] = None
    in_interface: Optional[str] = None
    ctstate: tuple[str, ...] = ()
    comment: Optional[str] = None
    matches: tuple[str, ...] = ()
    target_options: tuple[str, ...] = ()
    position: int = field(default=0, compare=False)

    @property
    def is_blocking(self) -> bool:
        return self.action in BLOCKING_ACTIONS

    def overlaps(self, other: "FirewallRule") -> bool:
        """True if some packet could match both rules.

        Unset criteria match everything; unrecognised extra matches are
        ignored, which errs on the side of reporting an overlap.
        """
        if self.chain != other.chain:
            return False
        for mine, theirs in (
            (self.protocol, other.protocol),
            (self.dport, other.dport),
            (self.in_interface, other.in_interface),
        ):
            if mine is not None and theirs is not None and mine != theirs:
                return False
        if self.source and other.source and not _networks_overlap(self.source, other.source):
            return False
        if self.ctstate and other.ctstate and not set(self.ctstate) & set(other.ctstate):
            return False
        return True

    def with_defaults(self, family: str = "ipv4") -> "FirewallRule":
        """Rewrite the rule the way iptables-save will print it back.

        Sources get an explicit prefix with host bits cleared, and REJECT
        gets its default ``--reject-with``.

        Raises:
            ValueError: If the source is not an address of this family
        """
        rule = self
        if rule.source:
            source = normalize_source(rule.source, family)
            if source != rule.source:
                rule = replace(rule, source=source)
        if rule.action == "REJECT" and not rule.target_options:
            rule = replace(
                rule, target_options=("--reject-with", DEFAULT_REJECT_WITH[family])
            )
        return rule

    def render(self) -> str:
        """Render as an iptables-save ``-A`` line."""
        parts = ["-A", self.chain]
        if self.source:
            parts += ["-s", self.source]
        if self.in_interface:
            parts += ["-i", self.in_interface]
        if self.protocol:
            parts += ["-p", self.protocol]
        parts += list(self.matches)
        if self.dport:
            parts += ["-m", self.protocol or "tcp", "--dport", self.dport]
        if self.ctstate:
            parts += ["-m", "conntrack", "--ctstate", ",".join(self.ctstate)]
        if self.comment:
            parts += ["-m", "comment", "--comment", self.comment]
        parts += ["-j", self.action]
        parts += list(self.target_options)
        return " ".join(_quote(p) for p in parts)

    def describe(self) -> str:
        """Short human-readable form, e.g. ``ACCEPT tcp/22``."""
        what = []
        if self.in_interface:
            what.append(f"in={self.in_interface}")
        if self.ctstate:
            what.append(",".join(self.ctstate))
        if self.protocol or self.dport:
            what.append(f"{self.protocol or 'all'}/{self.dport or '*'}" if self.dport else self.protocol)
        if self.source:
            what.append(f"from {self.source}")
        return f"{self.action} {' '.join(what) or 'all'}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FirewallRule":
        """Build a desired rule from a playbook mapping.

        Accepted keys: chain, action (or jump), protocol (or proto), port
        (or dport), source, interface (or in_interface), ctstate (or state),
        comment.
        """
        known = {
            "chain", "action", "jump", "protocol", "proto", "port", "dport",
            "source", "interface", "in_interface", "ctstate", "state", "comment",
        }
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown rule field(s): {', '.join(sorted(unknown))}")

        action = str(data.get("action", data.get("jump", "ACCEPT"))).upper()
        if action not in TERMINAL_ACTIONS:
            raise ValueError(
                f"Invalid rule action '{action}'. Must be one of {', '.join(TERMINAL_ACTIONS)}"
            )

        protocol = data.get("protocol", data.get("proto"))
        if protocol is not None:
            protocol = str(protocol).lower()
            if protocol == "all":
                protocol = None

        port = data.get("port", data.get("dport"))
        if port is not None:
            port = str(port)
            if protocol not in ("tcp", "udp"):
                raise ValueError(f"Port {port} requires protocol tcp or udp")
            if not re.fullmatch(r"\d{1,5}(:\d{1,5})?", port):
                raise ValueError(f"Invalid port: {port}")

        states = data.get("ctstate", data.get("state")) or ()
        if isinstance(states, str):
            states = states.split(",")

        source = data.get("source")
        if source is not None:
            source = str(source)
            if "{{" not in source and "{%" not in source:
                source = normalize_source(source)

        return cls(
            chain=str(data.get("chain", "INPUT")),
            action=action,
            protocol=protocol,
            dport=port,
            source=source,
            in_interface=data.get("interface", data.get("in_interface")),
            ctstate=normalize_ctstate(states),
            comment=data.get("comment"),
        )


def normalize_source(source: str, family: Optional[str] = None) -> str:
    """Canonical network form of a source address, e.g. ``10.0.0.1/8`` -> ``10.0.0.0/8``.

    A bare address gets the full-length prefix (``/32`` or ``/128``).
    """
    try:
        network = ipaddress.ip_network(source.strip(), strict=False)
    except ValueError:
        raise ValueError(f"Invalid source address: {source}") from None
    if family is not None and network.version != FAMILY_VERSIONS[family]:
        raise ValueError(f"Source {source} is not an {family} address")
    return network.with_prefixlen


def _networks_overlap(a: str, b: str) -> bool:
    try:
        first = ipaddress.ip_network(a, strict=False)
        second = ipaddress.ip_network(b, strict=False)
    except ValueError:
        return a == b
    return first.version == second.version and first.overlaps(second)


def normalize_ctstate(states) -> tuple[str, ...]:
    """Upper-case and sort states the way iptables prints them."""
    wanted = {s.strip().upper() for s in states if s and s.strip()}
    unknown = wanted - set(CTSTATE_ORDER)
    if unknown:
        raise ValueError(f"Unknown conntrack state(s): {', '.join(sorted(unknown))}")
    return tuple(s for s in CTSTATE_ORDER if s in wanted)


LOOPBACK_RULE = FirewallRule(chain="INPUT", in_interface="lo", action="ACCEPT")
ESTABLISHED_RULE = FirewallRule(
    chain="INPUT", ctstate=("RELATED", "ESTABLISHED"), action="ACCEPT"
)
IMPLICIT_RULES = (LOOPBACK_RULE, ESTABLISHED_RULE)


@dataclass
class Ruleset:
    """One table's chains (with policies) and ordered rules."""
    table: str = "filter"
    chains: dict[str, str] = field(default_factory=dict)
    rules: list[FirewallRule] = field(default_factory=list)

    def __post_init__(self):
        for chain in BUILTIN_CHAINS.get(self.table, ()):
            self.chains.setdefault(chain, "ACCEPT")

    def chain_rules(self, chain: str) -> list[FirewallRule]:
        return [r for r in self.rules if r.chain == chain]

    def render(self, header: Optional[str] = None) -> str:
        """Render in iptables-save / iptables-restore format."""
        lines = []
        if header:
            lines.append(f"# {header}")
        lines.append(f"*{self.table}")
        builtin = BUILTIN_CHAINS.get(self.table, ())
        for chain in builtin:
            lines.append(f":{chain} {self.chains[chain]} [0:0]")
        for chain, policy in self.chains.items():
            if chain not in builtin:
                lines.append(f":{chain} {policy} [0:0]")
        lines.extend(rule.render() for rule in self.rules)
        lines.append("COMMIT")
        return "\n".join(lines) + "\n"

    def describe(self) -> list[str]:
        return [f"{r.chain}[{r.position}] {r.describe()}" for r in self.rules]


def _quote(token: str) -> str:
    if _SAFE_TOKEN.match(token):
        return token
    return '"' + token.replace("\\", "\\\\").replace('"', '\\"') + '"'


def number_rules(rules: list[FirewallRule]) -> list[FirewallRule]:
    """Assign per-chain positions in list order."""
    counters: dict[str, int] = {}
    numbered = []
    for rule in rules:
        index = counters.get(rule.chain, 0)
        counters[rule.chain] = index + 1
        numbered.append(replace(rule, position=index))
    return numbered


def parse_rule(line: str) -> FirewallRule:
    """Parse one ``-A CHAIN ...`` line from iptables-save output."""
    try:
        tokens = shlex.split(line)
    except ValueError as e:
        raise RuleParseError(f"Unbalanced quoting in rule: {line}") from e

    if len(tokens) < 2 or tokens[0] != "-A":
        raise RuleParseError(f"Not an append rule: {line}")

    values: dict[str, Any] = {"chain": tokens[1]}
    extra: list[str] = []
    target_options: list[str] = []
    i = 2
    while i < len(tokens):
        token = tokens[i]
        arg = tokens[i + 1] if i + 1 < len(tokens) else None
        if token in ("-j", "-s", "-i", "-p") and arg is None:
            raise RuleParseError(f"Option {token} without value: {line}")

        if token == "-j":
            values["action"] = arg
            target_options = tokens[i + 2:]
            break
        if token == "-s":
            values["source"] = arg
            i += 2
        elif token == "-i":
            values["in_interface"] = arg
            i += 2
        elif token == "-p":
            values["protocol"] = arg
            i += 2
        elif token == "-m" and arg in ("tcp", "udp") and tokens[i + 2:i + 3] == ["--dport"]:
            if len(tokens) < i + 4:
                raise RuleParseError(f"--dport without value: {line}")
            values["dport"] = tokens[i + 3]
            i += 4
        elif token == "-m" and arg in ("conntrack", "state") and \
                tokens[i + 2:i + 3] in (["--ctstate"], ["--state"]):
            if len(tokens) < i + 4:
                raise RuleParseError(f"state match without value: {line}")
            values["ctstate"] = normalize_ctstate(tokens[i + 3].split(","))
            i += 4
        elif token == "-m" and arg == "comment" and tokens[i + 2:i + 3] == ["--comment"]:
            if len(tokens) < i + 4:
                raise RuleParseError(f"--comment without value: {line}")
            values["comment"] = tokens[i + 3]
            i += 4
        else:
            extra.append(token)
            i += 1

    if "action" not in values:
        raise RuleParseError(f"Rule has no target: {line}")

    return FirewallRule(
        matches=tuple(extra),
        target_options=tuple(target_options),
        **values,
    )


def parse_ruleset(text: str, table: str = "filter") -> Ruleset:
    """Parse iptables-save output, returning the requested table.

    Output with no section for the table (e.g. a host where the table was
    never loaded) yields an empty ruleset with ACCEPT policies.
    """
    current: Optional[str] = None
    chains: dict[str, str] = {}
    rules: list[FirewallRule] = []
    found = False

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("["):
            # Packet counters from iptables-save -c
            line = line.split("]", 1)[-1].strip()
        if line.startswith("*"):
            current = line[1:]
            found = found or current == table
            continue
        if line == "COMMIT":
            current = None
            continue
        if current != table:
            continue
        if line.startswith(":"):
            parts = line[1:].split()
            if len(parts) < 2:
                raise RuleParseError(f"line {lineno}: malformed chain header: {line}")
            chains[parts[0]] = parts[1]
        elif line.startswith("-A"):
            try:
                rules.append(parse_rule(line))
            except RuleParseError as e:
                raise RuleParseError(f"line {lineno}: {e}") from e
        else:
            raise RuleParseError(f"line {lineno}: unexpected content: {line}")

    if found and current == table:
        raise RuleParseError(f"Table {table} is missing COMMIT")

    return Ruleset(table=table, chains=chains, rules=number_rules(rules))
