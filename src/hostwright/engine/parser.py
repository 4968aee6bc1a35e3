"""Parser for declared tasks and handlers.

Converts playbook mappings into strongly-typed Task and Handler objects,
checking each module's required and allowed parameters.
"""
import shlex
from pathlib import Path
from typing import Any, Optional

from ..errors import PlanError
from ..firewall.rules import FirewallRule
from .schema import (
    CommandParams,
    FileParams,
    FirewallParams,
    Handler,
    ModuleParams,
    ModuleType,
    PackageParams,
    ServiceParams,
    Task,
    TemplateParams,
    UnitDescriptor,
)
from .templating import (
    SECRETS_VAR,
    TemplateRenderError,
    check_expression,
    is_templated,
    template_variables,
)

TASK_KEYS = {"name", "when", "notify", "ignore_errors", "best_effort", "timeout", "register"}
HANDLER_KEYS = {"name", "notify", "timeout"}
MODULE_KEYS = {m.value for m in ModuleType}

PACKAGE_STATES = ("present", "absent")
FILE_STATES = ("file", "directory", "absent")
SERVICE_STATES = ("started", "stopped", "restarted", "reloaded", "absent")
FAMILIES = ("ipv4", "ipv6")


class ParseError(PlanError):
    """Error parsing a task or handler declaration."""


def parse_mode(value: Any) -> Optional[str]:
    """Normalise a file mode to a 4-digit octal string.

    Integers are taken as already-numeric (YAML reads ``0644`` as 420);
    strings are read as octal. Templated strings are kept for later.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid mode: {value}")
    if isinstance(value, int):
        if not 0 <= value <= 0o7777:
            raise ValueError(f"Invalid mode: {value}")
        return f"{value:04o}"
    value = str(value)
    if is_templated(value):
        return value
    try:
        numeric = int(value, 8)
    except ValueError:
        raise ValueError(f"Invalid mode: {value}") from None
    if not 0 <= numeric <= 0o7777:
        raise ValueError(f"Invalid mode: {value}")
    return f"{numeric:04o}"


class TaskParser:
    """Parse task and handler mappings from playbook format."""

    def __init__(self, base_dir: Optional[Path] = None):
        """
        Args:
            base_dir: Directory that relative template ``src`` paths resolve against
        """
        self.base_dir = base_dir or Path.cwd()

    def parse_tasks(self, tasks: list[dict[str, Any]]) -> list[Task]:
        if not isinstance(tasks, list):
            raise ParseError("'tasks' must be a list")
        return [self.parse_task(t, index) for index, t in enumerate(tasks, start=1)]

    def parse_handlers(self, handlers: list[dict[str, Any]]) -> list[Handler]:
        if not isinstance(handlers, list):
            raise ParseError("'handlers' must be a list")
        return [self.parse_handler(h, index) for index, h in enumerate(handlers, start=1)]

    def parse_task(self, config: dict[str, Any], index: int = 0) -> Task:
        """
        Parse a single task mapping.

        Raises:
            ParseError: If the task is malformed
        """
        label = self._label("Task", config, index)
        module, params = self._parse_module(config, TASK_KEYS, label)

        when = config.get("when")
        variables = set()
        if when is not None:
            if isinstance(when, bool):
                when = "true" if when else "false"
            when = str(when)
            try:
                variables |= check_expression(when)
            except TemplateRenderError as e:
                raise ParseError(f"{label}: invalid 'when': {e}") from e

        try:
            variables |= template_variables(params)
        except TemplateRenderError as e:
            raise ParseError(f"{label}: {e}") from e

        register = config.get("register")
        if register is not None and (not isinstance(register, str) or not register.isidentifier()):
            raise ParseError(f"{label}: 'register' must be an identifier")

        return Task(
            name=str(config.get("name") or f"{module.value} #{index}"),
            module=module,
            params=params,
            when=when,
            notify=self._parse_notify(config.get("notify"), label),
            ignore_errors=self._parse_bool(config.get("ignore_errors", False), "ignore_errors", label),
            best_effort=self._parse_bool(config.get("best_effort", False), "best_effort", label),
            timeout=self._parse_timeout(config.get("timeout"), label),
            register=register,
            uses_secrets=SECRETS_VAR in variables,
        )

    def parse_handler(self, config: dict[str, Any], index: int = 0) -> Handler:
        label = self._label("Handler", config, index)
        if not config.get("name"):
            raise ParseError(f"{label}: missing required field: name")
        module, params = self._parse_module(config, HANDLER_KEYS, label)
        try:
            variables = template_variables(params)
        except TemplateRenderError as e:
            raise ParseError(f"{label}: {e}") from e

        return Handler(
            name=str(config["name"]),
            module=module,
            params=params,
            notify=self._parse_notify(config.get("notify"), label),
            timeout=self._parse_timeout(config.get("timeout"), label),
            uses_secrets=SECRETS_VAR in variables,
        )

    # --- Common fields ---

    @staticmethod
    def _label(kind: str, config: Any, index: int) -> str:
        name = config.get("name") if isinstance(config, dict) else None
        return f"{kind} #{index}" + (f" '{name}'" if name else "")

    def _parse_module(
        self,
        config: Any,
        allowed: set[str],
        label: str,
    ) -> tuple[ModuleType, ModuleParams]:
        if not isinstance(config, dict):
            raise ParseError(f"{label}: must be a mapping")

        modules = [key for key in config if key in MODULE_KEYS]
        if len(modules) != 1:
            found = ", ".join(modules) or "none"
            raise ParseError(
                f"{label}: exactly one module required "
                f"({', '.join(sorted(MODULE_KEYS))}); found {found}"
            )

        unknown = set(config) - allowed - MODULE_KEYS
        if unknown:
            raise ParseError(f"{label}: unknown field(s): {', '.join(sorted(unknown))}")

        module = ModuleType(modules[0])
        raw = config[module.value]
        if module == ModuleType.COMMAND and isinstance(raw, (str, list)):
            raw = {"cmd": raw} if isinstance(raw, str) else {"argv": raw}
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ParseError(f"{label}: '{module.value}' parameters must be a mapping")

        parser = getattr(self, f"_parse_{module.value}")
        try:
            return module, parser(dict(raw))
        except (ValueError, TypeError) as e:
            raise ParseError(f"{label}: {e}") from e

    @staticmethod
    def _parse_notify(value: Any, label: str) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, list) and all(isinstance(v, str) for v in value):
            return list(value)
        raise ParseError(f"{label}: 'notify' must be a handler name or list of names")

    @staticmethod
    def _parse_bool(value: Any, key: str, label: str) -> bool:
        if not isinstance(value, bool):
            raise ParseError(f"{label}: '{key}' must be true or false")
        return value

    @staticmethod
    def _parse_timeout(value: Any, label: str) -> Optional[float]:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ParseError(f"{label}: 'timeout' must be a positive number of seconds")
        return float(value)

    # --- Module parameters ---

    @staticmethod
    def _take(raw: dict[str, Any], required: tuple[str, ...], optional: tuple[str, ...]) -> dict:
        missing = [key for key in required if raw.get(key) in (None, "")]
        if missing:
            raise ValueError(f"missing required parameter(s): {', '.join(missing)}")
        unknown = set(raw) - set(required) - set(optional)
        if unknown:
            raise ValueError(f"unknown parameter(s): {', '.join(sorted(unknown))}")
        return raw

    @staticmethod
    def _choice(value: Any, choices: tuple[str, ...], key: str) -> str:
        if value not in choices:
            raise ValueError(f"invalid {key} '{value}'; must be one of {', '.join(choices)}")
        return value

    @staticmethod
    def _optional_bool(value: Any, key: str) -> Optional[bool]:
        if value is not None and not isinstance(value, bool):
            raise ValueError(f"'{key}' must be true or false")
        return value

    def _parse_package(self, raw: dict[str, Any]) -> PackageParams:
        self._take(raw, ("name",), ("state", "version", "update_cache"))
        version = raw.get("version")
        return PackageParams(
            name=str(raw["name"]),
            state=self._choice(raw.get("state", "present"), PACKAGE_STATES, "state"),
            version=str(version) if version is not None else None,
            update_cache=bool(self._optional_bool(raw.get("update_cache"), "update_cache")),
        )

    def _parse_file(self, raw: dict[str, Any]) -> FileParams:
        self._take(raw, ("path",), ("content", "state", "mode", "owner", "group"))
        state = self._choice(raw.get("state", "file"), FILE_STATES, "state")
        content = raw.get("content")
        if content is not None and state != "file":
            raise ValueError(f"'content' is only valid with state=file, not {state}")
        return FileParams(
            path=str(raw["path"]),
            content=str(content) if content is not None else None,
            state=state,
            mode=parse_mode(raw.get("mode")),
            owner=raw.get("owner"),
            group=raw.get("group"),
        )

    def _parse_template(self, raw: dict[str, Any]) -> TemplateParams:
        self._take(raw, ("path",), ("template", "src", "mode", "owner", "group"))
        if ("template" in raw) == ("src" in raw):
            raise ValueError("exactly one of 'template' or 'src' is required")

        if "src" in raw:
            src = Path(str(raw["src"]))
            if not src.is_absolute():
                src = self.base_dir / src
            try:
                body = src.read_text(encoding="utf-8")
            except OSError as e:
                raise ValueError(f"cannot read template {src}: {e.strerror}") from e
        else:
            body = str(raw["template"])

        return TemplateParams(
            path=str(raw["path"]),
            template=body,
            mode=parse_mode(raw.get("mode")),
            owner=raw.get("owner"),
            group=raw.get("group"),
        )

    def _parse_service(self, raw: dict[str, Any]) -> ServiceParams:
        self._take(raw, ("name",), ("state", "enabled", "unit"))
        state = raw.get("state")
        if state is not None:
            self._choice(state, SERVICE_STATES, "state")
        enabled = self._optional_bool(raw.get("enabled"), "enabled")
        if state == "absent" and enabled:
            raise ValueError("state=absent cannot be combined with enabled=true")

        unit = None
        if raw.get("unit") is not None:
            unit = self._parse_unit(raw["unit"])
            if enabled is None:
                enabled = unit.enable

        if state is None and enabled is None:
            raise ValueError("at least one of 'state' or 'enabled' is required")

        return ServiceParams(name=str(raw["name"]), state=state, enabled=enabled, unit=unit)

    def _parse_unit(self, raw: Any) -> UnitDescriptor:
        if not isinstance(raw, dict):
            raise ValueError("'unit' must be a mapping")
        self._take(
            raw,
            ("exec_start",),
            (
                "description", "working_directory", "user", "group", "restart",
                "after", "wanted_by", "environment", "enable",
            ),
        )
        environment = raw.get("environment") or {}
        if not isinstance(environment, dict):
            raise ValueError("unit 'environment' must be a mapping")
        defaults = UnitDescriptor(exec_start="")
        return UnitDescriptor(
            exec_start=str(raw["exec_start"]),
            description=str(raw.get("description", defaults.description)),
            working_directory=raw.get("working_directory"),
            user=raw.get("user"),
            group=raw.get("group"),
            restart=str(raw.get("restart", defaults.restart)),
            after=str(raw.get("after", defaults.after)),
            wanted_by=str(raw.get("wanted_by", defaults.wanted_by)),
            environment={str(k): str(v) for k, v in environment.items()},
            enable=bool(self._optional_bool(raw.get("enable", True), "enable")),
        )

    def _parse_command(self, raw: dict[str, Any]) -> CommandParams:
        self._take(raw, (), ("argv", "cmd", "creates", "removes", "unless", "chdir"))
        if ("argv" in raw) == ("cmd" in raw):
            raise ValueError("exactly one of 'argv' or 'cmd' is required")

        if "cmd" in raw:
            argv = shlex.split(str(raw["cmd"]))
        else:
            argv = raw["argv"]
            if not isinstance(argv, list):
                raise ValueError("'argv' must be a list")
            argv = [str(a) for a in argv]
        if not argv:
            raise ValueError("command is empty")

        unless = raw.get("unless")
        if isinstance(unless, str):
            unless = shlex.split(unless)
        elif unless is not None:
            if not isinstance(unless, list) or not unless:
                raise ValueError("'unless' must be a command string or non-empty list")
            unless = [str(a) for a in unless]

        return CommandParams(
            argv=argv,
            creates=raw.get("creates"),
            removes=raw.get("removes"),
            unless=unless,
            chdir=raw.get("chdir"),
        )

    def _parse_firewall(self, raw: dict[str, Any]) -> FirewallParams:
        self._take(raw, ("rules",), ("policies", "family", "persist_path"))
        rules = raw["rules"]
        if not isinstance(rules, list):
            raise ValueError("'rules' must be a list")
        parsed = []
        for number, rule in enumerate(rules, start=1):
            if not isinstance(rule, dict):
                raise ValueError(f"rule #{number} must be a mapping")
            try:
                parsed.append(FirewallRule.from_dict(rule))
            except ValueError as e:
                raise ValueError(f"rule #{number}: {e}") from e

        policies = raw.get("policies") or {}
        if not isinstance(policies, dict):
            raise ValueError("'policies' must be a mapping of chain to policy")

        return FirewallParams(
            rules=parsed,
            policies={str(k): str(v).upper() for k, v in policies.items()},
            family=self._choice(raw.get("family", "ipv4"), FAMILIES, "family"),
            persist_path=raw.get("persist_path"),
        )
