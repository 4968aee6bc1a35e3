"""Fact/State Prober.

Reads the current state of the resource a task manages. Probing never
mutates the host.
"""
import hashlib
import logging
from typing import Optional

from ..errors import CommandNotFound, CommandTimeout, HostError, ProbeError
from ..firewall.reconciler import FirewallReconciler
from ..hosts.base import Host
from ..utils.connection import CommandResult
from ..utils.logging_config import timed
from .schema import (
    ActualState,
    CommandParams,
    CommandState,
    FileParams,
    FileState,
    FirewallParams,
    FirewallState,
    ModuleParams,
    PackageParams,
    PackageState,
    ServiceParams,
    ServiceState,
    TemplateParams,
)

logger = logging.getLogger(__name__)

DPKG_FORMAT = "${Status}\t${Version}\n"

# systemctl is-enabled states that mean "starts at boot"
ENABLED_STATES = ("enabled", "enabled-runtime", "alias", "static", "indirect", "generated")


class StateProber:
    """Probe actual state for each module type."""

    def __init__(self, host: Host, timeout: Optional[float] = None):
        self.host = host
        self.timeout = timeout

    @property
    def host_name(self) -> str:
        return self.host.host_name

    @timed("probe")
    def probe(self, params: ModuleParams, timeout: Optional[float] = None) -> ActualState:
        """
        Probe the resource described by rendered module parameters.

        Raises:
            ProbeError: If the state cannot be determined
        """
        timeout = timeout or self.timeout
        if isinstance(params, PackageParams):
            return self.probe_package(params.name, timeout)
        if isinstance(params, (FileParams, TemplateParams)):
            return self.probe_file(params.path)
        if isinstance(params, ServiceParams):
            return self.probe_service(params, timeout)
        if isinstance(params, CommandParams):
            return self.probe_command(params, timeout)
        if isinstance(params, FirewallParams):
            reconciler = FirewallReconciler(
                self.host, params.family, params.persist_path, timeout=timeout
            )
            return FirewallState(family=params.family, ruleset=reconciler.probe())
        raise TypeError(f"No prober for {type(params).__name__}")

    def _run(self, resource: str, argv: list[str], timeout: Optional[float]) -> CommandResult:
        try:
            return self.host.run(argv, timeout=timeout)
        except CommandNotFound as e:
            raise ProbeError(resource, f"{argv[0]} not installed") from e
        except (CommandTimeout, HostError) as e:
            raise ProbeError(resource, str(e)) from e

    def probe_package(self, name: str, timeout: Optional[float] = None) -> PackageState:
        resource = f"package:{name}"
        result = self._run(resource, ["dpkg-query", "-W", f"-f={DPKG_FORMAT}", name], timeout)

        if not result.success:
            # dpkg-query exits 1 for packages it has never heard of
            if result.returncode == 1 and "no packages found" in result.stderr.lower():
                return PackageState(name=name, installed=False)
            raise ProbeError(resource, result.output or f"dpkg-query exited {result.returncode}")

        line = result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""
        status, _, version = line.partition("\t")
        installed = status.split()[-1:] == ["installed"]
        return PackageState(
            name=name,
            installed=installed,
            version=(version.strip() or None) if installed else None,
        )

    def probe_file(self, path: str) -> FileState:
        resource = f"file:{path}"
        try:
            info = self.host.stat(path)
            if info is None:
                return FileState(path=path, exists=False)
            digest = None
            if not info.is_dir:
                content = self.host.read_file(path)
                if content is not None:
                    digest = hashlib.sha256(content).hexdigest()
        except HostError as e:
            raise ProbeError(resource, str(e)) from e

        return FileState(
            path=path,
            exists=True,
            is_dir=info.is_dir,
            sha256=digest,
            mode=info.mode,
            owner=info.owner,
            group=info.group,
        )

    def probe_service(self, params: ServiceParams, timeout: Optional[float] = None) -> ServiceState:
        unit = params.unit_name
        resource = f"service:{params.name}"

        active = self._run(resource, ["systemctl", "is-active", unit], timeout)
        enabled = self._run(resource, ["systemctl", "is-enabled", unit], timeout)
        enabled_state = enabled.stdout.strip()

        # Unknown units: is-enabled prints "not-found" or nothing plus an error
        exists = enabled_state not in ("", "not-found")
        if not enabled_state:
            error = enabled.stderr.strip()
            if error and "no such file" not in error.lower() and "not found" not in error.lower():
                raise ProbeError(resource, error)

        unit_file = self.probe_file(params.unit_path) if params.unit else None
        return ServiceState(
            name=params.name,
            exists=exists,
            active=active.stdout.strip() in ("active", "activating", "reloading"),
            enabled=enabled_state in ENABLED_STATES,
            unit_file=unit_file,
        )

    def probe_command(self, params: CommandParams, timeout: Optional[float] = None) -> CommandState:
        state = CommandState()
        try:
            if params.creates:
                state.creates_exists = self.host.stat(params.creates) is not None
            if params.removes:
                state.removes_exists = self.host.stat(params.removes) is not None
        except HostError as e:
            raise ProbeError(f"command:{params.argv[0]}", str(e)) from e

        if params.unless:
            try:
                result = self.host.run(params.unless, timeout=timeout, cwd=params.chdir)
                state.unless_ok = result.success
            except CommandNotFound:
                state.unless_ok = False
            except (CommandTimeout, HostError) as e:
                raise ProbeError(f"command:{params.argv[0]}", f"unless check failed: {e}") from e
        return state
