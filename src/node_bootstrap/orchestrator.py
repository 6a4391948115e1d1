from dataclasses import dataclass, field
from enum import Enum

from rich.table import Table

from . import console, firewall, installer
from .errors import BootstrapError, DependencyMissing, StartError
from .host import HostEnvironment
from .models import BootstrapManifest
from .reconciler import Outcome, Reconciler, ensure_network


class Stage(str, Enum):
    DEPENDENCY_CHECK = "DependencyCheck"
    NETWORK_ENSURE = "NetworkEnsure"
    STALE_CLEANUP = "StaleCleanup"
    FIREWALL_ENSURE = "FirewallEnsure"
    RUNTIME_INSTALL = "RuntimeInstall"
    GPU_DETECT = "GpuDetect"
    EXTERNAL_INSTALL = "ExternalInstall"
    AUXILIARY_SERVICES = "AuxiliaryServices"
    RELAY_START = "RelayStart"


@dataclass
class BootstrapState:
    """What happened during one run. Lives only as long as the process."""

    completed: list[Stage] = field(default_factory=list)
    advisory_failures: list[tuple[Stage, BootstrapError]] = field(default_factory=list)
    outcomes: list[Outcome] = field(default_factory=list)


@dataclass
class BootstrapResult:
    state: BootstrapState
    failed_stage: Stage | None = None
    error: BootstrapError | None = None

    @property
    def succeeded(self) -> bool:
        return self.failed_stage is None


class BootstrapOrchestrator:
    """
    Runs the bootstrap stages in order.

    A fatal stage that raises BootstrapError ends the run; an advisory stage's
    error is recorded and the next stage starts. Nothing is rolled back.
    """

    def __init__(self, host: HostEnvironment, manifest: BootstrapManifest):
        self.host = host
        self.manifest = manifest
        self.reconciler = Reconciler(host)
        self.state = BootstrapState()

        # (stage, action, advisory)
        self.stages = [
            (Stage.DEPENDENCY_CHECK, self.check_dependencies, False),
            (Stage.NETWORK_ENSURE, self.ensure_network, False),
            (Stage.STALE_CLEANUP, self.cleanup_stale, True),
            (Stage.FIREWALL_ENSURE, self.ensure_firewall, False),
            (Stage.RUNTIME_INSTALL, self.install_runtime, False),
            (Stage.GPU_DETECT, self.detect_gpu, True),
            (Stage.EXTERNAL_INSTALL, self.run_external_installer, False),
            (Stage.AUXILIARY_SERVICES, self.start_auxiliary_services, False),
            (Stage.RELAY_START, self.start_relay, False),
        ]

    def run(self) -> BootstrapResult:
        for stage, action, advisory in self.stages:
            console.info(f"Stage {stage.value}...")
            try:
                action()
            except BootstrapError as e:
                if not advisory:
                    console.error(f"{stage.value} failed ({e.kind}): {e}")
                    return BootstrapResult(self.state, failed_stage=stage, error=e)
                console.error(f"{stage.value} failed ({e.kind}): {e}. Proceeding to next step.")
                self.state.advisory_failures.append((stage, e))
                continue
            self.state.completed.append(stage)

        return BootstrapResult(self.state)

    def check_dependencies(self) -> None:
        missing = [tool for tool in self.host.settings.REQUIRED_TOOLS if not self.host.has_tool(tool)]
        if missing:
            raise DependencyMissing(f"Required tools not found on PATH: {', '.join(missing)}")

    def ensure_network(self) -> None:
        if not self.host.has_tool("docker"):
            console.info(f"Docker not installed yet; network '{self.manifest.network}' is created after install.")
            return
        ensure_network(self.host, self.manifest.network)

    def cleanup_stale(self) -> None:
        if not self.host.has_tool("docker"):
            console.info("Docker not installed yet. Skipping container cleanup.")
            return
        console.info(f"Searching for containers with pattern: {self.manifest.stale_pattern}")
        self.reconciler.ensure_absent(self.manifest.stale_pattern)

    def ensure_firewall(self) -> None:
        console.info("Setting up Firewall...")
        firewall.ensure_rules(
            self.host, self.manifest.firewall, install=lambda packages: installer.apt_install(self.host, packages)
        )

    def install_runtime(self) -> None:
        installer.install_runtime(self.host, self.manifest.network, self.manifest.worker_image)

    def detect_gpu(self) -> None:
        installer.install_gpu_toolkit(self.host)

    def run_external_installer(self) -> None:
        installer.run_external_installer(self.host)

    def start_auxiliary_services(self) -> None:
        """Failures here are per container: each is logged and the next one is started."""
        console.info("Running additional Docker containers...")
        for desired in self.manifest.enabled_auxiliary():
            outcome = self.reconciler.reconcile(desired)
            self._record(outcome)

    def start_relay(self) -> None:
        console.info("Running BrinxAI Relay...")
        relay = self.manifest.relay
        desired = relay.desired_for(self.host.architecture())

        for rule in relay.firewall:
            firewall.open_port(self.host, rule)

        outcome = self.reconciler.reconcile(desired)
        self._record(outcome)
        if not outcome.ok:
            raise outcome.error or StartError(f"{desired.name} did not start")

    def _record(self, outcome: Outcome) -> None:
        self.state.outcomes.append(outcome)
        if outcome.ok:
            ports = ", ".join(f"{_host_side(p.binding)}->{p.key}" for p in outcome.container.published_ports)
            console.success(f"{outcome.status.value} {outcome.name} ({outcome.container.image}) {ports}".rstrip())
        else:
            console.error(f"{outcome.name} failed ({outcome.error.kind}): {outcome.error}")


def _host_side(binding: int | tuple[str, int]) -> str:
    if isinstance(binding, tuple):
        return f"{binding[0]}:{binding[1]}"
    return f"0.0.0.0:{binding}"


def outcome_table(state: BootstrapState) -> Table:
    table = Table(title="Containers")
    table.add_column("Name")
    table.add_column("Result")
    table.add_column("Image")
    table.add_column("Ports")

    for outcome in state.outcomes:
        if outcome.ok:
            ports = ", ".join(f"{_host_side(p.binding)}->{p.key}" for p in outcome.container.published_ports)
            table.add_row(outcome.name, f"[green]{outcome.status.value}[/green]", outcome.container.image, ports)
        else:
            table.add_row(outcome.name, f"[red]{outcome.error.kind}[/red]", "", str(outcome.error))
    return table
