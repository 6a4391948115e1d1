import time
from dataclasses import dataclass
from enum import Enum

from docker.errors import APIError, NotFound
from docker.models.containers import Container

from . import console
from .errors import BootstrapError, InstallError, NetworkCreateError, StartError, TeardownError
from .host import RUNTIME_ERRORS, HostEnvironment
from .models import DesiredContainer
from .ports import find_available_port

ACTIVE_STATES = ("running", "restarting", "paused")

# Fragments of daemon messages meaning a host port was claimed between our scan and the bind.
BIND_CONFLICT_MARKERS = (
    "port is already allocated",
    "address already in use",
    "failed to bind host port",
)


class OutcomeStatus(str, Enum):
    CREATED = "Created"
    RECREATED = "Recreated"
    FAILED = "Failed"


@dataclass(frozen=True)
class Outcome:
    name: str
    status: OutcomeStatus
    container: DesiredContainer | None = None  # with concrete host ports once created
    error: BootstrapError | None = None

    @property
    def ok(self) -> bool:
        return self.status is not OutcomeStatus.FAILED


def ensure_network(host: HostEnvironment, name: str) -> bool:
    """Creates a bridge network unless it exists. Returns True when created."""
    try:
        host.docker.networks.get(name)
        return False
    except NotFound:
        pass
    except (InstallError, *RUNTIME_ERRORS) as e:
        raise NetworkCreateError(f"Could not look up network '{name}': {e}") from e

    try:
        host.docker.networks.create(name, driver="bridge")
    except RUNTIME_ERRORS as e:
        raise NetworkCreateError(f"Could not create network '{name}': {e}") from e
    console.info(f"Created docker network '{name}'.")
    return True


class Reconciler:
    def __init__(self, host: HostEnvironment):
        self.host = host
        self.settings = host.settings

    def measure_actual_state(self, name: str) -> Container | None:
        try:
            return self.host.docker.containers.get(name)
        except NotFound:
            return None
        except (InstallError, *RUNTIME_ERRORS) as e:
            raise TeardownError(f"Could not look up container {name}: {e}") from e

    def reconcile(self, desired: DesiredContainer) -> Outcome:
        """Replaces any container named desired.name with a fresh one built from desired."""
        try:
            actual = self.measure_actual_state(desired.name)
            if actual is not None:
                self._teardown(actual)
            created = self._start_container(desired)
        except BootstrapError as e:
            return Outcome(desired.name, OutcomeStatus.FAILED, error=e)

        status = OutcomeStatus.RECREATED if actual is not None else OutcomeStatus.CREATED
        return Outcome(desired.name, status, container=created)

    def ensure_absent(self, pattern: str) -> list[str]:
        """
        Stops and removes every container whose name or image contains pattern.
        Every match is attempted; failures are reported together afterwards.
        """
        try:
            containers = self.host.docker.containers.list(all=True)
        except (InstallError, *RUNTIME_ERRORS) as e:
            raise TeardownError(f"Could not list containers: {e}") from e

        matches = [c for c in containers if pattern in c.name or pattern in c.attrs["Config"]["Image"]]
        if not matches:
            console.info(f"No containers matching '{pattern}'. Skipping container cleanup.")
            return []

        console.info(f"Stopping and removing containers: {', '.join(c.name for c in matches)}")
        removed, failures = [], []
        for container in matches:
            try:
                self._teardown(container)
            except TeardownError as e:
                failures.append(str(e))
            else:
                removed.append(container.name)

        if failures:
            raise TeardownError(f"{len(failures)} of {len(matches)} containers left in place: {'; '.join(failures)}")
        return removed

    def _teardown(self, container: Container) -> None:
        try:
            if container.status in ACTIVE_STATES:
                console.info(f"Stopping and removing container {container.name}...")
                container.stop(timeout=self.settings.STOP_TIMEOUT)
            else:
                console.info(f"Removing stopped container {container.name}...")
            container.remove()
        except NotFound:
            return
        except RUNTIME_ERRORS as e:
            raise TeardownError(f"Could not remove container {container.name}: {e}") from e

    def _resolve_ports(self, desired: DesiredContainer, skip_below: dict[str, int] | None = None) -> DesiredContainer:
        skip_below = skip_below or {}
        resolved = []
        for port in desired.published_ports:
            if port.allocate:
                start = max(port.host_port, skip_below.get(port.key, 0))
                port = port.model_copy(update={"host_port": find_available_port(self.host, start)})
            resolved.append(port)
        return desired.model_copy(update={"published_ports": resolved})

    def _pull(self, image: str) -> None:
        try:
            self.host.docker.images.pull(image)
            return
        except NotFound as e:
            missing_remotely = e
        except RUNTIME_ERRORS as e:
            console.warning(f"Registry pull of {image} failed ({e}); starting from the local copy.")
            return

        try:
            self.host.docker.images.get(image)
        except NotFound:
            raise StartError(f"Image {image} not found locally or remotely.") from missing_remotely
        except RUNTIME_ERRORS as e:
            raise StartError(f"Could not inspect local image {image}: {e}") from e

    def _start_container(self, desired: DesiredContainer) -> DesiredContainer:
        """
        Creates and starts the container.
        If a dynamically allocated port was taken between the scan and the bind, the
        failed container is removed and allocation resumes from the next port.
        """
        self._pull(desired.image)

        skip_below: dict[str, int] = {}
        for _ in range(self.settings.PORT_BIND_RETRIES + 1):
            candidate = self._resolve_ports(desired, skip_below)
            try:
                container = self._run(candidate)
            except APIError as e:
                dynamic = [p for p in candidate.published_ports if p.allocate]
                if not dynamic or not any(marker in str(e).lower() for marker in BIND_CONFLICT_MARKERS):
                    raise StartError(f"Could not start {desired.name}: {e}") from e

                console.warning(f"Port busy for {desired.name}, allocating again: {e}")
                self._remove_failed(desired.name)
                skip_below = {p.key: p.host_port + 1 for p in dynamic}
                continue
            except RUNTIME_ERRORS as e:
                raise StartError(f"Could not start {desired.name}: {e}") from e

            self._verify_running(container)
            return candidate

        raise StartError(f"Could not bind ports for {desired.name} after {self.settings.PORT_BIND_RETRIES} retries")

    def _run(self, desired: DesiredContainer) -> Container:
        limits = desired.resource_limits
        kwargs = {}
        if desired.network:
            kwargs["network"] = desired.network
        if desired.capabilities:
            kwargs["cap_add"] = sorted(desired.capabilities)
        if limits and limits.nano_cpus:
            kwargs["nano_cpus"] = limits.nano_cpus
        if limits and limits.memory_bytes:
            kwargs["mem_limit"] = limits.memory_bytes

        return self.host.docker.containers.run(
            desired.image,
            name=desired.name,
            ports=desired.port_map(),
            detach=True,
            **kwargs,
        )

    def _remove_failed(self, name: str) -> None:
        try:
            self.host.docker.containers.get(name).remove(force=True)
        except NotFound:
            pass  # rejected before the daemon registered a container
        except RUNTIME_ERRORS as e:
            raise StartError(f"Could not clear half-created container {name}: {e}") from e

    def _verify_running(self, container: Container) -> None:
        deadline = time.monotonic() + self.settings.START_VERIFY_TIMEOUT
        while True:
            try:
                container.reload()
            except RUNTIME_ERRORS as e:
                raise StartError(f"Could not read state of {container.name}: {e}") from e
            if container.status == "running":
                return
            if container.status in ("exited", "dead") or time.monotonic() >= deadline:
                raise StartError(f"Container {container.name} is {container.status}, expected running")
            time.sleep(self.settings.CONTROL_INTERVAL)
