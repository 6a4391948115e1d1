import subprocess
from pathlib import Path

import pytest
from docker.errors import APIError, NotFound

from node_bootstrap.errors import CommandFailed
from node_bootstrap.host import HostEnvironment
from node_bootstrap.models import load_manifest
from node_bootstrap.settings import AppSettings


class FakeContainer:
    def __init__(self, registry, name, image, status="running", ports=None, **options):
        self._registry = registry
        self.id = f"id-{name}"
        self.name = name
        self.image_ref = image
        self.status = status
        self.ports = ports or {}
        self.options = options
        self.attrs = {"Config": {"Image": image}}
        self.remove_error = None
        self.reload_error = None

    def stop(self, timeout=None):
        self.status = "exited"

    def remove(self, force=False):
        if self.remove_error:
            raise APIError(self.remove_error)
        if self.status == "running" and not force:
            raise APIError(f"You cannot remove a running container {self.id}")
        self._registry.pop(self.name, None)

    def reload(self):
        if self.reload_error:
            raise APIError(self.reload_error)

    def host_ports(self) -> set[int]:
        found = set()
        for binding in self.ports.values():
            found.add(binding[1] if isinstance(binding, tuple) else binding)
        return found


class FakeContainers:
    def __init__(self, client):
        self._client = client
        self.by_name: dict[str, FakeContainer] = {}
        self.run_calls = []

    def add(self, name, image, status="running", ports=None) -> FakeContainer:
        container = FakeContainer(self.by_name, name, image, status=status, ports=ports)
        self.by_name[name] = container
        return container

    def get(self, name):
        if name in self._client.lookup_errors:
            raise APIError(self._client.lookup_errors[name])
        try:
            return self.by_name[name]
        except KeyError:
            raise NotFound(f"No such container: {name}") from None

    def list(self, all=False):
        return [c for c in self.by_name.values() if all or c.status == "running"]

    def run(self, image, name=None, ports=None, detach=False, **options):
        self.run_calls.append({"image": image, "name": name, "ports": ports, **options})
        if name in self.by_name:
            raise APIError(f'Conflict. The container name "/{name}" is already in use')

        container = FakeContainer(self.by_name, name, image, status="created", ports=ports, **options)
        self.by_name[name] = container

        taken = container.host_ports() & self._client.hidden_taken
        if taken:
            raise APIError(f"driver failed programming external connectivity: Bind for 0.0.0.0:{min(taken)} failed: port is already allocated")

        container.status = "exited" if name in self._client.crashing else "running"
        container.reload_error = self._client.unreadable.get(name)
        return container


class FakeImages:
    def __init__(self):
        self.pulled = []
        self.missing = set()
        self.unreachable = False

    def pull(self, image):
        if image in self.missing:
            raise NotFound(f"pull access denied for {image}, repository does not exist")
        if self.unreachable:
            raise APIError("Get https://registry-1.docker.io/v2/: net/http: request canceled")
        self.pulled.append(image)

    def get(self, image):
        if image in self.missing:
            raise NotFound(f"No such image: {image}")
        return image


class FakeNetworks:
    def __init__(self):
        self.names = set()
        self.create_error = None

    def get(self, name):
        if name not in self.names:
            raise NotFound(f"network {name} not found")
        return name

    def create(self, name, driver=None):
        if self.create_error:
            raise APIError(self.create_error)
        self.names.add(name)
        return name


class FakeDockerClient:
    def __init__(self):
        self.hidden_taken: set[int] = set()  # ports the runtime refuses though no local socket shows them
        self.crashing: set[str] = set()
        self.lookup_errors: dict[str, str] = {}  # container name -> daemon error on lookup
        self.unreadable: dict[str, str] = {}  # container name -> daemon error on reload after start
        self.containers = FakeContainers(self)
        self.images = FakeImages()
        self.networks = FakeNetworks()

    def ping(self):
        return True


class FakeHost(HostEnvironment):
    """A host whose commands are recorded and answered from in-memory state."""

    def __init__(self, settings, client, tools=("apt-get", "git", "curl", "lspci", "docker", "ufw"), arch="x86_64"):
        super().__init__(settings, client)
        self.tools = set(tools)
        self.arch = arch
        self.bound: set[int] = set()
        self.commands: list[list[str]] = []
        self.failures: set[str] = set()
        self.fetched: list[str] = []
        self.lspci = "00:02.0 VGA compatible controller: Intel Corporation UHD Graphics 630"
        self.ufw_added: set[str] = set()
        self.ufw_active = False

    def has_tool(self, name):
        return name in self.tools

    def runtime_available(self):
        return "docker" in self.tools

    def architecture(self):
        return self.arch

    def invoking_user(self):
        return "node"

    def bound_ports(self):
        live = set()
        for container in self._client.containers.by_name.values():
            if container.status == "running":
                live |= container.host_ports()
        return self.bound | live

    def fetch(self, url, dest):
        self.fetched.append(url)
        dest.write_text("#!/bin/bash\n")
        return dest

    def run(self, cmd, *, sudo=False, cwd=None, timeout=None, input=None, env=None):
        self.commands.append(list(cmd))
        line = " ".join(cmd)
        if any(line.startswith(prefix) for prefix in self.failures):
            raise CommandFailed(list(cmd), 1, "simulated failure")
        return subprocess.CompletedProcess(cmd, 0, stdout=self._respond(list(cmd)), stderr="")

    def ran(self, prefix: str) -> bool:
        return any(" ".join(c).startswith(prefix) for c in self.commands)

    def _respond(self, cmd):
        if cmd[:3] == ["ufw", "show", "added"]:
            rules = "".join(f"ufw allow {r}\n" for r in sorted(self.ufw_added))
            return "Added user rules (see 'ufw status' for running firewall):\n" + (rules or "(None)\n")
        if cmd[:2] == ["ufw", "allow"]:
            self.ufw_added.add(cmd[2])
            return "Rules updated\n"
        if cmd[:2] == ["ufw", "status"]:
            return "Status: active\n" if self.ufw_active else "Status: inactive\n"
        if cmd[:3] == ["ufw", "--force", "enable"]:
            self.ufw_active = True
            return "Firewall is active and enabled on system startup\n"
        if cmd[:3] == ["apt-get", "install", "-y"]:
            if "docker-ce" in cmd:
                self.tools.add("docker")
            if "ufw" in cmd:
                self.tools.add("ufw")
            return ""
        if cmd[:2] == ["git", "clone"]:
            target = Path(cmd[3])
            target.mkdir(parents=True)
            (target / self.settings.INSTALLER_SCRIPT).write_text("#!/bin/bash\n")
            return ""
        if cmd[:2] == ["id", "-nG"]:
            return "node adm sudo\n"
        if cmd == ["lspci"]:
            return self.lspci + "\n"
        if cmd[0] == "dpkg":
            return "amd64\n"
        if cmd[0] == "lsb_release":
            return "jammy\n"
        return ""


@pytest.fixture
def settings(tmp_path):
    return AppSettings(
        _env_file=None,
        INSTALLER_DIR=tmp_path / "BrinxAI-Worker-Nodes",
        START_VERIFY_TIMEOUT=0,
        CONTROL_INTERVAL=0,
    )


@pytest.fixture
def client():
    return FakeDockerClient()


@pytest.fixture
def host(settings, client):
    return FakeHost(settings, client)


@pytest.fixture
def manifest():
    return load_manifest()
