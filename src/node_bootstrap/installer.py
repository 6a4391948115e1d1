"""
Package and external-tool installation steps.

These are direct command sequences against the host; failures surface as
InstallError (CommandFailed is one) so the orchestrator can decide whether the
stage is fatal.
"""

import tempfile
from pathlib import Path

from . import console
from .errors import CommandFailed, InstallError
from .host import RUNTIME_ERRORS, HostEnvironment
from .reconciler import ensure_network

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
DOCKER_KEYRING = "/etc/apt/keyrings/docker.asc"
DOCKER_SOURCES = "/etc/apt/sources.list.d/docker.list"


def apt_install(host: HostEnvironment, packages: list[str]) -> None:
    host.run(["apt-get", "update"], sudo=True, env=APT_ENV)
    host.run(["apt-get", "install", "-y", *packages], sudo=True, env=APT_ENV)


def install_docker(host: HostEnvironment) -> None:
    """Installs Docker Engine from the vendor apt repository."""
    settings = host.settings
    apt_install(host, ["ca-certificates", "curl", "gnupg", "lsb-release"])

    host.run(["install", "-m", "0755", "-d", "/etc/apt/keyrings"], sudo=True)
    host.run(
        ["curl", "-fsSL", "--max-time", str(settings.FETCH_TIMEOUT), f"{settings.DOCKER_APT_REPO}/gpg", "-o", DOCKER_KEYRING],
        sudo=True,
    )
    host.run(["chmod", "a+r", DOCKER_KEYRING], sudo=True)

    arch = host.run(["dpkg", "--print-architecture"]).stdout.strip()
    codename = host.run(["lsb_release", "-cs"]).stdout.strip()
    source = f"deb [arch={arch} signed-by={DOCKER_KEYRING}] {settings.DOCKER_APT_REPO} {codename} stable\n"
    host.run(["tee", DOCKER_SOURCES], sudo=True, input=source)

    apt_install(host, settings.DOCKER_PACKAGES)


def pull_image(host: HostEnvironment, image: str) -> None:
    console.info(f"Pulling {image}...")
    try:
        host.docker.images.pull(image)
    except RUNTIME_ERRORS as e:
        raise InstallError(f"Could not pull {image}: {e}") from e


def ensure_docker_group(host: HostEnvironment) -> bool:
    """Adds the invoking user to the docker group. Returns True when membership changed."""
    user = host.invoking_user()
    if user == "root":
        return False

    groups = host.run(["id", "-nG", user]).stdout.split()
    if "docker" in groups:
        return False

    console.info(f"Adding user {user} to docker group")
    host.run(["usermod", "-aG", "docker", user], sudo=True)
    console.info("You may need to logout and login again to apply docker group changes.")
    return True


def install_runtime(host: HostEnvironment, network: str, worker_image: str) -> None:
    if host.has_tool("docker"):
        console.info("Docker is already installed. Skipping Docker installation.")
    else:
        console.info("Installing Docker...")
        install_docker(host)

    if not host.runtime_available():
        raise InstallError("Docker is installed but the daemon is not reachable.")

    ensure_network(host, network)
    pull_image(host, worker_image)

    try:
        ensure_docker_group(host)
    except CommandFailed as e:
        console.warning(f"Could not update docker group membership: {e}")


def detect_gpu(host: HostEnvironment) -> bool:
    if not host.has_tool("lspci"):
        raise InstallError("lspci is not available; cannot enumerate PCI devices.")
    return "nvidia" in host.run(["lspci"]).stdout.lower()


def install_gpu_toolkit(host: HostEnvironment) -> bool:
    """Installs the NVIDIA container toolkit when an NVIDIA GPU is present."""
    if not detect_gpu(host):
        console.info("No NVIDIA GPU detected. Skipping NVIDIA installation.")
        return False

    console.info("NVIDIA GPU detected. Installing NVIDIA Container Toolkit...")
    with tempfile.TemporaryDirectory() as tmp:
        script = host.fetch(host.settings.NVIDIA_INSTALL_SCRIPT_URL, Path(tmp) / "nvidia-docker-install.sh")
        host.run(["bash", str(script)], sudo=True, timeout=host.settings.INSTALLER_TIMEOUT)
    return True


def run_external_installer(host: HostEnvironment) -> None:
    """Clones the worker repository (once) and runs its installer script."""
    settings = host.settings
    target = settings.INSTALLER_DIR

    if target.is_dir():
        console.info(f"{target.name} repository is already cloned.")
    else:
        console.info(f"Cloning {settings.INSTALLER_REPO_URL}...")
        host.run(["git", "clone", settings.INSTALLER_REPO_URL, str(target)], timeout=settings.FETCH_TIMEOUT)

    script = target / settings.INSTALLER_SCRIPT
    if not script.is_file():
        raise InstallError(f"Installer script {script} not found.")

    console.info("Running installation script...")
    host.run(["bash", settings.INSTALLER_SCRIPT], cwd=target, timeout=settings.INSTALLER_TIMEOUT)
