"""
The host as seen by the bootstrap.

Every command, docker call, port scan and download goes through a
HostEnvironment, so the side effects of a stage are visible at its call sites
and tests can substitute the whole host with one object.
"""

import os
import platform
import shutil
import subprocess
from pathlib import Path

import docker
import psutil
import requests
from docker.errors import DockerException

from .errors import CommandFailed, InstallError
from .settings import AppSettings, get_settings

# What a docker SDK call can raise: daemon errors, and transport errors the SDK passes through.
RUNTIME_ERRORS = (DockerException, requests.RequestException)


class HostEnvironment:
    def __init__(self, settings: AppSettings | None = None, client: docker.DockerClient | None = None):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def docker(self) -> docker.DockerClient:
        """Docker client, created on first use since the runtime may be installed mid-run."""
        if self._client is None:
            try:
                if self.settings.DOCKER_BASE_URL:
                    self._client = docker.DockerClient(base_url=self.settings.DOCKER_BASE_URL)
                else:
                    self._client = docker.from_env()
            except RUNTIME_ERRORS as e:
                raise InstallError(f"Cannot connect to the Docker daemon: {e}") from e
        return self._client

    def runtime_available(self) -> bool:
        try:
            self.docker.ping()
            return True
        except (InstallError, *RUNTIME_ERRORS):
            self._client = None
            return False

    def has_tool(self, name: str) -> bool:
        return shutil.which(name) is not None

    def _needs_sudo(self) -> bool:
        return self.settings.USE_SUDO and os.geteuid() != 0

    def run(
        self,
        cmd: list[str],
        *,
        sudo: bool = False,
        cwd: Path | None = None,
        timeout: float | None = None,
        input: str | None = None,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess:
        """Runs a command to completion, raising CommandFailed unless it exits 0."""
        if sudo and self._needs_sudo():
            cmd = ["sudo", "-E", *cmd]

        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
                env={**os.environ, **env} if env else None,
            )
        except FileNotFoundError as e:
            raise CommandFailed(cmd, 127, str(e)) from e
        except subprocess.TimeoutExpired as e:
            raise CommandFailed(cmd, None, f"no exit after {timeout}s") from e

        if result.returncode != 0:
            raise CommandFailed(cmd, result.returncode, result.stderr or result.stdout)
        return result

    def bound_ports(self) -> set[int]:
        """Local ports held by any socket, TCP or UDP, on any interface."""
        return {c.laddr.port for c in psutil.net_connections(kind="inet") if c.laddr}

    def architecture(self) -> str:
        return platform.machine()

    def invoking_user(self) -> str:
        return os.environ.get("SUDO_USER") or os.environ.get("USER") or "root"

    def fetch(self, url: str, dest: Path) -> Path:
        """Downloads url to dest, bounded by FETCH_TIMEOUT."""
        try:
            response = requests.get(url, timeout=self.settings.FETCH_TIMEOUT)
            response.raise_for_status()
        except requests.RequestException as e:
            raise InstallError(f"Download of {url} failed: {e}") from e

        dest.write_bytes(response.content)
        return dest
