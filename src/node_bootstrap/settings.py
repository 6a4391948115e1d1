from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """
    Knobs for one bootstrap run. Each field reads BOOTSTRAP_<NAME> from the
    process environment or a local .env, e.g. BOOTSTRAP_USE_SUDO=false.
    """

    MANIFEST_FILE: Path | None = None  # None: use the manifest shipped with the package
    DOCKER_BASE_URL: str | None = None  # e.g. unix:///run/docker.sock; unset means the DOCKER_HOST environment
    USE_SUDO: bool = True

    REQUIRED_TOOLS: list[str] = ["apt-get", "git", "curl"]

    PORT_SCAN_WINDOW: int = 1000
    PORT_BIND_RETRIES: int = 3
    STOP_TIMEOUT: int = 10
    START_VERIFY_TIMEOUT: float = 10.0
    CONTROL_INTERVAL: float = 0.5

    FETCH_TIMEOUT: int = 120
    INSTALLER_REPO_URL: str = "https://github.com/admier1/BrinxAI-Worker-Nodes"
    INSTALLER_DIR: Path = Path("BrinxAI-Worker-Nodes")
    INSTALLER_SCRIPT: str = "install_ubuntu.sh"
    INSTALLER_TIMEOUT: int = 1800

    DOCKER_APT_REPO: str = "https://download.docker.com/linux/ubuntu"
    DOCKER_PACKAGES: list[str] = ["docker-ce", "docker-ce-cli", "containerd.io"]
    NVIDIA_INSTALL_SCRIPT_URL: str = (
        "https://raw.githubusercontent.com/NVIDIA/nvidia-docker/main/scripts/nvidia-docker-install.sh"
    )

    LOGIN_URL: str = "https://workers.brinxai.com"
    WORKER_LOG_HINT: str = "docker logs brinxai-worker-nodes-worker-1"

    model_config = SettingsConfigDict(env_prefix="BOOTSTRAP_", env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> AppSettings:
    """Settings shared by every module of one process; environment and .env are read on first call."""
    return AppSettings()
