import re
from importlib import resources
from pathlib import Path
from typing import Literal

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import UnsupportedArchitecture

NAME_PATTERN = r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$"
MEMORY_RE = re.compile(r"^(\d+)\s*([bkmg]?)b?$", re.IGNORECASE)
MEMORY_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024**2, "g": 1024**3}


def _with_default_tag(image: str) -> str:
    # A colon after the last slash is a tag; one before it is a registry port.
    if ":" not in image.rsplit("/", 1)[-1]:
        return f"{image}:latest"
    return image


class PublishedPort(BaseModel):
    model_config = ConfigDict(frozen=True)

    container_port: int = Field(..., ge=1, le=65535, description="Port inside the container")
    host_port: int = Field(..., ge=1, le=65535, description="Host port, or search baseline when allocate is set")
    protocol: Literal["tcp", "udp"] = "tcp"
    host_ip: str | None = Field(None, description="127.0.0.1 for loopback-only; unset binds all interfaces")
    allocate: bool = Field(False, description="Pick the first free host port >= host_port at creation time")

    @property
    def key(self) -> str:
        return f"{self.container_port}/{self.protocol}"

    @property
    def binding(self) -> int | tuple[str, int]:
        """Host side of the mapping in the shape the docker SDK expects."""
        if self.host_ip:
            return (self.host_ip, self.host_port)
        return self.host_port


class ResourceLimits(BaseModel):
    model_config = ConfigDict(frozen=True)

    cpus: float | None = Field(None, gt=0, description="CPU quota, as `docker run --cpus`")
    memory_bytes: int | None = Field(None, gt=0, validation_alias=AliasChoices("memory", "memory_bytes"))

    @field_validator("memory_bytes", mode="before")
    @classmethod
    def parse_memory(cls, v):
        if isinstance(v, str):
            match = MEMORY_RE.match(v.strip())
            if not match:
                raise ValueError(f"Invalid memory size: {v!r}")
            amount, unit = match.groups()
            return int(amount) * MEMORY_UNITS[unit.lower()]
        return v

    @property
    def nano_cpus(self) -> int | None:
        if self.cpus is None:
            return None
        return int(self.cpus * 1_000_000_000)


class DesiredContainer(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., pattern=NAME_PATTERN, description="Runtime container name and reconciliation key")
    image: str = Field(..., description="Docker image reference to enforce")
    network: str | None = None
    published_ports: list[PublishedPort] = Field(default_factory=list, validation_alias=AliasChoices("ports", "published_ports"))
    resource_limits: ResourceLimits | None = Field(None, validation_alias=AliasChoices("limits", "resource_limits"))
    capabilities: set[str] = Field(default_factory=set)
    enabled: bool = True

    @field_validator("image")
    @classmethod
    def validate_image_tag(cls, v: str) -> str:
        return _with_default_tag(v)

    @field_validator("published_ports")
    @classmethod
    def validate_unique_bindings(cls, v: list[PublishedPort]) -> list[PublishedPort]:
        keys = [p.key for p in v]
        if len(keys) != len(set(keys)):
            raise ValueError(f"Container port published twice: {keys}")
        return v

    def port_map(self) -> dict[str, int | tuple[str, int]]:
        return {p.key: p.binding for p in self.published_ports}


class FirewallRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    port: int = Field(..., ge=1, le=65535)
    protocol: Literal["tcp", "udp"] = "tcp"

    @model_validator(mode="before")
    @classmethod
    def parse_shorthand(cls, data):
        if isinstance(data, str):
            port, _, protocol = data.partition("/")
            return {"port": port, "protocol": protocol or "tcp"}
        return data

    def __str__(self) -> str:
        return f"{self.port}/{self.protocol}"


class RelaySpec(BaseModel):
    name: str = Field(..., pattern=NAME_PATTERN)
    image_variants: dict[str, str] = Field(..., min_length=1, description="Host architecture -> image")
    network: str | None = None
    published_ports: list[PublishedPort] = Field(default_factory=list, validation_alias=AliasChoices("ports", "published_ports"))
    capabilities: set[str] = Field(default_factory=set)
    firewall: list[FirewallRule] = Field(default_factory=list)

    def image_for(self, arch: str) -> str:
        try:
            return _with_default_tag(self.image_variants[arch])
        except KeyError:
            supported = ", ".join(sorted(self.image_variants))
            raise UnsupportedArchitecture(f"Unsupported architecture: {arch} (supported: {supported})") from None

    def desired_for(self, arch: str) -> DesiredContainer:
        return DesiredContainer(
            name=self.name,
            image=self.image_for(arch),
            network=self.network,
            published_ports=self.published_ports,
            capabilities=self.capabilities,
        )


class BootstrapManifest(BaseModel):
    network: str = Field(..., pattern=NAME_PATTERN)
    stale_pattern: str = Field(..., min_length=1, description="Substring identifying containers of this project")
    worker_image: str
    firewall: list[FirewallRule] = Field(default_factory=list)
    auxiliary: list[DesiredContainer] = Field(default_factory=list)
    relay: RelaySpec

    @field_validator("worker_image")
    @classmethod
    def validate_image_tag(cls, v: str) -> str:
        return _with_default_tag(v)

    @model_validator(mode="after")
    def validate_unique_names(self):
        names = [c.name for c in self.auxiliary] + [self.relay.name]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Container names must be unique, duplicated: {duplicates}")
        return self

    def enabled_auxiliary(self) -> list[DesiredContainer]:
        return [c for c in self.auxiliary if c.enabled]


def load_manifest(path: Path | None = None) -> BootstrapManifest:
    """Loads and validates a manifest file, or the one shipped with the package."""
    if path is None:
        raw = resources.files(__package__).joinpath("manifest.yaml").read_text()
    else:
        with open(path) as f:
            raw = f.read()

    return BootstrapManifest.model_validate(yaml.safe_load(raw))
