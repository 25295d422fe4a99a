"""Orchestration platform data models.

Listing payloads keep the platform's PascalCase field names as aliases so
they can be validated straight from API responses.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class PlatformModel(BaseModel):
    """Base for models parsed from platform responses."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class PlatformEnvironment(PlatformModel):
    """An environment (endpoint) managed by the platform."""

    id: int = Field(alias="Id")
    name: str = Field(default="", alias="Name")


class PlatformStack(PlatformModel):
    """A grouped (compose) workload."""

    id: int = Field(alias="Id")
    name: str = Field(alias="Name")
    endpoint_id: int | None = Field(default=None, alias="EndpointId")
    status: int | None = Field(default=None, alias="Status")


class PortBinding(PlatformModel):
    private_port: int | None = Field(default=None, alias="PrivatePort")
    public_port: int | None = Field(default=None, alias="PublicPort")
    type: str | None = Field(default=None, alias="Type")


class PlatformContainer(PlatformModel):
    """A container as returned by the listing API."""

    id: str = Field(alias="Id")
    names: list[str] = Field(default_factory=list, alias="Names")
    image: str = Field(default="", alias="Image")
    image_id: str = Field(default="", alias="ImageID")
    state: str = Field(default="", alias="State")
    status: str = Field(default="", alias="Status")
    created: int = Field(default=0, alias="Created")
    ports: list[PortBinding] = Field(default_factory=list, alias="Ports")
    labels: dict[str, str] = Field(default_factory=dict, alias="Labels")

    @property
    def primary_name(self) -> str:
        return self.names[0].lstrip("/") if self.names else ""

    def has_name(self, name: str) -> bool:
        return any(n.lstrip("/") == name for n in self.names)

    @property
    def is_running(self) -> bool:
        return self.state == "running"


class PlatformImage(PlatformModel):
    """A container image present in an environment."""

    id: str = Field(alias="Id")
    repo_tags: list[str] | None = Field(default=None, alias="RepoTags")
    created: int = Field(default=0, alias="Created")
    size: int = Field(default=0, alias="Size")


class WorkloadSpec(BaseModel):
    """Platform-native specification of one workload."""

    stack_name: str
    container_name: str
    image: str
    compose: str
    env: list[dict[str, str]] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)


class RollbackResource(BaseModel):
    """A resource created during an in-flight multi-attempt operation."""

    kind: Literal["stack", "container"]
    id: str
    environment_id: int
    name: str


class RollbackReport(BaseModel):
    """Outcome of tearing down a rollback context."""

    removed: list[RollbackResource] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)


class CreationResult(BaseModel):
    """Outcome of create-with-verification-and-rollback."""

    success: bool
    resource: RollbackResource | None = None
    strategy: str | None = None
    attempts: int = 0
    already_existed: bool = False
    details: list[str] = Field(default_factory=list)


class SessionCount(BaseModel):
    """Players (sessions) currently connected to a workload."""

    online: int = 0
    capacity: int = 0
    error: str | None = None


class ResourceLimits(BaseModel):
    """Resource limits applied to a container."""

    memory: int = Field(..., description="Memory limit in bytes")
    cpu_quota: int
    cpu_period: int = 100000

    def to_payload(self) -> dict[str, Any]:
        return {
            "Memory": self.memory,
            "MemorySwap": self.memory,
            "CpuQuota": self.cpu_quota,
            "CpuPeriod": self.cpu_period,
        }
