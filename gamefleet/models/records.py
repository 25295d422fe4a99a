"""Durable record models for tenants and their workloads."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class PortReservationRange(BaseModel):
    """An inclusive interval of ports reserved for one tenant."""

    start: int = Field(..., ge=1, le=65535)
    end: int = Field(..., ge=1, le=65535)
    description: str | None = None

    def contains(self, port: int) -> bool:
        return self.start <= port <= self.end


class TenantRecord(BaseModel):
    """A tenant (account) as stored in the record store."""

    email: str
    is_admin: bool = False
    is_active: bool = True
    max_servers: int = 5
    reserved_ports: list[int] = Field(default_factory=list)
    reserved_port_ranges: list[PortReservationRange] = Field(default_factory=list)


class ServerConfig(BaseModel):
    """Game-server configuration persisted with the workload."""

    name: str
    server_type: Literal[
        "VANILLA", "SPIGOT", "PAPER", "BUKKIT", "PURPUR", "FORGE", "FABRIC"
    ] = "VANILLA"
    version: str = "LATEST"
    description: str = ""
    seed: str = ""
    game_mode: str = "survival"
    difficulty: str = "easy"
    max_players: int = Field(default=20, ge=1)
    motd: str = "A Minecraft Server"
    online_mode: bool = True
    pvp_enabled: bool = True
    whitelist_enabled: bool = False
    view_distance: int = 10
    simulation_distance: int = 10
    spawn_protection: int = 16
    rcon_enabled: bool = False
    rcon_password: str = ""
    server_memory: int = Field(default=2048, ge=256, description="Memory in MB")
    server_properties: dict[str, str | int | bool] = Field(default_factory=dict)


class WorkloadRecord(BaseModel):
    """A deployed (or deployable) game-server workload."""

    unique_id: str
    email: str
    server_name: str
    subdomain_name: str | None = None
    server_config: ServerConfig | None = None

    port: int | None = None
    rcon_port: int | None = None

    is_online: bool = False
    last_resource_update: datetime | None = None

    deployed_at: datetime | None = None
    last_deployment_status: Literal["success", "failed"] | None = None
    last_deployment_error: str | None = None
    last_deployment_at: datetime | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def allocated_ports(self) -> list[int]:
        return [p for p in (self.port, self.rcon_port) if p is not None]
