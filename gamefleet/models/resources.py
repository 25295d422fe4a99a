"""Resource monitoring and autoscaling models."""

from pydantic import BaseModel, Field, model_validator

from gamefleet.models.platform import ResourceLimits


class ResourceStats(BaseModel):
    """Point-in-time resource sample for one workload."""

    container_id: str
    cpu_usage_percent: float = 0.0
    memory_usage_mb: int = 0
    memory_limit_mb: int = 0
    memory_usage_percent: float = 0.0
    players_online: int = 0
    max_players: int = 0
    network_rx_mb: float = 0.0
    network_tx_mb: float = 0.0


class ScalingRules(BaseModel):
    """Process-wide autoscaling configuration."""

    memory_per_player: int = Field(default=150, ge=0, description="MB per player")
    base_memory: int = Field(default=1024, ge=0, description="Base memory in MB")
    max_memory: int = Field(default=8192, ge=1, description="Maximum memory in MB")
    min_memory: int = Field(default=512, ge=1, description="Minimum memory in MB")
    cpu_per_player: int = Field(default=5000, ge=0, description="CPU quota per player")
    base_cpu: int = Field(default=50000, ge=1000, description="Base CPU quota")
    scaling_threshold: float = Field(default=80, gt=0, le=100)

    @model_validator(mode="after")
    def _check_bounds(self) -> "ScalingRules":
        if self.min_memory > self.max_memory:
            raise ValueError(
                f"min_memory ({self.min_memory}) must not exceed "
                f"max_memory ({self.max_memory})"
            )
        return self


class ScalingRulesUpdate(BaseModel):
    """Partial update of the scaling rules."""

    memory_per_player: int | None = None
    base_memory: int | None = None
    max_memory: int | None = None
    min_memory: int | None = None
    cpu_per_player: int | None = None
    base_cpu: int | None = None
    scaling_threshold: float | None = None


class ScalingResult(BaseModel):
    """Outcome of checking (and possibly rescaling) one workload."""

    scaled: bool
    old_resources: ResourceLimits | None = None
    new_resources: ResourceLimits | None = None
    reason: str | None = None
    error: str | None = None


class MonitorEntry(BaseModel):
    server_id: str
    result: ScalingResult


class MonitorBatchResult(BaseModel):
    """Outcome of a monitor run across every online workload."""

    servers_checked: int = 0
    servers_scaled: int = 0
    servers_failed: int = 0
    results: list[MonitorEntry] = Field(default_factory=list)


class ResourceSummary(BaseModel):
    """Resource usage summary for dashboards."""

    cpu_usage: float = 0.0
    memory_usage: int = 0
    memory_limit: int = 0
    memory_usage_percent: float = 0.0
    players_online: int = 0
    max_players: int = 20
    network_rx: float = 0.0
    network_tx: float = 0.0
    is_optimal: bool = False
    recommendations: list[str] | None = None
    error: str | None = None
