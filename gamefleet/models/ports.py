"""Port allocation data models."""

from typing import Literal

from pydantic import BaseModel, Field


ConflictType = Literal[
    "container", "database", "important", "reserved_range", "pending"
]


class PortAllocationResult(BaseModel):
    """Outcome of a port allocation request."""

    success: bool
    port: int | None = None
    secondary_port: int | None = None
    error: str | None = None
    details: list[str] = Field(default_factory=list)


class PortAvailabilityCheck(BaseModel):
    """Availability of a single port against every conflict source."""

    port: int
    available: bool
    reason: str | None = None
    conflict_type: ConflictType | None = None


class PortUsageReport(BaseModel):
    """Summary of port usage in the global workload range."""

    total_ports: int
    used_ports: int
    available_ports: int
    important_ports: int
    platform_used_ports: list[int] = Field(default_factory=list)
    ledger_used_ports: list[int] = Field(default_factory=list)
    important_ports_list: list[int] = Field(default_factory=list)


class RangeValidation(BaseModel):
    """Validation outcome for a set of reserved ranges."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
