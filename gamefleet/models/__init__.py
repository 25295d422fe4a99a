"""Data models for gamefleet."""

from gamefleet.models.deployment import (
    DeploymentAccepted,
    DeploymentRequest,
    DeploymentStatus,
    DeploymentStep,
    StepStatus,
)
from gamefleet.models.platform import (
    CreationResult,
    PlatformContainer,
    PlatformEnvironment,
    PlatformImage,
    PlatformStack,
    ResourceLimits,
    RollbackReport,
    RollbackResource,
    SessionCount,
    WorkloadSpec,
)
from gamefleet.models.ports import (
    PortAllocationResult,
    PortAvailabilityCheck,
    PortUsageReport,
    RangeValidation,
)
from gamefleet.models.records import (
    PortReservationRange,
    ServerConfig,
    TenantRecord,
    WorkloadRecord,
)
from gamefleet.models.resources import (
    MonitorBatchResult,
    ResourceStats,
    ResourceSummary,
    ScalingResult,
    ScalingRules,
    ScalingRulesUpdate,
)
from gamefleet.models.updates import (
    ImageUpdateConfig,
    ImageUpdateConfigPatch,
    ServerUpdateStatus,
    UpdateCheck,
    UpdateRequest,
    UpdateResult,
    UpdaterStatus,
)

__all__ = [
    # Deployment models
    "DeploymentAccepted",
    "DeploymentRequest",
    "DeploymentStatus",
    "DeploymentStep",
    "StepStatus",
    # Platform models
    "CreationResult",
    "PlatformContainer",
    "PlatformEnvironment",
    "PlatformImage",
    "PlatformStack",
    "ResourceLimits",
    "RollbackReport",
    "RollbackResource",
    "SessionCount",
    "WorkloadSpec",
    # Port models
    "PortAllocationResult",
    "PortAvailabilityCheck",
    "PortUsageReport",
    "RangeValidation",
    # Records
    "PortReservationRange",
    "ServerConfig",
    "TenantRecord",
    "WorkloadRecord",
    # Resource models
    "MonitorBatchResult",
    "ResourceStats",
    "ResourceSummary",
    "ScalingResult",
    "ScalingRules",
    "ScalingRulesUpdate",
    # Update models
    "ImageUpdateConfig",
    "ImageUpdateConfigPatch",
    "ServerUpdateStatus",
    "UpdateCheck",
    "UpdateRequest",
    "UpdateResult",
    "UpdaterStatus",
]
