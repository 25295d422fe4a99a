"""Administrative endpoints: image updates, autoscaling rules and port inspection."""

from fastapi import APIRouter, Query
from pydantic import BaseModel

from gamefleet.api.deps import AdminDep, AllocatorDep, ClientDep, MonitorDep, UpdaterDep
from gamefleet.models.ports import PortAvailabilityCheck, PortUsageReport, RangeValidation
from gamefleet.models.records import PortReservationRange
from gamefleet.models.resources import MonitorBatchResult, ScalingRules, ScalingRulesUpdate
from gamefleet.models.updates import (
    ImageUpdateConfig,
    ImageUpdateConfigPatch,
    UpdateCheck,
    UpdateRequest,
    UpdateResult,
    UpdaterStatus,
)

router = APIRouter()


class CancelUpdateResponse(BaseModel):
    cancelled: bool


# =============================================================================
# Image updates
# =============================================================================


@router.get("/updates", response_model=UpdaterStatus, summary="Image updater status")
async def update_status(admin: AdminDep, updater: UpdaterDep) -> UpdaterStatus:
    return updater.get_status()


@router.get("/updates/check", response_model=UpdateCheck, summary="List outdated workloads")
async def check_updates(admin: AdminDep, updater: UpdaterDep) -> UpdateCheck:
    return await updater.check_for_updates()


@router.post("/updates", response_model=UpdateResult, summary="Trigger a manual update")
async def trigger_update(
    request: UpdateRequest,
    admin: AdminDep,
    updater: UpdaterDep,
) -> UpdateResult:
    """Run an update batch now.

    Returns 409 if a batch is already running.
    """
    return await updater.perform_manual_update(admin, request.server_ids)


@router.post("/updates/scheduled", response_model=UpdateResult, summary="Run the scheduled update")
async def trigger_scheduled_update(admin: AdminDep, updater: UpdaterDep) -> UpdateResult:
    return await updater.perform_scheduled_update()


@router.post("/updates/cancel", response_model=CancelUpdateResponse, summary="Cancel the running batch")
async def cancel_update(admin: AdminDep, updater: UpdaterDep) -> CancelUpdateResponse:
    return CancelUpdateResponse(cancelled=await updater.cancel_update(admin))


@router.patch("/updates/config", response_model=ImageUpdateConfig, summary="Update updater config")
async def patch_update_config(
    patch: ImageUpdateConfigPatch,
    admin: AdminDep,
    updater: UpdaterDep,
) -> ImageUpdateConfig:
    return updater.update_config(patch)


# =============================================================================
# Autoscaling
# =============================================================================


@router.get("/scaling-rules", response_model=ScalingRules, summary="Get scaling rules")
async def get_scaling_rules(admin: AdminDep, monitor: MonitorDep) -> ScalingRules:
    return monitor.get_rules()


@router.patch("/scaling-rules", response_model=ScalingRules, summary="Update scaling rules")
async def patch_scaling_rules(
    update: ScalingRulesUpdate,
    admin: AdminDep,
    monitor: MonitorDep,
) -> ScalingRules:
    return monitor.update_rules(update)


@router.post("/monitor", response_model=MonitorBatchResult, summary="Check every online server")
async def run_monitor(admin: AdminDep, monitor: MonitorDep) -> MonitorBatchResult:
    return await monitor.monitor_all()


# =============================================================================
# Ports
# =============================================================================


@router.get("/ports/report", response_model=PortUsageReport, summary="Port usage report")
async def port_report(
    admin: AdminDep,
    allocator: AllocatorDep,
    client: ClientDep,
    environment_id: int | None = Query(None),
) -> PortUsageReport:
    env = await client.resolve_environment(environment_id)
    return await allocator.usage_report(env)


@router.post("/ports/ranges/validate", response_model=RangeValidation, summary="Validate reserved ranges")
async def validate_ranges(
    ranges: list[PortReservationRange],
    admin: AdminDep,
    allocator: AllocatorDep,
) -> RangeValidation:
    return allocator.validate_reserved_ranges(ranges)


@router.get("/ports/{port}", response_model=PortAvailabilityCheck, summary="Check one port")
async def check_port(
    port: int,
    admin: AdminDep,
    allocator: AllocatorDep,
    client: ClientDep,
    email: str | None = Query(None, description="Check on behalf of this tenant"),
    environment_id: int | None = Query(None),
) -> PortAvailabilityCheck:
    env = await client.resolve_environment(environment_id)
    return await allocator.check_port(port, tenant_email=email, environment_id=env)
