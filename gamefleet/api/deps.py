"""Dependency injection for API endpoints."""

from typing import Annotated

from fastapi import Depends, Header

from gamefleet.core.events import EventBus, get_event_bus
from gamefleet.core.exceptions import (
    PermissionDeniedError,
    ValidationError,
    WorkloadNotFoundError,
)
from gamefleet.core.pipeline import DeploymentPipeline, get_deployment_pipeline
from gamefleet.core.record_store import RecordStore, get_record_store
from gamefleet.models.records import TenantRecord, WorkloadRecord
from gamefleet.orchestration.client import PlatformClient, get_platform_client
from gamefleet.services.image_updater import ImageUpdater, get_image_updater
from gamefleet.services.port_allocator import PortAllocator, get_port_allocator
from gamefleet.services.resource_monitor import ResourceMonitor, get_resource_monitor


async def get_records() -> RecordStore:
    """Get the record store."""
    return get_record_store()


async def get_events() -> EventBus:
    """Get the event bus."""
    return get_event_bus()


async def get_client() -> PlatformClient:
    """Get the orchestration platform client."""
    return get_platform_client()


async def get_pipeline() -> DeploymentPipeline:
    return get_deployment_pipeline()


async def get_allocator() -> PortAllocator:
    return get_port_allocator()


async def get_monitor() -> ResourceMonitor:
    return get_resource_monitor()


async def get_updater() -> ImageUpdater:
    return get_image_updater()


async def get_current_tenant(
    records: Annotated[RecordStore, Depends(get_records)],
    x_user_email: Annotated[str | None, Header()] = None,
) -> TenantRecord:
    """Resolve the calling tenant from the forwarded identity header."""
    if not x_user_email:
        raise PermissionDeniedError("Missing X-User-Email header")
    tenant = await records.get_tenant(x_user_email)
    if tenant is None or not tenant.is_active:
        raise PermissionDeniedError(f"Unknown or inactive user: {x_user_email}")
    return tenant


async def get_admin(
    tenant: Annotated[TenantRecord, Depends(get_current_tenant)],
) -> TenantRecord:
    """Require an admin-flagged caller."""
    if not tenant.is_admin:
        raise PermissionDeniedError("Administrator access required", {"email": tenant.email})
    return tenant


async def get_owned_server(
    server_id: str,
    tenant: Annotated[TenantRecord, Depends(get_current_tenant)],
    records: Annotated[RecordStore, Depends(get_records)],
) -> WorkloadRecord:
    """Get a server the caller owns (admins may access any) or raise 404."""
    if not server_id.strip():
        raise ValidationError("Server id is required")
    record = await records.get_workload(server_id)
    if record is None:
        raise WorkloadNotFoundError(server_id)
    if not tenant.is_admin and record.email.lower() != tenant.email.lower():
        raise PermissionDeniedError("You do not own this server", {"server_id": server_id})
    return record


# Type aliases for cleaner signatures
RecordsDep = Annotated[RecordStore, Depends(get_records)]
EventsDep = Annotated[EventBus, Depends(get_events)]
ClientDep = Annotated[PlatformClient, Depends(get_client)]
PipelineDep = Annotated[DeploymentPipeline, Depends(get_pipeline)]
AllocatorDep = Annotated[PortAllocator, Depends(get_allocator)]
MonitorDep = Annotated[ResourceMonitor, Depends(get_monitor)]
UpdaterDep = Annotated[ImageUpdater, Depends(get_updater)]
TenantDep = Annotated[TenantRecord, Depends(get_current_tenant)]
AdminDep = Annotated[TenantRecord, Depends(get_admin)]
ServerDep = Annotated[WorkloadRecord, Depends(get_owned_server)]
