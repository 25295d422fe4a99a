"""Server lifecycle and observation endpoints."""

from enum import Enum

from fastapi import APIRouter, Query
from pydantic import BaseModel

from gamefleet.api.deps import ClientDep, MonitorDep, RecordsDep, ServerDep
from gamefleet.core.exceptions import WorkloadNotFoundError
from gamefleet.models.records import WorkloadRecord
from gamefleet.models.resources import ResourceStats, ResourceSummary, ScalingResult
from gamefleet.orchestration.client import PlatformClient
from gamefleet.services.workload_spec import WorkloadSpecBuilder
from gamefleet.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

specs = WorkloadSpecBuilder()


class ServerAction(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    PAUSE = "pause"
    UNPAUSE = "unpause"
    KILL = "kill"


class ActionResponse(BaseModel):
    server_id: str
    action: str
    container_id: str


class RemoveResponse(BaseModel):
    server_id: str
    removed: list[str]


class LogsResponse(BaseModel):
    server_id: str
    logs: str


async def _container(client: PlatformClient, record: WorkloadRecord) -> tuple[str, int]:
    environment_id = await client.resolve_environment()
    container = await client.find_container(specs.container_name(record.unique_id), environment_id)
    if container is None:
        raise WorkloadNotFoundError(record.unique_id, "Container not found")
    return container.id, environment_id


@router.post("/{server_id}/{action}", response_model=ActionResponse, summary="Run a lifecycle action")
async def server_action(
    action: ServerAction,
    server: ServerDep,
    client: ClientDep,
    records: RecordsDep,
) -> ActionResponse:
    container_id, environment_id = await _container(client, server)
    handler = getattr(client, f"{action.value}_container")
    await handler(container_id, environment_id)

    if action in (ServerAction.STOP, ServerAction.KILL):
        await records.update_workload(server.unique_id, is_online=False)
    elif action in (ServerAction.START, ServerAction.RESTART, ServerAction.UNPAUSE):
        await records.update_workload(server.unique_id, is_online=True)

    logger.info("server.action", server_id=server.unique_id, action=action.value)
    return ActionResponse(server_id=server.unique_id, action=action.value, container_id=container_id)


@router.delete("/{server_id}", response_model=RemoveResponse, summary="Remove a server's workload")
async def remove_server(server: ServerDep, client: ClientDep, records: RecordsDep) -> RemoveResponse:
    """Remove the stack and container backing a server.

    The server record itself is kept, marked offline.
    """
    environment_id = await client.resolve_environment()
    removed = await client.remove_workload(
        specs.stack_name(server.unique_id),
        specs.container_name(server.unique_id),
        environment_id,
    )
    await records.update_workload(server.unique_id, is_online=False)
    return RemoveResponse(server_id=server.unique_id, removed=removed)


@router.get("/{server_id}/logs", response_model=LogsResponse, summary="Get container logs")
async def server_logs(
    server: ServerDep,
    client: ClientDep,
    tail: int = Query(1000, ge=1, le=10000),
) -> LogsResponse:
    container_id, environment_id = await _container(client, server)
    logs = await client.get_logs(container_id, environment_id, tail=tail)
    return LogsResponse(server_id=server.unique_id, logs=logs)


@router.get("/{server_id}/stats", response_model=ResourceStats, summary="Get resource usage")
async def server_stats(server: ServerDep, client: ClientDep, monitor: MonitorDep) -> ResourceStats:
    container_id, environment_id = await _container(client, server)
    capacity = server.server_config.max_players if server.server_config else 0
    return await monitor.get_resource_stats(container_id, environment_id, default_capacity=capacity)


@router.get("/{server_id}/resources", response_model=ResourceSummary, summary="Get resource summary")
async def server_resources(server: ServerDep, monitor: MonitorDep) -> ResourceSummary:
    return await monitor.get_resource_summary(server.unique_id)


@router.post("/{server_id}/resources/scale", response_model=ScalingResult, summary="Check and rescale")
async def scale_server(server: ServerDep, monitor: MonitorDep) -> ScalingResult:
    return await monitor.check_and_scale(server.unique_id)
