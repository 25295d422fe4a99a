"""Deployment endpoints."""

import asyncio
import json

from fastapi import APIRouter, Query, status
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from gamefleet.api.deps import AdminDep, EventsDep, PipelineDep, TenantDep
from gamefleet.core.events import TERMINAL_EVENTS, Event
from gamefleet.core.exceptions import DeploymentNotFoundError
from gamefleet.models.deployment import (
    DeploymentAccepted,
    DeploymentRequest,
    DeploymentStatus,
    StepStatus,
)

router = APIRouter()

KEEPALIVE_SECONDS = 30.0


class DeploymentListResponse(BaseModel):
    deployments: list[DeploymentStatus]
    total: int


class CancelResponse(BaseModel):
    server_id: str
    cancelled: bool


@router.post(
    "",
    response_model=DeploymentAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a deployment",
    description="Accepts the deployment and runs it in the background. Poll the status or stream it.",
)
async def start_deployment(
    request: DeploymentRequest,
    tenant: TenantDep,
    pipeline: PipelineDep,
) -> DeploymentAccepted:
    return await pipeline.start(request, caller=tenant)


@router.get("", response_model=DeploymentListResponse, summary="List deployments")
async def list_deployments(
    admin: AdminDep,
    pipeline: PipelineDep,
    status_filter: StepStatus | None = Query(None, alias="status"),
) -> DeploymentListResponse:
    deployments = await pipeline.list_statuses(status_filter)
    return DeploymentListResponse(deployments=deployments, total=len(deployments))


@router.get("/{server_id}", response_model=DeploymentStatus, summary="Get deployment status")
async def get_deployment(server_id: str, tenant: TenantDep, pipeline: PipelineDep) -> DeploymentStatus:
    return await pipeline.get_status(server_id)


@router.delete("/{server_id}", response_model=CancelResponse, summary="Cancel a deployment")
async def cancel_deployment(server_id: str, admin: AdminDep, pipeline: PipelineDep) -> CancelResponse:
    """Clear a deployment's bookkeeping.

    Remote work already submitted is not undone.
    """
    if not await pipeline.cancel(server_id):
        raise DeploymentNotFoundError(server_id)
    return CancelResponse(server_id=server_id, cancelled=True)


@router.get("/{server_id}/stream", summary="Stream deployment events (SSE)")
async def stream_deployment(
    server_id: str,
    tenant: TenantDep,
    pipeline: PipelineDep,
    events: EventsDep,
) -> EventSourceResponse:
    """Stream step transitions for a deployment using Server-Sent Events."""
    current = await pipeline.get_status(server_id)
    queue = events.subscribe(server_id)

    async def event_generator():
        try:
            yield {
                "event": "connected",
                "data": json.dumps(current.model_dump(mode="json")),
            }
            if current.is_terminal:
                return

            while True:
                try:
                    event: Event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield {"event": "keepalive", "data": "{}"}
                    continue

                yield {"event": event.event_type, "data": json.dumps(event.data, default=str)}
                if event.event_type in TERMINAL_EVENTS:
                    break
        finally:
            events.unsubscribe(server_id, queue)

    return EventSourceResponse(event_generator())
