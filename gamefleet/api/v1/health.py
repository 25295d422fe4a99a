"""Health check endpoints."""

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel

from gamefleet import __version__
from gamefleet.api.deps import ClientDep
from gamefleet.config import settings

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str
    environment: str
    timestamp: datetime


class PlatformHealthResponse(BaseModel):
    reachable: bool
    platform_url: str


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check API health status."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        environment=settings.app_env,
        timestamp=datetime.utcnow(),
    )


@router.get("/health/platform", response_model=PlatformHealthResponse)
async def platform_health(client: ClientDep) -> PlatformHealthResponse:
    """Check that the orchestration platform answers."""
    return PlatformHealthResponse(
        reachable=await client.test_connection(),
        platform_url=client.base_url,
    )
