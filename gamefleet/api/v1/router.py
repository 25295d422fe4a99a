"""Main router for API v1."""

from fastapi import APIRouter

from gamefleet.api.v1 import admin, deployments, health, servers

router = APIRouter(prefix="/v1")

# Include sub-routers
router.include_router(health.router, tags=["health"])
router.include_router(deployments.router, prefix="/deployments", tags=["deployments"])
router.include_router(servers.router, prefix="/servers", tags=["servers"])
router.include_router(admin.router, prefix="/admin", tags=["admin"])
