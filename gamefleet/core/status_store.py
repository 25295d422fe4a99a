"""Deployment status storage."""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from functools import lru_cache

from gamefleet.models.deployment import DeploymentStatus, StepStatus


class StatusStore(ABC):
    """Get/set/list access to deployment statuses keyed by server id."""

    @abstractmethod
    async def get(self, server_id: str) -> DeploymentStatus | None:
        """Get the status of a deployment."""

    @abstractmethod
    async def set(self, status: DeploymentStatus) -> DeploymentStatus:
        """Store (create or replace) a deployment status."""

    @abstractmethod
    async def list(
        self, status: StepStatus | None = None
    ) -> list[DeploymentStatus]:
        """List tracked deployments, newest first."""

    @abstractmethod
    async def delete(self, server_id: str) -> bool:
        """Forget a deployment. Returns False if nothing was tracked."""

    @abstractmethod
    async def cleanup_expired(self) -> int:
        """Drop finished deployments past their retention. Returns the count."""


class InMemoryStatusStore(StatusStore):
    """Keeps deployment statuses in process memory.

    Note: statuses are lost on restart. A multi-instance deployment needs a
    shared implementation (Redis or a database).
    """

    def __init__(self, ttl_hours: int = 24):
        self._statuses: dict[str, DeploymentStatus] = {}
        self._ttl = timedelta(hours=ttl_hours)

    async def get(self, server_id: str) -> DeploymentStatus | None:
        status = self._statuses.get(server_id)
        if status and status.is_terminal:
            # Finished deployments expire; in-flight ones never do
            if datetime.utcnow() - status.updated_at > self._ttl:
                del self._statuses[server_id]
                return None
        return status

    async def set(self, status: DeploymentStatus) -> DeploymentStatus:
        status.updated_at = datetime.utcnow()
        self._statuses[status.server_id] = status
        return status

    async def list(
        self, status: StepStatus | None = None
    ) -> list[DeploymentStatus]:
        statuses = list(self._statuses.values())
        if status:
            statuses = [s for s in statuses if s.status == status]
        statuses.sort(key=lambda s: s.created_at, reverse=True)
        return statuses

    async def delete(self, server_id: str) -> bool:
        if server_id in self._statuses:
            del self._statuses[server_id]
            return True
        return False

    async def cleanup_expired(self) -> int:
        now = datetime.utcnow()
        expired = [
            sid
            for sid, status in self._statuses.items()
            if status.is_terminal and now - status.updated_at > self._ttl
        ]
        for sid in expired:
            del self._statuses[sid]
        return len(expired)


@lru_cache
def get_status_store() -> StatusStore:
    """Get the status store singleton."""
    return InMemoryStatusStore()
