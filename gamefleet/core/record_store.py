"""Record store for tenants and workloads.

The durable store is an external collaborator reached through find/update
calls. ``InMemoryRecordStore`` backs single-instance runs and tests.
"""

from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any

from gamefleet.models.records import TenantRecord, WorkloadRecord


class RecordStore(ABC):
    """Find/update access to tenant and workload records.

    No transactions are assumed across multiple record updates.
    """

    @abstractmethod
    async def get_tenant(self, email: str) -> TenantRecord | None:
        """Find a tenant by email."""

    @abstractmethod
    async def list_tenants(self) -> list[TenantRecord]:
        """List every tenant."""

    @abstractmethod
    async def save_tenant(self, tenant: TenantRecord) -> TenantRecord:
        """Insert or replace a tenant."""

    @abstractmethod
    async def get_workload(self, unique_id: str) -> WorkloadRecord | None:
        """Find a workload by its unique id."""

    @abstractmethod
    async def find_workloads(
        self, limit: int | None = None, **filters: Any
    ) -> list[WorkloadRecord]:
        """Find workloads whose fields equal every given filter."""

    @abstractmethod
    async def save_workload(self, workload: WorkloadRecord) -> WorkloadRecord:
        """Insert or replace a workload."""

    @abstractmethod
    async def update_workload(
        self, unique_id: str, **changes: Any
    ) -> WorkloadRecord | None:
        """Set fields on a workload. Returns None if it does not exist."""


class InMemoryRecordStore(RecordStore):
    """Dictionary-backed record store."""

    def __init__(self):
        self._tenants: dict[str, TenantRecord] = {}
        self._workloads: dict[str, WorkloadRecord] = {}

    async def get_tenant(self, email: str) -> TenantRecord | None:
        tenant = self._tenants.get(email.lower())
        return tenant.model_copy(deep=True) if tenant else None

    async def list_tenants(self) -> list[TenantRecord]:
        return [t.model_copy(deep=True) for t in self._tenants.values()]

    async def save_tenant(self, tenant: TenantRecord) -> TenantRecord:
        self._tenants[tenant.email.lower()] = tenant.model_copy(deep=True)
        return tenant

    async def get_workload(self, unique_id: str) -> WorkloadRecord | None:
        workload = self._workloads.get(unique_id)
        return workload.model_copy(deep=True) if workload else None

    async def find_workloads(
        self, limit: int | None = None, **filters: Any
    ) -> list[WorkloadRecord]:
        matches = [
            w.model_copy(deep=True)
            for w in self._workloads.values()
            if all(getattr(w, key) == value for key, value in filters.items())
        ]
        return matches[:limit] if limit is not None else matches

    async def save_workload(self, workload: WorkloadRecord) -> WorkloadRecord:
        self._workloads[workload.unique_id] = workload.model_copy(deep=True)
        return workload

    async def update_workload(
        self, unique_id: str, **changes: Any
    ) -> WorkloadRecord | None:
        current = self._workloads.get(unique_id)
        if current is None:
            return None
        updated = current.model_copy(update=changes, deep=True)
        self._workloads[unique_id] = updated
        return updated.model_copy(deep=True)

    def clear(self) -> None:
        self._tenants.clear()
        self._workloads.clear()


@lru_cache
def get_record_store() -> RecordStore:
    """Get the record store singleton."""
    return InMemoryRecordStore()
