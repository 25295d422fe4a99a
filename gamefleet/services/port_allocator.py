"""Port allocation for game-server workloads.

Ports are checked against important system ports, ports bound on the
platform, the persisted port ledger, other tenants' reserved ranges and the
allocator's own in-flight claims. Every decision is written to a
human-readable trace returned with the result.
"""

import asyncio
import time
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Callable, Iterator

from gamefleet.config import Settings, settings
from gamefleet.core.record_store import RecordStore, get_record_store
from gamefleet.models.ports import (
    PortAllocationResult,
    PortAvailabilityCheck,
    PortUsageReport,
    RangeValidation,
)
from gamefleet.models.records import PortReservationRange, TenantRecord
from gamefleet.orchestration.client import PlatformClient, get_platform_client
from gamefleet.utils.logging import get_logger

logger = get_logger("port_allocator")

MIN_RESERVABLE_PORT = 1024
MAX_PORT = 65535


@dataclass(frozen=True)
class ImportantPort:
    port: int
    description: str
    reason: str


# Ports that are never handed out to workloads
IMPORTANT_PORTS: tuple[ImportantPort, ...] = (
    ImportantPort(25565, "Default Minecraft Server Port", "Reserved for direct access"),
    ImportantPort(3306, "MySQL Database", "Database connections"),
    ImportantPort(5432, "PostgreSQL Database", "Database connections"),
    ImportantPort(6379, "Redis Cache", "Cache server"),
    ImportantPort(9000, "Platform", "Container management"),
    ImportantPort(9443, "Platform HTTPS", "Secure container management"),
    ImportantPort(8080, "HTTP Alternative", "Common web service port"),
    ImportantPort(8443, "HTTPS Alternative", "Common secure web service port"),
    ImportantPort(3000, "Node.js Development", "Common development port"),
    ImportantPort(5000, "Flask/Development", "Common development port"),
    ImportantPort(27017, "MongoDB", "NoSQL database"),
    ImportantPort(30001, "WebDAV Service", "File management service"),
)

_IMPORTANT_BY_PORT = {p.port: p for p in IMPORTANT_PORTS}


def is_important_port(port: int) -> bool:
    return port in _IMPORTANT_BY_PORT


@dataclass
class _ConflictSnapshot:
    """Conflict sources fetched once per allocator call."""

    platform_ports: set[int] = field(default_factory=set)
    ledger: dict[int, str] = field(default_factory=dict)
    foreign_ranges: list[tuple[PortReservationRange, str]] = field(default_factory=list)


class PortAllocator:
    """Assigns exclusive host ports to workloads.

    Allocation runs under a lock and every chosen port is held as a claim
    until the caller persists it and calls ``release()`` (or the claim
    expires), so concurrent allocations never return the same port.
    """

    def __init__(
        self,
        client: PlatformClient,
        record_store: RecordStore,
        config: Settings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.record_store = record_store
        self.config = config or settings
        self._clock = clock
        self._lock = asyncio.Lock()
        self._claims: dict[int, float] = {}

    @property
    def primary_range(self) -> range:
        return range(self.config.port_range_start, self.config.port_range_end + 1)

    @property
    def secondary_range(self) -> range:
        return range(
            self.config.secondary_port_range_start,
            self.config.secondary_port_range_end + 1,
        )

    @property
    def claimed_ports(self) -> set[int]:
        self._expire_claims()
        return set(self._claims)

    def _expire_claims(self) -> None:
        now = self._clock()
        for port in [p for p, expires in self._claims.items() if expires <= now]:
            del self._claims[port]
            logger.info("ports.claim_expired", port=port)

    def _claim(self, *ports: int | None) -> None:
        expires = self._clock() + self.config.port_claim_ttl_seconds
        for port in ports:
            if port is not None:
                self._claims[port] = expires

    def release(self, *ports: int | None) -> None:
        """Drop in-flight claims once the ports are persisted (or abandoned)."""
        for port in ports:
            if port is not None:
                self._claims.pop(port, None)

    async def _snapshot(
        self,
        environment_id: int,
        tenant_email: str | None,
        exclude_server_id: str | None,
    ) -> _ConflictSnapshot:
        snapshot = _ConflictSnapshot()
        snapshot.platform_ports = await self.client.get_used_ports(environment_id)

        for workload in await self.record_store.find_workloads():
            if exclude_server_id and workload.unique_id == exclude_server_id:
                continue
            for port in workload.allocated_ports:
                snapshot.ledger[port] = f"{workload.server_name} ({workload.unique_id})"

        caller = tenant_email.lower() if tenant_email else None
        for tenant in await self.record_store.list_tenants():
            if tenant.email.lower() == caller:
                continue
            snapshot.foreign_ranges.extend(
                (r, tenant.email) for r in tenant.reserved_port_ranges
            )
        return snapshot

    def _check(self, port: int, snapshot: _ConflictSnapshot) -> PortAvailabilityCheck:
        important = _IMPORTANT_BY_PORT.get(port)
        if important:
            return PortAvailabilityCheck(
                port=port,
                available=False,
                reason=f"Port {port} is reserved: {important.description} - {important.reason}",
                conflict_type="important",
            )
        if port in snapshot.platform_ports:
            return PortAvailabilityCheck(
                port=port,
                available=False,
                reason=f"Port {port} is currently in use by a container",
                conflict_type="container",
            )
        if port in snapshot.ledger:
            return PortAvailabilityCheck(
                port=port,
                available=False,
                reason=f"Port {port} is allocated to server: {snapshot.ledger[port]}",
                conflict_type="database",
            )
        for reserved, owner in snapshot.foreign_ranges:
            if reserved.contains(port):
                return PortAvailabilityCheck(
                    port=port,
                    available=False,
                    reason=(
                        f"Port {port} is within reserved range "
                        f"{reserved.start}-{reserved.end} for user: {owner}"
                    ),
                    conflict_type="reserved_range",
                )
        if port in self._claims:
            return PortAvailabilityCheck(
                port=port,
                available=False,
                reason=f"Port {port} is claimed by an in-flight allocation",
                conflict_type="pending",
            )
        return PortAvailabilityCheck(port=port, available=True, reason="Port is available")

    async def check_port(
        self,
        port: int,
        tenant_email: str | None = None,
        environment_id: int = 1,
        exclude_server_id: str | None = None,
    ) -> PortAvailabilityCheck:
        """Check one port against every conflict source."""
        self._expire_claims()
        snapshot = await self._snapshot(environment_id, tenant_email, exclude_server_id)
        return self._check(port, snapshot)

    def _find_secondary(self, primary: int, snapshot: _ConflictSnapshot) -> int | None:
        for port in self.secondary_range:
            if port != primary and self._check(port, snapshot).available:
                return port

        offset_port = primary + self.config.secondary_port_offset
        if offset_port <= self.config.port_range_end and self._check(offset_port, snapshot).available:
            return offset_port

        for port in self.primary_range:
            if port != primary and self._check(port, snapshot).available:
                return port
        return None

    def _candidates(
        self, tenant: TenantRecord, preferred_port: int | None, details: list[str]
    ) -> Iterator[tuple[int, str]]:
        """Yield (port, source) in allocation order."""
        if preferred_port:
            details.append(f"Checking preferred port: {preferred_port}")
            yield preferred_port, "preferred"

        if tenant.reserved_ports:
            details.append(
                f"Checking user's reserved ports: [{', '.join(map(str, tenant.reserved_ports))}]"
            )
            for port in tenant.reserved_ports:
                yield port, "reserved"

        if tenant.reserved_port_ranges:
            details.append("Checking user's reserved port ranges")
            for reserved in sorted(tenant.reserved_port_ranges, key=lambda r: r.start):
                details.append(
                    f"Checking range: {reserved.start}-{reserved.end} "
                    f"({reserved.description or 'No description'})"
                )
                for port in range(reserved.start, reserved.end + 1):
                    yield port, "reserved range"

        details.append(
            "Checking general server range: "
            f"{self.config.port_range_start}-{self.config.port_range_end}"
        )
        for port in self.primary_range:
            yield port, "general range"

    async def allocate(
        self,
        tenant_email: str,
        needs_secondary_port: bool = False,
        environment_id: int = 1,
        preferred_port: int | None = None,
        exclude_server_id: str | None = None,
    ) -> PortAllocationResult:
        """Pick a primary (and optionally secondary) port for a tenant.

        The returned ports stay claimed until ``release()`` is called.
        """
        tenant = await self.record_store.get_tenant(tenant_email)
        if tenant is None:
            return PortAllocationResult(success=False, error=f"User not found: {tenant_email}")

        details = [
            f"Allocating port for user: {tenant_email}",
            f"Secondary port required: {needs_secondary_port}",
            f"Environment ID: {environment_id}",
        ]

        async with self._lock:
            self._expire_claims()
            snapshot = await self._snapshot(environment_id, tenant_email, exclude_server_id)

            for port, source in self._candidates(tenant, preferred_port, details):
                check = self._check(port, snapshot)
                if not check.available:
                    # Scans over whole ranges only log the explicit picks
                    if source in ("preferred", "reserved"):
                        details.append(f"{source.capitalize()} port {port} not available: {check.reason}")
                    continue

                secondary: int | None = None
                if needs_secondary_port:
                    secondary = self._find_secondary(port, snapshot)
                    if secondary is None:
                        details.append(f"Port {port} available but no secondary port found")
                        continue

                self._claim(port, secondary)
                details.append(
                    f"Allocated {source} port: {port}"
                    + (f" with secondary port {secondary}" if secondary else "")
                )
                logger.info(
                    "ports.allocated",
                    tenant=tenant_email,
                    port=port,
                    secondary_port=secondary,
                    source=source,
                )
                return PortAllocationResult(
                    success=True, port=port, secondary_port=secondary, details=details
                )

        details.append("No available ports found in any range")
        logger.warning("ports.exhausted", tenant=tenant_email, environment_id=environment_id)
        return PortAllocationResult(
            success=False,
            error="No available ports found in the allowed ranges",
            details=details,
        )

    async def usage_report(self, environment_id: int) -> PortUsageReport:
        """Summarise usage of the general server range."""
        platform_ports = await self.client.get_used_ports(environment_id)
        ledger_ports = sorted(
            {p for w in await self.record_store.find_workloads() for p in w.allocated_ports}
        )
        important = sorted(_IMPORTANT_BY_PORT)

        used = set(platform_ports) | set(ledger_ports) | set(important)
        total = len(self.primary_range)
        used_in_range = len([p for p in used if p in self.primary_range])
        return PortUsageReport(
            total_ports=total,
            used_ports=used_in_range,
            available_ports=total - used_in_range,
            important_ports=len(important),
            platform_used_ports=sorted(platform_ports),
            ledger_used_ports=ledger_ports,
            important_ports_list=important,
        )

    @staticmethod
    def validate_reserved_ranges(ranges: list[PortReservationRange]) -> RangeValidation:
        """Validate reserved ranges before they are assigned to a tenant."""
        errors: list[str] = []
        for reserved in ranges:
            if reserved.start > reserved.end:
                errors.append(
                    f"Invalid range: start port {reserved.start} is greater than end port {reserved.end}"
                )
            for important in IMPORTANT_PORTS:
                if reserved.start <= important.port <= reserved.end:
                    errors.append(
                        f"Range {reserved.start}-{reserved.end} conflicts with important "
                        f"port {important.port}: {important.description}"
                    )
            if reserved.start < MIN_RESERVABLE_PORT or reserved.end > MAX_PORT:
                errors.append(
                    f"Range {reserved.start}-{reserved.end} is outside allowed bounds "
                    f"({MIN_RESERVABLE_PORT}-{MAX_PORT})"
                )

        for i, first in enumerate(ranges):
            for second in ranges[i + 1 :]:
                if first.start <= second.end and second.start <= first.end:
                    errors.append(
                        f"Ranges overlap: {first.start}-{first.end} and {second.start}-{second.end}"
                    )
        return RangeValidation(valid=not errors, errors=errors)


@lru_cache
def get_port_allocator() -> PortAllocator:
    """Get the port allocator singleton."""
    return PortAllocator(get_platform_client(), get_record_store())
