"""Resource monitor and autoscaler for game-server workloads."""

import asyncio
from datetime import datetime
from functools import lru_cache
from typing import Any, Awaitable, Callable

from pydantic import ValidationError as SchemaError

from gamefleet.config import Settings, settings
from gamefleet.core.exceptions import FleetError, ValidationError, WorkloadNotFoundError
from gamefleet.core.record_store import RecordStore, get_record_store
from gamefleet.models.platform import ResourceLimits
from gamefleet.models.records import WorkloadRecord
from gamefleet.models.resources import (
    MonitorBatchResult,
    MonitorEntry,
    ResourceStats,
    ResourceSummary,
    ScalingResult,
    ScalingRules,
    ScalingRulesUpdate,
)
from gamefleet.orchestration.client import PlatformClient, get_platform_client
from gamefleet.services.workload_spec import WorkloadSpecBuilder
from gamefleet.utils.logging import get_logger

logger = get_logger("resource_monitor")

MB = 1024 * 1024
CPU_PERIOD = 100000
MIN_CHANGE_RATIO = 0.1
SPARE_CAPACITY_FACTOR = 0.5


def parse_stats(container_id: str, raw: dict[str, Any], online: int, capacity: int) -> ResourceStats:
    """Turn a raw one-shot stats payload into a ``ResourceStats`` sample."""
    cpu_percent = 0.0
    cpu_stats = raw.get("cpu_stats") or {}
    precpu_stats = raw.get("precpu_stats") or {}
    if cpu_stats and precpu_stats:
        cpu_delta = cpu_stats.get("cpu_usage", {}).get("total_usage", 0) - precpu_stats.get(
            "cpu_usage", {}
        ).get("total_usage", 0)
        system_delta = cpu_stats.get("system_cpu_usage", 0) - precpu_stats.get("system_cpu_usage", 0)
        cpus = cpu_stats.get("online_cpus") or 1
        if system_delta > 0:
            cpu_percent = cpu_delta / system_delta * cpus * 100

    memory_stats = raw.get("memory_stats") or {}
    usage = memory_stats.get("usage", 0)
    limit = memory_stats.get("limit", 0)
    memory_percent = usage / limit * 100 if limit > 0 else 0.0

    rx = tx = 0
    for network in (raw.get("networks") or {}).values():
        rx += network.get("rx_bytes", 0)
        tx += network.get("tx_bytes", 0)

    return ResourceStats(
        container_id=container_id,
        cpu_usage_percent=round(cpu_percent, 2),
        memory_usage_mb=round(usage / MB),
        memory_limit_mb=round(limit / MB),
        memory_usage_percent=round(memory_percent, 2),
        players_online=online,
        max_players=capacity,
        network_rx_mb=round(rx / MB, 2),
        network_tx_mb=round(tx / MB, 2),
    )


class ResourceMonitor:
    """Samples workload load and rewrites resource limits to match it."""

    def __init__(
        self,
        client: PlatformClient,
        record_store: RecordStore,
        config: Settings | None = None,
        rules: ScalingRules | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.record_store = record_store
        self.config = config or settings
        self.specs = WorkloadSpecBuilder(self.config)
        self._rules = rules or ScalingRules()
        self._sleep = sleep

    def get_rules(self) -> ScalingRules:
        return self._rules.model_copy()

    def update_rules(self, update: ScalingRulesUpdate) -> ScalingRules:
        """Apply a partial rule update. The merged rules are re-validated."""
        merged = {**self._rules.model_dump(), **update.model_dump(exclude_none=True)}
        try:
            self._rules = ScalingRules.model_validate(merged)
        except SchemaError as e:
            raise ValidationError("Invalid scaling rules", {"errors": [err["msg"] for err in e.errors()]}) from e
        logger.info("monitor.rules_updated", **self._rules.model_dump())
        return self.get_rules()

    def calculate_optimal_resources(self, sessions: int, capacity: int) -> ResourceLimits:
        """Desired limits for a session load.

        Memory is always clamped to the configured bounds, whatever the
        session inputs.
        """
        rules = self._rules
        sessions = max(sessions, 0)
        spare = max(capacity - sessions, 0)

        session_memory = sessions * rules.memory_per_player
        spare_memory = spare * rules.memory_per_player * SPARE_CAPACITY_FACTOR
        memory_mb = min(
            max(rules.base_memory + session_memory + spare_memory, rules.min_memory),
            rules.max_memory,
        )
        cpu_quota = max(rules.base_cpu + sessions * rules.cpu_per_player, rules.base_cpu)
        return ResourceLimits(
            memory=round(memory_mb * MB),
            cpu_quota=round(cpu_quota),
            cpu_period=CPU_PERIOD,
        )

    async def _locate(self, server_id: str) -> tuple[WorkloadRecord, int, str]:
        record = await self.record_store.get_workload(server_id)
        if record is None:
            raise WorkloadNotFoundError(server_id)
        environment_id = await self.client.resolve_environment()
        container = await self.client.find_container(
            self.specs.container_name(record.unique_id), environment_id
        )
        if container is None:
            raise WorkloadNotFoundError(server_id, "Container not found")
        return record, environment_id, container.id

    async def get_resource_stats(
        self, container_id: str, environment_id: int, default_capacity: int = 0
    ) -> ResourceStats:
        raw = await self.client.get_stats(container_id, environment_id)
        sessions = await self.client.get_session_counts(
            container_id, environment_id, default_capacity=default_capacity
        )
        if sessions.error:
            logger.debug("monitor.session_count_fallback", container_id=container_id, error=sessions.error)
        return parse_stats(container_id, raw or {}, sessions.online, sessions.capacity)

    async def check_and_scale(self, server_id: str) -> ScalingResult:
        """Check one workload and rescale it when load calls for it.

        Never raises for platform or record failures; the error is returned
        on the result.
        """
        log = logger.bind(server_id=server_id)
        try:
            record, environment_id, container_id = await self._locate(server_id)
            capacity = record.server_config.max_players if record.server_config else 0
            stats = await self.get_resource_stats(container_id, environment_id, capacity)

            details = await self.client.get_workload_details(container_id, environment_id)
            host_config = (details or {}).get("HostConfig") or {}
            current = ResourceLimits(
                memory=host_config.get("Memory") or 0,
                cpu_quota=host_config.get("CpuQuota") or 0,
                cpu_period=host_config.get("CpuPeriod") or CPU_PERIOD,
            )

            rules = self._rules
            memory_hot = stats.memory_usage_percent > rules.scaling_threshold
            cpu_hot = stats.cpu_usage_percent > rules.scaling_threshold
            crowded = (
                rules.memory_per_player > 0
                and stats.players_online > stats.memory_limit_mb / rules.memory_per_player
            )
            if not (memory_hot or cpu_hot or crowded):
                return ScalingResult(scaled=False, reason="No scaling needed")

            optimal = self.calculate_optimal_resources(stats.players_online, stats.max_players)
            memory_change = (
                abs(optimal.memory - current.memory) / current.memory if current.memory > 0 else 1.0
            )
            cpu_change = (
                abs(optimal.cpu_quota - current.cpu_quota) / current.cpu_quota
                if current.cpu_quota > 0
                else 1.0
            )
            if memory_change <= MIN_CHANGE_RATIO and cpu_change <= MIN_CHANGE_RATIO:
                return ScalingResult(scaled=False, reason="Resource difference too small")

            await self.client.update_resources(container_id, environment_id, optimal)

            changes: dict[str, Any] = {"last_resource_update": datetime.utcnow()}
            if record.server_config:
                changes["server_config"] = record.server_config.model_copy(
                    update={"server_memory": round(optimal.memory / MB)}
                )
            await self.record_store.update_workload(server_id, **changes)

            if memory_hot:
                reason = f"Scaling due to memory usage > {rules.scaling_threshold:g}%"
            elif cpu_hot:
                reason = f"Scaling due to CPU usage > {rules.scaling_threshold:g}%"
            else:
                reason = "Scaling due to player count exceeding memory allowance"
            log.info(
                "monitor.scaled",
                old_memory_mb=round(current.memory / MB),
                new_memory_mb=round(optimal.memory / MB),
                old_cpu_quota=current.cpu_quota,
                new_cpu_quota=optimal.cpu_quota,
                reason=reason,
            )
            return ScalingResult(
                scaled=True,
                old_resources=current,
                new_resources=optimal,
                reason=reason,
            )
        except FleetError as e:
            log.warning("monitor.check_failed", error=str(e))
            return ScalingResult(scaled=False, error=e.message)

    async def monitor_all(self) -> MonitorBatchResult:
        """Check every online workload, one at a time."""
        workloads = await self.record_store.find_workloads(
            limit=self.config.monitor_batch_size, is_online=True
        )
        batch = MonitorBatchResult(servers_checked=len(workloads))

        for index, workload in enumerate(workloads):
            try:
                result = await self.check_and_scale(workload.unique_id)
            except Exception as e:
                logger.error("monitor.unexpected_error", server_id=workload.unique_id, error=str(e))
                result = ScalingResult(scaled=False, error=str(e))

            batch.results.append(MonitorEntry(server_id=workload.unique_id, result=result))
            if result.scaled:
                batch.servers_scaled += 1
            if result.error:
                batch.servers_failed += 1

            if index < len(workloads) - 1:
                await self._sleep(self.config.monitor_delay_seconds)

        logger.info(
            "monitor.batch_completed",
            checked=batch.servers_checked,
            scaled=batch.servers_scaled,
            failed=batch.servers_failed,
        )
        return batch

    async def get_resource_summary(self, server_id: str) -> ResourceSummary:
        """Usage summary with recommendations for one workload.

        Raises:
            WorkloadNotFoundError: If the record or container is missing
        """
        record, environment_id, container_id = await self._locate(server_id)
        capacity = record.server_config.max_players if record.server_config else 0
        try:
            stats = await self.get_resource_stats(container_id, environment_id, capacity)
        except FleetError as e:
            return ResourceSummary(error=e.message)

        recommendations: list[str] = []
        if stats.memory_usage_percent > 90:
            recommendations.append("Memory usage is critically high. Consider upgrading server resources.")
        elif stats.memory_usage_percent > 80:
            recommendations.append("Memory usage is high. Monitor for performance issues.")
        if stats.cpu_usage_percent > 90:
            recommendations.append("CPU usage is critically high. Server may experience lag.")
        if stats.players_online > stats.max_players * 0.8:
            recommendations.append(
                "Server is near player capacity. Consider increasing max players or server resources."
            )

        return ResourceSummary(
            cpu_usage=stats.cpu_usage_percent,
            memory_usage=stats.memory_usage_mb,
            memory_limit=stats.memory_limit_mb,
            memory_usage_percent=stats.memory_usage_percent,
            players_online=stats.players_online,
            max_players=stats.max_players,
            network_rx=stats.network_rx_mb,
            network_tx=stats.network_tx_mb,
            is_optimal=stats.memory_usage_percent < 80 and stats.cpu_usage_percent < 80,
            recommendations=recommendations or None,
        )


@lru_cache
def get_resource_monitor() -> ResourceMonitor:
    """Get the resource monitor singleton."""
    return ResourceMonitor(get_platform_client(), get_record_store())
