"""Deployment Pipeline.

Drives one workload deployment through a fixed sequence of steps, recording
every transition on the deployment status and publishing it for streaming.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable

from gamefleet.config import Settings, settings
from gamefleet.core.events import EventBus, get_event_bus
from gamefleet.core.exceptions import (
    ConflictError,
    DeploymentNotFoundError,
    FleetError,
    NoPortAvailable,
    PermissionDeniedError,
    ValidationError,
    VerificationTimeout,
    WorkloadNotFoundError,
)
from gamefleet.core.record_store import RecordStore, get_record_store
from gamefleet.core.status_store import StatusStore, get_status_store
from gamefleet.models.deployment import (
    DeploymentAccepted,
    DeploymentRequest,
    DeploymentStatus,
    DeploymentStep,
    StepStatus,
)
from gamefleet.models.platform import WorkloadSpec
from gamefleet.models.records import TenantRecord, WorkloadRecord
from gamefleet.orchestration.client import PlatformClient, get_platform_client
from gamefleet.services.integrations import (
    DnsRegistrar,
    ProxyRegistrar,
    get_dns_registrar,
    get_proxy_registrar,
)
from gamefleet.services.port_allocator import PortAllocator, get_port_allocator
from gamefleet.services.workload_spec import WorkloadSpecBuilder
from gamefleet.utils.logging import get_logger

# (id, name) of every step, in execution order
STEPS: tuple[tuple[str, str], ...] = (
    ("validate", "Validate configuration"),
    ("configure", "Allocate ports and build workload"),
    ("submit", "Submit workload to platform"),
    ("verify", "Wait for server to start"),
    ("proxy", "Register with proxy"),
    ("dns", "Create DNS record"),
    ("finalize", "Finalize deployment"),
)


@dataclass
class DeploymentContext:
    """State carried between the steps of one deployment."""

    server_id: str
    preferred_port: int | None = None
    record: WorkloadRecord | None = None
    environment_id: int | None = None
    spec: WorkloadSpec | None = None
    trail: list[str] = field(default_factory=list)


class DeploymentPipeline:
    """Runs deployments as independent background tasks.

    Pipeline steps:
    1. validate - Check the persisted configuration and its owner
    2. configure - Allocate ports, persist them, build the workload spec
    3. submit - Create the workload (strategy chain with rollback)
    4. verify - Bounded wait for the server to report running
    5. proxy - Proxy registration (failure is a warning)
    6. dns - DNS registration (failure is a warning)
    7. finalize - Mark the workload online and deployed
    """

    def __init__(
        self,
        client: PlatformClient | None = None,
        record_store: RecordStore | None = None,
        allocator: PortAllocator | None = None,
        status_store: StatusStore | None = None,
        events: EventBus | None = None,
        proxy: ProxyRegistrar | None = None,
        dns: DnsRegistrar | None = None,
        config: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client or get_platform_client()
        self.record_store = record_store or get_record_store()
        self.allocator = allocator or get_port_allocator()
        self.status_store = status_store or get_status_store()
        self.events = events or get_event_bus()
        self.proxy = proxy or get_proxy_registrar()
        self.dns = dns or get_dns_registrar()
        self.config = config or settings
        self.specs = WorkloadSpecBuilder(self.config)
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()
        self.logger = get_logger("pipeline")

    def new_status(self, server_id: str) -> DeploymentStatus:
        return DeploymentStatus(
            server_id=server_id,
            steps=[DeploymentStep(id=step_id, name=name) for step_id, name in STEPS],
            running_weight=self.config.progress_running_weight,
        )

    async def start(
        self, request: DeploymentRequest, caller: TenantRecord | None = None
    ) -> DeploymentAccepted:
        """Accept a deployment and run it in the background.

        Raises:
            WorkloadNotFoundError: If the server has no record
            PermissionDeniedError: If the caller does not own the server
            ConflictError: If a deployment is already running for it
        """
        record = await self.record_store.get_workload(request.server_id)
        if record is None:
            raise WorkloadNotFoundError(request.server_id)
        if caller and not caller.is_admin and caller.email.lower() != record.email.lower():
            raise PermissionDeniedError(
                "You do not own this server", {"server_id": request.server_id}
            )

        await self._sweep_finished()
        existing = await self.status_store.get(request.server_id)
        if existing and not existing.is_terminal:
            raise ConflictError(
                f"Deployment already in progress: {request.server_id}",
                {"server_id": request.server_id},
            )

        status = self.new_status(request.server_id)
        await self.status_store.set(status)

        task = asyncio.create_task(
            self.run(request.server_id, request.preferred_port, status=status)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        self.logger.info("pipeline.accepted", server_id=request.server_id)
        return DeploymentAccepted(server_id=request.server_id)

    async def get_status(self, server_id: str) -> DeploymentStatus:
        status = await self.status_store.get(server_id)
        if status is None:
            raise DeploymentNotFoundError(server_id)
        return status

    async def list_statuses(self, status: StepStatus | None = None) -> list[DeploymentStatus]:
        await self._sweep_finished()
        return await self.status_store.list(status)

    async def _sweep_finished(self) -> None:
        expired = await self.status_store.cleanup_expired()
        if expired:
            self.logger.info("pipeline.statuses_expired", count=expired)

    async def cancel(self, server_id: str) -> bool:
        """Forget a deployment.

        Only bookkeeping is cleared: a running deployment stops at its next
        step boundary, but remote work already submitted is not undone.
        """
        removed = await self.status_store.delete(server_id)
        if removed:
            self.logger.warning("pipeline.cancelled", server_id=server_id)
        return removed

    async def wait_idle(self) -> None:
        """Wait for every background deployment to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def run(
        self,
        server_id: str,
        preferred_port: int | None = None,
        status: DeploymentStatus | None = None,
    ) -> DeploymentStatus:
        """Run every step of a deployment.

        ``status`` is the tracked status this run owns. Once the store holds
        a different object for the server (cancelled, or cancelled and
        started again) the run stops at its next step boundary and writes
        nothing more. Step failures are recorded on the status; nothing is
        raised.
        """
        if status is None:
            status = await self.status_store.get(server_id)
        if status is None:
            status = self.new_status(server_id)
            await self.status_store.set(status)

        ctx = DeploymentContext(server_id=server_id, preferred_port=preferred_port)
        handlers = {
            "validate": self._validate,
            "configure": self._configure,
            "submit": self._submit,
            "verify": self._verify,
            "proxy": self._register_proxy,
            "dns": self._register_dns,
            "finalize": self._finalize,
        }

        status.status = StepStatus.RUNNING
        self.logger.info("pipeline.started", server_id=server_id)

        for step_id, _ in STEPS:
            if await self._superseded(status, step_id):
                return status

            await self._transition(status, step_id, StepStatus.RUNNING, 0)
            try:
                message = await handlers[step_id](status, ctx)
            except Exception as e:
                await self._fail(status, step_id, e, ctx)
                return status
            await self._transition(status, step_id, StepStatus.COMPLETED, 100, message)

        if await self._superseded(status, "finalize"):
            return status
        status.status = StepStatus.COMPLETED
        status.details = ctx.trail
        await self.status_store.set(status)
        await self.events.publish_completed(server_id)
        self.logger.info(
            "pipeline.completed",
            server_id=server_id,
            warnings=len(status.warnings),
        )
        return status

    async def _superseded(self, status: DeploymentStatus, step_id: str) -> bool:
        """Whether this run's status is no longer the tracked one."""
        if await self.status_store.get(status.server_id) is status:
            return False
        self.logger.info(
            "pipeline.stopped_after_cancel", server_id=status.server_id, step=step_id
        )
        return True

    async def _transition(
        self,
        status: DeploymentStatus,
        step_id: str,
        step_status: StepStatus,
        progress: int,
        message: str | None = None,
        error: str | None = None,
    ) -> None:
        step = status.update_step(step_id, step_status, progress, message, error)
        if await self.status_store.get(status.server_id) is not status:
            return
        await self.status_store.set(status)
        await self.events.publish_step(
            status.server_id, step_id, step_status.value, status.progress, step.message, error
        )
        self.logger.info(
            f"pipeline.step.{step_status.value}",
            server_id=status.server_id,
            step=step_id,
            progress=status.progress,
        )

    async def _fail(
        self,
        status: DeploymentStatus,
        step_id: str,
        error: Exception,
        ctx: DeploymentContext,
    ) -> None:
        if await self._superseded(status, step_id):
            return
        step_name = status.get_step(step_id).name
        message = str(error) or type(error).__name__
        if isinstance(error, FleetError):
            ctx.trail.extend(error.details.get("trail", []))

        status.status = StepStatus.FAILED
        status.error = f"{step_name} failed: {message}"
        status.current_step = f"{step_name} failed"
        status.details = ctx.trail
        await self._transition(status, step_id, StepStatus.FAILED, 0, error=message)
        await self.events.publish_failed(status.server_id, status.error, step_id)

        self.logger.error(
            "pipeline.failed",
            server_id=status.server_id,
            step=step_id,
            error=message,
            error_type=type(error).__name__,
        )

        try:
            await self.record_store.update_workload(
                status.server_id,
                last_deployment_status="failed",
                last_deployment_error=status.error,
                last_deployment_at=datetime.utcnow(),
            )
        except FleetError as e:
            self.logger.warning(
                "pipeline.record_update_failed", server_id=status.server_id, error=str(e)
            )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _validate(self, status: DeploymentStatus, ctx: DeploymentContext) -> str:
        record = await self.record_store.get_workload(ctx.server_id)
        if record is None:
            raise WorkloadNotFoundError(ctx.server_id)
        self.specs.validate(record)

        owner = await self.record_store.get_tenant(record.email)
        if owner is None:
            raise ValidationError(f"Owner not found: {record.email}")
        if not owner.is_active:
            raise ValidationError(f"Owner account is inactive: {record.email}")

        ctx.record = record
        ctx.environment_id = await self.client.resolve_environment()
        return "Configuration validated"

    async def _configure(self, status: DeploymentStatus, ctx: DeploymentContext) -> str:
        record = ctx.record
        config = record.server_config
        allocation = await self.allocator.allocate(
            record.email,
            needs_secondary_port=bool(config and config.rcon_enabled),
            environment_id=ctx.environment_id,
            preferred_port=ctx.preferred_port or record.port,
            exclude_server_id=record.unique_id,
        )
        ctx.trail.extend(allocation.details)
        if not allocation.success:
            raise NoPortAvailable(allocation.error or "Port allocation failed", allocation.details)

        try:
            updated = await self.record_store.update_workload(
                record.unique_id,
                port=allocation.port,
                rcon_port=allocation.secondary_port,
            )
        finally:
            self.allocator.release(allocation.port, allocation.secondary_port)
        if updated is None:
            raise WorkloadNotFoundError(record.unique_id)

        ctx.record = updated
        ctx.spec = self.specs.build(updated)
        if allocation.secondary_port:
            return f"Allocated port {allocation.port} (console {allocation.secondary_port})"
        return f"Allocated port {allocation.port}"

    async def _submit(self, status: DeploymentStatus, ctx: DeploymentContext) -> str:
        result = await self.client.create_with_verification_and_rollback(
            ctx.spec, ctx.environment_id
        )
        ctx.trail.extend(result.details)
        if result.already_existed:
            return "Workload already exists"
        return f"Workload created ({result.strategy})"

    async def _verify(self, status: DeploymentStatus, ctx: DeploymentContext) -> str:
        interval = self.config.readiness_interval_seconds
        timeout = self.config.readiness_timeout_seconds
        polls = max(1, int(timeout / interval)) if interval > 0 else 1
        name = ctx.spec.container_name

        container = None
        for poll in range(polls):
            container = await self.client.find_container(name, ctx.environment_id)
            if container and container.is_running:
                return "Server is running"
            if poll < polls - 1:
                await self._sleep(interval)

        if container is None:
            raise VerificationTimeout("container", name, timeout)
        return f"Server container is {container.state or 'created'}; still starting"

    async def _register_proxy(self, status: DeploymentStatus, ctx: DeploymentContext) -> str:
        try:
            await self.proxy.register(ctx.record)
        except Exception as e:
            status.warnings.append(f"Proxy registration failed: {e}")
            self.logger.warning("pipeline.proxy_failed", server_id=ctx.server_id, error=str(e))
            return "Proxy registration failed (continuing)"
        return "Proxy registered"

    async def _register_dns(self, status: DeploymentStatus, ctx: DeploymentContext) -> str:
        try:
            await self.dns.register(ctx.record)
        except Exception as e:
            status.warnings.append(f"DNS registration failed: {e}")
            self.logger.warning("pipeline.dns_failed", server_id=ctx.server_id, error=str(e))
            return "DNS registration failed (continuing)"
        return "DNS record created"

    async def _finalize(self, status: DeploymentStatus, ctx: DeploymentContext) -> str:
        now = datetime.utcnow()
        await self.record_store.update_workload(
            ctx.server_id,
            is_online=True,
            deployed_at=now,
            last_deployment_status="success",
            last_deployment_error=None,
            last_deployment_at=now,
        )
        return "Deployment completed successfully"


# Singleton instance
_pipeline: DeploymentPipeline | None = None


def get_deployment_pipeline() -> DeploymentPipeline:
    """Get the deployment pipeline singleton."""
    global _pipeline
    if _pipeline is None:
        _pipeline = DeploymentPipeline()
    return _pipeline
