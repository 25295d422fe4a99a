"""Image update manager for game-server workloads.

Detects workloads running an outdated server image and rebuilds them from
their persisted configuration, one batch at a time.
"""

from datetime import datetime, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

from pydantic import ValidationError as SchemaError

from gamefleet.config import Settings, settings
from gamefleet.core.exceptions import (
    FleetError,
    PermissionDeniedError,
    UpdateInProgressError,
    ValidationError,
    WorkloadNotFoundError,
)
from gamefleet.core.record_store import RecordStore, get_record_store
from gamefleet.models.platform import PlatformContainer, PlatformImage
from gamefleet.models.records import TenantRecord
from gamefleet.models.updates import (
    ImageUpdateConfig,
    ImageUpdateConfigPatch,
    MaintenanceWindow,
    ServerUpdateStatus,
    UpdateCheck,
    UpdateResult,
    UpdaterStatus,
)
from gamefleet.orchestration.client import PlatformClient, get_platform_client
from gamefleet.services.integrations import Notifier, get_notifier
from gamefleet.services.workload_spec import WorkloadSpecBuilder
from gamefleet.utils.logging import get_logger

logger = get_logger("image_updater")


def load_update_config(config: Settings) -> ImageUpdateConfig:
    """Build the update configuration from ``DOCKER_UPDATE_*`` settings."""
    return ImageUpdateConfig(
        enabled=config.docker_update_enabled,
        schedule=config.docker_update_schedule,
        maintenance_window=MaintenanceWindow(
            start_hour=config.docker_update_start_hour,
            end_hour=config.docker_update_end_hour,
            timezone=config.docker_update_timezone,
        ),
        auto_restart=config.docker_update_auto_restart,
        cleanup_old_images=config.docker_update_cleanup_old,
        max_image_age=config.docker_update_max_age,
        notify_users=config.docker_update_notify_users,
        rollback_on_failure=config.docker_update_rollback,
    )


def _require_admin(caller: TenantRecord, action: str) -> None:
    if not caller.is_admin:
        raise PermissionDeniedError(
            f"Only administrators can {action}", {"email": caller.email}
        )


class ImageUpdater:
    """Rolls workloads onto the current server image.

    Only one batch runs at a time; starting another while ``is_updating`` is
    set fails fast with ``UpdateInProgressError``.
    """

    def __init__(
        self,
        client: PlatformClient,
        record_store: RecordStore,
        notifier: Notifier,
        config: Settings | None = None,
        update_config: ImageUpdateConfig | None = None,
    ):
        self.client = client
        self.record_store = record_store
        self.notifier = notifier
        self.settings = config or settings
        self.specs = WorkloadSpecBuilder(self.settings)
        self.config = update_config or load_update_config(self.settings)
        self.is_updating = False
        self._cancelled = False
        self._queue: list[ServerUpdateStatus] = []
        self._last_update: datetime | None = None

    @property
    def target_image(self) -> str:
        return self.settings.workload_image

    def in_maintenance_window(self, now: datetime | None = None) -> bool:
        """Whether ``now`` falls inside the maintenance window.

        The window may cross midnight and is evaluated in its own timezone.
        """
        window = self.config.maintenance_window
        if window is None:
            return True
        tz = ZoneInfo(window.timezone)
        current = (now or datetime.now(timezone.utc)).astimezone(tz)
        hour = current.hour
        if window.start_hour <= window.end_hour:
            return window.start_hour <= hour < window.end_hour
        return hour >= window.start_hour or hour < window.end_hour

    def _is_managed_image(self, reference: str) -> bool:
        base = self.settings.workload_base_image
        return reference == base or reference.startswith(f"{base}:") or reference.startswith(f"{base}@")

    async def find_managed_workloads(
        self, environment_id: int
    ) -> tuple[list[PlatformContainer], list[PlatformImage]]:
        """Workloads and images built from the managed base image."""
        images = [
            image
            for image in await self.client.list_images(environment_id)
            if any(self._is_managed_image(tag) for tag in image.repo_tags or [])
        ]
        image_ids = {image.id for image in images}
        containers = [
            container
            for container in await self.client.list_workloads(environment_id)
            if self._is_managed_image(container.image)
            or container.image_id in image_ids
            or container.image in image_ids
        ]
        return containers, images

    async def check_for_updates(self) -> UpdateCheck:
        """List managed workloads whose image differs from the target."""
        environment_id = await self.client.resolve_environment()
        containers, images = await self.find_managed_workloads(environment_id)
        target = self.target_image
        target_id = next(
            (image.id for image in images if target in (image.repo_tags or [])), None
        )

        statuses: list[ServerUpdateStatus] = []
        for container in containers:
            server_id = self.specs.server_id_from_container(container.primary_name)
            if server_id is None:
                continue
            record = await self.record_store.get_workload(server_id)
            if record is None:
                continue

            outdated = container.image != target or (
                target_id is not None and bool(container.image_id) and container.image_id != target_id
            )
            if outdated:
                statuses.append(
                    ServerUpdateStatus(
                        server_id=server_id,
                        server_name=record.server_name,
                        container_name=container.primary_name,
                        environment_id=environment_id,
                        current_image=container.image,
                        target_image=target,
                    )
                )
        return UpdateCheck(updates_available=bool(statuses), containers=statuses)

    async def perform_manual_update(
        self, caller: TenantRecord, server_ids: list[str] | None = None
    ) -> UpdateResult:
        """Admin-triggered update, optionally limited to some servers."""
        _require_admin(caller, "trigger manual updates")
        logger.info("updates.manual_triggered", admin=caller.email, server_ids=server_ids)
        return await self.perform_update(server_ids)

    async def perform_scheduled_update(self, now: datetime | None = None) -> UpdateResult:
        """Run an update batch if automatic updates are due."""
        if not self.config.enabled:
            return UpdateResult(success=False, errors=["Automatic updates are disabled"])
        if self.config.schedule == "manual":
            return UpdateResult(success=False, errors=["Updates are scheduled manually"])
        if not self.in_maintenance_window(now):
            return UpdateResult(success=False, errors=["Not in maintenance window"])
        logger.info("updates.scheduled_triggered")
        return await self.perform_update()

    async def perform_update(self, server_ids: list[str] | None = None) -> UpdateResult:
        """Update every outdated workload (or just ``server_ids``).

        A failed workload is recorded and the batch moves on.

        Raises:
            UpdateInProgressError: If a batch is already running
        """
        if self.is_updating:
            raise UpdateInProgressError()
        self.is_updating = True
        self._cancelled = False
        result = UpdateResult()

        try:
            check = await self.check_for_updates()
            queue = check.containers
            if server_ids is not None:
                wanted = set(server_ids)
                queue = [status for status in queue if status.server_id in wanted]
            if not queue:
                result.details.append("No updates available")
                return result

            self._queue = queue
            result.details.append(f"Found {len(queue)} containers to update")

            if self.config.notify_users:
                await self._notify(queue)

            for status in queue:
                if self._cancelled:
                    result.details.append(f"Skipped {status.server_name}: update cancelled")
                    continue
                try:
                    await self._update_one(status)
                    result.updated_containers.append(status.container_name)
                    result.details.append(f"Updated {status.server_name}")
                except Exception as e:
                    status.status = "failed"
                    status.error = str(e)
                    status.end_time = datetime.utcnow()
                    result.failed_containers.append(status.container_name)
                    result.errors.append(f"Failed to update {status.server_name}: {e}")
                    result.details.append(f"Failed {status.server_name}: {e}")
                    logger.error("updates.workload_failed", server_id=status.server_id, error=str(e))

            if self.config.cleanup_old_images:
                try:
                    result.cleaned_images = await self.cleanup_old_images(queue[0].environment_id)
                    result.details.append(f"Cleaned up {len(result.cleaned_images)} old images")
                except FleetError as e:
                    result.errors.append(f"Image cleanup failed: {e}")
                    result.details.append(f"Image cleanup failed: {e}")

            failed = [s for s in queue if s.status == "failed"]
            if failed and self.config.rollback_on_failure:
                result.rollback_performed = await self._rollback(failed, result)

            result.success = not result.errors
        except FleetError as e:
            result.success = False
            result.errors.append(e.message)
            result.details.append(f"Update process failed: {e.message}")
            logger.error("updates.batch_failed", error=e.message)
        finally:
            self.is_updating = False
            self._queue = []
            self._last_update = datetime.utcnow()

        logger.info(
            "updates.batch_completed",
            updated=len(result.updated_containers),
            failed=len(result.failed_containers),
            cleaned=len(result.cleaned_images),
            rollback=result.rollback_performed,
        )
        return result

    async def _update_one(self, status: ServerUpdateStatus) -> None:
        status.status = "updating"
        status.start_time = datetime.utcnow()
        environment_id = status.environment_id

        await self.client.pull_image(environment_id, status.target_image)
        container = await self.client.find_container(status.container_name, environment_id)
        if container is None:
            raise WorkloadNotFoundError(status.server_id, "Container not found")

        was_running = container.is_running
        if was_running:
            await self.client.stop_container(container.id, environment_id)

        await self._recreate(status.server_id, environment_id, status.target_image, was_running)
        status.status = "completed"
        status.end_time = datetime.utcnow()

    async def _recreate(
        self, server_id: str, environment_id: int, image: str, was_running: bool
    ) -> None:
        """Remove a workload and build it again from its persisted record."""
        record = await self.record_store.get_workload(server_id)
        if record is None:
            raise WorkloadNotFoundError(server_id, "Server not found in records")
        spec = self.specs.build(record, image=image)

        await self.client.remove_workload(spec.stack_name, spec.container_name, environment_id)
        await self.client.create_with_verification_and_rollback(spec, environment_id)

        container = await self.client.find_container(spec.container_name, environment_id)
        if container is None:
            return
        should_run = was_running or self.config.auto_restart
        if should_run and not container.is_running:
            await self.client.start_container(container.id, environment_id)
        elif not should_run and container.is_running:
            await self.client.stop_container(container.id, environment_id)

    async def _rollback(self, failed: list[ServerUpdateStatus], result: UpdateResult) -> bool:
        """Recreate failed workloads from the image they ran before."""
        all_restored = True
        for status in failed:
            try:
                await self._recreate(
                    status.server_id, status.environment_id, status.current_image, True
                )
                status.status = "rolled-back"
                result.details.append(f"Rolled back {status.server_name} to {status.current_image}")
            except FleetError as e:
                all_restored = False
                result.errors.append(f"Rollback failed for {status.server_name}: {e}")
                result.details.append(f"Rollback failed for {status.server_name}: {e}")
                logger.error("updates.rollback_failed", server_id=status.server_id, error=str(e))
        return all_restored

    async def cleanup_old_images(self, environment_id: int) -> list[str]:
        """Remove managed images past the retention age that nothing uses."""
        containers, images = await self.find_managed_workloads(environment_id)
        in_use = {c.image_id for c in containers} | {c.image for c in containers}
        cutoff = datetime.now(timezone.utc) - timedelta(days=self.config.max_image_age)

        cleaned: list[str] = []
        for image in images:
            created = datetime.fromtimestamp(image.created, tz=timezone.utc)
            if created >= cutoff:
                continue
            if image.id in in_use or in_use.intersection(image.repo_tags or []):
                continue
            try:
                await self.client.remove_image(environment_id, image.id)
                cleaned.append(image.id)
                logger.info("updates.image_removed", image_id=image.id)
            except FleetError as e:
                logger.warning("updates.image_remove_failed", image_id=image.id, error=str(e))
        return cleaned

    async def _notify(self, queue: list[ServerUpdateStatus]) -> None:
        for status in queue:
            record = await self.record_store.get_workload(status.server_id)
            if record is None:
                continue
            try:
                await self.notifier.notify(
                    record.email,
                    f"Scheduled update for {record.server_name}",
                    f"Your server {record.server_name} is being updated to {status.target_image}.",
                )
                status.user_notified = True
            except FleetError as e:
                logger.warning("updates.notify_failed", server_id=status.server_id, error=str(e))

    async def cancel_update(self, caller: TenantRecord) -> bool:
        """Ask the running batch to stop before its next workload.

        Workloads already being rebuilt are not interrupted.
        """
        _require_admin(caller, "cancel updates")
        if not self.is_updating:
            return False
        self._cancelled = True
        self._queue = []
        logger.info("updates.cancelled", admin=caller.email)
        return True

    def update_config(self, patch: ImageUpdateConfigPatch) -> ImageUpdateConfig:
        merged = {**self.config.model_dump(), **patch.model_dump(exclude_none=True)}
        try:
            self.config = ImageUpdateConfig.model_validate(merged)
        except SchemaError as e:
            raise ValidationError("Invalid update configuration", {"errors": [err["msg"] for err in e.errors()]}) from e
        logger.info("updates.config_updated", **self.config.model_dump(exclude={"maintenance_window"}))
        return self.config

    def get_status(self) -> UpdaterStatus:
        return UpdaterStatus(
            config=self.config,
            is_updating=self.is_updating,
            queue_size=len(self._queue),
            last_update=self._last_update,
        )


@lru_cache
def get_image_updater() -> ImageUpdater:
    """Get the image updater singleton."""
    return ImageUpdater(get_platform_client(), get_record_store(), get_notifier())
