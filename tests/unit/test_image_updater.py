"""Unit tests for the image update manager."""

from datetime import datetime, timezone

import pytest

from gamefleet.core.exceptions import PermissionDeniedError, UpdateInProgressError, ValidationError
from gamefleet.models.records import TenantRecord
from gamefleet.models.updates import (
    ImageUpdateConfig,
    ImageUpdateConfigPatch,
    MaintenanceWindow,
)
from gamefleet.services.image_updater import ImageUpdater
from tests.conftest import ADMIN, OWNER, make_workload

OLD_IMAGE = "itzg/minecraft-server:java17"
ADMIN_CALLER = TenantRecord(email=ADMIN, is_admin=True)
OWNER_CALLER = TenantRecord(email=OWNER)


@pytest.fixture
async def fleet(records, fake_platform):
    """Three deployed workloads running an outdated image."""
    containers = {}
    for index, server_id in enumerate(("alpha", "bravo", "charlie")):
        port = 25570 + index
        await records.save_workload(make_workload(server_id, port=port, is_online=True))
        containers[server_id] = fake_platform.add_container(
            f"mc-{server_id}", image=OLD_IMAGE, ports=[(port, 25565)]
        )
    fake_platform.add_container("web", image="nginx:latest")
    return containers


class TestMaintenanceWindow:
    """Tests for maintenance window evaluation."""

    def _updater(self, updater: ImageUpdater, start: int, end: int) -> ImageUpdater:
        updater.config = ImageUpdateConfig(
            maintenance_window=MaintenanceWindow(start_hour=start, end_hour=end)
        )
        return updater

    def test_same_day_window(self, updater):
        self._updater(updater, 2, 6)

        assert updater.in_maintenance_window(datetime(2024, 5, 1, 3, tzinfo=timezone.utc))
        assert not updater.in_maintenance_window(datetime(2024, 5, 1, 6, tzinfo=timezone.utc))

    def test_window_crossing_midnight(self, updater):
        self._updater(updater, 22, 4)

        assert updater.in_maintenance_window(datetime(2024, 5, 1, 23, tzinfo=timezone.utc))
        assert updater.in_maintenance_window(datetime(2024, 5, 1, 1, tzinfo=timezone.utc))
        assert not updater.in_maintenance_window(datetime(2024, 5, 1, 12, tzinfo=timezone.utc))

    def test_no_window_means_always(self, updater):
        updater.config = ImageUpdateConfig(maintenance_window=None)

        assert updater.in_maintenance_window()


class TestCheckForUpdates:
    @pytest.mark.asyncio
    async def test_finds_outdated_managed_workloads(self, updater, fleet):
        check = await updater.check_for_updates()

        assert check.updates_available is True
        assert [c.server_id for c in check.containers] == ["alpha", "bravo", "charlie"]
        assert all(c.current_image == OLD_IMAGE for c in check.containers)
        assert all(c.target_image == "itzg/minecraft-server:latest" for c in check.containers)

    @pytest.mark.asyncio
    async def test_up_to_date_workloads_are_skipped(self, updater, fake_platform, records):
        await records.save_workload(make_workload("fresh", port=25580))
        fake_platform.add_container("mc-fresh")

        check = await updater.check_for_updates()

        assert check.updates_available is False

    @pytest.mark.asyncio
    async def test_workloads_without_records_are_ignored(self, updater, fake_platform):
        fake_platform.add_container("mc-orphan", image=OLD_IMAGE)

        check = await updater.check_for_updates()

        assert check.containers == []


class TestPerformUpdate:
    """Tests for update batches."""

    @pytest.mark.asyncio
    async def test_batch_continues_past_a_failed_workload(self, updater, fleet, fake_platform):
        fake_platform.fail_paths.append(("POST", f"/containers/{fleet['bravo']['Id']}/stop$", 500))

        result = await updater.perform_update()

        assert result.success is False
        assert result.updated_containers == ["mc-alpha", "mc-charlie"]
        assert result.failed_containers == ["mc-bravo"]
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Failed to update Server bravo")
        assert fake_platform.pulled == ["itzg/minecraft-server:latest"] * 3
        assert fake_platform.container_by_name("mc-alpha")["Image"] == "itzg/minecraft-server:latest"
        assert fake_platform.container_by_name("mc-bravo")["Image"] == OLD_IMAGE
        assert updater.is_updating is False

    @pytest.mark.asyncio
    async def test_limited_to_selected_servers(self, updater, fleet, fake_platform):
        result = await updater.perform_update(["charlie"])

        assert result.updated_containers == ["mc-charlie"]
        assert fake_platform.container_by_name("mc-alpha")["Image"] == OLD_IMAGE

    @pytest.mark.asyncio
    async def test_stopped_workload_stays_stopped(self, updater, fleet, fake_platform):
        fleet["alpha"]["State"] = "exited"

        await updater.perform_update(["alpha"])

        assert fake_platform.container_by_name("mc-alpha")["State"] == "exited"

    @pytest.mark.asyncio
    async def test_auto_restart_starts_stopped_workload(self, updater, fleet, fake_platform):
        fleet["alpha"]["State"] = "exited"
        fake_platform.initial_state = "created"
        updater.config = ImageUpdateConfig(auto_restart=True)

        await updater.perform_update(["alpha"])

        assert fake_platform.container_by_name("mc-alpha")["State"] == "running"

    @pytest.mark.asyncio
    async def test_nothing_to_update(self, updater):
        result = await updater.perform_update()

        assert result.success is True
        assert result.details == ["No updates available"]

    @pytest.mark.asyncio
    async def test_second_batch_fails_fast(self, updater):
        updater.is_updating = True

        with pytest.raises(UpdateInProgressError):
            await updater.perform_update()

    @pytest.mark.asyncio
    async def test_rollback_on_failure(self, updater, fleet, fake_platform):
        updater.config = ImageUpdateConfig(rollback_on_failure=True)
        fake_platform.fail_paths.append(("POST", f"/containers/{fleet['bravo']['Id']}/stop$", 500))

        result = await updater.perform_update()

        assert result.rollback_performed is True
        assert "Rolled back Server bravo to itzg/minecraft-server:java17" in result.details
        assert fake_platform.container_by_name("mc-bravo")["Image"] == OLD_IMAGE

    @pytest.mark.asyncio
    async def test_users_are_notified(self, updater, fleet, notifier):
        updater.config = ImageUpdateConfig(notify_users=True)

        await updater.perform_update(["alpha"])

        assert len(notifier.sent) == 1
        assert notifier.sent[0][0] == OWNER

    @pytest.mark.asyncio
    async def test_old_images_are_cleaned(self, updater, fleet, fake_platform):
        updater.config = ImageUpdateConfig(cleanup_old_images=True, max_image_age=30)
        fake_platform.images = [
            {"Id": "sha256:old", "RepoTags": ["itzg/minecraft-server:java8"], "Created": 1500000000},
            {"Id": "sha256:cur", "RepoTags": ["itzg/minecraft-server:latest"], "Created": 1500000000},
            {"Id": "sha256:web", "RepoTags": ["nginx:latest"], "Created": 1500000000},
        ]

        result = await updater.perform_update()

        assert result.cleaned_images == ["sha256:old"]
        assert fake_platform.removed_images == ["sha256:old"]


class TestAdminOperations:
    @pytest.mark.asyncio
    async def test_manual_update_requires_admin(self, updater):
        with pytest.raises(PermissionDeniedError):
            await updater.perform_manual_update(OWNER_CALLER)

    @pytest.mark.asyncio
    async def test_manual_update(self, updater, fleet):
        result = await updater.perform_manual_update(ADMIN_CALLER, ["alpha"])

        assert result.updated_containers == ["mc-alpha"]

    @pytest.mark.asyncio
    async def test_cancel(self, updater):
        with pytest.raises(PermissionDeniedError):
            await updater.cancel_update(OWNER_CALLER)

        assert await updater.cancel_update(ADMIN_CALLER) is False

        updater.is_updating = True
        assert await updater.cancel_update(ADMIN_CALLER) is True

    @pytest.mark.asyncio
    async def test_scheduled_update_gates(self, updater):
        disabled = await updater.perform_scheduled_update()
        assert disabled.errors == ["Automatic updates are disabled"]

        updater.config = ImageUpdateConfig(enabled=True, schedule="manual")
        manual = await updater.perform_scheduled_update()
        assert manual.errors == ["Updates are scheduled manually"]

        updater.config = ImageUpdateConfig(
            enabled=True, maintenance_window=MaintenanceWindow(start_hour=2, end_hour=6)
        )
        outside = await updater.perform_scheduled_update(datetime(2024, 5, 1, 12, tzinfo=timezone.utc))
        assert outside.errors == ["Not in maintenance window"]

        inside = await updater.perform_scheduled_update(datetime(2024, 5, 1, 3, tzinfo=timezone.utc))
        assert inside.success is True

    def test_update_config(self, updater):
        config = updater.update_config(ImageUpdateConfigPatch(enabled=True, schedule="daily"))

        assert config.enabled is True
        assert config.schedule == "daily"
        assert updater.get_status().config.schedule == "daily"

    def test_invalid_config_patch(self, updater):
        with pytest.raises(ValidationError):
            updater.update_config(ImageUpdateConfigPatch(max_image_age=-1))
