"""Image update data models."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class MaintenanceWindow(BaseModel):
    """Hours during which scheduled updates may run."""

    start_hour: int = Field(default=2, ge=0, le=23)
    end_hour: int = Field(default=6, ge=0, le=23)
    timezone: str = "UTC"


class ImageUpdateConfig(BaseModel):
    """Configuration of the image update manager."""

    enabled: bool = False
    schedule: Literal["daily", "weekly", "monthly", "manual"] = "weekly"
    maintenance_window: MaintenanceWindow | None = Field(default_factory=MaintenanceWindow)
    auto_restart: bool = False
    cleanup_old_images: bool = False
    max_image_age: int = Field(default=30, ge=0, description="Days to keep old images")
    notify_users: bool = False
    rollback_on_failure: bool = False


class ImageUpdateConfigPatch(BaseModel):
    """Partial update of the image update configuration."""

    enabled: bool | None = None
    schedule: Literal["daily", "weekly", "monthly", "manual"] | None = None
    maintenance_window: MaintenanceWindow | None = None
    auto_restart: bool | None = None
    cleanup_old_images: bool | None = None
    max_image_age: int | None = None
    notify_users: bool | None = None
    rollback_on_failure: bool | None = None


UpdateState = Literal["pending", "updating", "completed", "failed", "rolled-back"]


class ServerUpdateStatus(BaseModel):
    """Rollout state of one workload during an update batch."""

    server_id: str
    server_name: str
    container_name: str
    environment_id: int
    current_image: str
    target_image: str
    status: UpdateState = "pending"
    start_time: datetime | None = None
    end_time: datetime | None = None
    error: str | None = None
    user_notified: bool = False


class UpdateCheck(BaseModel):
    updates_available: bool
    containers: list[ServerUpdateStatus] = Field(default_factory=list)


class UpdateResult(BaseModel):
    """Aggregate outcome of an update batch."""

    success: bool = True
    updated_containers: list[str] = Field(default_factory=list)
    failed_containers: list[str] = Field(default_factory=list)
    cleaned_images: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    rollback_performed: bool = False
    details: list[str] = Field(default_factory=list)


class UpdateRequest(BaseModel):
    """Manual update trigger."""

    server_ids: list[str] | None = None

    @field_validator("server_ids")
    @classmethod
    def _no_blank_ids(cls, value: list[str] | None) -> list[str] | None:
        if value is not None and any(not v.strip() for v in value):
            raise ValueError("server_ids must not contain blank values")
        return value


class UpdaterStatus(BaseModel):
    config: ImageUpdateConfig
    is_updating: bool
    queue_size: int
    last_update: datetime | None = None
