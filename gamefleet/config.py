"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file and override existing env vars
load_dotenv(override=True)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Orchestration platform
    platform_url: str = "https://localhost:9443"
    platform_api_key: str = Field(default="")
    platform_username: str | None = None
    platform_password: str | None = None
    platform_verify_ssl: bool = True
    platform_timeout_seconds: float = 30.0
    platform_environment_id: int | None = None

    # Workload creation and verification
    deploy_max_attempts: int = Field(default=3, ge=1)
    deploy_retry_delay_seconds: float = 2.0
    verify_interval_seconds: float = 1.0
    verify_timeout_seconds: float = 15.0
    readiness_interval_seconds: float = 1.0
    readiness_timeout_seconds: float = 30.0
    progress_running_weight: float = Field(default=0.5, ge=0.0, lt=1.0)

    # Workload conventions
    workload_image: str = "itzg/minecraft-server:latest"
    workload_base_image: str = "itzg/minecraft-server"
    container_name_prefix: str = "mc-"
    stack_name_prefix: str = "minecraft-"
    server_data_root: str = "/servers"
    workload_network: str = "minecraft-network"

    # Ports
    port_range_start: int = 25566
    port_range_end: int = 25595
    secondary_port_range_start: int = 35566
    secondary_port_range_end: int = 35595
    secondary_port_offset: int = 10
    port_claim_ttl_seconds: float = 300.0

    # Image updates
    docker_update_enabled: bool = False
    docker_update_schedule: Literal["daily", "weekly", "monthly", "manual"] = "weekly"
    docker_update_start_hour: int = Field(default=2, ge=0, le=23)
    docker_update_end_hour: int = Field(default=6, ge=0, le=23)
    docker_update_timezone: str = "UTC"
    docker_update_auto_restart: bool = False
    docker_update_cleanup_old: bool = False
    docker_update_max_age: int = 30
    docker_update_notify_users: bool = False
    docker_update_rollback: bool = False

    # Resource monitor
    monitor_batch_size: int = 50
    monitor_delay_seconds: float = 1.0

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["console", "json"] = "console"
    log_directory: str = "logs"
    log_file_name: str | None = None

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"

    @property
    def uses_credentials(self) -> bool:
        """Whether the platform is reached with username/password auth."""
        return not self.platform_api_key and bool(
            self.platform_username and self.platform_password
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
