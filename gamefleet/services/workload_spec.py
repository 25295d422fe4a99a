"""Build platform workload specs from persisted server configuration."""

import re
from typing import Any

import yaml

from gamefleet.config import Settings, settings
from gamefleet.core.exceptions import ValidationError
from gamefleet.models.platform import WorkloadSpec
from gamefleet.models.records import ServerConfig, WorkloadRecord

GAME_PORT = 25565
CONSOLE_PORT = 25575

JVM_OPTS = "-XX:+UseG1GC -XX:+ParallelRefProcEnabled -XX:MaxGCPauseMillis=200"

# Extra environment per server flavour
SERVER_TYPE_ENV: dict[str, dict[str, str]] = {
    "VANILLA": {},
    "SPIGOT": {"SPIGET_RESOURCES": ""},
    "PAPER": {"PAPER_DOWNLOAD_URL": ""},
    "BUKKIT": {},
    "PURPUR": {},
    "FORGE": {"FORGE_VERSION": "RECOMMENDED"},
    "FABRIC": {"FABRIC_LOADER_VERSION": "LATEST"},
}

_DATA_MOUNTS = (
    ("data", "/data"),
    ("plugins", "/data/plugins"),
    ("mods", "/data/mods"),
    ("worlds", "/data/worlds"),
    ("backups", "/backups"),
)


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    return str(value)


class WorkloadSpecBuilder:
    """Turns a workload record into a compose-based ``WorkloadSpec``."""

    def __init__(self, config: Settings | None = None):
        self.config = config or settings
        self._container_re = re.compile(
            rf"^/?{re.escape(self.config.container_name_prefix)}([A-Za-z0-9_.-]+)$"
        )

    def container_name(self, unique_id: str) -> str:
        return f"{self.config.container_name_prefix}{unique_id}"

    def stack_name(self, unique_id: str) -> str:
        return f"{self.config.stack_name_prefix}{unique_id}"

    def server_id_from_container(self, name: str) -> str | None:
        """Recover the server id from a managed container name."""
        match = self._container_re.match(name)
        return match.group(1) if match else None

    def validate(self, record: WorkloadRecord) -> ServerConfig:
        """Check a record can be turned into a workload.

        Raises:
            ValidationError: Listing every problem found
        """
        problems: list[str] = []
        config = record.server_config
        if not record.server_name.strip():
            problems.append("server name is empty")
        if config is None:
            problems.append("server configuration is missing")
        else:
            if not config.motd.strip():
                problems.append("MOTD is required")
            if config.rcon_enabled and not config.rcon_password:
                problems.append("RCON is enabled but no RCON password is set")
        if record.port is not None and record.port == record.rcon_port:
            problems.append(f"game and console ports are both {record.port}")

        if problems:
            raise ValidationError(
                f"Invalid server configuration for {record.unique_id}: " + "; ".join(problems),
                {"server_id": record.unique_id, "problems": problems},
            )
        return config  # type: ignore[return-value]

    def environment(self, config: ServerConfig) -> dict[str, str]:
        env: dict[str, Any] = {
            "EULA": True,
            "VERSION": config.version or "LATEST",
            "TYPE": config.server_type,
            "MEMORY": f"{config.server_memory}M",
            "JVM_OPTS": JVM_OPTS,
            "USE_AIKAR_FLAGS": "true",
            "MOTD": config.motd,
            "MODE": config.game_mode,
            "DIFFICULTY": config.difficulty,
            "MAX_PLAYERS": config.max_players,
            "ONLINE_MODE": config.online_mode,
            "PVP": config.pvp_enabled,
            "ENABLE_WHITELIST": config.whitelist_enabled,
            "VIEW_DISTANCE": config.view_distance,
            "SIMULATION_DISTANCE": config.simulation_distance,
            "SPAWN_PROTECTION": config.spawn_protection,
            "ENABLE_RCON": config.rcon_enabled,
        }
        if config.seed:
            env["SEED"] = config.seed
        if config.rcon_enabled:
            env["RCON_PASSWORD"] = config.rcon_password
        for key, value in config.server_properties.items():
            env[key.upper().replace("-", "_")] = value
        env.update(SERVER_TYPE_ENV.get(config.server_type, {}))
        return {key: _env_value(value) for key, value in env.items()}

    def labels(self, record: WorkloadRecord, config: ServerConfig) -> dict[str, str]:
        return {
            "minecraft.server.id": record.unique_id,
            "minecraft.server.name": record.server_name,
            "minecraft.server.version": config.version or "LATEST",
            "minecraft.server.type": config.server_type,
        }

    def build_compose(self, record: WorkloadRecord, config: ServerConfig, image: str) -> dict[str, Any]:
        uid = record.unique_id
        root = f"{self.config.server_data_root.rstrip('/')}/{uid}"
        network = self.config.workload_network

        ports = [f"{record.port}:{GAME_PORT}"]
        if config.rcon_enabled and record.rcon_port:
            ports.append(f"{record.rcon_port}:{CONSOLE_PORT}")

        return {
            "version": "3.8",
            "services": {
                "minecraft": {
                    "image": image,
                    "container_name": self.container_name(uid),
                    "environment": self.environment(config),
                    "ports": ports,
                    "volumes": [f"{root}/{name}:{target}" for name, target in _DATA_MOUNTS],
                    "restart": "unless-stopped",
                    "stdin_open": True,
                    "tty": True,
                    "networks": [network],
                    "labels": self.labels(record, config),
                }
            },
            "networks": {network: {"driver": "bridge"}},
            "volumes": {f"{uid}-{name}": {} for name, _ in _DATA_MOUNTS},
        }

    def build(self, record: WorkloadRecord, image: str | None = None) -> WorkloadSpec:
        """Build the platform-native spec for a record with allocated ports.

        Raises:
            ValidationError: If the record is invalid or has no game port
        """
        config = self.validate(record)
        if record.port is None:
            raise ValidationError(
                f"Server {record.unique_id} has no allocated port",
                {"server_id": record.unique_id},
            )
        image = image or self.config.workload_image
        compose = self.build_compose(record, config, image)
        return WorkloadSpec(
            stack_name=self.stack_name(record.unique_id),
            container_name=self.container_name(record.unique_id),
            image=image,
            compose=yaml.safe_dump(
                compose, sort_keys=False, default_flow_style=False, width=4096
            ),
            env=[
                {"name": "SERVER_ID", "value": record.unique_id},
                {"name": "SERVER_NAME", "value": record.server_name},
            ],
            labels=self.labels(record, config),
        )
