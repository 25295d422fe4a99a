"""Workload creation strategies.

Platform versions disagree on the payload shape and endpoint used to create a
grouped workload. Each strategy speaks one dialect; the client walks them in
order until one is accepted and verified.
"""

import json
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import yaml

from gamefleet.core.exceptions import PlatformError
from gamefleet.models.platform import PlatformStack, RollbackResource, WorkloadSpec
from gamefleet.utils.logging import get_logger

if TYPE_CHECKING:
    from gamefleet.orchestration.client import PlatformClient


class CreationStrategy(ABC):
    """Base class for workload creation strategies.

    Strategies implement:
    - name: Strategy identifier
    - description: Which platform dialect it speaks
    - attempt(): Create the workload and describe what was created
    - activate(): Bring a created resource up (optional)
    """

    def __init__(self, client: "PlatformClient"):
        self.client = client
        self.logger = get_logger(f"strategy.{self.name}")

    @property
    @abstractmethod
    def name(self) -> str:
        """Strategy name/identifier."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description of the dialect."""

    @abstractmethod
    async def attempt(self, spec: WorkloadSpec, environment_id: int) -> RollbackResource:
        """Create the workload.

        Returns:
            The created resource, for verification and rollback

        Raises:
            FleetError: If the platform rejected the request
        """

    async def activate(self, resource: RollbackResource, environment_id: int) -> None:
        """Bring a created resource up. Stacks start on creation.

        Raises:
            FleetError: If the resource could not be started
        """


class _StackStrategy(CreationStrategy):
    """Shared handling for strategies that create a stack."""

    @abstractmethod
    async def _submit(self, spec: WorkloadSpec, environment_id: int) -> Any:
        """Send the create request and return the platform's stack payload."""

    async def attempt(self, spec: WorkloadSpec, environment_id: int) -> RollbackResource:
        payload = await self._submit(spec, environment_id)
        try:
            stack = PlatformStack.model_validate(payload)
        except (TypeError, ValueError) as e:
            raise PlatformError(
                f"{self.name}: unexpected stack response", details={"response": str(payload)[:200]}
            ) from e
        self.logger.info("strategy.stack_created", stack_id=stack.id, stack=stack.name)
        return RollbackResource(
            kind="stack",
            id=str(stack.id),
            environment_id=environment_id,
            name=spec.stack_name,
        )


class StandaloneStackStrategy(_StackStrategy):
    """Current platform API: dedicated standalone-stack endpoint."""

    @property
    def name(self) -> str:
        return "standalone_stack"

    @property
    def description(self) -> str:
        return "POST /api/stacks/create/standalone/string"

    async def _submit(self, spec: WorkloadSpec, environment_id: int) -> Any:
        return await self.client.create_stack(
            spec.stack_name, spec.compose, environment_id, spec.env
        )


class LegacyStackStrategy(_StackStrategy):
    """Older platform API: typed stack endpoint with a swarm id field."""

    @property
    def name(self) -> str:
        return "legacy_stack"

    @property
    def description(self) -> str:
        return "POST /api/stacks?type=2&method=string"

    async def _submit(self, spec: WorkloadSpec, environment_id: int) -> Any:
        return await self.client.request_json(
            "POST",
            "/api/stacks",
            params={"type": 2, "method": "string", "endpointId": environment_id},
            json={
                "Name": spec.stack_name,
                "SwarmID": "",
                "StackFileContent": spec.compose,
                "Env": spec.env,
            },
        )


class LowercaseStackStrategy(_StackStrategy):
    """Typed stack endpoint with lowercase payload keys."""

    @property
    def name(self) -> str:
        return "lowercase_stack"

    @property
    def description(self) -> str:
        return "POST /api/stacks with lowercase keys"

    async def _submit(self, spec: WorkloadSpec, environment_id: int) -> Any:
        return await self.client.request_json(
            "POST",
            "/api/stacks",
            params={"type": 2, "method": "string", "endpointId": environment_id},
            json={
                "name": spec.stack_name,
                "stackFileContent": spec.compose,
                "env": spec.env,
            },
        )


class StackFileUploadStrategy(_StackStrategy):
    """Stack created from an uploaded compose file."""

    @property
    def name(self) -> str:
        return "stack_file_upload"

    @property
    def description(self) -> str:
        return "POST /api/stacks?method=file (multipart)"

    async def _submit(self, spec: WorkloadSpec, environment_id: int) -> Any:
        env = json.dumps(spec.env)
        return await self.client.request_json(
            "POST",
            "/api/stacks",
            params={"type": 2, "method": "file", "endpointId": environment_id},
            data={"Name": spec.stack_name, "Env": env},
            files={"file": ("docker-compose.yml", spec.compose.encode(), "application/x-yaml")},
        )


_PORT_RE = re.compile(r"^(\d+):(\d+)(?:/(tcp|udp))?$")


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def parse_compose(compose: str) -> dict[str, Any]:
    """Pull the settings of the first service out of compose text.

    Only what a single container needs is kept: image, restart policy,
    environment, published ports, bind mounts and labels.

    Raises:
        PlatformError: If the text is not a compose document with a service
    """
    try:
        document = yaml.safe_load(compose) or {}
    except yaml.YAMLError as e:
        raise PlatformError(f"Unreadable compose document: {e}") from e
    services = document.get("services") if isinstance(document, dict) else None
    if not services:
        raise PlatformError("Compose document defines no services")
    service = next(iter(services.values())) or {}

    environment = service.get("environment") or {}
    if isinstance(environment, list):
        environment = dict(item.split("=", 1) for item in environment if "=" in item)

    ports: list[tuple[int, int, str]] = []
    for entry in service.get("ports") or []:
        match = _PORT_RE.match(str(entry))
        if match:
            ports.append((int(match.group(1)), int(match.group(2)), match.group(3) or "tcp"))

    labels = service.get("labels") or {}
    if isinstance(labels, list):
        labels = dict(item.split("=", 1) for item in labels if "=" in item)

    return {
        "image": service.get("image"),
        "restart": service.get("restart"),
        "environment": {str(k): _env_value(v) for k, v in environment.items()},
        "ports": ports,
        # Named volumes are declared at the top level, not per service
        "volumes": [str(v) for v in service.get("volumes") or [] if ":" in str(v)],
        "labels": {str(k): str(v) for k, v in labels.items()},
    }


class DirectContainerStrategy(CreationStrategy):
    """Last resort: create and start a single container directly.

    Used only after every stack dialect has failed.
    """

    @property
    def name(self) -> str:
        return "direct_container"

    @property
    def description(self) -> str:
        return "POST /docker/containers/create from the compose settings"

    def build_body(self, spec: WorkloadSpec) -> dict[str, Any]:
        parsed = parse_compose(spec.compose)
        image = parsed["image"] or spec.image
        labels = {**parsed["labels"], **spec.labels}

        exposed: dict[str, dict] = {}
        bindings: dict[str, list[dict[str, str]]] = {}
        for host, container, proto in parsed["ports"]:
            key = f"{container}/{proto}"
            exposed[key] = {}
            bindings.setdefault(key, []).append({"HostPort": str(host)})

        host_config: dict[str, Any] = {
            "PortBindings": bindings,
            "Binds": parsed["volumes"],
        }
        if parsed["restart"]:
            host_config["RestartPolicy"] = {"Name": parsed["restart"]}

        return {
            "Image": image,
            "Env": [f"{k}={v}" for k, v in parsed["environment"].items()],
            "Labels": labels,
            "ExposedPorts": exposed,
            "HostConfig": host_config,
            "Tty": True,
            "OpenStdin": True,
        }

    async def attempt(self, spec: WorkloadSpec, environment_id: int) -> RollbackResource:
        body = self.build_body(spec)
        container_id = await self.client.create_container(
            environment_id, spec.container_name, body
        )
        self.logger.info(
            "strategy.container_created",
            container_id=container_id,
            container=spec.container_name,
        )
        return RollbackResource(
            kind="container",
            id=container_id,
            environment_id=environment_id,
            name=spec.container_name,
        )

    async def activate(self, resource: RollbackResource, environment_id: int) -> None:
        await self.client.start_container(resource.id, environment_id)
        self.logger.info("strategy.container_started", container_id=resource.id)


DEFAULT_STRATEGIES: tuple[type[CreationStrategy], ...] = (
    StandaloneStackStrategy,
    LegacyStackStrategy,
    LowercaseStackStrategy,
    StackFileUploadStrategy,
    DirectContainerStrategy,
)
