"""Pytest configuration and fixtures."""

import itertools
import json
import re
import struct
from typing import Any

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from gamefleet.api import deps
from gamefleet.config import Settings
from gamefleet.core.events import EventBus
from gamefleet.core.pipeline import DeploymentPipeline
from gamefleet.core.record_store import InMemoryRecordStore
from gamefleet.core.status_store import InMemoryStatusStore
from gamefleet.main import app
from gamefleet.models.records import (
    PortReservationRange,
    ServerConfig,
    TenantRecord,
    WorkloadRecord,
)
from gamefleet.orchestration.client import PlatformClient
from gamefleet.services.image_updater import ImageUpdater
from gamefleet.services.integrations import (
    LoggingDnsRegistrar,
    LoggingProxyRegistrar,
    Notifier,
)
from gamefleet.services.port_allocator import PortAllocator
from gamefleet.services.resource_monitor import ResourceMonitor

OWNER = "owner@example.com"
ADMIN = "admin@example.com"
NEIGHBOUR = "neighbour@example.com"

_CONTAINER_NAME_RE = re.compile(r"container_name:\s*['\"]?([\w.\-]+)")
_IMAGE_RE = re.compile(r"image:\s*['\"]?([^'\"\s]+)")
_PORT_RE = re.compile(r"-\s*['\"]?(\d+):(\d+)")
_FORM_NAME_RE = re.compile(r'name="Name"\r\n\r\n([^\r\n]+)')


def frame(text: str, stream: int = 1) -> bytes:
    """Encode text as one multiplexed stream frame."""
    data = text.encode()
    return bytes([stream, 0, 0, 0]) + struct.pack(">I", len(data)) + data


async def no_sleep(seconds: float) -> None:
    return None


class FakePlatform:
    """In-memory orchestration platform served through ``httpx.MockTransport``.

    Failure knobs:
    - ``fail_strategies``: strategy name -> HTTP status returned on create
    - ``fail_paths``: (method, path regex, status) checked before routing
    - ``hidden``: created resources are never listed back
    """

    def __init__(self, api_key: str = "test-key"):
        self.api_key = api_key
        self.username = "admin"
        self.password = "secret"
        self.token = "jwt-1"
        self.auth_calls = 0

        self.environments: list[dict[str, Any]] = [{"Id": 1, "Name": "local"}]
        self.stacks: dict[int, dict[str, Any]] = {}
        self.containers: dict[str, dict[str, Any]] = {}
        self.images: list[dict[str, Any]] = []
        self.pulled: list[str] = []
        self.removed_images: list[str] = []

        self.fail_strategies: dict[str, int] = {}
        self.fail_paths: list[tuple[str, str, int]] = []
        self.hidden = False
        self.initial_state = "running"

        self.stats: dict[str, Any] = {
            "cpu_stats": {"cpu_usage": {"total_usage": 2000}, "system_cpu_usage": 20000, "online_cpus": 2},
            "precpu_stats": {"cpu_usage": {"total_usage": 1000}, "system_cpu_usage": 10000},
            "memory_stats": {"usage": 512 * 1024 * 1024, "limit": 2048 * 1024 * 1024},
            "networks": {"eth0": {"rx_bytes": 1024 * 1024, "tx_bytes": 2 * 1024 * 1024}},
        }
        self.player_list = "There are 3 of a max of 20 players online: alex, sam, kim"
        self.logs = "[Server thread/INFO]: Done (3.2s)! For help, type \"help\"\n"

        self.requests: list[tuple[str, str]] = []
        self.strategy_calls: list[str] = []
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def add_container(
        self,
        name: str,
        image: str = "itzg/minecraft-server:latest",
        state: str = "running",
        ports: list[tuple[int, int]] | None = None,
        image_id: str = "",
        stack_id: int | None = None,
        hidden: bool = False,
    ) -> dict[str, Any]:
        container_id = f"c{next(self._ids):06d}"
        container = {
            "Id": container_id,
            "Names": [f"/{name}"],
            "Image": image,
            "ImageID": image_id,
            "State": state,
            "Status": "Up 2 minutes" if state == "running" else "Exited (0)",
            "Created": 1700000000,
            "Ports": [
                {"PrivatePort": private, "PublicPort": public, "Type": "tcp"}
                for public, private in ports or []
            ],
            "Labels": {},
            "HostConfig": {"Memory": 2048 * 1024 * 1024, "CpuQuota": 50000, "CpuPeriod": 100000},
            "_stack_id": stack_id,
            "_hidden": hidden,
        }
        self.containers[container_id] = container
        return container

    def add_stack(self, name: str, compose: str, environment_id: int) -> dict[str, Any]:
        stack_id = next(self._ids)
        stack = {
            "Id": stack_id,
            "Name": name,
            "EndpointId": environment_id,
            "Status": 1,
            "_compose": compose,
            "_hidden": self.hidden,
        }
        self.stacks[stack_id] = stack

        container_name = _CONTAINER_NAME_RE.search(compose)
        image = _IMAGE_RE.search(compose)
        if container_name:
            self.add_container(
                container_name.group(1),
                image=image.group(1) if image else "unknown",
                state=self.initial_state,
                ports=[(int(h), int(c)) for h, c in _PORT_RE.findall(compose)],
                stack_id=stack_id,
                hidden=self.hidden,
            )
        return stack

    def container_by_name(self, name: str) -> dict[str, Any] | None:
        for container in self.containers.values():
            if f"/{name}" in container["Names"]:
                return container
        return None

    def visible_stacks(self) -> list[dict[str, Any]]:
        return [s for s in self.stacks.values() if not s["_hidden"]]

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    @staticmethod
    def _json(status: int, payload: Any) -> httpx.Response:
        return httpx.Response(status, json=payload)

    @staticmethod
    def _public(item: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in item.items() if not k.startswith("_")}

    def _authorized(self, request: httpx.Request) -> bool:
        if request.headers.get("X-API-Key") == self.api_key:
            return True
        return request.headers.get("Authorization") == f"Bearer {self.token}"

    def _strategy_for(self, request: httpx.Request) -> str:
        path = request.url.path
        if path.endswith("/containers/create"):
            return "direct_container"
        if path == "/api/stacks/create/standalone/string":
            return "standalone_stack"
        if request.url.params.get("method") == "file":
            return "stack_file_upload"
        body = json.loads(request.content or b"{}")
        return "legacy_stack" if "SwarmID" in body else "lowercase_stack"

    def handler(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.requests.append((method, path))

        if method == "POST" and path == "/api/auth":
            self.auth_calls += 1
            body = json.loads(request.content)
            if body.get("Username") != self.username or body.get("Password") != self.password:
                return self._json(422, {"message": "Invalid credentials"})
            return self._json(200, {"jwt": self.token})

        if not self._authorized(request):
            return self._json(401, {"message": "Unauthorized"})

        for fail_method, pattern, status in self.fail_paths:
            if method == fail_method and re.search(pattern, path):
                return self._json(status, {"message": f"injected failure for {path}"})

        creates = path in ("/api/stacks", "/api/stacks/create/standalone/string") or path.endswith(
            "/containers/create"
        )
        if method == "POST" and creates:
            strategy = self._strategy_for(request)
            self.strategy_calls.append(strategy)
            if strategy in self.fail_strategies:
                status = self.fail_strategies[strategy]
                return self._json(status, {"message": f"{strategy} rejected"})
            if strategy == "direct_container":
                return self._create_container(request)
            return self._create_stack(request, strategy)

        if path == "/api/endpoints" and method == "GET":
            return self._json(200, self.environments)
        if path == "/api/stacks" and method == "GET":
            return self._json(200, [self._public(s) for s in self.visible_stacks()])

        match = re.fullmatch(r"/api/stacks/(\d+)(?:/(start|stop))?", path)
        if match:
            return self._stack_action(int(match.group(1)), match.group(2), method)

        match = re.fullmatch(r"/api/endpoints/(\d+)/docker(/.*)", path)
        if match:
            return self._docker(request, method, match.group(2))

        return self._json(404, {"message": f"No route for {method} {path}"})

    def _create_stack(self, request: httpx.Request, strategy: str) -> httpx.Response:
        environment_id = int(request.url.params.get("endpointId", 1))
        if strategy == "stack_file_upload":
            text = request.content.decode(errors="replace")
            form_name = _FORM_NAME_RE.search(text)
            name, compose = (form_name.group(1) if form_name else "unknown"), text
        else:
            body = json.loads(request.content)
            name = body.get("Name") or body.get("name")
            compose = body.get("StackFileContent") or body.get("stackFileContent") or ""
        if any(s["Name"] == name for s in self.visible_stacks()):
            return self._json(409, {"message": f"A stack named {name} already exists"})
        stack = self.add_stack(name, compose, environment_id)
        return self._json(200, self._public(stack))

    def _create_container(self, request: httpx.Request) -> httpx.Response:
        name = request.url.params.get("name")
        body = json.loads(request.content)
        existing = self.container_by_name(name)
        if existing and not existing["_hidden"]:
            return self._json(409, {"message": f"Conflict. The container name /{name} is already in use"})
        ports = [
            (int(bindings[0]["HostPort"]), int(key.split("/")[0]))
            for key, bindings in body.get("HostConfig", {}).get("PortBindings", {}).items()
        ]
        container = self.add_container(
            name, image=body.get("Image", ""), state="created", ports=ports, hidden=self.hidden
        )
        return self._json(201, {"Id": container["Id"], "Warnings": []})

    def _stack_action(self, stack_id: int, action: str | None, method: str) -> httpx.Response:
        stack = self.stacks.get(stack_id)
        if stack is None:
            return self._json(404, {"message": "Stack not found"})
        if method == "DELETE":
            del self.stacks[stack_id]
            for cid in [c["Id"] for c in self.containers.values() if c["_stack_id"] == stack_id]:
                del self.containers[cid]
            return httpx.Response(204)
        state = "running" if action == "start" else "exited"
        for container in self.containers.values():
            if container["_stack_id"] == stack_id:
                container["State"] = state
        return self._json(200, self._public(stack))

    def _docker(self, request: httpx.Request, method: str, path: str) -> httpx.Response:
        if path == "/containers/json" and method == "GET":
            include_all = request.url.params.get("all") == "true"
            listed = [
                self._public(c)
                for c in self.containers.values()
                if not c["_hidden"] and (include_all or c["State"] == "running")
            ]
            return self._json(200, listed)

        if path == "/images/json" and method == "GET":
            return self._json(200, self.images)
        if path == "/images/create" and method == "POST":
            self.pulled.append(request.url.params.get("fromImage"))
            return self._json(200, {"status": "Downloaded newer image"})
        match = re.fullmatch(r"/images/([^/]+)", path)
        if match and method == "DELETE":
            self.removed_images.append(match.group(1))
            self.images = [i for i in self.images if i["Id"] != match.group(1)]
            return self._json(200, [{"Deleted": match.group(1)}])

        match = re.fullmatch(r"/exec/([^/]+)/start", path)
        if match and method == "POST":
            return httpx.Response(200, content=frame(self.player_list))

        match = re.fullmatch(r"/containers/([^/]+)(?:/(\w+))?", path)
        if not match:
            return self._json(404, {"message": f"No docker route for {path}"})
        container = self.containers.get(match.group(1))
        if container is None:
            return self._json(404, {"message": f"No such container: {match.group(1)}"})
        action = match.group(2)

        if method == "DELETE" and action is None:
            del self.containers[container["Id"]]
            return httpx.Response(204)
        if action == "json":
            return self._json(200, {"Id": container["Id"], "HostConfig": container["HostConfig"]})
        if action == "stats":
            return self._json(200, self.stats)
        if action == "logs":
            return httpx.Response(200, content=frame(self.logs))
        if action == "exec":
            return self._json(201, {"Id": f"exec-{container['Id']}"})
        if action == "update":
            container["HostConfig"].update(
                {k: v for k, v in json.loads(request.content).items() if k != "MemorySwap"}
            )
            return self._json(200, {"Warnings": []})

        states = {
            "start": "running",
            "restart": "running",
            "unpause": "running",
            "stop": "exited",
            "kill": "exited",
            "pause": "paused",
        }
        if action in states:
            container["State"] = states[action]
            return httpx.Response(204)
        return self._json(404, {"message": f"Unknown container action {action}"})


class RecordingNotifier(Notifier):
    """Notifier that keeps every message it was asked to send."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    async def notify(self, email: str, subject: str, message: str) -> None:
        self.sent.append((email, subject, message))


def make_workload(unique_id: str, email: str = OWNER, **overrides: Any) -> WorkloadRecord:
    """A deployable workload record."""
    config = overrides.pop("server_config", None) or ServerConfig(name=f"Server {unique_id}")
    return WorkloadRecord(
        unique_id=unique_id,
        email=email,
        server_name=f"Server {unique_id}",
        subdomain_name=unique_id,
        server_config=config,
        **overrides,
    )


@pytest.fixture
def test_settings() -> Settings:
    """Settings pointing at the fake platform with fast polling."""
    return Settings(
        app_env="development",
        platform_url="http://platform.test",
        platform_api_key="test-key",
        platform_environment_id=None,
        deploy_max_attempts=2,
        deploy_retry_delay_seconds=0,
        verify_interval_seconds=1.0,
        verify_timeout_seconds=3.0,
        readiness_interval_seconds=1.0,
        readiness_timeout_seconds=3.0,
        port_range_start=25566,
        port_range_end=25595,
        secondary_port_range_start=35566,
        secondary_port_range_end=35595,
        monitor_delay_seconds=0,
    )


@pytest.fixture
def fake_platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
async def platform_client(fake_platform: FakePlatform, test_settings: Settings) -> PlatformClient:
    """Platform client talking to the fake platform."""
    client = PlatformClient.from_settings(
        test_settings,
        transport=httpx.MockTransport(fake_platform.handler),
        sleep=no_sleep,
    )
    yield client
    await client.aclose()


@pytest.fixture
async def records() -> InMemoryRecordStore:
    """Record store seeded with an owner, an admin and a neighbour tenant."""
    store = InMemoryRecordStore()
    await store.save_tenant(TenantRecord(email=OWNER))
    await store.save_tenant(TenantRecord(email=ADMIN, is_admin=True))
    await store.save_tenant(
        TenantRecord(
            email=NEIGHBOUR,
            reserved_port_ranges=[
                PortReservationRange(start=25590, end=25595, description="neighbour block")
            ],
        )
    )
    await store.save_workload(make_workload("srv1"))
    return store


@pytest.fixture
def allocator(platform_client: PlatformClient, records: InMemoryRecordStore, test_settings: Settings) -> PortAllocator:
    return PortAllocator(platform_client, records, test_settings)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def pipeline(
    platform_client: PlatformClient,
    records: InMemoryRecordStore,
    allocator: PortAllocator,
    events: EventBus,
    test_settings: Settings,
) -> DeploymentPipeline:
    """Deployment pipeline wired to the fake platform."""
    return DeploymentPipeline(
        client=platform_client,
        record_store=records,
        allocator=allocator,
        status_store=InMemoryStatusStore(),
        events=events,
        proxy=LoggingProxyRegistrar(),
        dns=LoggingDnsRegistrar(),
        config=test_settings,
        sleep=no_sleep,
    )


@pytest.fixture
def monitor(platform_client: PlatformClient, records: InMemoryRecordStore, test_settings: Settings) -> ResourceMonitor:
    return ResourceMonitor(platform_client, records, test_settings, sleep=no_sleep)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def updater(
    platform_client: PlatformClient,
    records: InMemoryRecordStore,
    notifier: RecordingNotifier,
    test_settings: Settings,
) -> ImageUpdater:
    return ImageUpdater(platform_client, records, notifier, test_settings)


@pytest.fixture
async def client(
    records: InMemoryRecordStore,
    events: EventBus,
    platform_client: PlatformClient,
    pipeline: DeploymentPipeline,
    allocator: PortAllocator,
    monitor: ResourceMonitor,
    updater: ImageUpdater,
) -> AsyncClient:
    """Async API client with every service swapped for the test instances."""
    from sse_starlette.sse import AppStatus

    # The exit event binds to the first loop that streams
    AppStatus.should_exit_event = None

    overrides = {
        deps.get_records: lambda: records,
        deps.get_events: lambda: events,
        deps.get_client: lambda: platform_client,
        deps.get_pipeline: lambda: pipeline,
        deps.get_allocator: lambda: allocator,
        deps.get_monitor: lambda: monitor,
        deps.get_updater: lambda: updater,
    }
    app.dependency_overrides.update(overrides)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await pipeline.wait_idle()
    app.dependency_overrides.clear()
