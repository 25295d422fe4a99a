"""Orchestration platform client.

Talks to a Portainer-style container platform over HTTP: environment
discovery, workload listing and lifecycle, logs, stats and resource updates,
plus the multi-strategy create-with-verification-and-rollback flow.
"""

import asyncio
import re
import struct
from typing import Any, Awaitable, Callable, Iterable

import httpx

from gamefleet.config import Settings, settings
from gamefleet.core.exceptions import (
    ConflictError,
    CreationFailedError,
    FleetError,
    PlatformError,
    TransientPlatformError,
    ValidationError,
    VerificationTimeout,
)
from gamefleet.models.platform import (
    CreationResult,
    PlatformContainer,
    PlatformEnvironment,
    PlatformImage,
    PlatformStack,
    ResourceLimits,
    RollbackResource,
    SessionCount,
    WorkloadSpec,
)
from gamefleet.orchestration.rollback import RollbackContext
from gamefleet.orchestration.strategies import DEFAULT_STRATEGIES, CreationStrategy
from gamefleet.utils.logging import get_logger

logger = get_logger("platform_client")

Sleep = Callable[[float], Awaitable[None]]

# "There are 3 of a max of 20 players online" / "There are 3/20 players online"
_PLAYERS_RE = re.compile(
    r"There are (\d+)\s*(?:of a max(?: of)?|/)\s*(\d+) players online", re.IGNORECASE
)


def demux_stream(raw: bytes) -> str:
    """Decode a multiplexed stdout/stderr stream into text.

    Each frame carries an 8-byte header (stream type, 3 padding bytes and a
    big-endian payload size). Raw TTY output has no headers and is returned
    as-is.
    """
    if len(raw) < 8 or raw[0] not in (0, 1, 2) or raw[1:4] != b"\x00\x00\x00":
        return raw.decode("utf-8", errors="replace")

    chunks: list[bytes] = []
    offset = 0
    while offset + 8 <= len(raw):
        (size,) = struct.unpack(">I", raw[offset + 4 : offset + 8])
        chunks.append(raw[offset + 8 : offset + 8 + size])
        offset += 8 + size
    return b"".join(chunks).decode("utf-8", errors="replace")


class PlatformClient:
    """Async client for the orchestration platform.

    Authenticates with an API key, or with username/password (JWT) when no
    key is configured. A 401 on a JWT session triggers one re-authentication.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        username: str | None = None,
        password: str | None = None,
        verify_ssl: bool = True,
        timeout: float = 30.0,
        default_environment_id: int | None = None,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        verify_interval: float = 1.0,
        verify_timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
        strategies: Iterable[type[CreationStrategy]] = DEFAULT_STRATEGIES,
    ):
        if not base_url:
            raise ValidationError("Platform URL is required")
        if not api_key and not (username and password):
            raise ValidationError(
                "Platform API key or username/password credentials are required"
            )

        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.username = username
        self.password = password
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.default_environment_id = default_environment_id
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.verify_interval = verify_interval
        self.verify_timeout = verify_timeout
        self._transport = transport
        self._sleep = sleep
        self._token: str | None = None
        self._http: httpx.AsyncClient | None = None
        self.strategies: list[CreationStrategy] = [cls(self) for cls in strategies]

    @classmethod
    def from_settings(cls, config: Settings | None = None, **overrides: Any) -> "PlatformClient":
        """Build a client from application settings."""
        config = config or settings
        kwargs: dict[str, Any] = {
            "base_url": config.platform_url,
            "api_key": config.platform_api_key,
            "username": config.platform_username,
            "password": config.platform_password,
            "verify_ssl": config.platform_verify_ssl,
            "timeout": config.platform_timeout_seconds,
            "default_environment_id": config.platform_environment_id,
            "max_attempts": config.deploy_max_attempts,
            "retry_delay": config.deploy_retry_delay_seconds,
            "verify_interval": config.verify_interval_seconds,
            "verify_timeout": config.verify_timeout_seconds,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def uses_credentials(self) -> bool:
        return not self.api_key

    @property
    def http(self) -> httpx.AsyncClient:
        """Get or create the underlying HTTP client."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                verify=self.verify_ssl,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._http

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _authenticate(self) -> str:
        response = await self._send(
            "POST",
            "/api/auth",
            json={"Username": self.username, "Password": self.password},
        )
        if response.is_error:
            raise self._error_for(response, "POST", "/api/auth")
        token = response.json().get("jwt")
        if not token:
            raise PlatformError("Authentication response did not include a token")
        self._token = token
        logger.info("platform.authenticated", username=self.username)
        return token

    async def _auth_headers(self) -> dict[str, str]:
        if not self.uses_credentials:
            return {"X-API-Key": self.api_key}
        token = self._token or await self._authenticate()
        return {"Authorization": f"Bearer {token}"}

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            logger.warning("platform.transport_error", method=method, path=path, error=str(e))
            raise TransientPlatformError(f"{method} {path} failed: {e}") from e

    def _error_for(self, response: httpx.Response, method: str, path: str) -> PlatformError | ConflictError:
        message = response.text[:500]
        try:
            body = response.json()
            if isinstance(body, dict):
                message = body.get("message") or body.get("details") or message
        except ValueError:
            pass
        summary = f"{method} {path} returned {response.status_code}: {message}"

        if response.status_code == 409:
            return ConflictError(summary, {"platform_status": 409})
        if response.status_code >= 500:
            return TransientPlatformError(summary, platform_status=response.status_code)
        return PlatformError(summary, platform_status=response.status_code)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
        _retry_auth: bool = True,
    ) -> httpx.Response:
        """Send an authenticated request and map error statuses to exceptions."""
        headers = await self._auth_headers()
        response = await self._send(
            method,
            path,
            params=params,
            json=json,
            data=data,
            files=files,
            headers=headers,
        )

        if response.status_code == 401 and self.uses_credentials and _retry_auth:
            logger.info("platform.reauthenticating", path=path)
            self._token = None
            return await self.request(
                method, path, params=params, json=json, data=data, files=files, _retry_auth=False
            )

        if response.is_error:
            error = self._error_for(response, method, path)
            logger.warning(
                "platform.request_failed",
                method=method,
                path=path,
                status=response.status_code,
            )
            raise error
        return response

    async def request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request and decode its JSON body (None for an empty body)."""
        response = await self.request(method, path, **kwargs)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise PlatformError(
                f"{method} {path} returned a non-JSON body",
                platform_status=response.status_code,
            ) from e

    def _docker(self, environment_id: int, path: str) -> str:
        return f"/api/endpoints/{environment_id}/docker{path}"

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def list_environments(self) -> list[PlatformEnvironment]:
        payload = await self.request_json("GET", "/api/endpoints")
        return [PlatformEnvironment.model_validate(e) for e in payload or []]

    async def resolve_environment(self, environment_id: int | None = None) -> int:
        """Pick the environment to operate in.

        Explicit id first, then the configured default, then the first
        environment the platform reports.
        """
        if environment_id is not None:
            return environment_id
        if self.default_environment_id is not None:
            return self.default_environment_id
        environments = await self.list_environments()
        if not environments:
            raise PlatformError("No platform environments found")
        return environments[0].id

    async def list_stacks(self) -> list[PlatformStack]:
        payload = await self.request_json("GET", "/api/stacks")
        return [PlatformStack.model_validate(s) for s in payload or []]

    async def find_stack(self, name: str, environment_id: int | None = None) -> PlatformStack | None:
        for stack in await self.list_stacks():
            if stack.name != name:
                continue
            if environment_id is None or stack.endpoint_id in (None, environment_id):
                return stack
        return None

    async def list_workloads(self, environment_id: int, include_stopped: bool = True) -> list[PlatformContainer]:
        payload = await self.request_json(
            "GET",
            self._docker(environment_id, "/containers/json"),
            params={"all": "true" if include_stopped else "false"},
        )
        return [PlatformContainer.model_validate(c) for c in payload or []]

    async def find_container(self, name: str, environment_id: int) -> PlatformContainer | None:
        for container in await self.list_workloads(environment_id):
            if container.has_name(name):
                return container
        return None

    async def get_workload_details(self, container_id: str, environment_id: int) -> dict[str, Any]:
        """Inspect a container."""
        return await self.request_json(
            "GET", self._docker(environment_id, f"/containers/{container_id}/json")
        )

    async def get_used_ports(self, environment_id: int) -> set[int]:
        """Host ports currently published by any workload in the environment."""
        used: set[int] = set()
        for container in await self.list_workloads(environment_id):
            used.update(p.public_port for p in container.ports if p.public_port)
        return used

    async def test_connection(self) -> bool:
        try:
            await self.list_environments()
            return True
        except FleetError as e:
            logger.warning("platform.connection_failed", error=str(e))
            return False

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    async def list_images(self, environment_id: int) -> list[PlatformImage]:
        payload = await self.request_json("GET", self._docker(environment_id, "/images/json"))
        return [PlatformImage.model_validate(i) for i in payload or []]

    async def pull_image(self, environment_id: int, image: str) -> None:
        logger.info("platform.image_pull", image=image, environment_id=environment_id)
        await self.request(
            "POST", self._docker(environment_id, "/images/create"), params={"fromImage": image}
        )

    async def remove_image(self, environment_id: int, image_id: str, force: bool = True) -> None:
        await self.request(
            "DELETE",
            self._docker(environment_id, f"/images/{image_id}"),
            params={"force": "true" if force else "false"},
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_stack(
        self,
        name: str,
        compose: str,
        environment_id: int,
        env: list[dict[str, str]] | None = None,
    ) -> PlatformStack:
        """Create a standalone compose stack from its file content."""
        payload = await self.request_json(
            "POST",
            "/api/stacks/create/standalone/string",
            params={"endpointId": environment_id},
            json={"Name": name, "StackFileContent": compose, "Env": env or []},
        )
        try:
            return PlatformStack.model_validate(payload)
        except (TypeError, ValueError) as e:
            raise PlatformError(
                f"Stack create for '{name}' returned an unexpected body",
                details={"response": str(payload)[:200]},
            ) from e

    async def delete_stack(self, stack_id: int, environment_id: int) -> None:
        await self.request(
            "DELETE",
            f"/api/stacks/{stack_id}",
            params={"external": "false", "endpointId": environment_id},
        )

    async def start_stack(self, stack_id: int, environment_id: int) -> None:
        await self.request("POST", f"/api/stacks/{stack_id}/start", params={"endpointId": environment_id})

    async def stop_stack(self, stack_id: int, environment_id: int) -> None:
        await self.request("POST", f"/api/stacks/{stack_id}/stop", params={"endpointId": environment_id})

    async def create_container(self, environment_id: int, name: str, body: dict[str, Any]) -> str:
        """Create a container. Returns its id."""
        payload = await self.request_json(
            "POST",
            self._docker(environment_id, "/containers/create"),
            params={"name": name},
            json=body,
        )
        if not isinstance(payload, dict) or not payload.get("Id"):
            raise PlatformError(f"Container create for '{name}' returned no id")
        return payload["Id"]

    async def _container_action(self, container_id: str, environment_id: int, action: str) -> None:
        await self.request("POST", self._docker(environment_id, f"/containers/{container_id}/{action}"))
        logger.info(
            "platform.container_action",
            action=action,
            container_id=container_id,
            environment_id=environment_id,
        )

    async def start_container(self, container_id: str, environment_id: int) -> None:
        await self._container_action(container_id, environment_id, "start")

    async def stop_container(self, container_id: str, environment_id: int) -> None:
        await self._container_action(container_id, environment_id, "stop")

    async def restart_container(self, container_id: str, environment_id: int) -> None:
        await self._container_action(container_id, environment_id, "restart")

    async def pause_container(self, container_id: str, environment_id: int) -> None:
        await self._container_action(container_id, environment_id, "pause")

    async def unpause_container(self, container_id: str, environment_id: int) -> None:
        await self._container_action(container_id, environment_id, "unpause")

    async def kill_container(self, container_id: str, environment_id: int) -> None:
        await self._container_action(container_id, environment_id, "kill")

    async def remove_container(self, container_id: str, environment_id: int, force: bool = False) -> None:
        await self.request(
            "DELETE",
            self._docker(environment_id, f"/containers/{container_id}"),
            params={"force": "true" if force else "false", "v": "false"},
        )
        logger.info("platform.container_removed", container_id=container_id)

    async def remove_workload(self, stack_name: str, container_name: str, environment_id: int) -> list[str]:
        """Remove a workload's stack and any container left behind.

        Returns a description of each removed resource.
        """
        removed: list[str] = []
        stack = await self.find_stack(stack_name, environment_id)
        if stack:
            await self.delete_stack(stack.id, environment_id)
            removed.append(f"stack {stack.name} ({stack.id})")
        container = await self.find_container(container_name, environment_id)
        if container:
            await self.remove_container(container.id, environment_id, force=True)
            removed.append(f"container {container_name} ({container.id})")
        return removed

    # ------------------------------------------------------------------
    # Observation and resources
    # ------------------------------------------------------------------

    async def get_logs(self, container_id: str, environment_id: int, tail: int = 1000) -> str:
        response = await self.request(
            "GET",
            self._docker(environment_id, f"/containers/{container_id}/logs"),
            params={"stdout": 1, "stderr": 1, "tail": tail, "timestamps": 0},
        )
        return demux_stream(response.content)

    async def get_stats(self, container_id: str, environment_id: int) -> dict[str, Any]:
        """One-shot resource statistics for a container."""
        return await self.request_json(
            "GET",
            self._docker(environment_id, f"/containers/{container_id}/stats"),
            params={"stream": "false"},
        )

    async def update_resources(self, container_id: str, environment_id: int, limits: ResourceLimits) -> None:
        await self.request(
            "POST",
            self._docker(environment_id, f"/containers/{container_id}/update"),
            json=limits.to_payload(),
        )
        logger.info(
            "platform.resources_updated",
            container_id=container_id,
            memory=limits.memory,
            cpu_quota=limits.cpu_quota,
        )

    async def exec_command(self, container_id: str, environment_id: int, cmd: list[str]) -> str:
        """Run a command inside a container and return its output."""
        created = await self.request_json(
            "POST",
            self._docker(environment_id, f"/containers/{container_id}/exec"),
            json={"AttachStdout": True, "AttachStderr": True, "Cmd": cmd},
        )
        if not isinstance(created, dict) or not created.get("Id"):
            raise PlatformError("Exec create returned no id")
        response = await self.request(
            "POST",
            self._docker(environment_id, f"/exec/{created['Id']}/start"),
            json={"Detach": False, "Tty": False},
        )
        return demux_stream(response.content)

    async def get_session_counts(
        self, container_id: str, environment_id: int, default_capacity: int = 0
    ) -> SessionCount:
        """Count players connected to a server through its console.

        Falls back to zero online and the configured capacity when the
        console cannot be queried.
        """
        try:
            output = await self.exec_command(container_id, environment_id, ["rcon-cli", "list"])
        except FleetError as e:
            return SessionCount(online=0, capacity=default_capacity, error=str(e))

        match = _PLAYERS_RE.search(output)
        if not match:
            return SessionCount(
                online=0,
                capacity=default_capacity,
                error=f"Unrecognised player list output: {output.strip()[:100]}",
            )
        return SessionCount(online=int(match.group(1)), capacity=int(match.group(2)))

    # ------------------------------------------------------------------
    # Create with verification and rollback
    # ------------------------------------------------------------------

    async def resource_exists(self, spec: WorkloadSpec, environment_id: int) -> bool:
        """Whether the workload already exists as a stack or a container."""
        if await self.find_stack(spec.stack_name, environment_id):
            return True
        return await self.find_container(spec.container_name, environment_id) is not None

    async def _is_visible(self, resource: RollbackResource) -> bool:
        if resource.kind == "stack":
            return any(
                str(s.id) == resource.id or s.name == resource.name
                for s in await self.list_stacks()
            )
        return await self.find_container(resource.name, resource.environment_id) is not None

    async def verify_created(
        self,
        resource: RollbackResource,
        interval: float | None = None,
        timeout: float | None = None,
    ) -> None:
        """Poll until the platform reflects a created resource back.

        Raises:
            VerificationTimeout: If it never shows up within the timeout
        """
        interval = interval if interval is not None else self.verify_interval
        timeout = timeout if timeout is not None else self.verify_timeout
        polls = max(1, int(timeout / interval)) if interval > 0 else 1

        for poll in range(polls):
            try:
                if await self._is_visible(resource):
                    logger.info(
                        "platform.verified",
                        kind=resource.kind,
                        name=resource.name,
                        polls=poll + 1,
                    )
                    return
            except TransientPlatformError as e:
                logger.warning("platform.verify_poll_failed", name=resource.name, error=str(e))
            if poll < polls - 1:
                await self._sleep(interval)
        raise VerificationTimeout(resource.kind, resource.name, timeout)

    async def _fail(
        self,
        context: RollbackContext,
        first_error: FleetError,
        trail: list[str],
    ) -> FleetError:
        report = await context.rollback()
        trail.extend(f"rolled back {r.kind} {r.name} ({r.id})" for r in report.removed)
        trail.extend(f"rollback failed: {f}" for f in report.failures)
        logger.error(
            "platform.create_failed",
            error=str(first_error),
            rolled_back=len(report.removed),
            rollback_failures=len(report.failures),
        )
        if isinstance(first_error, (ValidationError, ConflictError)):
            first_error.details.update({"trail": trail, "rolled_back": len(report.removed)})
            return first_error
        return CreationFailedError(first_error, len(report.removed), report.failures, trail)

    async def create_with_verification_and_rollback(
        self,
        spec: WorkloadSpec,
        environment_id: int,
        max_attempts: int | None = None,
        context: RollbackContext | None = None,
    ) -> CreationResult:
        """Create a workload, trying every strategy until one verifies.

        Before each strategy the workload's existence is checked, so an
        existing workload is reported as success without creating anything.
        Validation and conflict errors abort the chain; other failures move
        on to the next strategy, and the whole chain is retried up to
        ``max_attempts`` times. A resource is tracked for rollback as soon as
        its strategy reports it created, before it is activated or verified.
        If nothing verifies, every tracked resource is removed in reverse
        order and the first error is raised with the rollback outcome
        attached.

        Raises:
            CreationFailedError: If every strategy and attempt failed
            ValidationError / ConflictError: Surfaced immediately
        """
        attempts = max_attempts or self.max_attempts
        context = context if context is not None else RollbackContext(self)
        trail: list[str] = []
        errors: list[FleetError] = []

        try:
            result = await self._run_strategies(spec, environment_id, attempts, context, trail, errors)
        except (ValidationError, ConflictError) as e:
            raise await self._fail(context, e, trail) from e
        except FleetError as e:
            raise await self._fail(context, errors[0] if errors else e, trail) from e

        if result is not None:
            context.clear()
            return result
        error = errors[0] if errors else PlatformError("No creation strategies configured")
        raise await self._fail(context, error, trail)

    async def _run_strategies(
        self,
        spec: WorkloadSpec,
        environment_id: int,
        attempts: int,
        context: RollbackContext,
        trail: list[str],
        errors: list[FleetError],
    ) -> CreationResult | None:
        """Walk the strategy chain; None when no strategy verified."""
        log = logger.bind(stack=spec.stack_name, environment_id=environment_id)

        for attempt in range(1, attempts + 1):
            for strategy in self.strategies:
                try:
                    exists = await self.resource_exists(spec, environment_id)
                except TransientPlatformError as e:
                    trail.append(f"[{attempt}] {strategy.name}: existence check failed: {e}")
                    log.warning("platform.exists_check_failed", strategy=strategy.name, attempt=attempt, error=str(e))
                    errors.append(e)
                    continue
                if exists:
                    trail.append(f"[{attempt}] {spec.stack_name} already exists")
                    log.info("platform.create_skipped_existing", attempt=attempt)
                    return CreationResult(
                        success=True,
                        strategy=None,
                        attempts=attempt,
                        already_existed=True,
                        details=trail,
                    )

                try:
                    resource = await strategy.attempt(spec, environment_id)
                except (ValidationError, ConflictError) as e:
                    trail.append(f"[{attempt}] {strategy.name}: {e}")
                    raise
                except FleetError as e:
                    trail.append(f"[{attempt}] {strategy.name}: {e}")
                    log.warning("platform.strategy_failed", strategy=strategy.name, attempt=attempt, error=str(e))
                    errors.append(e)
                    continue

                context.track(resource)
                try:
                    await strategy.activate(resource, environment_id)
                except (ValidationError, ConflictError) as e:
                    trail.append(f"[{attempt}] {strategy.name}: {e}")
                    raise
                except FleetError as e:
                    trail.append(f"[{attempt}] {strategy.name}: activation failed: {e}")
                    log.warning("platform.strategy_inactive", strategy=strategy.name, attempt=attempt, error=str(e))
                    errors.append(e)
                    continue

                try:
                    await self.verify_created(resource)
                except VerificationTimeout as e:
                    trail.append(f"[{attempt}] {strategy.name}: {e}")
                    log.warning("platform.strategy_unverified", strategy=strategy.name, attempt=attempt)
                    errors.append(e)
                    continue

                trail.append(f"[{attempt}] {strategy.name}: created {resource.kind} {resource.id}")
                log.info("platform.created", strategy=strategy.name, attempt=attempt, resource_id=resource.id)
                return CreationResult(
                    success=True,
                    resource=resource,
                    strategy=strategy.name,
                    attempts=attempt,
                    details=trail,
                )

            if attempt < attempts:
                await self._sleep(self.retry_delay)
        return None


# Singleton instance
_platform_client: PlatformClient | None = None


def get_platform_client() -> PlatformClient:
    """Get the platform client singleton."""
    global _platform_client
    if _platform_client is None:
        _platform_client = PlatformClient.from_settings()
    return _platform_client


async def close_platform_client() -> None:
    """Close the singleton's HTTP session if one was ever opened."""
    global _platform_client
    if _platform_client is not None:
        await _platform_client.aclose()
        _platform_client = None
