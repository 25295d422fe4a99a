"""Custom exceptions for gamefleet."""

from typing import Any


class FleetError(Exception):
    """Base exception for gamefleet."""

    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(FleetError):
    """Validation error. Never retried."""

    status_code = 400


class PermissionDeniedError(FleetError):
    """Caller is not allowed to perform the operation."""

    status_code = 403


class NotFoundError(FleetError):
    """Requested record does not exist."""

    status_code = 404


class DeploymentNotFoundError(NotFoundError):
    """No deployment status is tracked for the server."""

    def __init__(self, server_id: str):
        super().__init__(
            f"Deployment status not found: {server_id}",
            {"server_id": server_id},
        )


class WorkloadNotFoundError(NotFoundError):
    """Workload record or container not found."""

    def __init__(self, server_id: str, reason: str = "Server not found"):
        super().__init__(f"{reason}: {server_id}", {"server_id": server_id})


class ConflictError(FleetError):
    """Port or name collision. Surfaced immediately, not retried."""

    status_code = 409


class NoPortAvailable(ConflictError):
    """The port allocator exhausted every candidate range."""

    def __init__(self, message: str, trace: list[str] | None = None):
        super().__init__(message, {"trace": trace or []})


class UpdateInProgressError(ConflictError):
    """An image update batch is already running."""

    def __init__(self):
        super().__init__("Update already in progress")


class PlatformError(FleetError):
    """The orchestration platform rejected a request."""

    status_code = 502

    def __init__(
        self,
        message: str,
        platform_status: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = dict(details or {})
        if platform_status is not None:
            details["platform_status"] = platform_status
        super().__init__(message, details)
        self.platform_status = platform_status


class TransientPlatformError(PlatformError):
    """Network failure or 5xx from the orchestration platform."""


class VerificationTimeout(FleetError):
    """The platform accepted a request but never reflected the resource back."""

    status_code = 504

    def __init__(self, kind: str, name: str, waited_seconds: float):
        super().__init__(
            f"{kind} '{name}' not visible after {waited_seconds:g}s",
            {"kind": kind, "name": name, "waited_seconds": waited_seconds},
        )


class CreationFailedError(FleetError):
    """Every creation strategy and attempt failed.

    Carries the first error seen, the rollback outcome and the per-strategy
    trail so the caller can tell which strategy failed and why.
    """

    status_code = 502

    def __init__(
        self,
        first_error: Exception,
        rolled_back: int,
        rollback_failures: list[str],
        trail: list[str],
    ):
        message = str(first_error)
        if rollback_failures:
            message += (
                f" (rollback: {rolled_back} resource(s) removed, "
                f"{len(rollback_failures)} failed)"
            )
        else:
            message += f" (rollback: {rolled_back} resource(s) removed)"
        super().__init__(
            message,
            {
                "first_error": str(first_error),
                "first_error_type": type(first_error).__name__,
                "rolled_back": rolled_back,
                "rollback_failures": rollback_failures,
                "trail": trail,
            },
        )
        self.first_error = first_error
        self.trail = trail
