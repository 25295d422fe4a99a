"""Per-operation rollback tracking."""

from typing import TYPE_CHECKING

from gamefleet.core.exceptions import FleetError
from gamefleet.models.platform import RollbackReport, RollbackResource
from gamefleet.utils.logging import get_logger

if TYPE_CHECKING:
    from gamefleet.orchestration.client import PlatformClient

logger = get_logger(__name__)


class RollbackContext:
    """Resources created during one in-flight operation.

    A fresh context is used for every create call, so concurrent deployments
    sharing a client never tear down each other's resources.
    """

    def __init__(self, client: "PlatformClient"):
        self._client = client
        self._resources: list[RollbackResource] = []

    @property
    def resources(self) -> list[RollbackResource]:
        return list(self._resources)

    def __len__(self) -> int:
        return len(self._resources)

    def track(self, resource: RollbackResource) -> None:
        """Push a freshly created resource."""
        self._resources.append(resource)
        logger.debug(
            "rollback.tracked",
            kind=resource.kind,
            resource_id=resource.id,
            name=resource.name,
        )

    def clear(self) -> None:
        """Forget every tracked resource (the operation succeeded)."""
        self._resources.clear()

    async def rollback(self) -> RollbackReport:
        """Tear down tracked resources in reverse creation order.

        The context is empty afterwards, whether or not every teardown
        succeeded; failures are reported, not raised.
        """
        report = RollbackReport()
        while self._resources:
            resource = self._resources.pop()
            try:
                if resource.kind == "stack":
                    await self._client.delete_stack(
                        int(resource.id), resource.environment_id
                    )
                else:
                    await self._client.remove_container(
                        resource.id, resource.environment_id, force=True
                    )
                report.removed.append(resource)
                logger.info(
                    "rollback.removed",
                    kind=resource.kind,
                    resource_id=resource.id,
                    name=resource.name,
                )
            except FleetError as e:
                report.failures.append(f"{resource.kind} {resource.name} ({resource.id}): {e}")
                logger.warning(
                    "rollback.remove_failed",
                    kind=resource.kind,
                    resource_id=resource.id,
                    error=str(e),
                )
        return report
