"""Orchestration platform access."""

from gamefleet.orchestration.client import (
    PlatformClient,
    close_platform_client,
    demux_stream,
    get_platform_client,
)
from gamefleet.orchestration.rollback import RollbackContext
from gamefleet.orchestration.strategies import (
    DEFAULT_STRATEGIES,
    CreationStrategy,
    DirectContainerStrategy,
    LegacyStackStrategy,
    LowercaseStackStrategy,
    StackFileUploadStrategy,
    StandaloneStackStrategy,
    parse_compose,
)

__all__ = [
    "PlatformClient",
    "close_platform_client",
    "get_platform_client",
    "demux_stream",
    "RollbackContext",
    "CreationStrategy",
    "DEFAULT_STRATEGIES",
    "StandaloneStackStrategy",
    "LegacyStackStrategy",
    "LowercaseStackStrategy",
    "StackFileUploadStrategy",
    "DirectContainerStrategy",
    "parse_compose",
]
