"""Services for the gamefleet application."""

from gamefleet.services.image_updater import ImageUpdater, get_image_updater
from gamefleet.services.port_allocator import PortAllocator, get_port_allocator
from gamefleet.services.resource_monitor import ResourceMonitor, get_resource_monitor
from gamefleet.services.workload_spec import WorkloadSpecBuilder

__all__ = [
    "ImageUpdater",
    "get_image_updater",
    "PortAllocator",
    "get_port_allocator",
    "ResourceMonitor",
    "get_resource_monitor",
    "WorkloadSpecBuilder",
]
