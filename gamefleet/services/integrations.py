"""Interfaces to external collaborators: proxy, DNS and user notification.

The default implementations only log. Real integrations are provided by
subclassing and overriding the dependency providers.
"""

from abc import ABC, abstractmethod
from functools import lru_cache

from gamefleet.models.records import WorkloadRecord
from gamefleet.utils.logging import get_logger

logger = get_logger("integrations")


class ProxyRegistrar(ABC):
    """Registers a workload with the player-facing proxy."""

    @abstractmethod
    async def register(self, record: WorkloadRecord) -> None:
        """Register the workload. Raises on failure."""


class DnsRegistrar(ABC):
    """Creates the DNS record that points a subdomain at the workload."""

    @abstractmethod
    async def register(self, record: WorkloadRecord) -> None:
        """Register the workload's subdomain. Raises on failure."""


class Notifier(ABC):
    """Delivers a message to a tenant."""

    @abstractmethod
    async def notify(self, email: str, subject: str, message: str) -> None:
        """Send a notification. Raises on failure."""


class LoggingProxyRegistrar(ProxyRegistrar):
    async def register(self, record: WorkloadRecord) -> None:
        logger.info(
            "proxy.register",
            server_id=record.unique_id,
            port=record.port,
            configured=False,
        )


class LoggingDnsRegistrar(DnsRegistrar):
    async def register(self, record: WorkloadRecord) -> None:
        if not record.subdomain_name:
            logger.info("dns.register_skipped", server_id=record.unique_id, reason="no subdomain")
            return
        logger.info(
            "dns.register",
            server_id=record.unique_id,
            subdomain=record.subdomain_name,
            port=record.port,
            configured=False,
        )


class LoggingNotifier(Notifier):
    async def notify(self, email: str, subject: str, message: str) -> None:
        logger.info("notify.sent", email=email, subject=subject, message=message)


@lru_cache
def get_proxy_registrar() -> ProxyRegistrar:
    return LoggingProxyRegistrar()


@lru_cache
def get_dns_registrar() -> DnsRegistrar:
    return LoggingDnsRegistrar()


@lru_cache
def get_notifier() -> Notifier:
    return LoggingNotifier()
