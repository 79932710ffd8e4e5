"""
Catalog registry mapping each platform to its client.
"""

import structlog

from catalog_sync.errors import FatalSetupError
from catalog_sync.integrations.base import BaseCatalogClient
from catalog_sync.models.database import Platform

logger = structlog.get_logger()


class CatalogRegistry:
    """Registry that holds one catalog client per platform."""

    def __init__(self, clients: list[BaseCatalogClient] | None = None):
        """
        Args:
            clients: Clients to register up front
        """
        self._clients: dict[Platform, BaseCatalogClient] = {}
        for client in clients or []:
            self.register(client)

    def register(self, client: BaseCatalogClient):
        """
        Register a catalog client.

        Args:
            client: Catalog client instance
        """
        name = client.get_name()
        if name in self._clients:
            logger.warning("Catalog client already registered, replacing", platform=name.value)
        self._clients[name] = client
        logger.info("Registered catalog client", platform=name.value)

    def get(self, platform: Platform) -> BaseCatalogClient:
        """
        Get the client for a platform.

        Raises:
            FatalSetupError: No client registered for the platform
        """
        client = self._clients.get(platform)
        if client is None:
            raise FatalSetupError(f"No catalog client registered for {platform.value}")
        return client

    def has(self, platform: Platform) -> bool:
        return platform in self._clients

    def list_available(self) -> list[str]:
        """
        List registered platforms.

        Returns:
            List of platform names
        """
        return [platform.value for platform in self._clients]

    async def close(self):
        for client in self._clients.values():
            await client.close()
