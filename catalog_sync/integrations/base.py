"""
Base catalog client interface.
Both marketplaces implement this interface so the reconciliation engine can
read and write inventory and prices without knowing which platform it talks to.
"""

from abc import ABC, abstractmethod

from catalog_sync.errors import UnresolvedMappingError
from catalog_sync.models.database import Platform, ProductMapping


class BaseCatalogClient(ABC):
    """Base class that every catalog client must implement."""

    @abstractmethod
    def get_name(self) -> Platform:
        """
        Return the platform this client talks to.

        Returns:
            Platform enum member (e.g., Platform.SHOPIFY)
        """
        pass

    @abstractmethod
    async def get_available(self, mapping: ProductMapping) -> int:
        """
        Read the live available quantity for a mapped product.

        Args:
            mapping: Product mapping carrying this platform's identifiers

        Returns:
            Available quantity reported by the platform
        """
        pass

    @abstractmethod
    async def adjust_available(self, mapping: ProductMapping, delta: int) -> int | None:
        """
        Apply a signed quantity change on the platform.

        Args:
            mapping: Product mapping carrying this platform's identifiers
            delta: Signed change (negative for sales)

        Returns:
            New quantity if the platform reports it, None otherwise
        """
        pass

    @abstractmethod
    async def set_available(self, mapping: ProductMapping, quantity: int) -> None:
        """Overwrite the platform quantity with an absolute value."""
        pass

    @abstractmethod
    async def get_price(self, mapping: ProductMapping) -> float | None:
        """Read the current sale price (platform currency)."""
        pass

    @abstractmethod
    async def update_price(self, mapping: ProductMapping, price: float) -> None:
        """Write a new sale price (platform currency)."""
        pass

    async def close(self):
        """Release HTTP resources. Override if the client owns any."""
        return None

    @staticmethod
    def require(value: str | None, field_name: str, mapping: ProductMapping) -> str:
        """Return a mapping identifier or raise if the mapping lacks it."""
        if not value:
            raise UnresolvedMappingError(
                mapping.sku, f"Mapping {mapping.sku} has no {field_name}"
            )
        return value
