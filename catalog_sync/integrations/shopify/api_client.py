"""
Shopify API client for making direct Admin API calls to Shopify.
Handles inventory level reads/adjustments and variant price updates.
"""

from typing import Any

import httpx
import structlog

from catalog_sync.errors import PlatformAPIError, TransientPlatformError
from catalog_sync.integrations.base import BaseCatalogClient
from catalog_sync.models.database import Platform, ProductMapping
from catalog_sync.utils.retry import is_transient_error

logger = structlog.get_logger()


class ShopifyAPIClient(BaseCatalogClient):
    """Client for making Shopify Admin API calls."""

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: str = "2024-01",
        default_location_id: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize Shopify API client.

        Args:
            shop_domain: Shopify shop domain (e.g., 'myshop.myshopify.com')
            access_token: Shopify Admin API access token
            api_version: Admin API version segment
            default_location_id: Location used when a mapping carries none
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.shop_domain = shop_domain
        self.base_url = f"https://{shop_domain}/admin/api/{api_version}"
        self.default_location_id = default_location_id
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "X-Shopify-Access-Token": access_token,
                "Content-Type": "application/json",
            },
        )

    def get_name(self) -> Platform:
        return Platform.SHOPIFY

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        """Send a request and translate failures into the sync error taxonomy."""
        try:
            response = await self.client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json() if response.content else {}
        except httpx.HTTPStatusError as e:
            error_msg = f"Shopify API error: {e.response.status_code}"
            if e.response.text:
                error_msg += f" - {e.response.text[:200]}"
            logger.error("Shopify API request failed", method=method, path=path, error=error_msg)
            if is_transient_error(e):
                raise TransientPlatformError(error_msg, e.response.status_code) from e
            raise PlatformAPIError(error_msg, e.response.status_code) from e
        except httpx.TransportError as e:
            logger.error("Shopify API transport error", method=method, path=path, error=str(e))
            raise TransientPlatformError(f"Shopify transport error: {e}") from e

    def _inventory_keys(self, mapping: ProductMapping) -> tuple[str, str]:
        item_id = self.require(mapping.shopify_inventory_item_id, "shopify_inventory_item_id", mapping)
        location_id = self.require(
            mapping.shopify_location_id or self.default_location_id, "shopify_location_id", mapping
        )
        return item_id, location_id

    async def get_available(self, mapping: ProductMapping) -> int:
        """Read the available quantity at the mapping's location."""
        item_id, location_id = self._inventory_keys(mapping)
        data = await self._request(
            "GET",
            "/inventory_levels.json",
            params={"inventory_item_ids": item_id, "location_ids": location_id},
        )
        levels = data.get("inventory_levels", [])
        if not levels:
            return 0
        return int(levels[0].get("available") or 0)

    async def adjust_available(self, mapping: ProductMapping, delta: int) -> int | None:
        """
        Adjust the available quantity by a signed delta.

        Args:
            mapping: Product mapping with inventory item and location IDs
            delta: Signed quantity change

        Returns:
            New available quantity as reported by Shopify
        """
        item_id, location_id = self._inventory_keys(mapping)
        data = await self._request(
            "POST",
            "/inventory_levels/adjust.json",
            json={
                "location_id": int(location_id),
                "inventory_item_id": int(item_id),
                "available_adjustment": delta,
            },
        )
        logger.info("Adjusted Shopify inventory", sku=mapping.sku, delta=delta)
        level = data.get("inventory_level") or {}
        available = level.get("available")
        return int(available) if available is not None else None

    async def set_available(self, mapping: ProductMapping, quantity: int) -> None:
        item_id, location_id = self._inventory_keys(mapping)
        await self._request(
            "POST",
            "/inventory_levels/set.json",
            json={
                "location_id": int(location_id),
                "inventory_item_id": int(item_id),
                "available": quantity,
            },
        )
        logger.info("Set Shopify inventory", sku=mapping.sku, quantity=quantity)

    async def get_price(self, mapping: ProductMapping) -> float | None:
        variant_id = self.require(mapping.shopify_variant_id, "shopify_variant_id", mapping)
        data = await self._request("GET", f"/variants/{variant_id}.json")
        price = (data.get("variant") or {}).get("price")
        return float(price) if price is not None else None

    async def update_price(self, mapping: ProductMapping, price: float) -> None:
        """
        Update a product variant's price in Shopify.

        Args:
            mapping: Product mapping with the variant ID
            price: New USD price
        """
        variant_id = self.require(mapping.shopify_variant_id, "shopify_variant_id", mapping)
        await self._request(
            "PUT",
            f"/variants/{variant_id}.json",
            json={"variant": {"id": int(variant_id), "price": f"{price:.2f}"}},
        )
        logger.info("Updated Shopify variant price", sku=mapping.sku, variant_id=variant_id, price=price)

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
