"""
Naver Commerce API client.
Authenticates with the OAuth2 client-credentials flow (bcrypt-signed secret)
and reads/writes product stock and sale prices.
"""

import base64
import time
from typing import Any

import bcrypt
import httpx
import structlog

from catalog_sync.errors import PlatformAPIError, TransientPlatformError
from catalog_sync.integrations.base import BaseCatalogClient
from catalog_sync.models.database import Platform, ProductMapping
from catalog_sync.utils.cache import CacheService
from catalog_sync.utils.retry import is_transient_error

logger = structlog.get_logger()

TOKEN_CACHE_KEY = "naver:auth:token"


class NaverCommerceClient(BaseCatalogClient):
    """Client for the Naver Commerce external API."""

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        cache: CacheService | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize Naver Commerce client.

        Args:
            base_url: API base URL (e.g., 'https://api.commerce.naver.com')
            client_id: Application client ID
            client_secret: Application client secret (a bcrypt salt)
            cache: Optional cache for the access token
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.cache = cache
        self._token: str | None = None
        self._token_expires_at = 0.0
        self.client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    def get_name(self) -> Platform:
        return Platform.NAVER

    def generate_signature(self, timestamp: str) -> str:
        """
        Sign "{client_id}_{timestamp}" with bcrypt using the client secret as salt.

        Returns:
            Base64-encoded bcrypt hash
        """
        password = f"{self.client_id}_{timestamp}".encode("utf-8")
        hashed = bcrypt.hashpw(password, self.client_secret.encode("utf-8"))
        return base64.b64encode(hashed).decode("utf-8")

    async def get_access_token(self) -> str:
        """Return a cached token or request a new one."""
        if self.cache is not None:
            cached = await self.cache.get_json(TOKEN_CACHE_KEY)
            if cached and cached.get("access_token"):
                return cached["access_token"]
        elif self._token and time.time() < self._token_expires_at:
            return self._token

        timestamp = str(int(time.time() * 1000))
        try:
            response = await self.client.post(
                "/external/v1/oauth2/token",
                data={
                    "client_id": self.client_id,
                    "timestamp": timestamp,
                    "client_secret_sign": self.generate_signature(timestamp),
                    "grant_type": "client_credentials",
                    "type": "SELF",
                },
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("Failed to get Naver access token", status_code=e.response.status_code)
            if is_transient_error(e):
                raise TransientPlatformError("Naver token request failed", e.response.status_code) from e
            raise PlatformAPIError("Failed to authenticate with Naver API", e.response.status_code) from e
        except httpx.TransportError as e:
            logger.error("Naver token request transport error", error=str(e))
            raise TransientPlatformError(f"Naver transport error: {e}") from e

        token_data = response.json()
        access_token = token_data["access_token"]
        # Cache for 90% of the token lifetime
        cache_seconds = int(int(token_data.get("expires_in", 3600)) * 0.9)
        if self.cache is not None:
            await self.cache.set_json(TOKEN_CACHE_KEY, token_data, ttl=cache_seconds)
        else:
            self._token = access_token
            self._token_expires_at = time.time() + cache_seconds
        logger.info("Naver token refreshed", expires_in=token_data.get("expires_in"))
        return access_token

    async def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        token = await self.get_access_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        try:
            response = await self.client.request(method, path, headers=headers, **kwargs)
            response.raise_for_status()
            return response.json() if response.content else {}
        except httpx.HTTPStatusError as e:
            error_msg = f"Naver API error: {e.response.status_code}"
            logger.error("Naver API request failed", method=method, path=path, error=error_msg)
            if e.response.status_code == 401 and self.cache is not None:
                await self.cache.delete(TOKEN_CACHE_KEY)
            if is_transient_error(e):
                raise TransientPlatformError(error_msg, e.response.status_code) from e
            raise PlatformAPIError(error_msg, e.response.status_code) from e
        except httpx.TransportError as e:
            logger.error("Naver API transport error", method=method, path=path, error=str(e))
            raise TransientPlatformError(f"Naver transport error: {e}") from e

    async def get_product(self, product_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/external/v1/products/{product_id}")

    async def get_available(self, mapping: ProductMapping) -> int:
        product_id = self.require(mapping.naver_product_id, "naver_product_id", mapping)
        product = await self.get_product(product_id)
        return int(product.get("stockQuantity") or 0)

    async def update_stock(self, product_id: str, quantity: int, operation_type: str) -> None:
        """
        Update product stock.

        Args:
            product_id: Naver product ID
            quantity: Quantity (absolute for SET, magnitude for ADD/SUBTRACT)
            operation_type: 'SET', 'ADD' or 'SUBTRACT'
        """
        await self._request(
            "PUT",
            f"/external/v1/products/{product_id}/stock",
            json={"stockQuantity": quantity, "operationType": operation_type},
        )
        logger.info("Naver stock updated", product_id=product_id, operation=operation_type, quantity=quantity)

    async def adjust_available(self, mapping: ProductMapping, delta: int) -> int | None:
        product_id = self.require(mapping.naver_product_id, "naver_product_id", mapping)
        if delta == 0:
            return None
        operation = "ADD" if delta > 0 else "SUBTRACT"
        await self.update_stock(product_id, abs(delta), operation)
        return None

    async def set_available(self, mapping: ProductMapping, quantity: int) -> None:
        product_id = self.require(mapping.naver_product_id, "naver_product_id", mapping)
        await self.update_stock(product_id, quantity, "SET")

    async def get_price(self, mapping: ProductMapping) -> float | None:
        product_id = self.require(mapping.naver_product_id, "naver_product_id", mapping)
        product = await self.get_product(product_id)
        price = product.get("salePrice")
        return float(price) if price is not None else None

    async def update_price(self, mapping: ProductMapping, price: float) -> None:
        product_id = self.require(mapping.naver_product_id, "naver_product_id", mapping)
        await self._request(
            "PUT", f"/external/v1/products/{product_id}", json={"salePrice": int(round(price))}
        )

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()
