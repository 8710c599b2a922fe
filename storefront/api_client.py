"""
Storefront public API client.

Thin async wrapper over the public store endpoints. Maps HTTP outcomes onto
the cache error taxonomy: 404 is NotFoundError (never retried), everything
else that goes wrong is NetworkError.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from storefront.cache.errors import NetworkError, NotFoundError
from config.settings import Settings

logger = logging.getLogger("api_client")

STORE_HOST_SUFFIX = "pluggn.store"
PRODUCTS_OK_MESSAGE = "Products fetched successfully!"


def subdomain_from_host(host: Optional[str]) -> Optional[str]:
    """
    Extract the store subdomain from a request host.

    "shop.pluggn.store" -> "shop"; the bare domain and foreign hosts -> None.
    """
    if not host:
        return None
    host = host.split(":")[0].lower()
    parts = host.split(".")
    if len(parts) > 2 and host.endswith(STORE_HOST_SUFFIX):
        return parts[0]
    return None


class StorefrontClient:
    """
    Async client for one store's public endpoints.

    Usage:
        client = StorefrontClient("https://api.example.com", "shop")
        products = await client.fetch_products()
        await client.close()
    """

    def __init__(
        self,
        base_url: str,
        subdomain: Optional[str],
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: API root, e.g. https://api.pluggn.com.ng
            subdomain: Store subdomain sent with every request
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self._base_url = base_url.rstrip("/")
        self._subdomain = subdomain
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            headers={"Accept": "application/json", "Cache-Control": "no-cache"},
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "StorefrontClient":
        return cls(
            settings.storefront_api_base_url,
            settings.storefront_subdomain,
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def subdomain(self) -> Optional[str]:
        return self._subdomain

    async def close(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, what: str) -> Any:
        """GET `path` for this store and decode the JSON body."""
        try:
            response = await self._client.get(path, params={"subdomain": self._subdomain or ""})
        except httpx.HTTPError as e:
            raise NetworkError(f"Request for {what} failed: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(f"{what} not found")
        if response.status_code >= 400:
            raise NetworkError(
                f"HTTP error! status: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise NetworkError(f"Invalid JSON for {what}: {e}") from e

    async def fetch_products(self) -> List[Dict[str, Any]]:
        """GET /public/store/products -> raw product list."""
        payload = await self._get("/public/store/products", "Products")
        if (
            not isinstance(payload, dict)
            or payload.get("message") != PRODUCTS_OK_MESSAGE
            or not isinstance(payload.get("data"), list)
        ):
            raise NetworkError("Invalid API response format")
        logger.debug(f"Fetched {len(payload['data'])} products for {self._subdomain}")
        return payload["data"]

    async def fetch_product(self, product_id: str) -> Dict[str, Any]:
        """GET /public/products/{id} -> raw product."""
        payload = await self._get(f"/public/products/{product_id}", "Product")
        if not isinstance(payload, dict) or not payload.get("data"):
            raise NetworkError("Invalid API response format")
        return payload["data"]

    async def fetch_store_config(self) -> Dict[str, Any]:
        """GET /public/store/config -> raw store configuration."""
        payload = await self._get("/public/store/config", "Store config")
        if not isinstance(payload, dict):
            raise NetworkError("Invalid API response format")
        return payload
