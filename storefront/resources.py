"""
Storefront resources on top of the generic SWR engine.

Each resource type gets its own engine, persistent namespace and background
revalidator, wired together once at start-up by CacheRegistry. This module
also owns the per-resource policy points: cache keys, response transforms and
what to serve when a fetch fails with nothing cached.
"""
import asyncio
import copy
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from storefront.api_client import StorefrontClient
from storefront.cache import (
    BackgroundRevalidator,
    CacheConfig,
    NotFoundError,
    PersistentStore,
    ResourceType,
    SWREngine,
    get_cache_config,
)
from storefront.cache.core import Clock
from storefront.cache.engine import FallbackHook
from config.settings import Settings

logger = logging.getLogger("resources")

MAIN_SCOPE = "main"


# =============================================================================
# Cache keys
# =============================================================================

def products_key(subdomain: Optional[str]) -> str:
    return f"products_{subdomain or MAIN_SCOPE}"


def product_key(product_id: str, subdomain: Optional[str]) -> str:
    return f"product_{product_id}_{subdomain or MAIN_SCOPE}"


def config_key(subdomain: Optional[str]) -> str:
    return f"config_{subdomain or MAIN_SCOPE}"


# =============================================================================
# Transforms
# =============================================================================

def placeholder_image(base_url: str, size: int) -> str:
    return f"{base_url}/image/placeholder.svg?height={size}&width={size}"


def _total_stock(raw: Dict[str, Any]) -> int:
    """Sum variation stock when the product has variations, else its own stock."""
    variations = raw.get("variations")
    if isinstance(variations, list) and variations:
        return sum(v.get("stocks") or 0 for v in variations)
    return raw.get("stocks") or 0


def transform_products(raw_products: List[Dict[str, Any]], base_url: str) -> List[Dict[str, Any]]:
    """Map the API product listing onto the shape the storefront renders."""
    products = []
    for raw in raw_products:
        variations = raw.get("variations") or []
        images = raw.get("images") or []
        products.append({
            "id": raw.get("id"),
            "title": raw.get("name"),
            "price": raw.get("price"),
            "category": raw.get("category"),
            "brand": "generic",
            "image": images[0] if images else placeholder_image(base_url, 200),
            "description": raw.get("description") or "No description available",
            "stocks": _total_stock(raw),
            "sold": raw.get("sold") or 0,
            "originalPrice": raw.get("originalPrice"),
            "variations": variations,
            "hasVariations": bool(variations),
            "dimensions": raw.get("dimensions"),
            "size": raw.get("size"),
            "color": raw.get("color"),
        })
    return products


def transform_product(raw: Dict[str, Any], base_url: str) -> Dict[str, Any]:
    """Map one API product onto the product details shape."""
    variations = raw.get("variations") or []
    images = raw.get("images") or []
    return {
        "id": raw.get("id"),
        "title": raw.get("name"),
        "price": raw.get("price"),
        "originalPrice": raw.get("originalPrice"),
        "description": raw.get("description") or "No description available.",
        "images": images,
        "image": images[0] if images else placeholder_image(base_url, 400),
        "category": raw.get("category"),
        "stocks": raw.get("stocks"),
        "totalStock": _total_stock(raw),
        "hasVariations": bool(variations),
        "variations": variations,
        "sold": raw.get("sold") or 0,
    }


DEFAULT_STORE_CONFIG: Dict[str, Any] = {
    "templateId": "primary",
    "styles": {
        "FONT_FAMILY": None,
        "TEXT_COLOR": None,
        "BACKGROUND_COLOR": None,
        "PRIMARY_COLOR": None,
        "SECONDARY_COLOR": None,
        "ACCENT_COLOR": None,
    },
    "content": {
        "BRAND_NAME": "TechVibe",
        "HERO_TITLE": "Next-Gen Tech at Your Fingertips",
        "HERO_DESCRIPTION": (
            "Discover the latest in cutting-edge technology. Premium devices with "
            "exceptional performance, stunning design, and innovative features."
        ),
        "PRIMARY_CTA_TEXT": "shop now",
        "SECONDARY_CTA_TEXT": "learn more",
        "INSTAGRAM_LINK": None,
        "FACEBOOK_LINK": None,
        "TWITTER_LINK": None,
        "PHONE_NUMBER": "+1 (123) 456-7890",
        "MAIL": "support@techvibe.com",
    },
    "metadata": {
        "title": "TechVibe - Premium Electronics Store",
        "description": (
            "TechVibe - Premium Electronics Store. Shop the latest smartphones, "
            "laptops, and accessories."
        ),
    },
}


def _deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    for key, value in source.items():
        if isinstance(value, dict):
            if not isinstance(target.get(key), dict):
                target[key] = {}
            _deep_merge(target[key], value)
        elif value is not None:
            target[key] = value


def merge_store_config(api_config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Overlay the API store config on the defaults.

    Nested dicts merge key by key; None values in the API config keep the default.
    """
    merged = copy.deepcopy(DEFAULT_STORE_CONFIG)
    _deep_merge(merged, api_config)
    return merged


# =============================================================================
# Fallback hooks
# =============================================================================

def no_fallback(key: str, error: Exception) -> Any:
    """Let the error propagate."""
    return None


def sample_products_fallback(base_url: str) -> FallbackHook:
    """Serve a one-item sample listing so the storefront still renders."""
    def fallback(key: str, error: Exception) -> Any:
        logger.warning(f"Serving sample products for {key}: {error}")
        return [
            {
                "id": "1",
                "title": "Smartphone Pro",
                "price": 999,
                "category": "smartphones",
                "brand": "apple",
                "image": placeholder_image(base_url, 200),
                "description": "The latest flagship smartphone with cutting-edge features.",
            }
        ]
    return fallback


def not_found_fallback(on_not_found: Callable[[str], None]) -> FallbackHook:
    """Record a not-found state for `NotFoundError`, then let the error propagate."""
    def fallback(key: str, error: Exception) -> Any:
        if isinstance(error, NotFoundError):
            logger.warning(f"Origin reports {key} as not found")
            on_not_found(key)
        return None
    return fallback


# =============================================================================
# Registry
# =============================================================================

class CacheRegistry:
    """
    One engine, persistent namespace and revalidator per resource type.

    Built once at application start-up and passed to whatever needs cached
    storefront data.

    Usage:
        registry = CacheRegistry.create(settings)
        await registry.hydrate()
        registry.start()
        products = await registry.products()
        await registry.stop()
    """

    def __init__(
        self,
        client: StorefrontClient,
        engines: Dict[ResourceType, SWREngine],
        not_found: Optional[Set[str]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self._client = client
        self._engines = engines
        self._revalidators = {
            resource: BackgroundRevalidator(engine, sleep=sleep)
            for resource, engine in engines.items()
        }
        # Store config keys the origin reported as missing
        self._not_found: Set[str] = not_found if not_found is not None else set()
        self._register_store_fetchers()

    @classmethod
    def create(
        cls,
        settings: Settings,
        client: Optional[StorefrontClient] = None,
        policies: Optional[Dict[ResourceType, CacheConfig]] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> "CacheRegistry":
        """
        Factory method wiring every resource type from settings.

        Args:
            settings: Application settings
            client: API client (built from settings if omitted)
            policies: Per-resource CacheConfig overrides
            clock: Millisecond clock shared by all engines
            sleep: Async sleep for retries and revalidation timers

        Returns:
            Configured CacheRegistry
        """
        client = client or StorefrontClient.from_settings(settings)
        policies = policies or {}
        base_url = client.base_url

        engines: Dict[ResourceType, SWREngine] = {}
        not_found: Set[str] = set()

        transforms = {
            ResourceType.PRODUCTS: partial(transform_products, base_url=base_url),
            ResourceType.PRODUCT_DETAILS: partial(transform_product, base_url=base_url),
            ResourceType.STORE_CONFIG: merge_store_config,
        }
        fallbacks = {
            ResourceType.PRODUCTS: sample_products_fallback(base_url),
            ResourceType.PRODUCT_DETAILS: no_fallback,
            ResourceType.STORE_CONFIG: not_found_fallback(not_found.add),
        }

        for resource in ResourceType:
            config = policies.get(resource) or get_cache_config(resource)
            store = None
            if settings.cache_enabled:
                store = PersistentStore.create(
                    settings.cache_directory,
                    namespace=resource.value,
                    schema_version=config.schema_version,
                    cache_time=config.cache_time,
                    backend=settings.persistence_backend,
                    db_name=settings.cache_db_name,
                    quota_bytes=settings.flat_store_quota_bytes,
                    clock=clock,
                )
            engines[resource] = SWREngine(
                resource.value,
                config,
                store=store,
                fallback=fallbacks[resource],
                transform=transforms[resource],
                clock=clock,
                sleep=sleep,
            )

        return cls(client, engines, not_found=not_found, sleep=sleep)

    def _register_store_fetchers(self) -> None:
        """Store-wide keys are known up front, so background refresh can cover them."""
        subdomain = self._client.subdomain
        if subdomain is None:
            return
        self.engine(ResourceType.PRODUCTS).register(
            products_key(subdomain), self._client.fetch_products
        )
        self.engine(ResourceType.STORE_CONFIG).register(
            config_key(subdomain), self._fetch_store_config
        )

    @property
    def client(self) -> StorefrontClient:
        return self._client

    @property
    def subdomain(self) -> Optional[str]:
        return self._client.subdomain

    def engine(self, resource: ResourceType) -> SWREngine:
        return self._engines[resource]

    def revalidator(self, resource: ResourceType) -> BackgroundRevalidator:
        return self._revalidators[resource]

    def is_not_found(self, key: str) -> bool:
        """True if the origin reported `key` as missing and it has not loaded since."""
        return key in self._not_found

    async def _fetch_store_config(self) -> Dict[str, Any]:
        """Fetch the raw store config; an answer from the origin clears the not-found mark."""
        raw = await self._client.fetch_store_config()
        self._not_found.discard(config_key(self.subdomain))
        return raw

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def hydrate(self) -> Dict[str, int]:
        """Warm every engine from persistent storage."""
        return {
            resource.value: await engine.hydrate()
            for resource, engine in self._engines.items()
        }

    def start(self) -> None:
        """Arm every background revalidator."""
        for revalidator in self._revalidators.values():
            revalidator.start()

    async def stop(self) -> None:
        """Stop timers, cancel background work and close the API client."""
        for revalidator in self._revalidators.values():
            await revalidator.stop()
        for engine in self._engines.values():
            await engine.close()
        await self._client.close()

    # =========================================================================
    # Reads
    # =========================================================================

    async def products(self, force_refresh: bool = False, silent: bool = False) -> Any:
        """Product listing for the configured store."""
        return await self.engine(ResourceType.PRODUCTS).fetch(
            products_key(self.subdomain),
            self._client.fetch_products,
            force_refresh=force_refresh,
            silent=silent,
        )

    async def product(
        self,
        product_id: str,
        force_refresh: bool = False,
        silent: bool = False,
    ) -> Any:
        """
        Details for one product.

        Raises:
            NotFoundError: The product does not exist and nothing is cached
        """
        return await self.engine(ResourceType.PRODUCT_DETAILS).fetch(
            product_key(product_id, self.subdomain),
            partial(self._client.fetch_product, product_id),
            force_refresh=force_refresh,
            silent=silent,
        )

    async def store_config(self, force_refresh: bool = False, silent: bool = False) -> Any:
        """
        Store configuration merged over the defaults.

        Without a store subdomain (the main app) the defaults are returned
        without touching the API.
        """
        if self.subdomain is None:
            return copy.deepcopy(DEFAULT_STORE_CONFIG)

        return await self.engine(ResourceType.STORE_CONFIG).fetch(
            config_key(self.subdomain),
            self._fetch_store_config,
            force_refresh=force_refresh,
            silent=silent,
        )

    # =========================================================================
    # Host events & maintenance
    # =========================================================================

    async def handle_focus(self) -> Dict[str, int]:
        """Propagate a focus event to every engine."""
        return {
            resource.value: await engine.handle_focus()
            for resource, engine in self._engines.items()
        }

    async def handle_reconnect(self) -> Dict[str, int]:
        """Propagate a network-reconnected event to every engine."""
        counts = await asyncio.gather(
            *(engine.handle_reconnect() for engine in self._engines.values())
        )
        return {
            resource.value: count
            for resource, count in zip(self._engines, counts)
        }

    async def clear(
        self,
        resource: Optional[ResourceType] = None,
        key: Optional[str] = None,
    ) -> int:
        """Clear one key of a resource, one resource, or everything."""
        if resource is ResourceType.STORE_CONFIG:
            if key is None:
                self._not_found.clear()
            else:
                self._not_found.discard(key)
        if resource is not None:
            return await self.engine(resource).clear_cache(key)

        removed = 0
        for engine in self._engines.values():
            removed += await engine.clear_cache()
        self._not_found.clear()
        return removed

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics for every resource."""
        return {
            "subdomain": self.subdomain,
            "not_found": sorted(self._not_found),
            "resources": {
                resource.value: {
                    **engine.get_stats(),
                    "revalidator": self._revalidators[resource].get_stats(),
                }
                for resource, engine in self._engines.items()
            },
        }
