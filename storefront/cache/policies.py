"""
Cache policy configuration per storefront resource type.
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS


class ResourceType(Enum):
    """Storefront resources with their own cache line namespace."""
    PRODUCTS = "products"          # product listing for a store
    PRODUCT_DETAILS = "product"    # one product's detail page
    STORE_CONFIG = "config"        # store theme / content configuration


@dataclass(frozen=True)
class CacheConfig:
    """
    Timing and retry policy for one cache instance.

    All durations are milliseconds.
    """
    stale_time: int
    cache_time: int
    retry_count: int = 1
    retry_delay: int = 1000
    background_refetch_interval: int = 10 * MINUTE_MS
    schema_version: str = "1"
    refetch_on_focus: bool = False
    refetch_on_reconnect: bool = True

    def __post_init__(self) -> None:
        """Validate timing invariants."""
        if self.stale_time < 0:
            raise ValueError("stale_time must be >= 0")
        if self.stale_time >= self.cache_time:
            raise ValueError(
                f"stale_time ({self.stale_time}ms) must be less than "
                f"cache_time ({self.cache_time}ms)"
            )
        if self.retry_count < 0:
            raise ValueError("retry_count must be >= 0")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must be >= 0")
        if self.background_refetch_interval <= 0:
            raise ValueError("background_refetch_interval must be > 0")


# Policy table by resource type (durations in milliseconds)
RESOURCE_POLICIES: Dict[ResourceType, Dict[str, Any]] = {
    ResourceType.PRODUCTS: {
        "stale_time": 5 * MINUTE_MS,                     # listing changes with stock
        "cache_time": 20 * MINUTE_MS,
        "retry_count": 1,
        "retry_delay": 1000,
        "background_refetch_interval": 10 * MINUTE_MS,
        "schema_version": "1",
        "refetch_on_focus": True,
        "refetch_on_reconnect": True,
    },
    ResourceType.PRODUCT_DETAILS: {
        "stale_time": 15 * MINUTE_MS,                    # details change less often
        "cache_time": 1 * HOUR_MS,
        "retry_count": 2,
        "retry_delay": 1000,
        "background_refetch_interval": 30 * MINUTE_MS,
        "schema_version": "1",
        "refetch_on_focus": False,
        "refetch_on_reconnect": True,
    },
    ResourceType.STORE_CONFIG: {
        "stale_time": 30 * MINUTE_MS,                    # config rarely changes
        "cache_time": 4 * HOUR_MS,
        "retry_count": 2,
        "retry_delay": 2000,
        "background_refetch_interval": 1 * HOUR_MS,
        "schema_version": "1.1.0",                       # bump to drop persisted configs
        "refetch_on_focus": False,
        "refetch_on_reconnect": True,
    },
}


def get_cache_config(resource: ResourceType, **overrides: Any) -> CacheConfig:
    """
    Build the cache configuration for a resource type.

    Args:
        resource: The resource type
        **overrides: Field values replacing the table defaults

    Returns:
        Validated CacheConfig
    """
    config = CacheConfig(**RESOURCE_POLICIES[resource])
    if overrides:
        config = replace(config, **overrides)
    return config
