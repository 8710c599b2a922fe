"""
Stale-while-revalidate caching with request coalescing and durable persistence.
"""
from .core import CacheEntry, CacheUpdate, Freshness, content_hash, now_ms
from .errors import (
    CacheError,
    NetworkError,
    NotFoundError,
    PersistenceError,
    QuotaExceededError,
)
from .policies import (
    RESOURCE_POLICIES,
    CacheConfig,
    ResourceType,
    get_cache_config,
)
from .memory import MemoryCache
from .persistence import (
    FlatFileBackend,
    PersistentBackend,
    PersistentStore,
    SQLiteBackend,
)
from .coordinator import RequestCoordinator
from .subscribers import SubscriberRegistry
from .engine import SWREngine
from .revalidator import BackgroundRevalidator

__all__ = [
    # Core types
    "CacheEntry",
    "CacheUpdate",
    "Freshness",
    "content_hash",
    "now_ms",
    # Errors
    "CacheError",
    "NetworkError",
    "NotFoundError",
    "PersistenceError",
    "QuotaExceededError",
    # Policies
    "RESOURCE_POLICIES",
    "CacheConfig",
    "ResourceType",
    "get_cache_config",
    # Tiers
    "MemoryCache",
    "FlatFileBackend",
    "PersistentBackend",
    "PersistentStore",
    "SQLiteBackend",
    # Coordination
    "RequestCoordinator",
    "SubscriberRegistry",
    # Engine
    "SWREngine",
    "BackgroundRevalidator",
]
