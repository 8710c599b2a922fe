"""
Process-local memory tier.

The memory map is authoritative for the running process; persistence is
only ever a copy of what lives here.
"""
import copy
import logging
from typing import Any, Dict, List, Optional

from .core import CacheEntry, Clock, content_hash, now_ms

logger = logging.getLogger("cache.memory")


class MemoryCache:
    """
    Map of cache key -> CacheEntry with lazy expiry eviction.

    Never performs I/O. Expired entries are dropped the moment they are read.
    """

    def __init__(
        self,
        cache_time: int,
        schema_version: str,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the memory cache.

        Args:
            cache_time: Age in ms after which an entry is expired
            schema_version: Version stamped on every entry written here
            clock: Millisecond clock (defaults to wall clock)
        """
        self._entries: Dict[str, CacheEntry] = {}
        self._cache_time = cache_time
        self._schema_version = schema_version
        self._clock = clock or now_ms

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for `key`, evicting it if expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        if entry.is_expired(self._clock(), self._cache_time):
            del self._entries[key]
            logger.debug(f"Evicted expired entry: {key}")
            return None

        return entry

    def set(self, key: str, data: Any) -> CacheEntry:
        """Store a deep copy of `data` stamped with the current time."""
        owned = copy.deepcopy(data)
        entry = CacheEntry(
            data=owned,
            timestamp=self._clock(),
            schema_version=self._schema_version,
            content_hash=content_hash(owned),
        )
        self._entries[key] = entry
        return entry

    def restore(self, key: str, entry: CacheEntry) -> bool:
        """
        Adopt a previously persisted entry, keeping its original timestamp.

        Returns:
            False if the entry is already expired and was not adopted
        """
        if entry.is_expired(self._clock(), self._cache_time):
            return False
        self._entries[key] = entry
        return True

    def delete(self, key: str) -> bool:
        """Remove an entry. Returns True if one was present."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        count = len(self._entries)
        self._entries.clear()
        return count

    def keys(self) -> List[str]:
        """Keys currently held, including ones not yet lazily evicted."""
        return list(self._entries.keys())

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
