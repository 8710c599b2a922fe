"""
Core cache data structures.
"""
import hashlib
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

# Millisecond clock. Engines accept any callable with this shape so tests can
# drive time explicitly.
Clock = Callable[[], int]


def now_ms() -> int:
    """Current wall-clock time in integer milliseconds since the epoch."""
    return int(time.time() * 1000)


def content_hash(data: Any) -> str:
    """
    Deterministic digest of cached data.

    Uses canonical JSON (sorted keys, compact separators) so that two payloads
    with the same content hash identically regardless of dict ordering.
    """
    payload = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


class Freshness(Enum):
    """Freshness state of an entry relative to its cache policy."""
    FRESH = "fresh"       # age <= stale_time
    STALE = "stale"       # stale_time < age <= cache_time, served while revalidating
    EXPIRED = "expired"   # age > cache_time, treated as absent


@dataclass
class CacheEntry:
    """
    A cached value with the metadata needed for staleness tracking.

    The entry owns `data` exclusively: MemoryCache deep-copies on write.
    """
    data: Any
    timestamp: int
    schema_version: str
    content_hash: str

    def age_ms(self, now: int) -> int:
        """Milliseconds since this entry was written."""
        return now - self.timestamp

    def is_stale(self, now: int, stale_time: int) -> bool:
        return self.age_ms(now) > stale_time

    def is_expired(self, now: int, cache_time: int) -> bool:
        return self.age_ms(now) > cache_time

    def freshness(self, now: int, stale_time: int, cache_time: int) -> Freshness:
        """Classify the entry at time `now`."""
        if self.is_expired(now, cache_time):
            return Freshness.EXPIRED
        if self.is_stale(now, stale_time):
            return Freshness.STALE
        return Freshness.FRESH

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dictionary for persistence."""
        return {
            "data": self.data,
            "timestamp": self.timestamp,
            "schemaVersion": self.schema_version,
            "contentHash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "CacheEntry":
        """Rebuild an entry from its persisted form."""
        data = raw["data"]
        return cls(
            data=data,
            timestamp=int(raw["timestamp"]),
            schema_version=str(raw.get("schemaVersion", "")),
            content_hash=raw.get("contentHash") or content_hash(data),
        )


@dataclass(frozen=True)
class CacheUpdate:
    """
    Notification delivered to subscribers.

    Mirrors the `(data, error, isValidating)` triple consumers render from.
    """
    data: Any
    error: Optional[Exception] = None
    is_validating: bool = False
