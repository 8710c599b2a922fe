"""
Pydantic schemas for cache inspection responses
"""
from pydantic import BaseModel
from typing import Dict, List, Optional


# ===== HEALTH =====

class HealthStatus(BaseModel):
    """Health check response"""
    status: str
    subdomain: Optional[str] = None


# ===== CACHE INFO =====

class CacheKeyInfo(BaseModel):
    """State of one cache key"""
    cached: bool
    key: str
    subscribers: int = 0
    age_ms: Optional[int] = None
    is_stale: Optional[bool] = None
    is_expired: Optional[bool] = None
    last_fetch: Optional[str] = None
    schema_version: Optional[str] = None
    content_hash: Optional[str] = None
    in_flight: Optional[bool] = None
    last_error: Optional[str] = None


class ResourceCacheInfo(BaseModel):
    """Every key cached for one resource"""
    resource: str
    total_cached: int
    entries: List[CacheKeyInfo]
    total_subscribers: int


# ===== MAINTENANCE =====

class RefetchResult(BaseModel):
    """Result of a refetch request"""
    resource: str
    refreshed: int


class ClearResult(BaseModel):
    """Result of a cache clear"""
    resource: str
    key: Optional[str] = None
    removed: int


class EventResult(BaseModel):
    """Keys refreshed per resource after a host event"""
    refreshed: Dict[str, int]
