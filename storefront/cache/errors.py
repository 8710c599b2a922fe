"""
Error taxonomy for the storefront cache.

NetworkError and NotFoundError come from the remote fetch layer.
PersistenceError and QuotaExceededError come from the persistent store and
never reach cache consumers.
"""
from typing import Optional


class CacheError(Exception):
    """Base class for all cache errors."""
    pass


class NetworkError(CacheError):
    """Transient failure talking to the origin. Retryable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(CacheError):
    """The resource does not exist at the origin. Never retried."""
    pass


class PersistenceError(CacheError):
    """A persistent backend could not be read or written."""
    pass


class QuotaExceededError(PersistenceError):
    """The flat-file backend is out of space and its namespace must be purged."""
    pass
