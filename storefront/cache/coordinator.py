"""
Request coalescing and retry for remote fetches.

When multiple concurrent callers ask for the same key, only one remote
operation runs and every caller shares its outcome.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import NotFoundError

logger = logging.getLogger("cache.coordinator")

RemoteFn = Callable[[], Awaitable[Any]]
# Called once with (result, None) or (None, error) when the remote call settles.
# Its return value (or exception) becomes the shared outcome.
Finalizer = Callable[[Any, Optional[Exception]], Awaitable[Any]]


class RequestCoordinator:
    """
    Ensures concurrent fetches for the same cache key share one remote call.

    Pattern:
    - First fetch for a key creates a task and registers it before the
      first attempt starts
    - Later fetches for the key get the same task back
    - The task retries with exponential backoff, never retrying NotFoundError
    - The task removes itself from the in-flight table when it settles

    Usage:
        coordinator = RequestCoordinator(retry_count=2, retry_delay=1000)
        task = coordinator.fetch("products_shop", fetch_products)
        data = await task
    """

    def __init__(
        self,
        retry_count: int = 1,
        retry_delay: int = 1000,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """
        Initialize the coordinator.

        Args:
            retry_count: Extra attempts after the first failure
            retry_delay: Base backoff in ms; attempt i waits retry_delay * 2^(i-1)
            sleep: Async sleep used between attempts (defaults to asyncio.sleep)
        """
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._retry_count = retry_count
        self._retry_delay = retry_delay
        self._sleep = sleep
        self._stats = {
            "requests": 0,
            "coalesced": 0,
            "retries": 0,
            "failures": 0,
        }

    def has_in_flight(self, key: str) -> bool:
        """True if a remote operation for `key` has not settled yet."""
        return key in self._in_flight

    def in_flight(self, key: str) -> Optional[asyncio.Task]:
        """The pending task for `key`, if any."""
        return self._in_flight.get(key)

    def is_current(self, key: str) -> bool:
        """True when called from the task that currently owns `key`."""
        return self._in_flight.get(key) is asyncio.current_task()

    def fetch(
        self,
        key: str,
        remote_fn: RemoteFn,
        force_refresh: bool = False,
        finalize: Optional[Finalizer] = None,
    ) -> asyncio.Task:
        """
        Either join an existing in-flight operation or start a new one.

        Must be called from a running event loop.

        Args:
            key: Cache key identifying the operation
            remote_fn: Zero-argument coroutine function performing the fetch
            force_refresh: Start a new operation even if one is in flight
            finalize: Optional settle step whose outcome is shared by all callers

        Returns:
            Task resolving to the shared outcome
        """
        existing = self._in_flight.get(key)
        if existing is not None and not force_refresh:
            self._stats["coalesced"] += 1
            logger.debug(f"Coalescing request for {key}")
            return existing

        logger.debug(f"Initiating fetch for {key}")
        task = asyncio.ensure_future(self._run(key, remote_fn, finalize))
        self._in_flight[key] = task
        self._stats["requests"] += 1
        return task

    async def _run(
        self,
        key: str,
        remote_fn: RemoteFn,
        finalize: Optional[Finalizer],
    ) -> Any:
        """Perform the fetch, settle it, and clean up the in-flight table."""
        try:
            try:
                result = await self.call_with_retry(key, remote_fn)
            except Exception as e:
                self._stats["failures"] += 1
                logger.warning(f"Fetch failed for {key}: {e}")
                if finalize is None:
                    raise
                return await finalize(None, e)

            if finalize is None:
                return result
            return await finalize(result, None)
        finally:
            # A forced refresh may have replaced us in the table
            if self.is_current(key):
                del self._in_flight[key]

    async def call_with_retry(self, key: str, remote_fn: RemoteFn) -> Any:
        """
        Invoke `remote_fn` with exponential backoff.

        Raises:
            NotFoundError: Immediately, without retrying
            Exception: The last error once retries are exhausted
        """
        kwargs: Dict[str, Any] = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._retry_count + 1),
            wait=wait_exponential(multiplier=self._retry_delay / 1000.0, exp_base=2),
            retry=retry_if_not_exception_type(NotFoundError),
            before_sleep=self._before_retry(key),
            reraise=True,
            **kwargs,
        )
        return await retrying(remote_fn)

    def _before_retry(self, key: str) -> Callable[[RetryCallState], None]:
        """Build the tenacity hook logging each retry."""
        def log_retry(retry_state: RetryCallState) -> None:
            self._stats["retries"] += 1
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            logger.info(
                f"Fetch failed for {key}, retrying in {delay:.2f}s "
                f"({retry_state.attempt_number}/{self._retry_count}): {error}"
            )
        return log_retry

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight operations."""
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coordinator statistics."""
        return {
            **self._stats,
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight.keys()),
        }
