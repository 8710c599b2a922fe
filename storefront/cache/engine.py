"""
Stale-while-revalidate engine.

Decides, per fetch, whether to serve from memory, serve stale while
revalidating in the background, or block on the network; keeps the memory
and persistent tiers in sync and fans results out to subscribers.
"""
import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .coordinator import RemoteFn, RequestCoordinator
from .core import CacheEntry, Clock, now_ms
from .memory import MemoryCache
from .persistence import PersistentStore
from .policies import CacheConfig
from .subscribers import Subscriber, SubscriberRegistry, Unsubscribe

logger = logging.getLogger("cache.engine")

# Invoked when a fetch fails and nothing is cached. Returning a value serves
# it as a placeholder (not cached); returning None lets the error propagate.
FallbackHook = Callable[[str, Exception], Any]
Transform = Callable[[Any], Any]


class SWREngine:
    """
    Generic SWR cache for one resource type.

    Combines:
    - MemoryCache: authoritative process-local tier
    - PersistentStore: optional durable tier, hydrated on memory miss
    - RequestCoordinator: one remote call per key at a time, with retry
    - SubscriberRegistry: (data, error, is_validating) fan-out

    Decision order for fetch():
    1. In-flight request and no force refresh -> join it
    2. No usable entry -> block on the network
    3. Fresh entry -> serve it
    4. Stale entry -> serve it and revalidate in the background
    5. Force refresh -> always hit the network
    """

    def __init__(
        self,
        name: str,
        config: CacheConfig,
        store: Optional[PersistentStore] = None,
        fallback: Optional[FallbackHook] = None,
        transform: Optional[Transform] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """
        Initialize the engine.

        Args:
            name: Resource name used in logs and stats
            config: Timing and retry policy
            store: Persistent tier; None runs memory-only
            fallback: Policy for failures with nothing cached
            transform: Applied to every successful remote result
            clock: Millisecond clock (defaults to wall clock)
            sleep: Async sleep used for retry backoff
        """
        self._name = name
        self._config = config
        self._clock = clock or now_ms
        self._memory = MemoryCache(config.cache_time, config.schema_version, self._clock)
        self._store = store
        self._coordinator = RequestCoordinator(
            retry_count=config.retry_count,
            retry_delay=config.retry_delay,
            sleep=sleep,
        )
        self._subscribers = SubscriberRegistry()
        self._fallback = fallback
        self._transform = transform

        self._fetchers: Dict[str, RemoteFn] = {}
        self._errors: Dict[str, Exception] = {}
        self._background: Set[asyncio.Task] = set()

        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "revalidations": 0,
            "unchanged": 0,
            "degraded": 0,
            "fallbacks": 0,
            "mutations": 0,
        }

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def memory(self) -> MemoryCache:
        return self._memory

    @property
    def store(self) -> Optional[PersistentStore]:
        return self._store

    @property
    def coordinator(self) -> RequestCoordinator:
        return self._coordinator

    @property
    def subscribers(self) -> SubscriberRegistry:
        return self._subscribers

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, key: str, remote_fn: RemoteFn) -> None:
        """Remember how to fetch `key` so it can be refreshed without a caller."""
        self._fetchers[key] = remote_fn

    def has_fetcher(self, key: str) -> bool:
        return key in self._fetchers

    def subscribe(self, key: str, callback: Subscriber) -> Unsubscribe:
        """Subscribe to `(data, error, is_validating)` updates for `key`."""
        return self._subscribers.subscribe(key, callback)

    def last_error(self, key: str) -> Optional[Exception]:
        """Error from the most recent failed fetch of `key`, cleared on success."""
        return self._errors.get(key)

    def _resolve_fetcher(self, key: str, remote_fn: Optional[RemoteFn]) -> RemoteFn:
        if remote_fn is not None:
            self._fetchers[key] = remote_fn
            return remote_fn
        fetcher = self._fetchers.get(key)
        if fetcher is None:
            raise LookupError(f"No fetcher registered for {key}")
        return fetcher

    # =========================================================================
    # Fetch protocol
    # =========================================================================

    async def fetch(
        self,
        key: str,
        remote_fn: Optional[RemoteFn] = None,
        force_refresh: bool = False,
        silent: bool = False,
    ) -> Any:
        """
        Get data for `key` from cache or the network.

        Args:
            key: Cache key
            remote_fn: Coroutine function fetching the data; remembered for
                later refreshes. Optional once registered.
            force_refresh: Bypass freshness and always fetch
            silent: Suppress the "validating" and fresh-hit notifications

        Returns:
            The cached, fresh, or placeholder data

        Raises:
            Exception: The fetch error, only when nothing is cached and the
                fallback hook produced no placeholder
        """
        remote_fn = self._resolve_fetcher(key, remote_fn)

        pending = self._coordinator.in_flight(key)
        if pending is not None and not force_refresh:
            logger.debug(f"Joining in-flight fetch: {key}")
            return await asyncio.shield(pending)

        entry = self._memory.get(key)
        if entry is None:
            await self._hydrate_key(key)
            # Hydration may have suspended; someone else may have started a fetch
            pending = self._coordinator.in_flight(key)
            if pending is not None and not force_refresh:
                return await asyncio.shield(pending)
            entry = self._memory.get(key)

        # Cache miss (or expired)
        if entry is None:
            logger.info(f"CACHE MISS: {key}")
            self._stats["misses"] += 1
            return await self._revalidate(key, remote_fn, None, silent, force_refresh)

        # Force refresh bypasses freshness entirely
        if force_refresh:
            logger.info(f"FORCE REFRESH: {key}")
            return await self._revalidate(key, remote_fn, entry, silent, True)

        now = self._clock()

        # Cache hit - fresh
        if not entry.is_stale(now, self._config.stale_time):
            logger.debug(f"CACHE HIT (fresh): {key} [age={entry.age_ms(now)}ms]")
            self._stats["hits_fresh"] += 1
            if not silent:
                self._subscribers.notify(key, entry.data, None, False)
            return entry.data

        # Cache hit - stale: serve now, revalidate in the background
        if not silent:
            logger.info(
                f"CACHE HIT (stale, revalidating): {key} [age={entry.age_ms(now)}ms]"
            )
            self._stats["hits_stale"] += 1
            self._subscribers.notify(key, entry.data, None, True)
            self._spawn(self.fetch(key, remote_fn, silent=True))
            return entry.data

        # Stale and silent: this is the background revalidation itself
        return await self._revalidate(key, remote_fn, entry, True, False)

    async def _revalidate(
        self,
        key: str,
        remote_fn: RemoteFn,
        prior: Optional[CacheEntry],
        silent: bool,
        force_refresh: bool,
    ) -> Any:
        """Start (or join) the network fetch for `key` and await its outcome."""
        if not silent:
            self._subscribers.notify(key, prior.data if prior else None, None, True)

        task = self._coordinator.fetch(
            key,
            self._with_transform(remote_fn),
            force_refresh=force_refresh,
            finalize=partial(self._settle, key, prior),
        )
        # A caller that stops waiting leaves the shared fetch running
        return await asyncio.shield(task)

    def _with_transform(self, remote_fn: RemoteFn) -> RemoteFn:
        if self._transform is None:
            return remote_fn

        transform = self._transform

        async def fetch_and_transform() -> Any:
            return transform(await remote_fn())

        return fetch_and_transform

    async def _settle(
        self,
        key: str,
        prior: Optional[CacheEntry],
        result: Any,
        error: Optional[Exception],
    ) -> Any:
        """Apply a settled network outcome; shared by every coalesced caller."""
        if not self._coordinator.is_current(key):
            return await self._superseded(key, result, error)
        if error is None:
            return await self._store_result(key, result)
        return self._handle_failure(key, prior, error)

    async def _superseded(
        self,
        key: str,
        result: Any,
        error: Optional[Exception],
    ) -> Any:
        """
        Resolve a fetch that a forced refresh replaced.

        Its outcome is discarded: nothing is cached, persisted or notified.
        Callers share the replacement's outcome while it is still running,
        otherwise they get whatever the replacement left in memory.
        """
        logger.debug(f"Discarding superseded fetch result for {key}")
        replacement = self._coordinator.in_flight(key)
        if replacement is not None:
            return await asyncio.shield(replacement)

        entry = self._memory.get(key)
        if entry is not None:
            return entry.data
        if error is not None:
            raise error
        return result

    async def _store_result(self, key: str, result: Any) -> Any:
        previous = self._memory.get(key)
        entry = self._memory.set(key, result)
        self._errors.pop(key, None)
        self._stats["revalidations"] += 1

        if previous is not None and previous.content_hash == entry.content_hash:
            self._stats["unchanged"] += 1
            logger.debug(f"Revalidated {key}: content unchanged")
        else:
            logger.debug(f"Revalidated {key}: hash={entry.content_hash}")

        self._subscribers.notify(key, entry.data, None, False)
        await self._persist(key, entry)
        return entry.data

    def _handle_failure(
        self,
        key: str,
        prior: Optional[CacheEntry],
        error: Exception,
    ) -> Any:
        self._errors[key] = error

        # Last known good: the live entry, else the one we started from
        known = self._memory.get(key) or prior
        if known is not None:
            self._stats["degraded"] += 1
            logger.warning(f"Serving cached {key} after fetch error: {error}")
            self._subscribers.notify(key, known.data, error, False)
            return known.data

        if self._fallback is not None:
            placeholder = self._fallback(key, error)
            if placeholder is not None:
                self._stats["fallbacks"] += 1
                logger.warning(f"Serving fallback for {key} after fetch error: {error}")
                self._subscribers.notify(key, placeholder, error, False)
                return placeholder

        logger.error(f"Fetch failed for {key} with nothing cached: {error}")
        self._subscribers.notify(key, None, error, False)
        raise error

    # =========================================================================
    # Mutation & refresh
    # =========================================================================

    async def mutate(
        self,
        key: str,
        new_data: Any = None,
        should_refetch: bool = False,
    ) -> Any:
        """
        Optimistically replace cached data and optionally reconcile with the origin.

        Args:
            key: Cache key
            new_data: Value to write now; None leaves the cache untouched
            should_refetch: Follow up with a forced fetch whose result wins

        Returns:
            The refetched value if requested, else the latest known value
        """
        if new_data is not None:
            entry = self._memory.set(key, new_data)
            self._stats["mutations"] += 1
            logger.info(f"MUTATE: {key} [refetch={should_refetch}]")
            self._subscribers.notify(key, entry.data, None, should_refetch)
            await self._persist(key, entry)

        if should_refetch:
            return await self.fetch(key, force_refresh=True)

        current = self._memory.get(key)
        return current.data if current is not None else None

    async def refetch_if_stale(self, key: str, silent: bool = False) -> Any:
        """Fetch `key` if it is missing or stale; otherwise return the cached data."""
        entry = self._memory.get(key)
        if entry is not None and not entry.is_stale(self._clock(), self._config.stale_time):
            return entry.data

        if key not in self._fetchers:
            logger.debug(f"No fetcher for {key}, skipping refetch")
            return entry.data if entry is not None else None

        return await self.fetch(key, silent=silent)

    async def refetch_all_stale(self, force: bool = False) -> int:
        """
        Silently refresh every registered key that is missing or stale.

        Args:
            force: Refresh every registered key regardless of freshness

        Returns:
            Number of keys refreshed
        """
        now = self._clock()
        keys = []
        for key in list(self._fetchers):
            entry = self._memory.get(key)
            if force or entry is None or entry.is_stale(now, self._config.stale_time):
                keys.append(key)

        if not keys:
            return 0

        results = await asyncio.gather(
            *(self.fetch(key, silent=True, force_refresh=force) for key in keys),
            return_exceptions=True,
        )
        for key, result in zip(keys, results):
            if isinstance(result, Exception):
                logger.warning(f"Refetch failed for {key}: {result}")
        return len(keys)

    async def handle_focus(self) -> int:
        """Host regained focus: refresh stale keys if the policy asks for it."""
        if not self._config.refetch_on_focus:
            return 0
        return await self.refetch_all_stale()

    async def handle_reconnect(self) -> int:
        """Network came back: force-refresh every registered key if the policy asks for it."""
        if not self._config.refetch_on_reconnect:
            return 0
        logger.info(f"Network reconnected, refetching {self._name} data...")
        return await self.refetch_all_stale(force=True)

    # =========================================================================
    # Persistence
    # =========================================================================

    async def hydrate(self) -> int:
        """
        Warm the memory tier from the persistent namespace.

        Returns:
            Number of entries adopted
        """
        if self._store is None:
            return 0

        adopted = 0
        for key, entry in (await self._store.load_all()).items():
            if self._memory.get(key) is None and self._memory.restore(key, entry):
                adopted += 1
        if adopted:
            logger.info(f"Hydrated {adopted} {self._name} entries from persistent storage")
        return adopted

    async def _hydrate_key(self, key: str) -> Optional[CacheEntry]:
        """Adopt the persisted entry for `key` into memory, if there is one."""
        if self._store is None:
            return None
        entry = await self._store.load(key)
        if entry is None or not self._memory.restore(key, entry):
            return None
        logger.debug(f"Hydrated {key} from {self._store.backend_name} storage")
        return self._memory.get(key)

    async def _persist(self, key: str, entry: CacheEntry) -> None:
        if self._store is not None:
            await self._store.save(key, entry)

    # =========================================================================
    # Invalidation
    # =========================================================================

    async def clear_cache(self, key: Optional[str] = None) -> int:
        """
        Drop one key, or every key, from memory and persistent storage.

        Subscribers of the cleared keys are notified with empty data.

        Returns:
            Number of memory entries removed
        """
        if key is not None:
            removed = 1 if self._memory.delete(key) else 0
            self._errors.pop(key, None)
            if self._store is not None:
                await self._store.remove(key)
            logger.info(f"Invalidated cache: {key}")
            self._subscribers.notify(key, None, None, False)
            return removed

        count = self._memory.clear()
        self._errors.clear()
        if self._store is not None:
            await self._store.purge()
        logger.info(f"Cleared {count} {self._name} cache entries")
        self._subscribers.notify_all(None, None, False)
        return count

    # =========================================================================
    # Background tasks & lifecycle
    # =========================================================================

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Background revalidation ended with error: {task.exception()}")

    async def drain(self) -> None:
        """Wait for every scheduled background revalidation to settle."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        """Cancel background work and drop subscribers."""
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        self._subscribers.clear()

    # =========================================================================
    # Introspection
    # =========================================================================

    def cache_info(self, key: Optional[str] = None) -> Dict[str, Any]:
        """Describe one cached key, or every key this engine holds."""
        if key is None:
            return {
                "resource": self._name,
                "total_cached": len(self._memory),
                "entries": [self.cache_info(k) for k in self._memory.keys()],
                "total_subscribers": self._subscribers.count(),
            }

        entry = self._memory.get(key)
        if entry is None:
            return {
                "cached": False,
                "key": key,
                "subscribers": self._subscribers.count(key),
            }

        now = self._clock()
        error = self._errors.get(key)
        return {
            "cached": True,
            "key": key,
            "age_ms": entry.age_ms(now),
            "is_stale": entry.is_stale(now, self._config.stale_time),
            "is_expired": entry.is_expired(now, self._config.cache_time),
            "last_fetch": datetime.fromtimestamp(entry.timestamp / 1000, tz=timezone.utc)
            .isoformat().replace("+00:00", "Z"),
            "schema_version": entry.schema_version,
            "content_hash": entry.content_hash,
            "subscribers": self._subscribers.count(key),
            "in_flight": self._coordinator.has_in_flight(key),
            "last_error": str(error) if error else None,
        }

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total_hits = self._stats["hits_fresh"] + self._stats["hits_stale"]
        total_requests = total_hits + self._stats["misses"]
        hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0

        return {
            "resource": self._name,
            "entries": len(self._memory),
            **self._stats,
            "hit_rate_percent": round(hit_rate, 1),
            "subscribers": self._subscribers.count(),
            "background_tasks": len(self._background),
            "coordinator": self._coordinator.get_stats(),
            "persistence": self._store.get_stats() if self._store else None,
        }
