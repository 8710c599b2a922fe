"""
Periodic background revalidation of observed cache keys.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .engine import SWREngine

logger = logging.getLogger("cache.revalidator")


class BackgroundRevalidator:
    """
    Repeating timer that silently refreshes stale keys somebody is watching.

    Keys without subscribers are skipped. Only one timer runs per revalidator:
    start() cancels any previous loop before arming a new one.
    """

    def __init__(
        self,
        engine: SWREngine,
        interval: Optional[int] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """
        Args:
            engine: Engine whose keys are revalidated
            interval: Milliseconds between sweeps (defaults to the engine policy)
            sleep: Async sleep between sweeps (defaults to asyncio.sleep)
        """
        self._engine = engine
        self._interval = interval if interval is not None else engine.config.background_refetch_interval
        self._sleep = sleep or asyncio.sleep
        self._task: Optional[asyncio.Task] = None
        self._stats = {
            "sweeps": 0,
            "revalidated": 0,
            "failures": 0,
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval(self) -> int:
        return self._interval

    def start(self) -> None:
        """Arm the timer, replacing any timer already running."""
        if self._task is not None:
            self._task.cancel()
        self._task = asyncio.ensure_future(self._loop())
        logger.info(
            f"Background revalidation started for {self._engine.name} "
            f"(every {self._interval / 1000:.0f}s)"
        )

    async def stop(self) -> None:
        """Cancel the timer and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Background revalidation stopped for {self._engine.name}")

    async def _loop(self) -> None:
        while True:
            await self._sleep(self._interval / 1000.0)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Background sweep error for {self._engine.name}: {e}", exc_info=True)

    def due_keys(self) -> List[str]:
        """Subscribed keys that are missing, stale or expired and can be refetched."""
        engine = self._engine
        now = engine.clock()
        keys = []
        for key in engine.subscribers.active_keys():
            if not engine.has_fetcher(key):
                continue
            entry = engine.memory.get(key)
            if entry is None or entry.is_stale(now, engine.config.stale_time):
                keys.append(key)
        return keys

    async def sweep(self) -> int:
        """
        Run one revalidation pass.

        Returns:
            Number of keys refreshed successfully
        """
        self._stats["sweeps"] += 1
        keys = self.due_keys()
        if not keys:
            return 0

        logger.debug(f"Revalidating {len(keys)} stale {self._engine.name} keys")
        results = await asyncio.gather(
            *(self._engine.fetch(key, silent=True) for key in keys),
            return_exceptions=True,
        )

        refreshed = 0
        for key, result in zip(keys, results):
            if isinstance(result, Exception):
                self._stats["failures"] += 1
                logger.warning(f"Background revalidation failed for {key}: {result}")
            else:
                refreshed += 1
        self._stats["revalidated"] += refreshed
        return refreshed

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "interval_ms": self._interval,
            **self._stats,
        }
