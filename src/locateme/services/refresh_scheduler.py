"""
Background refresh of the sidebar cache.

Runs three asyncio loops inside the application lifespan:

- refresh       every ``refresh_interval`` seconds (first run after ``initial_delay``)
- health check  every ``health_check_interval`` seconds; refreshes immediately
                when the cache is older than ``max_age_seconds``
- stats report  every ``stats_interval`` seconds (log line only)
"""

import asyncio
import logging

from locateme.services.cache_materializer import CacheMaterializer
from locateme.services.exceptions import CacheUnavailableError
from locateme.services.freshness import FreshnessOracle

logger = logging.getLogger(__name__)


class CacheRefreshScheduler:
    def __init__(
        self,
        materializer: CacheMaterializer,
        oracle: FreshnessOracle,
        *,
        refresh_interval: float = 30,
        health_check_interval: float = 120,
        stats_interval: float = 300,
        max_age_seconds: float = 120,
        initial_delay: float = 5,
    ):
        self.materializer = materializer
        self.oracle = oracle
        self.refresh_interval = refresh_interval
        self.health_check_interval = health_check_interval
        self.stats_interval = stats_interval
        self.max_age_seconds = max_age_seconds
        self.initial_delay = initial_delay
        self._tasks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            logger.debug("Cache refresh scheduler already running")
            return
        self._tasks = {
            asyncio.create_task(self._loop(self.refresh_interval, self.run_refresh, self.initial_delay), name="sidebar-cache-refresh"),
            asyncio.create_task(self._loop(self.health_check_interval, self.health_check), name="sidebar-cache-health-check"),
            asyncio.create_task(self._loop(self.stats_interval, self.report_stats), name="sidebar-cache-stats"),
        }
        logger.info(
            "Cache refresh scheduler started (refresh every %ss, health check every %ss)",
            self.refresh_interval,
            self.health_check_interval,
        )

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.materializer.aclose()
        if tasks:
            logger.info("Cache refresh scheduler stopped")

    async def _loop(self, interval: float, job, first_delay: float | None = None) -> None:
        await asyncio.sleep(interval if first_delay is None else first_delay)
        while True:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - a failed tick must not end the loop
                logger.exception("Scheduled cache job %s failed", getattr(job, "__name__", job))
            await asyncio.sleep(interval)

    async def run_refresh(self) -> None:
        await self.materializer.refresh()

    async def health_check(self) -> bool:
        """Log cache health; returns True when an escalation refresh was triggered."""
        try:
            freshness = await self.oracle.check_freshness()
        except CacheUnavailableError as exc:
            logger.error("Cache health check failed: %s", exc)
            return False

        logger.info(
            "Cache age: %ss, stale: %s, rows: %d",
            freshness.cache_age_seconds,
            freshness.is_stale,
            freshness.rows_count,
        )
        if freshness.cache_age_seconds is None or freshness.cache_age_seconds > self.max_age_seconds:
            logger.warning("Cache is very stale, triggering immediate refresh")
            await self.materializer.refresh()
            return True
        return False

    async def report_stats(self) -> None:
        stats = self.materializer.stats
        logger.info(
            "Refresh stats: %d/%d success (%.1f%%), last: %s",
            stats.successful_refreshes,
            stats.total_refreshes,
            stats.success_rate,
            stats.last_refresh_time.isoformat() if stats.last_refresh_time else "never",
        )
        if stats.errors:
            logger.warning("Recent refresh errors: %d", len(stats.errors))
