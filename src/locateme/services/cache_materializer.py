"""
Cache Materializer: recomputes the sidebar cache from the Position Store.

Refreshes are single-flight. The scheduler and request-triggered refreshes share
one in-process guard: if a refresh is already running, later callers await that
same run and receive its outcome instead of starting a second recomputation.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import ValidationError

from locateme.schemas.device_schemas import CachedDeviceRecord, RefreshOutcome
from locateme.services.exceptions import CacheUnavailableError, PositionStoreError
from locateme.services.refresh_stats import RefreshStats
from locateme.services.sidebar_cache import SidebarCache

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class CacheMaterializer:
    def __init__(
        self,
        store,
        cache: SidebarCache,
        stats: RefreshStats,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.store = store
        self.cache = cache
        self.stats = stats
        self._clock = clock
        self._inflight: asyncio.Future | None = None

    @property
    def is_refreshing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def refresh(self) -> RefreshOutcome:
        """
        Rebuild the full cache artifact and commit it atomically.

        Never raises for store, cache or malformed-row failures; those are reported
        in the returned RefreshOutcome and the previous snapshot stays servable.
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._refresh_once())
        else:
            logger.debug("Refresh already in progress, awaiting the running one")
        # shield: a cancelled caller must not cancel the refresh other callers share
        return await asyncio.shield(self._inflight)

    async def aclose(self) -> None:
        """Cancel a refresh still in flight so nothing writes to the cache after shutdown."""
        inflight, self._inflight = self._inflight, None
        if inflight is None or inflight.done():
            return
        inflight.cancel()
        await asyncio.gather(inflight, return_exceptions=True)
        logger.info("In-flight sidebar cache refresh cancelled")

    async def _refresh_once(self) -> RefreshOutcome:
        started = time.perf_counter()
        try:
            rows = await self.store.list_devices_with_latest_position()
            records = _dedupe([CachedDeviceRecord.model_validate(row) for row in rows])
            committed_at = self._clock()
            await self.cache.replace(records, committed_at)
        except (PositionStoreError, CacheUnavailableError, ValidationError) as exc:
            outcome = RefreshOutcome(success=False, duration_ms=_elapsed_ms(started), error_message=str(exc))
            logger.error("Sidebar cache refresh failed after %dms: %s", outcome.duration_ms, exc)
        else:
            outcome = RefreshOutcome(
                success=True,
                duration_ms=_elapsed_ms(started),
                rows_affected=len(records),
                refreshed_at=committed_at,
            )
            logger.info("Sidebar cache refreshed in %dms (%d rows)", outcome.duration_ms, outcome.rows_affected)
        self.stats.record(outcome)
        return outcome


def _dedupe(records: list[CachedDeviceRecord]) -> list[CachedDeviceRecord]:
    """Keep the first row per device_id; the artifact holds one row per device."""
    seen: set[str] = set()
    unique = []
    for record in records:
        if record.device_id in seen:
            logger.warning("Duplicate cache row for device %s dropped", record.device_id)
            continue
        seen.add(record.device_id)
        unique.append(record)
    return unique


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
