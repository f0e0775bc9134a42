from collections.abc import Callable
from datetime import UTC, datetime

from locateme.schemas.device_schemas import CacheFreshnessState
from locateme.services.sidebar_cache import SidebarCache


def _utc_now() -> datetime:
    return datetime.now(UTC)


class FreshnessOracle:
    """Answers "is the cache usable right now?" from the artifact's own metadata."""

    def __init__(self, cache: SidebarCache, threshold_seconds: int = 300, clock: Callable[[], datetime] = _utc_now):
        self.cache = cache
        self.threshold_seconds = threshold_seconds
        self._clock = clock

    async def check_freshness(self) -> CacheFreshnessState:
        meta = await self.cache.read_meta()
        if meta is None:
            # never refreshed: unusable until the first commit
            return CacheFreshnessState(is_stale=True, threshold_seconds=self.threshold_seconds)

        age = max(0.0, (self._clock() - meta.updated_at).total_seconds())
        return CacheFreshnessState(
            cache_updated_at=meta.updated_at,
            cache_age_seconds=round(age, 3),
            is_stale=age > self.threshold_seconds,
            rows_count=meta.rows_count,
            threshold_seconds=self.threshold_seconds,
        )
