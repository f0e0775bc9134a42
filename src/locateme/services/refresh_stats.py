"""Refresh statistics collector shared by the materializer and the performance endpoints."""

from collections import deque
from datetime import UTC, datetime
from typing import Any

from locateme.schemas.device_schemas import RefreshOutcome

MAX_RECENT_ERRORS = 10


class RefreshStats:
    """
    Counts refresh attempts and keeps the most recent failures.

    One instance is created per process (at service construction) and passed to
    the materializer explicitly; `reset()` restores the start-of-process state.
    """

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.total_refreshes = 0
        self.successful_refreshes = 0
        self.last_refresh_time: datetime | None = None
        self.last_refresh_duration_ms: int | None = None
        self.last_rows_affected: int | None = None
        self.errors: deque[dict[str, Any]] = deque(maxlen=MAX_RECENT_ERRORS)

    def record(self, outcome: RefreshOutcome) -> None:
        now = datetime.now(UTC)
        self.total_refreshes += 1
        self.last_refresh_time = now
        self.last_refresh_duration_ms = outcome.duration_ms
        if outcome.success:
            self.successful_refreshes += 1
            self.last_rows_affected = outcome.rows_affected
        else:
            self.errors.append({"timestamp": now.isoformat(), "error": outcome.error_message, "duration_ms": outcome.duration_ms})

    @property
    def success_rate(self) -> float:
        """Calculate refresh success rate percentage."""
        total = self.total_refreshes
        return round((self.successful_refreshes / total * 100) if total > 0 else 0.0, 1)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_refreshes": self.total_refreshes,
            "successful_refreshes": self.successful_refreshes,
            "success_rate": self.success_rate,
            "last_refresh_time": self.last_refresh_time.isoformat() if self.last_refresh_time else None,
            "last_refresh_duration_ms": self.last_refresh_duration_ms,
            "last_rows_affected": self.last_rows_affected,
            "recent_errors": list(self.errors),
        }
