"""Source run history, scheduling and health."""

from datetime import datetime, timedelta
from typing import Any

from .config import Settings, get_settings
from .logging import get_logger
from .records import CoverageSource, ScanFrequency
from .store import CoverageStore
from .utils import utc_now

logger = get_logger(__name__)

MAX_MESSAGE_LENGTH = 500

# Slightly under the nominal period so a tick that fires a bit early still runs.
SCAN_INTERVAL_HOURS: dict[ScanFrequency, float] = {
    ScanFrequency.HOURLY: 0.9,
    ScanFrequency.EVERY_6H: 5.5,
    ScanFrequency.DAILY: 23,
    ScanFrequency.WEEKLY: 167,
}
DEFAULT_INTERVAL_HOURS = 23


def should_scan_now(source: CoverageSource, now: datetime | None = None) -> bool:
    """Whether a scheduled tick should scan this source given its frequency."""
    if source.last_run_at is None:
        return True
    now = now or utc_now()
    hours_since = (now - source.last_run_at).total_seconds() / 3600
    return hours_since >= SCAN_INTERVAL_HOURS.get(source.scan_frequency, DEFAULT_INTERVAL_HOURS)


def backoff_delay(consecutive_failures: int, base_minutes: float, max_hours: float) -> timedelta:
    """Exponential backoff: base * 2 ** (failures - 1), capped."""
    if consecutive_failures <= 0:
        return timedelta(0)
    minutes = base_minutes * 2 ** (consecutive_failures - 1)
    return min(timedelta(minutes=minutes), timedelta(hours=max_hours))


class SourceRunTracker:
    """Record the outcome of each source run and report source health.

    Failure streaks drive backoff on scheduled ticks only and never disable a
    source; that stays an operator decision.
    """

    def __init__(self, store: CoverageStore, settings: Settings | None = None):
        self.store = store
        self.settings = settings or get_settings()

    async def record_success(self, source: CoverageSource, items_found: int, message: str) -> None:
        await self.store.record_source_success(
            source.id, message[:MAX_MESSAGE_LENGTH], items_found, utc_now()
        )
        logger.debug("Source run recorded", source=source.name, status="success", found=items_found)

    async def record_failure(self, source: CoverageSource, error: str) -> None:
        await self.store.record_source_failure(source.id, error[:MAX_MESSAGE_LENGTH], utc_now())
        failures = source.consecutive_failures + 1
        if failures >= self.settings.unhealthy_threshold:
            logger.error("Source marked as unhealthy", source=source.name, failures=failures, error=error)
        else:
            logger.warning("Source experiencing issues", source=source.name, failures=failures, error=error)

    def backoff_until(self, source: CoverageSource) -> datetime | None:
        if source.consecutive_failures <= 0:
            return None
        last_failure = source.last_error_at or source.last_run_at
        if last_failure is None:
            return None
        return last_failure + backoff_delay(
            source.consecutive_failures,
            self.settings.backoff_base_minutes,
            self.settings.backoff_max_hours,
        )

    def is_backing_off(self, source: CoverageSource, now: datetime | None = None) -> bool:
        until = self.backoff_until(source)
        return until is not None and (now or utc_now()) < until

    def is_due(self, source: CoverageSource, now: datetime | None = None) -> bool:
        """Scheduled-tick check: due per frequency and not in backoff."""
        now = now or utc_now()
        if not should_scan_now(source, now):
            return False
        if self.is_backing_off(source, now):
            logger.info(
                "Skipping source in backoff",
                source=source.name,
                failures=source.consecutive_failures,
                until=self.backoff_until(source).isoformat(),
            )
            return False
        return True

    def health_status(self, source: CoverageSource) -> str:
        if source.last_run_status is None:
            return "unknown"
        if source.consecutive_failures >= self.settings.unhealthy_threshold:
            return "unhealthy"
        if source.consecutive_failures > 0:
            return "degraded"
        return "healthy"

    async def health_report(self, include_inactive: bool = False) -> dict[str, Any]:
        """Get health report for all sources."""
        sources = await self.store.list_sources(active_only=not include_inactive)
        entries = {}
        for source in sources:
            until = self.backoff_until(source)
            entries[source.name] = {
                "id": source.id,
                "source_type": source.source_type.value,
                "status": self.health_status(source),
                "is_active": source.is_active,
                "last_run_at": source.last_run_at,
                "last_run_status": source.last_run_status.value if source.last_run_status else None,
                "last_run_message": source.last_run_message,
                "items_found_last_run": source.items_found_last_run,
                "total_items_found": source.total_items_found,
                "consecutive_failures": source.consecutive_failures,
                "backoff_until": until if until and until > utc_now() else None,
            }

        statuses = [e["status"] for e in entries.values()]
        report = {
            "timestamp": utc_now().isoformat(),
            "summary": {
                "total": len(entries),
                "healthy": statuses.count("healthy"),
                "degraded": statuses.count("degraded"),
                "unhealthy": statuses.count("unhealthy"),
                "unknown": statuses.count("unknown"),
            },
            "sources": entries,
        }
        logger.info("Source health report", **report["summary"])
        return report
