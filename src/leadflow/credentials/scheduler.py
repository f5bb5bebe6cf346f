"""Gated periodic token refresh.

APScheduler wakes tick() on a cron cadence (weekly by default). tick()
only does work when the last recorded run is older than the refresh
interval, so a short cadence never renews tokens more often than needed.
The last-run marker lives in the TokenStore and survives restarts.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from leadflow.config import DEFAULT_REFRESH_CRON
from leadflow.infra.time import Clock, utc_now
from leadflow.observability.correlation import ensure_correlation_id
from leadflow.observability.logging import get_logger
from leadflow.observability.redaction import safe_log_context

from .models import CredentialKey
from .refresher import RefreshSummary, TokenRefresher
from .store import TokenStore

logger = get_logger(__name__)

MARKER_NAME = "token_refresh_last_run"
JOB_ID = "token_refresh"


class RefreshScheduler:
    def __init__(
        self,
        store: TokenStore,
        refresher: TokenRefresher,
        *,
        interval: timedelta,
        cron: str = DEFAULT_REFRESH_CRON,
        clock: Clock = utc_now,
        scheduler: AsyncIOScheduler | None = None,
    ) -> None:
        self._store = store
        self._refresher = refresher
        self._interval = interval
        self._cron = cron
        self._clock = clock
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")

    @property
    def interval(self) -> timedelta:
        return self._interval

    async def tick(self) -> RefreshSummary | None:
        """Run a scheduled refresh if the interval has elapsed.

        Returns:
            The run summary, or None when the gate was closed.
        """
        now = self._clock()
        last_run = await self._store.get_marker(MARKER_NAME)

        if last_run is not None and now - last_run < self._interval:
            logger.info(
                "scheduled token refresh not due",
                extra={
                    "extra_fields": safe_log_context(
                        days_since_last_run=round((now - last_run).total_seconds() / 86400, 2),
                        interval_days=self._interval.total_seconds() / 86400,
                    )
                },
            )
            return None

        logger.info("scheduled token refresh starting")
        summary = await self._refresh_stale(now)
        await self._store.set_marker(MARKER_NAME, now)
        return summary

    async def trigger(self, key: CredentialKey | None = None) -> RefreshSummary:
        """Manual refresh: bypasses the gate and leaves the marker alone.

        Args:
            key: Refresh only this identity; None refreshes every stale one.
        """
        if key is not None:
            return await self._refresher.refresh_many([key])
        return await self._refresh_stale(self._clock())

    async def _refresh_stale(self, now: datetime) -> RefreshSummary:
        keys = await self._store.list_stale_keys(now - self._interval)
        return await self._refresher.refresh_many(keys)

    async def _scheduled_tick(self) -> None:
        ensure_correlation_id()
        try:
            await self.tick()
        except Exception:
            logger.exception("scheduled token refresh failed")

    def start(self) -> None:
        self._scheduler.add_job(
            self._scheduled_tick,
            CronTrigger.from_crontab(self._cron, timezone="UTC"),
            id=JOB_ID,
            name="Refresh platform tokens",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "token refresh scheduler started",
            extra={"extra_fields": safe_log_context(cron=self._cron)},
        )

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("token refresh scheduler stopped")
