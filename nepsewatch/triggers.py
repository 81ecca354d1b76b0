"""Periodic triggers on APScheduler's asyncio scheduler.

Triggers only decide *when*; every firing goes through
``MarketJobs.run`` so it shares the lock, watchdog and stats with manual
runs. Window checks for the intraday jobs happen here, before ``run_job``,
so an out-of-hours tick leaves no trace in the stats.
"""

from collections.abc import Callable

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from nepsewatch.jobs import JobKey
from nepsewatch.logger import get_logger
from nepsewatch.tasks import MarketJobs

log = get_logger(__name__)

_DAY_NAMES = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

CLOSE_UPDATE_DELAY_MIN = 2
HISTORY_UPDATE_DELAY_MIN = 10
COMPANY_UPDATE_HOUR = 0


def cron_days(iso_weekdays: list[int]) -> str:
    """ISO weekday numbers as an APScheduler ``day_of_week`` list."""
    return ",".join(_DAY_NAMES[day - 1] for day in sorted(set(iso_weekdays)))


def minutes_after(hour: int, minute: int, delay: int) -> tuple[int, int]:
    total = (hour * 60 + minute + delay) % (24 * 60)
    return divmod(total, 60)


class TriggerAdapter:
    """Registers the periodic triggers for every job key.

    Example:
        triggers = TriggerAdapter(jobs)
        triggers.start()
        ...
        await triggers.shutdown()
    """

    def __init__(self, jobs: MarketJobs) -> None:
        self.jobs = jobs
        self.scheduler = jobs.scheduler
        self.config = jobs.config
        self._timezone = pytz.timezone(self.config.exchange_timezone)
        self._apscheduler = AsyncIOScheduler(
            timezone=self._timezone,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 30,
            },
        )

    def _gated(self, key: JobKey, gate: Callable[[], bool] | None = None) -> Callable[[], object]:
        async def fire() -> None:
            if gate is not None and not gate():
                return
            await self.jobs.run(key)

        return fire

    def register(self) -> list[str]:
        """Add all triggers without starting them. Returns the trigger ids."""
        config = self.config
        days = cron_days(config.trading_weekdays)
        close_hour, close_minute = minutes_after(
            config.market_close_hour, config.market_close_minute, CLOSE_UPDATE_DELAY_MIN
        )
        history_hour, history_minute = minutes_after(
            config.market_close_hour, config.market_close_minute, HISTORY_UPDATE_DELAY_MIN
        )

        triggers = {
            JobKey.INDEX_UPDATE: (
                IntervalTrigger(seconds=config.index_interval_sec, timezone=self._timezone),
                self.scheduler.should_run_index,
            ),
            JobKey.PRICE_UPDATE: (
                IntervalTrigger(seconds=config.price_interval_sec, timezone=self._timezone),
                self.scheduler.is_within_trading_hours,
            ),
            JobKey.CLOSE_UPDATE: (
                CronTrigger(day_of_week=days, hour=close_hour, minute=close_minute, timezone=self._timezone),
                None,
            ),
            JobKey.COMPANY_DETAILS_UPDATE: (
                CronTrigger(hour=COMPANY_UPDATE_HOUR, minute=0, timezone=self._timezone),
                None,
            ),
            JobKey.INDEX_HISTORY_UPDATE: (
                CronTrigger(day_of_week=days, hour=history_hour, minute=history_minute, timezone=self._timezone),
                None,
            ),
        }

        for key, (trigger, gate) in triggers.items():
            self._apscheduler.add_job(
                self._gated(key, gate),
                trigger=trigger,
                id=key.value,
                name=key.value,
                replace_existing=True,
            )

        self.scheduler.active_jobs = [job.id for job in self._apscheduler.get_jobs()]
        return self.scheduler.active_jobs

    def start(self) -> None:
        """Register triggers and start firing them on the running loop."""
        if self.scheduler.is_running:
            log.warning("Scheduler is already running")
            return
        self.register()
        self._apscheduler.start()
        self.scheduler.is_running = True
        for job in self._apscheduler.get_jobs():
            log.info("Trigger registered", job=job.id, next_run=str(job.next_run_time))
        log.info("Scheduler started", jobs=len(self.scheduler.active_jobs))

    async def shutdown(self, timeout: float = 15.0) -> None:
        """Stop new firings, then wait for running jobs to finish."""
        if self._apscheduler.running:
            self._apscheduler.shutdown(wait=False)
        self.scheduler.active_jobs = []
        await self.scheduler.shutdown(timeout)
