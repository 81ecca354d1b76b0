"""Job scheduler: mutual exclusion, watchdog, stats and trading windows.

Periodic triggers and manual runs both go through ``run_job``, so they share
one lock per job key and can never overlap. A run that is still holding its
lock when the watchdog expires is force-released and recorded FAILED, and
the caller gets TIMED_OUT back. The hung body itself is not cancelled.

Per-key lifecycle::

    IDLE -> RUNNING -> SUCCESS | FAILED

Every ``update_status`` call first compares ``stats_date`` with the
exchange-local date and zeroes the today-counters on a new day.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from pydantic import BaseModel, ValidationError

from config.settings import GlobalConfig, get_config
from nepsewatch.clock import Clock, exchange_now, exchange_timezone
from nepsewatch.exceptions import WatchdogTimeoutError
from nepsewatch.jobs import JobKey, JobLock, JobOutcome, JobStat, JobStatus, StatusUpdate
from nepsewatch.logger import get_logger
from nepsewatch.stats_store import StatusStore

log = get_logger(__name__)

WATCHDOG_MESSAGE = "Job timed out (watchdog)"

JobBody = Callable[[], Awaitable[str | None]]


class SchedulerHealth(BaseModel):
    is_running: bool
    active_jobs: list[str]
    currently_executing: list[str]
    market_open: bool
    stats: dict[str, JobStat]


class JobScheduler:
    """Typed job registry with locks, watchdogs and stats.

    Attributes:
        config: GlobalConfig instance.
        stats: One JobStat per JobKey, created up front.
        market_open_observed: Last market status seen by the index job.
        active_jobs: Trigger ids registered by the periodic trigger adapter.

    Example:
        scheduler = JobScheduler(JsonStatusStore())
        await scheduler.load_stats()
        outcome = await scheduler.run_job("price_update", body)
    """

    def __init__(
        self,
        status_store: StatusStore | None = None,
        config: GlobalConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config or get_config()
        self.status_store = status_store
        self._clock = clock or (lambda: exchange_now(self.config))
        self.stats: dict[JobKey, JobStat] = {key: JobStat() for key in JobKey}
        self._locks: dict[JobKey, JobLock] = {key: JobLock() for key in JobKey}
        self._pending_saves: set[asyncio.Task[None]] = set()
        self._abandoned: set[asyncio.Future[str | None]] = set()
        self.is_running = False
        self.market_open_observed = False
        self.active_jobs: list[str] = []

    # -- time windows -------------------------------------------------

    def now(self) -> datetime:
        """Current exchange-local time from the injected clock."""
        moment = self._clock()
        tz = exchange_timezone(self.config)
        if moment.tzinfo is None:
            return tz.localize(moment)
        return moment.astimezone(tz)

    def _minutes(self, at: datetime) -> int:
        return at.hour * 60 + at.minute

    def is_trading_day(self, at: datetime | None = None) -> bool:
        at = at or self.now()
        return at.isoweekday() in self.config.trading_weekdays

    def is_within_trading_hours(self, at: datetime | None = None) -> bool:
        at = at or self.now()
        opens = self.config.market_open_hour * 60 + self.config.market_open_minute
        closes = self.config.market_close_hour * 60 + self.config.market_close_minute
        return self.is_trading_day(at) and opens <= self._minutes(at) < closes

    def is_after_close(self, at: datetime | None = None) -> bool:
        at = at or self.now()
        closes = self.config.market_close_hour * 60 + self.config.market_close_minute
        return self.is_trading_day(at) and self._minutes(at) >= closes

    def should_run_index(self) -> bool:
        """Index job gate: trading hours, or the market was last seen open."""
        return self.is_within_trading_hours() or self.market_open_observed

    # -- locking ------------------------------------------------------

    def is_locked(self, key: str | JobKey) -> bool:
        return self._locks[JobKey.parse(key)].running

    def currently_executing(self) -> list[str]:
        return [key.value for key, lock in self._locks.items() if lock.running]

    async def run_job(self, key: str | JobKey, body: JobBody) -> JobOutcome:
        """Run ``body`` under the key's lock and record the outcome.

        A held lock means the call is skipped outright: no body call and no
        stats change. Body failures are recorded, never raised. When the
        watchdog fires first, the call returns TIMED_OUT at once and the body
        keeps running detached; its eventual result is dropped.

        Args:
            key: Registered job key.
            body: Coroutine function returning an optional success message.

        Raises:
            UnknownJobError: If ``key`` is not registered.
        """
        job_key = JobKey.parse(key)
        lock = self._locks[job_key]

        if lock.running:
            log.warning("Job already running, skipping", job=job_key.value)
            return JobOutcome.SKIPPED

        lock.running = True
        lock.token += 1
        token = lock.token
        watchdog = asyncio.create_task(self._watchdog(job_key, token))
        lock.watchdog = watchdog
        self.update_status(job_key, StatusUpdate.START, f"Starting {job_key.value}...")
        log.info("Job started", job=job_key.value)

        body_task = asyncio.ensure_future(body())
        try:
            await asyncio.wait({body_task, watchdog}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            body_task.cancel()
            self._release(job_key, token)
            raise

        if not body_task.done():
            # No-op when the watchdog fired; covers a watchdog cancelled by shutdown
            self._release(job_key, token)
            self._abandon(job_key, body_task)
            return JobOutcome.TIMED_OUT

        try:
            message = body_task.result()
        except asyncio.CancelledError:
            self._release(job_key, token)
            raise
        except Exception as exc:
            if not self._release(job_key, token):
                log.warning("Job failed after watchdog release", job=job_key.value, error=str(exc))
                return JobOutcome.TIMED_OUT
            log.error("Job failed", job=job_key.value, error=str(exc))
            self.update_status(job_key, StatusUpdate.FAIL, str(exc))
            return JobOutcome.FAILED

        if not self._release(job_key, token):
            log.warning("Job finished after watchdog release", job=job_key.value)
            return JobOutcome.TIMED_OUT
        self.update_status(job_key, StatusUpdate.SUCCESS, message)
        log.info("Job succeeded", job=job_key.value, message=message)
        return JobOutcome.SUCCESS

    def _abandon(self, job_key: JobKey, body_task: asyncio.Future[str | None]) -> None:
        """Keep a hung body referenced until it ends and log how it ended."""
        self._abandoned.add(body_task)

        def _on_done(task: asyncio.Future[str | None]) -> None:
            self._abandoned.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                log.warning("Abandoned job body failed", job=job_key.value, error=str(exc))
            else:
                log.info("Abandoned job body finished, result dropped", job=job_key.value)

        body_task.add_done_callback(_on_done)

    def _release(self, job_key: JobKey, token: int) -> bool:
        """Release the lock if this run still owns it. True when released."""
        lock = self._locks[job_key]
        if not lock.running or lock.token != token:
            return False
        lock.running = False
        if lock.watchdog is not None:
            lock.watchdog.cancel()
            lock.watchdog = None
        return True

    async def _watchdog(self, job_key: JobKey, token: int) -> None:
        timeout = self.config.watchdog_timeout_sec
        await asyncio.sleep(timeout)

        lock = self._locks[job_key]
        if not lock.running or lock.token != token:
            return
        lock.running = False
        lock.watchdog = None

        error = WatchdogTimeoutError(job_key=job_key.value, timeout_sec=timeout)
        log.error("Watchdog released hung job", job=job_key.value, error=error.message)
        self.update_status(job_key, StatusUpdate.FAIL, WATCHDOG_MESSAGE)

    # -- stats --------------------------------------------------------

    def update_status(
        self,
        key: str | JobKey,
        update: StatusUpdate,
        message: str | None = None,
    ) -> JobStat:
        """Apply one status transition to the key's JobStat and persist it."""
        job_key = JobKey.parse(key)
        stat = self.stats[job_key]
        local_now = self.now()
        today = local_now.date()
        timestamp = local_now.astimezone(UTC)

        if stat.stats_date != today:
            stat.today_success_count = 0
            stat.today_fail_count = 0
            stat.stats_date = today

        if update is StatusUpdate.START:
            stat.last_run = timestamp
            stat.status = JobStatus.RUNNING
            if message:
                stat.message = message
        elif update is StatusUpdate.SUCCESS:
            stat.last_success = timestamp
            stat.success_count += 1
            stat.today_success_count += 1
            stat.status = JobStatus.SUCCESS
            stat.message = message or "Completed successfully"
        elif update is StatusUpdate.FAIL:
            stat.fail_count += 1
            stat.today_fail_count += 1
            stat.status = JobStatus.FAILED
            stat.message = message or "Failed"

        self._persist(job_key, stat)
        return stat

    def _persist(self, job_key: JobKey, stat: JobStat) -> None:
        """Fire-and-forget save of a snapshot of ``stat``."""
        if self.status_store is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("No running loop, stats not persisted", job=job_key.value)
            return

        task = loop.create_task(self.status_store.save(job_key.value, stat.model_copy()))
        self._pending_saves.add(task)
        task.add_done_callback(self._on_save_done)

    def _on_save_done(self, task: asyncio.Task[None]) -> None:
        self._pending_saves.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.warning("Failed to persist scheduler stats", error=str(exc))

    async def load_stats(self) -> None:
        """Resume counters from the status store. Unknown keys are ignored."""
        if self.status_store is None:
            return
        try:
            rows = await self.status_store.load()
        except (OSError, ValueError) as exc:
            log.error("Failed to load scheduler stats", error=str(exc))
            return

        loaded = 0
        for raw_key, row in rows.items():
            try:
                job_key = JobKey(raw_key)
            except ValueError:
                log.warning("Ignoring stats for unknown job key", job=raw_key)
                continue
            try:
                self.stats[job_key] = JobStat.model_validate(row)
            except ValidationError as exc:
                log.warning("Ignoring malformed stats row", job=raw_key, error=str(exc))
                continue
            loaded += 1
        log.info("Scheduler stats loaded", jobs=loaded)

    async def flush(self) -> None:
        """Wait for outstanding fire-and-forget saves."""
        if self._pending_saves:
            await asyncio.gather(*self._pending_saves, return_exceptions=True)

    # -- lifecycle ----------------------------------------------------

    def health(self) -> SchedulerHealth:
        return SchedulerHealth(
            is_running=self.is_running,
            active_jobs=list(self.active_jobs),
            currently_executing=self.currently_executing(),
            market_open=self.market_open_observed,
            stats={key.value: stat.model_copy() for key, stat in self.stats.items()},
        )

    async def wait_for_jobs(self, timeout: float = 15.0, poll_interval: float = 0.5) -> bool:
        """Wait until no job holds its lock. False if ``timeout`` passed first."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.currently_executing():
            if loop.time() >= deadline:
                log.warning("Timeout waiting for jobs to finish", running=self.currently_executing())
                return False
            await asyncio.sleep(poll_interval)
        return True

    async def shutdown(self, timeout: float = 15.0) -> None:
        log.info("Stopping scheduler")
        self.is_running = False
        await self.wait_for_jobs(timeout)
        for lock in self._locks.values():
            if lock.watchdog is not None:
                lock.watchdog.cancel()
        await self.flush()
        log.info("Scheduler stopped")
