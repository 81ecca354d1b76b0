"""Job registry types: keys, statuses, per-job stats and locks."""

import asyncio
from dataclasses import dataclass
from datetime import date, datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from nepsewatch.exceptions import UnknownJobError


class JobKey(StrEnum):
    """Every schedulable operation. The registry is exactly this set."""

    INDEX_UPDATE = "index_update"
    PRICE_UPDATE = "price_update"
    CLOSE_UPDATE = "close_update"
    COMPANY_DETAILS_UPDATE = "company_details_update"
    INDEX_HISTORY_UPDATE = "index_history_update"

    @classmethod
    def parse(cls, value: "str | JobKey") -> "JobKey":
        """Resolve a key from user or API input.

        Raises:
            UnknownJobError: If ``value`` is not a registered key.
        """
        try:
            return cls(value)
        except ValueError as exc:
            raise UnknownJobError(job_key=str(value)) from exc


class JobStatus(StrEnum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class StatusUpdate(StrEnum):
    START = "START"
    SUCCESS = "SUCCESS"
    FAIL = "FAIL"


class JobOutcome(StrEnum):
    """What one ``run_job`` call ended with."""

    SKIPPED = "SKIPPED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


class JobStat(BaseModel):
    """Lifetime and per-day counters of one job key.

    ``stats_date`` is the exchange-local date the today-counters belong to.
    """

    last_run: datetime | None = None
    last_success: datetime | None = None
    success_count: int = Field(default=0, ge=0)
    fail_count: int = Field(default=0, ge=0)
    today_success_count: int = Field(default=0, ge=0)
    today_fail_count: int = Field(default=0, ge=0)
    stats_date: date | None = None
    status: JobStatus = JobStatus.IDLE
    message: str | None = None


@dataclass
class JobLock:
    """Per-key mutual exclusion state.

    ``token`` increases with every acquisition, so a late release from a run
    the watchdog already gave up on cannot clear a newer run's lock.
    """

    running: bool = False
    token: int = 0
    watchdog: asyncio.Task[None] | None = None
