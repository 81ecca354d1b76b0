"""Exchange-local time helpers.

"Today" always means the calendar date in the exchange's timezone, never
the host's: the daily stats reset and the business date stamped on HTML
scraped prices both depend on it.
"""

from collections.abc import Callable
from datetime import date, datetime

import pytz

from config.settings import GlobalConfig, get_config

Clock = Callable[[], datetime]


def exchange_timezone(config: GlobalConfig | None = None) -> pytz.BaseTzInfo:
    config = config or get_config()
    return pytz.timezone(config.exchange_timezone)


def exchange_now(config: GlobalConfig | None = None) -> datetime:
    """Current time as an aware datetime in the exchange timezone."""
    return datetime.now(exchange_timezone(config))


def exchange_today(config: GlobalConfig | None = None) -> date:
    return exchange_now(config).date()

