"""Job bodies: one coroutine per job key, wiring scrapers to the sink.

A body raises on failure and returns a short human-readable message on
success; the scheduler turns both into JobStat updates. Bodies never touch
locks or stats themselves.
"""

from enum import StrEnum

from config.settings import GlobalConfig, get_config
from nepsewatch.browser import BrowserSession
from nepsewatch.company import CompanyScraper
from nepsewatch.history import HistoryScraper
from nepsewatch.jobs import JobKey, JobOutcome
from nepsewatch.logger import get_logger
from nepsewatch.market import MarketScraper
from nepsewatch.prices import PriceScraper
from nepsewatch.scheduler import JobBody, JobScheduler
from nepsewatch.sinks import PersistenceSink

log = get_logger(__name__)


class PricePhase(StrEnum):
    DURING_HOURS = "DURING_HOURS"
    AFTER_CLOSE = "AFTER_CLOSE"


class MarketJobs:
    """Job bodies bound to one browser session, sink and scheduler.

    Attributes:
        session: Shared BrowserSession; each scrape uses its own pages.
        sink: Where canonical records are upserted.
        scheduler: JobScheduler the bodies run under.
        full_company_refresh: Whether ``company_details_update`` revisits
            every known instrument or only those without a profile.

    Example:
        jobs = MarketJobs(session, JsonFileSink(), scheduler)
        outcome = await jobs.run("index_update")
    """

    def __init__(
        self,
        session: BrowserSession,
        sink: PersistenceSink,
        scheduler: JobScheduler,
        config: GlobalConfig | None = None,
        full_company_refresh: bool = True,
    ) -> None:
        self.session = session
        self.sink = sink
        self.scheduler = scheduler
        self.config = config or get_config()
        self.full_company_refresh = full_company_refresh

        self.market = MarketScraper(session, self.config)
        self.prices = PriceScraper(session, self.config)
        self.companies = CompanyScraper(session, self.config)
        self.history = HistoryScraper(session, self.config)

    def body(self, key: str | JobKey) -> JobBody:
        """Return the coroutine function for ``key``.

        Raises:
            UnknownJobError: If ``key`` is not registered.
        """
        bodies: dict[JobKey, JobBody] = {
            JobKey.INDEX_UPDATE: self.update_index,
            JobKey.PRICE_UPDATE: self.update_prices,
            JobKey.CLOSE_UPDATE: self.update_after_close,
            JobKey.COMPANY_DETAILS_UPDATE: self.update_company_details,
            JobKey.INDEX_HISTORY_UPDATE: self.update_index_history,
        }
        return bodies[JobKey.parse(key)]

    async def run(self, key: str | JobKey) -> JobOutcome:
        """Run one job now through the scheduler's lock and stats."""
        job_key = JobKey.parse(key)
        return await self.scheduler.run_job(job_key, self.body(job_key))

    async def update_index(self) -> str:
        snapshot = await self.market.scrape_market_index()
        self.scheduler.market_open_observed = snapshot.is_open
        await self.sink.save_snapshot(snapshot)

        sign = "+" if snapshot.index_change > 0 else ""
        return f"Index: {snapshot.index_value} ({sign}{snapshot.index_change}) [{snapshot.status.value}]"

    async def update_prices(self) -> str:
        return await self._prices_and_status(PricePhase.DURING_HOURS)

    async def update_after_close(self) -> str:
        return await self._prices_and_status(PricePhase.AFTER_CLOSE)

    async def _prices_and_status(self, phase: PricePhase) -> str:
        """Refresh the market summary, then prices if the market is open.

        After close only the summary is refreshed so the stored status
        flips to CLOSED.
        """
        summary = await self.market.scrape_market_summary()
        self.scheduler.market_open_observed = summary.is_open
        await self.sink.save_snapshot(summary.snapshot)
        log.info(
            "Market summary refreshed",
            phase=phase.value,
            status=summary.status.value,
            index_value=summary.snapshot.index_value,
        )

        if phase is PricePhase.AFTER_CLOSE:
            return "Post-market close status update completed"
        if not summary.is_open:
            return "Market is closed, skipping price update"

        records = await self.prices.scrape_today_prices()
        saved = await self.sink.save_prices(records)
        return f"Updated {saved} stock prices"

    async def update_company_details(self) -> str:
        instruments = await self.sink.list_instruments(
            missing_profiles_only=not self.full_company_refresh
        )
        if not instruments:
            log.info("No instruments need company details", full=self.full_company_refresh)
            return "No instruments to update"

        profiles = await self.companies.scrape_all(
            instruments,
            save_callback=self.sink.save_profiles,
            dividend_callback=self.sink.save_dividends,
            financial_callback=self.sink.save_financials,
        )
        return f"Updated {len(profiles)}/{len(instruments)} companies"

    async def update_index_history(self) -> str:
        records = await self.history.scrape_index_history()
        saved = await self.sink.save_history(records)
        return f"Saved {saved} historical records"
