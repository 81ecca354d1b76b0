"""Tests for job bodies and the trigger adapter."""

import asyncio
from collections.abc import Callable
from datetime import UTC, date, datetime
from unittest.mock import MagicMock

import pytest
from pytest_mock import MockerFixture

from config.settings import GlobalConfig
from nepsewatch.exceptions import OperationFailedError, UnknownJobError
from nepsewatch.jobs import JobKey, JobOutcome, JobStatus
from nepsewatch.market import MarketSummary
from nepsewatch.models import Instrument, InstrumentProfile, MarketSnapshot, MarketStatus, PriceRecord
from nepsewatch.scheduler import JobScheduler
from nepsewatch.tasks import MarketJobs
from nepsewatch.triggers import TriggerAdapter, cron_days, minutes_after


def snapshot(status: MarketStatus, change: float = 12.34) -> MarketSnapshot:
    return MarketSnapshot(
        index_value=2650.12,
        index_change=change,
        status=status,
        as_of=datetime(2026, 1, 4, 6, 0, tzinfo=UTC),
    )


def summary(status: MarketStatus) -> MarketSummary:
    snap = snapshot(status)
    return MarketSummary(status=status, is_open=snap.is_open, snapshot=snap)


@pytest.fixture
def sink(mocker: MockerFixture) -> MagicMock:
    sink = mocker.MagicMock()
    for name in (
        "save_prices", "save_snapshot", "save_profiles", "save_dividends",
        "save_financials", "save_history", "list_instruments",
    ):
        setattr(sink, name, mocker.AsyncMock())
    return sink


@pytest.fixture
def jobs(
    mock_config: GlobalConfig,
    mocker: MockerFixture,
    fake_session: MagicMock,
    sink: MagicMock,
    kathmandu_clock: Callable[..., Callable[[], datetime]],
) -> MarketJobs:
    scheduler = JobScheduler(config=mock_config, clock=kathmandu_clock(2026, 1, 4, 12, 0))
    jobs = MarketJobs(fake_session, sink, scheduler, mock_config)
    jobs.market = mocker.MagicMock()
    jobs.market.scrape_market_index = mocker.AsyncMock()
    jobs.market.scrape_market_summary = mocker.AsyncMock()
    jobs.prices = mocker.MagicMock()
    jobs.prices.scrape_today_prices = mocker.AsyncMock()
    jobs.companies = mocker.MagicMock()
    jobs.companies.scrape_all = mocker.AsyncMock()
    jobs.history = mocker.MagicMock()
    jobs.history.scrape_index_history = mocker.AsyncMock()
    return jobs


class TestIndexAndPriceJobs:
    @pytest.mark.asyncio
    async def test_index_update_records_observed_status(self, jobs: MarketJobs, sink: MagicMock) -> None:
        jobs.market.scrape_market_index.return_value = snapshot(MarketStatus.PRE_OPEN)

        message = await jobs.update_index()

        assert message == "Index: 2650.12 (+12.34) [PRE_OPEN]"
        assert jobs.scheduler.market_open_observed is True
        sink.save_snapshot.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_price_update_skips_prices_when_closed(self, jobs: MarketJobs, sink: MagicMock) -> None:
        jobs.scheduler.market_open_observed = True
        jobs.market.scrape_market_summary.return_value = summary(MarketStatus.CLOSED)

        message = await jobs.update_prices()

        assert message == "Market is closed, skipping price update"
        assert jobs.scheduler.market_open_observed is False
        sink.save_snapshot.assert_awaited_once()
        jobs.prices.scrape_today_prices.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_price_update_saves_prices_when_open(self, jobs: MarketJobs, sink: MagicMock) -> None:
        jobs.market.scrape_market_summary.return_value = summary(MarketStatus.OPEN)
        records = [PriceRecord(symbol="NABIL", business_date=date(2026, 1, 4), close=510)]
        jobs.prices.scrape_today_prices.return_value = records
        sink.save_prices.return_value = 1

        assert await jobs.update_prices() == "Updated 1 stock prices"
        sink.save_prices.assert_awaited_once_with(records)

    @pytest.mark.asyncio
    async def test_after_close_refreshes_status_only(self, jobs: MarketJobs, sink: MagicMock) -> None:
        jobs.market.scrape_market_summary.return_value = summary(MarketStatus.OPEN)

        assert await jobs.update_after_close() == "Post-market close status update completed"
        sink.save_snapshot.assert_awaited_once()
        jobs.prices.scrape_today_prices.assert_not_awaited()


class TestCompanyAndHistoryJobs:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("full", [True, False])
    async def test_company_details_mode(self, jobs: MarketJobs, sink: MagicMock, full: bool) -> None:
        jobs.full_company_refresh = full
        instruments = [Instrument(security_id=131, symbol="NABIL"), Instrument(security_id=140, symbol="NICA")]
        sink.list_instruments.return_value = instruments
        jobs.companies.scrape_all.return_value = [InstrumentProfile(security_id=131, symbol="NABIL")]

        message = await jobs.update_company_details()

        assert message == "Updated 1/2 companies"
        sink.list_instruments.assert_awaited_once_with(missing_profiles_only=not full)
        call = jobs.companies.scrape_all.await_args
        assert call.kwargs["save_callback"] is sink.save_profiles
        assert call.kwargs["dividend_callback"] is sink.save_dividends

    @pytest.mark.asyncio
    async def test_company_details_without_instruments(self, jobs: MarketJobs, sink: MagicMock) -> None:
        sink.list_instruments.return_value = []
        assert await jobs.update_company_details() == "No instruments to update"
        jobs.companies.scrape_all.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_history(self, jobs: MarketJobs, sink: MagicMock) -> None:
        jobs.history.scrape_index_history.return_value = ["r1", "r2"]
        sink.save_history.return_value = 2
        assert await jobs.update_index_history() == "Saved 2 historical records"


class TestRunThroughScheduler:
    @pytest.mark.asyncio
    async def test_failure_lands_in_stats(self, jobs: MarketJobs) -> None:
        jobs.history.scrape_index_history.side_effect = OperationFailedError(
            operation="history", attempts=2, last_error="nothing intercepted"
        )

        outcome = await jobs.run("index_history_update")

        assert outcome is JobOutcome.FAILED
        assert jobs.scheduler.stats[JobKey.INDEX_HISTORY_UPDATE].status is JobStatus.FAILED

    def test_unknown_body(self, jobs: MarketJobs) -> None:
        with pytest.raises(UnknownJobError):
            jobs.body("weekly_digest")


class TestTriggers:
    @pytest.mark.parametrize(
        "weekdays,expected",
        [([7, 1, 2, 3, 4], "mon,tue,wed,thu,sun"), ([1, 1, 5], "mon,fri")],
    )
    def test_cron_days(self, weekdays: list[int], expected: str) -> None:
        assert cron_days(weekdays) == expected

    @pytest.mark.parametrize(
        "hour,minute,delay,expected",
        [(15, 0, 2, (15, 2)), (15, 55, 10, (16, 5)), (23, 58, 5, (0, 3))],
    )
    def test_minutes_after(self, hour: int, minute: int, delay: int, expected: tuple[int, int]) -> None:
        assert minutes_after(hour, minute, delay) == expected

    def test_register_adds_every_job_key(self, jobs: MarketJobs) -> None:
        ids = TriggerAdapter(jobs).register()
        assert sorted(ids) == sorted(key.value for key in JobKey)
        assert jobs.scheduler.active_jobs == ids

    @pytest.mark.asyncio
    async def test_gate_blocks_out_of_hours_tick(
        self,
        mock_config: GlobalConfig,
        fake_session: MagicMock,
        sink: MagicMock,
        mocker: MockerFixture,
        kathmandu_clock: Callable[..., Callable[[], datetime]],
    ) -> None:
        scheduler = JobScheduler(config=mock_config, clock=kathmandu_clock(2026, 1, 2, 12, 0))
        market_jobs = MarketJobs(fake_session, sink, scheduler, mock_config)
        market_jobs.run = mocker.AsyncMock()
        adapter = TriggerAdapter(market_jobs)

        await adapter._gated(JobKey.PRICE_UPDATE, scheduler.is_within_trading_hours)()
        market_jobs.run.assert_not_awaited()
        assert scheduler.stats[JobKey.PRICE_UPDATE].last_run is None

        await adapter._gated(JobKey.CLOSE_UPDATE)()
        market_jobs.run.assert_awaited_once_with(JobKey.CLOSE_UPDATE)

    @pytest.mark.asyncio
    async def test_hung_tick_does_not_block_later_ticks(
        self,
        mock_config: GlobalConfig,
        fake_session: MagicMock,
        sink: MagicMock,
        mocker: MockerFixture,
        kathmandu_clock: Callable[..., Callable[[], datetime]],
    ) -> None:
        config = mock_config.model_copy(update={"watchdog_timeout_sec": 0.05})
        scheduler = JobScheduler(config=config, clock=kathmandu_clock(2026, 1, 4, 12, 0))
        market_jobs = MarketJobs(fake_session, sink, scheduler, config)
        never = asyncio.Event()
        calls = 0

        async def scrape_index() -> MarketSnapshot:
            nonlocal calls
            calls += 1
            if calls == 1:
                await never.wait()
            return snapshot(MarketStatus.OPEN)

        market_jobs.market = mocker.MagicMock()
        market_jobs.market.scrape_market_index = mocker.AsyncMock(side_effect=scrape_index)
        fire = TriggerAdapter(market_jobs)._gated(JobKey.INDEX_UPDATE, scheduler.should_run_index)

        await asyncio.wait_for(fire(), timeout=1.0)
        await asyncio.wait_for(fire(), timeout=1.0)

        stat = scheduler.stats[JobKey.INDEX_UPDATE]
        assert calls == 2
        assert (stat.success_count, stat.fail_count) == (1, 1)
        assert stat.status is JobStatus.SUCCESS
        sink.save_snapshot.assert_awaited_once()

        never.set()
        await asyncio.sleep(0.01)
        assert sink.save_snapshot.await_count == 2
        assert stat.success_count == 1

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, jobs: MarketJobs) -> None:
        adapter = TriggerAdapter(jobs)

        adapter.start()
        assert jobs.scheduler.is_running is True
        assert len(jobs.scheduler.active_jobs) == len(JobKey)

        await adapter.shutdown(timeout=0.1)
        assert jobs.scheduler.is_running is False
        assert jobs.scheduler.active_jobs == []
