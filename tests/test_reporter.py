"""Tests for the price workbook and the scheduler health dashboard."""

from datetime import date

import pandas as pd
import pytest

from config.settings import GlobalConfig
from nepsewatch.exceptions import ReportGenerationError
from nepsewatch.jobs import JobKey, JobStat, JobStatus
from nepsewatch.models import PriceRecord
from nepsewatch.reporter import PRICE_COLUMNS, ReportGenerator


@pytest.fixture
def records() -> list[PriceRecord]:
    day = date(2026, 1, 4)
    return [
        PriceRecord(symbol="NICA", business_date=day, close=780, previous_close=800, volume=300, turnover=234000),
        PriceRecord(symbol="NABIL", business_date=day, close=510, previous_close=500, volume=1200, turnover=612000),
        PriceRecord(symbol="HBL", business_date=day, close=200, previous_close=200, volume=50, turnover=10000),
    ]


class TestPriceWorkbook:
    def test_sheets_and_summary(self, mock_config: GlobalConfig, records: list[PriceRecord]) -> None:
        path = ReportGenerator(mock_config).generate_price_excel(records, filename="prices")

        assert path == mock_config.output_dir / "prices.xlsx"
        sheets = pd.read_excel(path, sheet_name=None)
        assert set(sheets) == {"Prices", "Summary", "Top Movers"}

        prices = sheets["Prices"]
        assert list(prices.columns) == PRICE_COLUMNS
        assert list(prices["symbol"]) == ["HBL", "NABIL", "NICA"]

        summary = sheets["Summary"].iloc[0]
        assert (summary["Advanced"], summary["Declined"], summary["Unchanged"]) == (1, 1, 1)
        assert summary["Total Volume"] == 1550

        movers = sheets["Top Movers"]
        assert movers[movers["side"] == "gainer"].iloc[0]["symbol"] == "NABIL"
        assert list(movers[movers["side"] == "loser"]["symbol"]) == ["NICA"]

    def test_default_filename(self, mock_config: GlobalConfig, records: list[PriceRecord]) -> None:
        path = ReportGenerator(mock_config).generate_price_excel(records)
        assert path.name.startswith("nepsewatch_prices_")
        assert path.exists()

    def test_empty_records_raise(self, mock_config: GlobalConfig) -> None:
        with pytest.raises(ReportGenerationError):
            ReportGenerator(mock_config).generate_price_excel([])


class TestHealthDashboard:
    def test_writes_standalone_html(self, mock_config: GlobalConfig) -> None:
        stats = {key.value: JobStat() for key in JobKey}
        stats["price_update"] = JobStat(
            success_count=40, fail_count=2, today_success_count=12, status=JobStatus.SUCCESS
        )

        path = ReportGenerator(mock_config).generate_health_dashboard(stats, filename="health")

        html = path.read_text(encoding="utf-8")
        assert path.suffix == ".html"
        assert "NepseWatch Scheduler Health" in html
        assert "price_update: SUCCESS" in html

    def test_empty_stats_raise(self, mock_config: GlobalConfig) -> None:
        with pytest.raises(ReportGenerationError):
            ReportGenerator(mock_config).generate_health_dashboard({})
