"""Index history from the indices page's paginated backend endpoint."""

from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from pydantic import ValidationError

from config.settings import GlobalConfig, get_config
from nepsewatch.browser import BrowserSession, navigate
from nepsewatch.exceptions import ParseError
from nepsewatch.extractor import ExtractionPipeline, ExtractionStrategy, ResponseCollector, largest_content
from nepsewatch.logger import get_logger
from nepsewatch.models import HistoryRecord
from nepsewatch.operation import ScrapeOperation

log = get_logger(__name__)

INDICES_PATH = "/indices"
FILTER_BUTTON = "button.box__filter--search"

INDEX_NAMES = {
    57: "Sensitive Index",
    58: "NEPSE Index",
    59: "Float Index",
    60: "Sensitive Float Index",
}

# page-size select is the second <select> on the indices page, or the only one
_SET_PAGE_SIZE_JS = """
(size) => {
    const selects = document.querySelectorAll('select');
    const select = selects.length > 1 ? selects[1] : selects[0];
    if (!select) return false;
    select.value = String(size);
    select.dispatchEvent(new Event('change', { bubbles: true }));
    const button = document.querySelector('button.box__filter--search');
    if (button) button.click();
    return true;
}
"""


def is_history_url(url: str) -> bool:
    return "/api/nots/index/history/" in url


def map_history_row(row: dict[str, Any]) -> dict[str, Any]:
    index_id = row.get("exchangeIndexId") or row.get("indexId")
    return {
        "business_date": row.get("businessDate"),
        "index_id": index_id,
        "index_name": INDEX_NAMES.get(index_id, f"Index {index_id}") if index_id else "",
        "open": row.get("openIndex"),
        "high": row.get("highIndex"),
        "low": row.get("lowIndex"),
        "close": row.get("closingIndex"),
        "change": row.get("absChange"),
        "percent_change": row.get("percentageChange"),
        "fifty_two_week_high": row.get("fiftyTwoWeekHigh"),
        "fifty_two_week_low": row.get("fiftyTwoWeekLow"),
        "turnover": row.get("turnoverValue"),
        "traded_shares": row.get("turnoverVolume"),
        "total_transactions": row.get("totalTransaction"),
    }


def canonicalize_history(rows: list[dict[str, Any]]) -> list[HistoryRecord]:
    """Build HistoryRecords, skipping rows with no closing value.

    The endpoint reports the current business date with a zero closing
    index until end-of-day processing; such rows are dropped.

    Raises:
        ParseError: If nothing usable remains.
    """
    records: list[HistoryRecord] = []
    for row in rows:
        try:
            record = HistoryRecord.model_validate(map_history_row(row))
        except ValidationError as exc:
            log.warning("Dropping invalid history row", error=str(exc))
            continue
        if record.close <= 0:
            continue
        records.append(record)

    if not records:
        raise ParseError(source="index history", reason="no usable history rows")
    return records


class HistoryCaptureStrategy(ExtractionStrategy[list[dict[str, Any]]]):
    name = "history_capture"

    def __init__(self, config: GlobalConfig | None = None) -> None:
        self.config = config or get_config()

    async def attempt(self, page: Page) -> list[dict[str, Any]]:
        async with ResponseCollector(page, is_history_url) as collector:
            await navigate(page, self.config.url(INDICES_PATH))
            await collector.wait(self.config.response_wait_ms)
            try:
                await page.evaluate(_SET_PAGE_SIZE_JS, self.config.page_size)
            except PlaywrightError as exc:
                log.info("Could not raise history page size", error=str(exc))
            await page.wait_for_timeout(5000)

        rows = largest_content(collector.payloads)
        return [row for row in rows if isinstance(row, dict)]


class HistoryScraper:
    def __init__(self, session: BrowserSession, config: GlobalConfig | None = None) -> None:
        self.session = session
        self.config = config or get_config()

    async def scrape_index_history(self) -> list[HistoryRecord]:
        """Largest page of index history the site will return.

        Raises:
            OperationFailedError: If nothing was intercepted after all retries.
        """
        pipeline = ExtractionPipeline(
            "history",
            [HistoryCaptureStrategy(self.config)],
            canonicalize=canonicalize_history,
        )
        operation = ScrapeOperation(self.session, pipeline, config=self.config)
        result = await operation.run()
        log.info("Index history scraped", records=len(result.value))
        return result.value
