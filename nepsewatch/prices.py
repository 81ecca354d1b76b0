"""Today's price list: three strategies over the today-price page.

1. ``api_capture``: passively record the listing's backend JSON calls while
   the page loads, raise the page size, keep the largest ``content`` payload.
2. ``export_capture``: click the on-page CSV export and intercept the JSON
   array that the export request returns.
3. ``html_table``: parse the widest rendered table by header text.

Every strategy emits dicts keyed by PriceRecord field names;
``canonicalize_prices`` builds the records, so change and percent change
are derived in exactly one place.
"""

from collections.abc import Iterable
from datetime import date
from typing import Any

from bs4 import BeautifulSoup
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from pydantic import ValidationError

from config.settings import GlobalConfig, get_config
from nepsewatch.browser import BrowserSession, navigate
from nepsewatch.clock import exchange_today
from nepsewatch.exceptions import ParseError, SelectorTimeoutError
from nepsewatch.extractor import (
    ExtractionPipeline,
    ExtractionStrategy,
    ResponseCollector,
    largest_content,
    wait_for_content,
)
from nepsewatch.logger import get_logger
from nepsewatch.models import PriceRecord, QualityMonitor
from nepsewatch.operation import ScrapeOperation
from nepsewatch.parsers import clean_text, first_value, normalize_header

log = get_logger(__name__)

TODAY_PRICE_PATH = "/today-price"
PAGE_SIZE_SELECT = "div.box__filter--field select"
FILTER_BUTTON = "button.box__filter--search"
EXPORT_BUTTON = ".download-csv"
MIN_HEADER_CELLS = 6

# normalized header -> PriceRecord field, first match wins
TABLE_COLUMNS: dict[str, tuple[str, ...]] = {
    "symbol": ("symbol", "scriptsymbol", "script"),
    "security_name": ("companyname", "securityname", "name"),
    "close": ("ltp", "closingprice", "close"),
    "previous_close": ("previousclose", "prevclose"),
    "open": ("open", "openprice"),
    "high": ("high", "highprice", "max"),
    "low": ("low", "lowprice", "min"),
    "volume": ("qty", "quantity", "volume"),
    "turnover": ("turnover", "amount", "value"),
    "total_trades": ("totaltrades", "trades", "notrans"),
}


def is_price_api_url(url: str) -> bool:
    return "today-price" in url and "/api/" in url


def is_export_url(url: str) -> bool:
    return "todays-price" in url


def map_api_row(row: dict[str, Any]) -> dict[str, Any]:
    """Map a backend/export price object onto PriceRecord field names."""
    return {
        "symbol": row.get("symbol"),
        "security_id": row.get("securityId"),
        "security_name": row.get("securityName"),
        "business_date": row.get("businessDate"),
        "open": row.get("openPrice"),
        "high": row.get("highPrice"),
        "low": row.get("lowPrice"),
        "close": first_value(row, "lastUpdatedPrice", "lastTradedPrice", "closePrice"),
        "previous_close": row.get("previousDayClosePrice"),
        "volume": row.get("totalTradedQuantity"),
        "turnover": row.get("totalTradedValue"),
        "total_trades": row.get("totalTrades"),
    }


def map_table_row(row: dict[str, str]) -> dict[str, Any]:
    """Map a header-keyed HTML row onto PriceRecord field names."""
    mapped: dict[str, Any] = {
        field: first_value(row, *aliases) for field, aliases in TABLE_COLUMNS.items()
    }
    mapped["security_id"] = row.get("_security_id")
    return mapped


def parse_price_table(html: str) -> list[dict[str, str]]:
    """Read the widest table of ``html`` into header-keyed row dicts.

    Headers are normalized to lowercase alphanumerics ("Prev. Close" ->
    "prevclose"). A link to ``/company/detail/<id>`` inside a row provides
    ``_security_id``.

    Raises:
        ParseError: If no table has at least MIN_HEADER_CELLS header cells.
    """
    soup = BeautifulSoup(html, "html.parser")

    candidates = [table for table in soup.find_all("table") if len(table.find_all("th")) >= MIN_HEADER_CELLS]
    if not candidates:
        raise ParseError(source="today-price table", reason="no table with enough header cells")
    table = max(candidates, key=lambda t: len(t.find_all("th")))

    headers = [normalize_header(th.get_text(" ", strip=True)) for th in table.find_all("th")]

    rows: list[dict[str, str]] = []
    for tr in table.find_all("tr"):
        if not tr.find("td"):
            continue
        cells = tr.find_all(["td", "th"])
        row = {
            headers[index]: clean_text(cell.get_text(" ", strip=True))
            for index, cell in enumerate(cells)
            if index < len(headers) and headers[index]
        }
        link = tr.find("a", href=True)
        if link is not None:
            tail = link["href"].rstrip("/").rsplit("/", 1)[-1]
            if tail.isdigit():
                row["_security_id"] = tail
        if row:
            rows.append(row)
    return rows


def canonicalize_prices(
    rows: Iterable[dict[str, Any]],
    business_date: date | None = None,
) -> list[PriceRecord]:
    """Build PriceRecords from mapped rows.

    Rows without a symbol are dropped. Rows without a business date get
    ``business_date`` (default: today in exchange time).

    Raises:
        ParseError: If no row produced a record.
    """
    fallback_date = business_date or exchange_today()
    records: list[PriceRecord] = []

    for row in rows:
        if not clean_text(row.get("symbol")):
            continue
        payload = dict(row)
        if not payload.get("business_date"):
            payload["business_date"] = fallback_date
        try:
            records.append(PriceRecord.model_validate(payload))
        except ValidationError as exc:
            log.warning("Dropping invalid price row", symbol=row.get("symbol"), error=str(exc))

    if not records:
        raise ParseError(source="price rows", reason="no usable price records")
    return records


async def open_listing(page: Page, config: GlobalConfig) -> None:
    if "today-price" not in page.url:
        await navigate(page, config.url(TODAY_PRICE_PATH))


async def request_full_page(page: Page, config: GlobalConfig) -> None:
    """Best effort: set the listing's page size and re-run the filter."""
    try:
        await page.wait_for_selector(PAGE_SIZE_SELECT, timeout=10000)
        await page.select_option(PAGE_SIZE_SELECT, str(config.page_size))
        async with page.expect_response(
            lambda response: is_price_api_url(response.url) and response.status == 200,
            timeout=config.response_wait_ms,
        ):
            await page.click(FILTER_BUTTON)
    except PlaywrightError as exc:
        log.info("Page size change failed, keeping default page", error=str(exc))


class ApiCaptureStrategy(ExtractionStrategy[list[dict[str, Any]]]):
    name = "api_capture"

    def __init__(self, config: GlobalConfig | None = None) -> None:
        self.config = config or get_config()

    async def attempt(self, page: Page) -> list[dict[str, Any]]:
        async with ResponseCollector(page, is_price_api_url) as collector:
            await navigate(page, self.config.url(TODAY_PRICE_PATH))
            await wait_for_content(page, "table", self.config.request_timeout_ms)
            await request_full_page(page, self.config)
            await collector.wait(self.config.response_wait_ms, settle_ms=1500)

        rows = largest_content(collector.payloads)
        log.debug("Price API payload captured", rows=len(rows), responses=len(collector.payloads))
        return [map_api_row(row) for row in rows if isinstance(row, dict)]


class ExportCaptureStrategy(ExtractionStrategy[list[dict[str, Any]]]):
    name = "export_capture"

    def __init__(self, config: GlobalConfig | None = None) -> None:
        self.config = config or get_config()

    async def attempt(self, page: Page) -> list[dict[str, Any]]:
        async with ResponseCollector(page, is_export_url) as collector:
            await open_listing(page, self.config)
            if not await wait_for_content(page, EXPORT_BUTTON, 15000):
                raise SelectorTimeoutError(selector=EXPORT_BUTTON, url=page.url, timeout_ms=15000)
            await page.click(EXPORT_BUTTON)
            await collector.wait(self.config.response_wait_ms)

        arrays = [body for _, body in collector.payloads if isinstance(body, list) and body]
        if not arrays:
            raise ParseError(source="price export", reason="no JSON array intercepted")
        rows = max(arrays, key=len)
        return [map_api_row(row) for row in rows if isinstance(row, dict)]


class HtmlTableStrategy(ExtractionStrategy[list[dict[str, Any]]]):
    name = "html_table"

    def __init__(self, config: GlobalConfig | None = None) -> None:
        self.config = config or get_config()
        self.monitor = QualityMonitor(self.config)

    async def attempt(self, page: Page) -> list[dict[str, Any]]:
        await open_listing(page, self.config)
        if not await wait_for_content(page, "table", 15000):
            raise SelectorTimeoutError(selector="table", url=page.url, timeout_ms=15000)
        await request_full_page(page, self.config)

        rows = parse_price_table(await page.content())
        if not rows:
            raise ParseError(source="today-price table", reason="table has no data rows")

        mapped = [map_table_row(row) for row in rows]

        self.monitor.start_batch(page.url)
        for row in mapped:
            self.monitor.record(bool(clean_text(row.get("symbol"))))
        self.monitor.evaluate_batch()

        return mapped


def build_price_pipeline(config: GlobalConfig | None = None) -> ExtractionPipeline[list[PriceRecord]]:
    config = config or get_config()
    return ExtractionPipeline(
        "prices",
        [ApiCaptureStrategy(config), ExportCaptureStrategy(config), HtmlTableStrategy(config)],
        canonicalize=canonicalize_prices,
    )


class PriceScraper:
    """Entry point for today's prices.

    Example:
        scraper = PriceScraper(session)
        records = await scraper.scrape_today_prices()
    """

    def __init__(self, session: BrowserSession, config: GlobalConfig | None = None) -> None:
        self.session = session
        self.config = config or get_config()

    async def scrape_today_prices(self) -> list[PriceRecord]:
        """Run the price pipeline inside the retry envelope.

        Raises:
            OperationFailedError: If every attempt exhausted all strategies.
        """
        operation = ScrapeOperation(self.session, build_price_pipeline(self.config), config=self.config)
        result = await operation.run()
        log.info(
            "Prices scraped",
            records=len(result.value),
            strategy=result.strategy,
            attempted=result.attempted,
        )
        return result.value
