"""Index snapshot and market status from the exchange homepage.

One homepage load per attempt. The status is always classified from that
load's visible text and the index numbers come from the same load, either
through the page's own request context (backend probe) or from the text
itself, so a snapshot never pairs a status with numbers from another moment.
"""

import re
from datetime import UTC, datetime
from typing import Any

from playwright.async_api import Page
from pydantic import BaseModel

from config.settings import GlobalConfig, get_config
from nepsewatch.browser import BrowserSession, navigate
from nepsewatch.exceptions import ParseError
from nepsewatch.extractor import ExtractionPipeline, ExtractionStrategy
from nepsewatch.logger import get_logger
from nepsewatch.market_status import detect_market_status
from nepsewatch.models import MarketSnapshot, MarketStatus
from nepsewatch.operation import ScrapeOperation
from nepsewatch.parsers import first_value, parse_int, parse_number

log = get_logger(__name__)

HOME_PATH = "/"
INDEX_API_PATH = "/api/nots/nepse-index"
NEPSE_INDEX_NAME = "NEPSE Index"

_NUMBER = r"([+-]?[\d,]+(?:\.\d+)?)"
_TEXT_PATTERNS: dict[str, re.Pattern[str]] = {
    "index_value": re.compile(r"NEPSE\s+Index\D{0,40}?([\d,]+\.\d+)", re.IGNORECASE),
    "turnover": re.compile(r"Total\s+Turnover\D{0,40}?" + _NUMBER, re.IGNORECASE),
    "traded_shares": re.compile(r"Total\s+Traded\s+Shares\D{0,40}?" + _NUMBER, re.IGNORECASE),
    "advanced": re.compile(r"Advanced\D{0,20}?(\d+)", re.IGNORECASE),
    "declined": re.compile(r"Declined\D{0,20}?(\d+)", re.IGNORECASE),
    "unchanged": re.compile(r"Unchanged\D{0,20}?(\d+)", re.IGNORECASE),
}
# "12.34 (0.58%)" following the index value
_CHANGE_PATTERN = re.compile(_NUMBER + r"\s*\(\s*([+-]?[\d.]+)\s*%\s*\)")


class MarketSummary(BaseModel):
    status: MarketStatus
    is_open: bool
    snapshot: MarketSnapshot


def parse_index_payload(payload: Any) -> dict[str, Any]:
    """Pick the NEPSE Index entry out of the index endpoint's answer.

    The endpoint returns a list of index objects; the headline index is the
    entry named "NEPSE Index".

    Raises:
        ParseError: If no entry with a positive value exists.
    """
    entries = payload if isinstance(payload, list) else [payload]
    entries = [entry for entry in entries if isinstance(entry, dict)]
    entry = next(
        (e for e in entries if NEPSE_INDEX_NAME.lower() in str(e.get("index", "")).lower()),
        entries[0] if entries else None,
    )
    if entry is None:
        raise ParseError(source=INDEX_API_PATH, reason="empty index payload")

    value = parse_number(first_value(entry, "currentValue", "close", "indexValue"))
    if value <= 0:
        raise ParseError(source=INDEX_API_PATH, reason=f"non-positive index value {value}")

    return {
        "index_value": value,
        "index_change": entry.get("change"),
        "index_percent_change": first_value(entry, "perChange", "percentageChange"),
        "turnover": first_value(entry, "totalTurnover", "turnover"),
        "traded_shares": first_value(entry, "totalTradedShares", "tradedShares"),
    }


def parse_index_text(text: str) -> dict[str, Any]:
    """Read index figures from homepage text.

    Raises:
        ParseError: If the index value is missing or not positive.
    """
    fields: dict[str, Any] = {}
    for field, pattern in _TEXT_PATTERNS.items():
        match = pattern.search(text)
        if match:
            fields[field] = match.group(1)

    value = parse_number(fields.get("index_value"))
    if value <= 0:
        raise ParseError(source="homepage text", reason="index value not found")

    index_match = _TEXT_PATTERNS["index_value"].search(text)
    change_match = _CHANGE_PATTERN.search(text, index_match.end()) if index_match else None
    if change_match:
        fields["index_change"] = change_match.group(1)
        fields["index_percent_change"] = change_match.group(2)

    for count in ("advanced", "declined", "unchanged"):
        fields[count] = parse_int(fields.get(count))
    return fields


async def read_page_text(page: Page) -> str:
    return await page.inner_text("body")


class IndexApiStrategy(ExtractionStrategy[dict[str, Any]]):
    """Probe the index endpoint through the loaded page's request context."""

    name = "index_api"

    def __init__(self, config: GlobalConfig | None = None) -> None:
        self.config = config or get_config()

    async def attempt(self, page: Page) -> dict[str, Any]:
        url = self.config.url(INDEX_API_PATH)
        response = await page.request.get(url, timeout=self.config.response_wait_ms)
        if not response.ok:
            raise ParseError(source=url, reason=f"HTTP {response.status}")

        fields = parse_index_payload(await response.json())
        fields["status"] = detect_market_status(await read_page_text(page))
        fields["source"] = self.name
        return fields


class IndexDomStrategy(ExtractionStrategy[dict[str, Any]]):
    """Regex over the same page's visible text."""

    name = "index_dom"

    async def attempt(self, page: Page) -> dict[str, Any]:
        text = await read_page_text(page)
        fields = parse_index_text(text)
        fields["status"] = detect_market_status(text)
        fields["source"] = self.name
        return fields


class StatusTextStrategy(ExtractionStrategy[MarketStatus]):
    name = "status_text"

    async def attempt(self, page: Page) -> MarketStatus:
        return detect_market_status(await read_page_text(page))


def to_snapshot(fields: dict[str, Any]) -> MarketSnapshot:
    return MarketSnapshot.model_validate({**fields, "as_of": datetime.now(UTC)})


class MarketScraper:
    """Homepage-driven market data.

    Example:
        scraper = MarketScraper(session)
        summary = await scraper.scrape_market_summary()
        if summary.is_open:
            ...
    """

    def __init__(self, session: BrowserSession, config: GlobalConfig | None = None) -> None:
        self.session = session
        self.config = config or get_config()

    async def _load_home(self, page: Page) -> None:
        await navigate(page, self.config.url(HOME_PATH))

    async def scrape_market_index(self) -> MarketSnapshot:
        """Index values plus status from one homepage load."""
        pipeline = ExtractionPipeline(
            "index",
            [IndexApiStrategy(self.config), IndexDomStrategy()],
            canonicalize=to_snapshot,
        )
        operation = ScrapeOperation(self.session, pipeline, prepare=self._load_home, config=self.config)
        result = await operation.run()
        snapshot = result.value
        log.info(
            "Index scraped",
            index_value=snapshot.index_value,
            status=snapshot.status.value,
            strategy=result.strategy,
        )
        return snapshot

    async def scrape_market_status(self) -> MarketStatus:
        pipeline = ExtractionPipeline("market_status", [StatusTextStrategy()])
        operation = ScrapeOperation(self.session, pipeline, prepare=self._load_home, config=self.config)
        result = await operation.run()
        log.info("Market status detected", status=result.value.value)
        return result.value

    async def scrape_market_summary(self) -> MarketSummary:
        snapshot = await self.scrape_market_index()
        return MarketSummary(status=snapshot.status, is_open=snapshot.is_open, snapshot=snapshot)
