"""Company detail, dividend and financial scraping.

Per instrument the detail page is loaded once while its two identifier
scoped backend calls (security record and profile record) are recorded.
The profile pipeline then tries:

1. ``api_profile``: build the profile from the recorded payloads.
2. ``dom_profile``: label-keyed table lookups and meta-list parsing on the
   rendered page (inside ``#company_detail_iframe`` when present).

Dividend and financial tabs are visited afterwards, opportunistically: a
missing tab or table is an empty result, not a failure. Every instrument
is flushed to the callbacks as soon as it is done.
"""

import re
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from bs4 import BeautifulSoup, Tag
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from pydantic import ValidationError

from config.settings import GlobalConfig, get_config
from nepsewatch.browser import BrowserSession, navigate
from nepsewatch.exceptions import NavigationTimeoutError, ParseError
from nepsewatch.extractor import (
    STRATEGY_ERRORS,
    ExtractionPipeline,
    ExtractionStrategy,
    ResponseCollector,
    wait_for_content,
)
from nepsewatch.logger import get_logger
from nepsewatch.models import DividendRecord, FinancialRecord, Instrument, InstrumentProfile
from nepsewatch.operation import is_unstable
from nepsewatch.parsers import clean_text, first_value, parse_number, split_pair

log = get_logger(__name__)

DETAIL_PATH = "/company/detail/{security_id}"
SECURITY_API_MARKER = "/api/nots/security/"
IFRAME_SELECTOR = "#company_detail_iframe"
NAVIGATION_TRIES = 2

ProfileCallback = Callable[[list[InstrumentProfile]], Awaitable[object]]
DividendCallback = Callable[[list[DividendRecord]], Awaitable[object]]
FinancialCallback = Callable[[list[FinancialRecord]], Awaitable[object]]

# label on the detail page -> profile field
_NUMERIC_LABELS = {
    "Total Traded Quantity": "total_traded_quantity",
    "Total Trades": "total_trades",
    "Previous Day Close Price": "previous_close",
    "Open Price": "open_price",
    "Total Listed Shares": "total_listed_shares",
    "Total Paid up Value": "total_paid_up_value",
    "Market Capitalization": "market_capitalization",
    "Paid Up Capital": "paid_up_capital",
    "Promoter Shares": "promoter_shares",
    "Public Shares": "public_shares",
    "Average Traded Price": "average_traded_price",
}
_TEXT_LABELS = {
    "Instrument Type": "instrument_type",
    "Listing Date": "listing_date",
    "Issue Manager": "issue_manager",
    "Share Registrar": "share_registrar",
    "Website": "website",
}
_META_LABELS = {
    "Sector:": "sector_name",
    "Email Address:": "email",
    "Permitted to Trade:": "permitted_to_trade",
    "Status:": "status",
}
_SYMBOL_SUFFIX = re.compile(r"\s*\([A-Z0-9]+\)\s*$")
_LEADING_NUMBER = re.compile(r"[0-9,]+\.?[0-9]*")


def absolute_logo(path: str | None, base_url: str) -> str:
    if not path:
        return ""
    if path.startswith("assets/"):
        return f"{base_url}/{path}"
    return path


def parse_api_profile(
    profile: dict[str, Any] | None,
    security: dict[str, Any] | None,
    base_url: str,
) -> dict[str, Any]:
    """Map the intercepted profile/security payloads onto profile fields."""
    fields: dict[str, Any] = {}

    if profile:
        fields["company_name"] = profile.get("companyName")
        fields["email"] = profile.get("companyEmail")
        fields["logo_url"] = absolute_logo(profile.get("logoFilePath"), base_url)

    if security:
        sec = security.get("security") or {}
        daily = security.get("securityDailyTradeDto") or {}
        company = sec.get("companyId") or {}
        sector = company.get("sectorMaster") or {}
        share_group = sec.get("shareGroupId") or {}

        instrument_type = sec.get("instrumentType")
        if isinstance(instrument_type, dict):
            instrument_type = instrument_type.get("description") or instrument_type.get("code")

        average = parse_number(daily.get("averageTradedPrice"))
        quantity = parse_number(daily.get("totalTradeQuantity"))
        if not average and quantity > 0:
            average = parse_number(daily.get("totalTradeValue")) / quantity

        fields.update({
            "company_name": fields.get("company_name") or company.get("companyName") or sec.get("securityName"),
            "email": fields.get("email") or company.get("companyEmail"),
            "instrument_type": instrument_type,
            "status": first_value(sec, "activeStatus", "status"),
            "permitted_to_trade": sec.get("permittedToTrade") or "No",
            "listing_date": sec.get("listingDate"),
            "sector_name": sector.get("sectorDescription"),
            "regulatory_body": sector.get("regulatoryBody"),
            "website": company.get("companyWebsite"),
            "isin": sec.get("isin"),
            "face_value": sec.get("faceValue"),
            "share_group": share_group.get("name") if isinstance(share_group, dict) else "",
            "last_traded_price": daily.get("lastTradedPrice"),
            "total_traded_quantity": quantity,
            "total_trades": daily.get("totalTrades"),
            "previous_close": daily.get("previousClose"),
            "open_price": daily.get("openPrice"),
            "high_price": daily.get("highPrice"),
            "low_price": daily.get("lowPrice"),
            "close_price": daily.get("closePrice"),
            "fifty_two_week_high": daily.get("fiftyTwoWeekHigh"),
            "fifty_two_week_low": daily.get("fiftyTwoWeekLow"),
            "average_traded_price": average,
            "business_date": daily.get("businessDate"),
            "total_listed_shares": security.get("stockListedShares"),
            "paid_up_capital": security.get("paidUpCapital"),
            "total_paid_up_value": security.get("paidUpCapital"),
            "market_capitalization": security.get("marketCapitalization"),
            "promoter_shares": security.get("promoterShares"),
            "public_shares": security.get("publicShares"),
            "promoter_percentage": security.get("promoterPercentage"),
            "public_percentage": security.get("publicPercentage"),
            "issued_capital": security.get("issuedCapital"),
        })

    return fields


def table_value(soup: BeautifulSoup | Tag, label: str) -> str | None:
    """Value cell of the table row whose header cell carries ``label``.

    An exact header match wins over a row whose header merely contains
    the label ("Close Price" vs "Previous Day Close Price").
    """
    partial: str | None = None
    for row in soup.select("table tr"):
        th, td = row.find("th"), row.find("td")
        if th is None or td is None:
            continue
        header = clean_text(th.get_text(" ", strip=True)).rstrip(":* ")
        if header == label:
            return clean_text(td.get_text(" ", strip=True))
        if partial is None and label in header:
            partial = clean_text(td.get_text(" ", strip=True))
    return partial


def parse_profile_html(html: str, base_url: str) -> dict[str, Any]:
    """Read profile fields from the rendered company detail page.

    Raises:
        ParseError: If the page carries neither the title block nor any
            labelled table row.
    """
    soup = BeautifulSoup(html, "html.parser")
    fields: dict[str, Any] = {}

    logo = soup.select_one("#profile_section .team-member img")
    if logo is None or "placeholder" in (logo.get("src") or ""):
        logo = soup.select_one(".company__title--logo img")
    fields["logo_url"] = absolute_logo(logo.get("src") if logo else "", base_url)

    title = soup.select_one(".company__title--details h1")
    if title is not None:
        fields["company_name"] = _SYMBOL_SUFFIX.sub("", clean_text(title.get_text(" ", strip=True)))

    for item in soup.select(".company__title--metas li"):
        text = item.get_text(" ", strip=True)
        for label, field in _META_LABELS.items():
            if label in text:
                fields[field] = clean_text(text.split(label, 1)[1])
                break

    found = 0
    for label, field in {**_TEXT_LABELS, **_NUMERIC_LABELS}.items():
        value = table_value(soup, label)
        if value is not None:
            fields[field] = value
            found += 1

    last_traded = table_value(soup, "Last Traded Price")
    if last_traded:
        match = _LEADING_NUMBER.search(last_traded)
        fields["last_traded_price"] = match.group() if match else 0
        found += 1

    close = table_value(soup, "Close Price")
    if close:
        fields["close_price"] = close.replace("*", "")

    fields["high_price"], fields["low_price"] = split_pair(table_value(soup, "High Price / Low Price"))
    fields["fifty_two_week_high"], fields["fifty_two_week_low"] = split_pair(
        table_value(soup, "52 Week High / 52 Week Low")
    )

    if title is None and not found:
        raise ParseError(source="company detail page", reason="no profile markup")
    return fields


def build_profile(instrument: Instrument, fields: dict[str, Any], source: str) -> InstrumentProfile:
    """Canonical profile for either extraction path."""
    return InstrumentProfile.model_validate({
        **{key: value for key, value in fields.items() if value is not None},
        "security_id": instrument.security_id,
        "symbol": instrument.symbol,
        "source": source,
    })


def _column_index(headers: list[str], keywords: Sequence[str]) -> int:
    for index, header in enumerate(headers):
        if any(keyword in header for keyword in keywords):
            return index
    return -1


def _table_rows(table: Tag) -> tuple[list[str], list[list[str]]]:
    headers = [clean_text(th.get_text(" ", strip=True)).lower() for th in table.select("thead th")]
    body = table.select("tbody tr") or table.find_all("tr")
    rows = []
    for tr in body:
        cells = [clean_text(td.get_text(" ", strip=True)) for td in tr.find_all("td")]
        if len(cells) >= 3:
            rows.append(cells)
    return headers, rows


def _cell(cells: list[str], index: int) -> str | None:
    return cells[index] if 0 <= index < len(cells) and cells[index] else None


def parse_dividend_table(html: str, security_id: int) -> list[DividendRecord]:
    """Dividend history rows from ``#dividend table``; [] when there is no table."""
    table = BeautifulSoup(html, "html.parser").select_one("#dividend table")
    if table is None:
        return []

    headers, rows = _table_rows(table)
    idx_year = _column_index(headers, ("fiscal", "year"))
    idx_bonus = _column_index(headers, ("bonus",))
    idx_cash = _column_index(headers, ("cash",))
    idx_total = _column_index(headers, ("total",))
    idx_book_close = _column_index(headers, ("book", "closure", "date"))

    records: list[DividendRecord] = []
    for cells in rows:
        fiscal_year = _cell(cells, idx_year) or _cell(cells, 1)
        if not fiscal_year:
            continue
        bonus = parse_number(_cell(cells, idx_bonus))
        cash = parse_number(_cell(cells, idx_cash))
        total = parse_number(_cell(cells, idx_total)) if idx_total != -1 else bonus + cash
        try:
            records.append(DividendRecord(
                security_id=security_id,
                fiscal_year=fiscal_year,
                bonus_share=bonus,
                cash_dividend=cash,
                total_dividend=total,
                book_close_date=_cell(cells, idx_book_close) or "",
            ))
        except ValidationError as exc:
            log.debug("Skipping dividend row", security_id=security_id, error=str(exc))
    return records


def parse_financial_table(html: str, security_id: int) -> list[FinancialRecord]:
    """Quarterly report rows from the financial tab; [] when there is no table.

    When a header keyword is not found the site's usual column position is
    used instead.
    """
    table = BeautifulSoup(html, "html.parser").select_one('div[id*="financial"] table')
    if table is None:
        return []

    headers, rows = _table_rows(table)
    idx_year = _column_index(headers, ("fiscal", "year"))
    idx_quarter = _column_index(headers, ("quart",))
    idx_paid_up = _column_index(headers, ("paid", "capital"))
    idx_profit = _column_index(headers, ("net profit", "profit", "amount"))
    idx_eps = _column_index(headers, ("eps", "earnings"))
    idx_net_worth = _column_index(headers, ("net worth", "book value"))
    idx_pe = _column_index(headers, ("p/e", "price earning", "p.e", "ratio"))

    def number(cells: list[str], index: int, fallback: int) -> float:
        return parse_number(_cell(cells, index)) or parse_number(_cell(cells, fallback))

    records: list[FinancialRecord] = []
    for cells in rows:
        fiscal_year = _cell(cells, idx_year) or _cell(cells, 1)
        if not fiscal_year:
            continue
        try:
            records.append(FinancialRecord(
                security_id=security_id,
                fiscal_year=fiscal_year,
                quarter=_cell(cells, idx_quarter) or _cell(cells, 3) or "",
                paid_up_capital=number(cells, idx_paid_up, 6),
                net_profit=number(cells, idx_profit, 5),
                earnings_per_share=number(cells, idx_eps, 8),
                net_worth_per_share=number(cells, idx_net_worth, 4),
                price_earnings_ratio=number(cells, idx_pe, 7),
            ))
        except ValidationError as exc:
            log.debug("Skipping financial row", security_id=security_id, error=str(exc))
    return records


def security_url_matcher(security_id: int) -> Callable[[str], bool]:
    """Match security API URLs whose last path segment is exactly the id."""
    wanted = str(security_id)

    def matches(url: str) -> bool:
        if SECURITY_API_MARKER not in url:
            return False
        path = url.split("?", 1)[0].rstrip("/")
        return path.rsplit("/", 1)[-1] == wanted

    return matches


class ApiProfileStrategy(ExtractionStrategy[InstrumentProfile]):
    name = "api_profile"

    def __init__(self, instrument: Instrument, payloads: list[tuple[str, Any]], base_url: str) -> None:
        self.instrument = instrument
        self.payloads = payloads
        self.base_url = base_url

    async def attempt(self, page: Page) -> InstrumentProfile:
        profile: dict[str, Any] | None = None
        security: dict[str, Any] | None = None
        for url, body in self.payloads:
            if not isinstance(body, dict):
                continue
            if "/profile/" in url:
                profile = body
            else:
                security = body

        if profile is None and security is None:
            raise ParseError(source=SECURITY_API_MARKER, reason="no security or profile payload captured")

        return build_profile(self.instrument, parse_api_profile(profile, security, self.base_url), self.name)


class DomProfileStrategy(ExtractionStrategy[InstrumentProfile]):
    name = "dom_profile"

    def __init__(self, instrument: Instrument, base_url: str) -> None:
        self.instrument = instrument
        self.base_url = base_url

    async def attempt(self, page: Page) -> InstrumentProfile:
        html = await self._content(page)
        return build_profile(self.instrument, parse_profile_html(html, self.base_url), "dom")

    async def _content(self, page: Page) -> str:
        handle = await page.query_selector(IFRAME_SELECTOR)
        if handle is not None:
            frame = await handle.content_frame()
            if frame is not None:
                try:
                    await frame.wait_for_selector("table, .company__title--details", timeout=5000)
                except PlaywrightError:
                    log.debug("Company iframe content did not settle", symbol=self.instrument.symbol)
                return await frame.content()
        return await page.content()


class CompanyScraper:
    """Company detail batch over a single page.

    Example:
        scraper = CompanyScraper(session)
        profiles = await scraper.scrape_all(
            instruments,
            save_callback=sink.save_profiles,
            dividend_callback=sink.save_dividends,
            financial_callback=sink.save_financials,
        )
    """

    def __init__(self, session: BrowserSession, config: GlobalConfig | None = None) -> None:
        self.session = session
        self.config = config or get_config()

    async def scrape_all(
        self,
        instruments: Sequence[Instrument],
        save_callback: ProfileCallback | None = None,
        dividend_callback: DividendCallback | None = None,
        financial_callback: FinancialCallback | None = None,
    ) -> list[InstrumentProfile]:
        """Scrape every instrument, flushing each one as soon as it is done.

        Failures of a single instrument or of a callback are logged and the
        batch moves on.

        Returns:
            Profiles obtained, in instrument order.
        """
        if not instruments:
            return []

        log.info("Starting company details scrape", instruments=len(instruments))
        profiles: list[InstrumentProfile] = []

        await self.session.init()
        page = await self.session.new_page()
        try:
            for position, instrument in enumerate(instruments, start=1):
                try:
                    profile = await self._scrape_instrument(page, instrument)
                except STRATEGY_ERRORS as exc:
                    log.error("Company scrape failed", symbol=instrument.symbol, error=str(exc))
                    if is_unstable(exc):
                        page = await self._recover(page)
                    continue
                if profile is None:
                    continue

                profiles.append(profile)
                await self._deliver(save_callback, [profile], "profile", instrument)

                if dividend_callback is not None:
                    dividends = await self.scrape_dividends(page, instrument)
                    if dividends:
                        await self._deliver(dividend_callback, dividends, "dividends", instrument)

                if financial_callback is not None:
                    financials = await self.scrape_financials(page, instrument)
                    if financials:
                        await self._deliver(financial_callback, financials, "financials", instrument)

                if position % 10 == 0:
                    log.info("Company scrape progress", done=position, total=len(instruments))
        finally:
            try:
                await page.close()
            except PlaywrightError as exc:
                log.debug("Page already closed", error=str(exc))

        log.info("Company details scrape complete", profiles=len(profiles), instruments=len(instruments))
        return profiles

    async def _scrape_instrument(self, page: Page, instrument: Instrument) -> InstrumentProfile | None:
        async with ResponseCollector(
            page,
            security_url_matcher(instrument.security_id),
            accepted_statuses=(200, 401),
        ) as collector:
            if not await self._open_detail(page, instrument):
                return None

        pipeline = ExtractionPipeline(
            "company",
            [
                ApiProfileStrategy(instrument, collector.payloads, self.config.base_url),
                DomProfileStrategy(instrument, self.config.base_url),
            ],
        )
        result = await pipeline.run(page)
        log.debug("Company profile extracted", symbol=instrument.symbol, strategy=result.strategy)
        return result.value

    async def _open_detail(self, page: Page, instrument: Instrument) -> bool:
        url = self.config.url(DETAIL_PATH.format(security_id=instrument.security_id))

        for attempt in range(1, NAVIGATION_TRIES + 1):
            try:
                await navigate(page, url)
                await page.wait_for_timeout(2000)
                await wait_for_content(page, ".company__title--details", 3000)

                profile_tab = await page.query_selector("#profileTab")
                if profile_tab is not None:
                    await profile_tab.click()
                    await page.wait_for_timeout(1500)
                    await wait_for_content(page, "#profile_section", 3000)
                return True
            except (NavigationTimeoutError, PlaywrightError) as exc:
                log.warning(
                    "Company page navigation failed",
                    symbol=instrument.symbol,
                    attempt=attempt,
                    error=str(exc),
                )
                if attempt < NAVIGATION_TRIES:
                    await page.wait_for_timeout(1000)

        log.error("Giving up on company page", symbol=instrument.symbol, url=url)
        return False

    async def scrape_dividends(self, page: Page, instrument: Instrument) -> list[DividendRecord]:
        try:
            tab = await page.query_selector("#dividendTab")
            if tab is None:
                return []
            await tab.click()
            await page.wait_for_timeout(1000)
            await wait_for_content(page, "#dividend table tbody tr", 3000)
            return parse_dividend_table(await page.content(), instrument.security_id)
        except PlaywrightError as exc:
            log.warning("Dividend scrape failed", symbol=instrument.symbol, error=str(exc))
            return []

    async def scrape_financials(self, page: Page, instrument: Instrument) -> list[FinancialRecord]:
        try:
            tab = await page.query_selector("#financialTab, #financialsTab")
            if tab is None:
                for candidate in await page.query_selector_all(".nav-link"):
                    if "Financial" in (await candidate.inner_text()):
                        tab = candidate
                        break
            if tab is None:
                return []
            await tab.click()
            await page.wait_for_timeout(1000)
            await wait_for_content(page, 'div[id*="financial"] table tbody tr', 3000)
            return parse_financial_table(await page.content(), instrument.security_id)
        except PlaywrightError as exc:
            log.warning("Financials scrape failed", symbol=instrument.symbol, error=str(exc))
            return []

    async def _deliver(
        self,
        callback: Callable[[list[Any]], Awaitable[None]] | None,
        records: list[Any],
        kind: str,
        instrument: Instrument,
    ) -> None:
        if callback is None:
            return
        try:
            await callback(records)
            log.debug("Saved company records", kind=kind, symbol=instrument.symbol, count=len(records))
        except Exception as exc:
            log.error("Failed to save company records", kind=kind, symbol=instrument.symbol, error=str(exc))

    async def _recover(self, page: Page) -> Page:
        log.warning("Browser unstable during company batch, relaunching")
        await self.session.reset()
        await self.session.init()
        return await self.session.new_page()
