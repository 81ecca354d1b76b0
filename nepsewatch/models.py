"""Canonical record types and extraction quality monitoring.

Every strategy, whatever raw shape it captured (backend JSON, export JSON,
HTML table rows, DOM label lookups), hands a plain dict to one of these
pydantic models. Tolerant numeric parsing and every derived field live in
the validators here, so rounding and derivation can never diverge between
strategies.
"""

from datetime import date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from config.settings import GlobalConfig, get_config
from nepsewatch.exceptions import LayoutShiftError
from nepsewatch.logger import get_logger
from nepsewatch.parsers import clean_text, parse_int, parse_number

log = get_logger(__name__)


class MarketStatus(StrEnum):
    """Trading phase reported by the exchange homepage."""

    PRE_OPEN = "PRE_OPEN"
    OPEN = "OPEN"
    CLOSED = "CLOSED"

    @property
    def is_open(self) -> bool:
        return self in (MarketStatus.PRE_OPEN, MarketStatus.OPEN)


def _coerce_date(value: Any) -> Any:
    """Accept ISO datetimes where a date is expected ("2026-01-05T00:00:00")."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str) and len(value) > 10 and value[4] == "-":
        return value[:10]
    return value


class PriceRecord(BaseModel):
    """One instrument's quote for a business date.

    ``change`` and ``percent_change`` are always derived from ``close`` and
    ``previous_close``; any value supplied by the caller is overwritten.

    Attributes:
        symbol: Ticker symbol, upper-cased.
        security_id: Exchange-internal numeric identifier when known.
        security_name: Company or instrument name.
        business_date: Trading date the quote belongs to.
        open / high / low / close: Session prices (close is the last traded price).
        previous_close: Prior session's closing price.
        volume: Total traded quantity.
        turnover: Total traded value.
        total_trades: Number of trades.
        change: close - previous_close.
        percent_change: change / previous_close * 100, or 0 without a previous close.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    symbol: str = Field(..., min_length=1, max_length=32)
    security_id: int | None = None
    security_name: str = ""
    business_date: date
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    close: float = 0.0
    previous_close: float = 0.0
    volume: float = 0.0
    turnover: float = 0.0
    total_trades: int = 0
    change: float = 0.0
    percent_change: float = 0.0

    @field_validator("symbol", mode="before")
    @classmethod
    def normalize_symbol(cls, value: Any) -> str:
        return clean_text(value).upper()

    @field_validator("security_name", mode="before")
    @classmethod
    def normalize_name(cls, value: Any) -> str:
        return clean_text(value)

    @field_validator("security_id", mode="before")
    @classmethod
    def parse_security_id(cls, value: Any) -> int | None:
        number = parse_int(value)
        return number if number > 0 else None

    @field_validator(
        "open", "high", "low", "close", "previous_close", "volume", "turnover",
        mode="before",
    )
    @classmethod
    def parse_numeric(cls, value: Any) -> float:
        return parse_number(value)

    @field_validator("total_trades", mode="before")
    @classmethod
    def parse_trades(cls, value: Any) -> int:
        return parse_int(value)

    @field_validator("business_date", mode="before")
    @classmethod
    def parse_business_date(cls, value: Any) -> Any:
        return _coerce_date(value)

    @model_validator(mode="after")
    def derive_change(self) -> "PriceRecord":
        self.change = self.close - self.previous_close
        if self.previous_close > 0:
            self.percent_change = self.change / self.previous_close * 100
        else:
            self.percent_change = 0.0
        return self


class MarketSnapshot(BaseModel):
    """Index values and market status read from a single page load."""

    index_value: float = Field(..., gt=0)
    index_change: float = 0.0
    index_percent_change: float = 0.0
    turnover: float = 0.0
    traded_shares: float = 0.0
    advanced: int = 0
    declined: int = 0
    unchanged: int = 0
    status: MarketStatus = MarketStatus.CLOSED
    source: str = ""
    as_of: datetime

    @field_validator(
        "index_value", "index_change", "index_percent_change", "turnover", "traded_shares",
        mode="before",
    )
    @classmethod
    def parse_numeric(cls, value: Any) -> float:
        return parse_number(value)

    @field_validator("advanced", "declined", "unchanged", mode="before")
    @classmethod
    def parse_counts(cls, value: Any) -> int:
        return parse_int(value)

    @property
    def is_open(self) -> bool:
        return self.status.is_open


class Instrument(BaseModel):
    """Identity of one listed security, as used for company detail scrapes."""

    security_id: int = Field(..., gt=0)
    symbol: str = Field(..., min_length=1)

    @field_validator("symbol", mode="before")
    @classmethod
    def normalize_symbol(cls, value: Any) -> str:
        return clean_text(value).upper()


_PROFILE_TEXT_FIELDS = (
    "symbol", "company_name", "sector_name", "instrument_type", "status",
    "permitted_to_trade", "listing_date", "email", "website", "isin",
    "issue_manager", "share_registrar", "share_group", "regulatory_body",
    "logo_url", "business_date",
)

_PROFILE_NUMERIC_FIELDS = (
    "last_traded_price", "open_price", "high_price", "low_price", "close_price",
    "previous_close", "fifty_two_week_high", "fifty_two_week_low",
    "total_traded_quantity", "average_traded_price", "total_listed_shares",
    "paid_up_capital", "total_paid_up_value", "market_capitalization",
    "promoter_shares", "public_shares", "promoter_percentage",
    "public_percentage", "face_value", "issued_capital",
)


class InstrumentProfile(BaseModel):
    """Merged per-instrument profile.

    Produced either from the intercepted security/profile API payloads or
    from DOM label lookups; both paths end in this one shape.
    """

    security_id: int
    symbol: str
    source: str = "api"

    company_name: str = ""
    sector_name: str = ""
    instrument_type: str = ""
    status: str = ""
    permitted_to_trade: str = ""
    listing_date: str = ""
    email: str = ""
    website: str = ""
    isin: str = ""
    issue_manager: str = ""
    share_registrar: str = ""
    share_group: str = ""
    regulatory_body: str = ""
    logo_url: str = ""
    is_logo_placeholder: bool = True
    business_date: str = ""

    last_traded_price: float = 0.0
    open_price: float = 0.0
    high_price: float = 0.0
    low_price: float = 0.0
    close_price: float = 0.0
    previous_close: float = 0.0
    fifty_two_week_high: float = 0.0
    fifty_two_week_low: float = 0.0
    total_traded_quantity: float = 0.0
    total_trades: int = 0
    average_traded_price: float = 0.0

    total_listed_shares: float = 0.0
    paid_up_capital: float = 0.0
    total_paid_up_value: float = 0.0
    market_capitalization: float = 0.0
    promoter_shares: float = 0.0
    public_shares: float = 0.0
    promoter_percentage: float = 0.0
    public_percentage: float = 0.0
    face_value: float = 0.0
    issued_capital: float = 0.0

    @field_validator(*_PROFILE_TEXT_FIELDS, mode="before")
    @classmethod
    def parse_text(cls, value: Any) -> str:
        return clean_text(value)

    @field_validator(*_PROFILE_NUMERIC_FIELDS, mode="before")
    @classmethod
    def parse_numeric(cls, value: Any) -> float:
        return parse_number(value)

    @field_validator("total_trades", mode="before")
    @classmethod
    def parse_trades(cls, value: Any) -> int:
        return parse_int(value)

    @model_validator(mode="after")
    def fill_derived(self) -> "InstrumentProfile":
        if not self.paid_up_capital and self.total_paid_up_value:
            self.paid_up_capital = self.total_paid_up_value
        if self.logo_url and "placeholder" not in self.logo_url:
            self.is_logo_placeholder = False
        return self


class DividendRecord(BaseModel):
    """Dividend declared for one fiscal year."""

    security_id: int
    fiscal_year: str = Field(..., min_length=1)
    bonus_share: float = 0.0
    cash_dividend: float = 0.0
    total_dividend: float = 0.0
    book_close_date: str = ""

    @field_validator("fiscal_year", "book_close_date", mode="before")
    @classmethod
    def parse_text(cls, value: Any) -> str:
        return clean_text(value)

    @field_validator("bonus_share", "cash_dividend", "total_dividend", mode="before")
    @classmethod
    def parse_numeric(cls, value: Any) -> float:
        return parse_number(value)

    @model_validator(mode="after")
    def fill_total(self) -> "DividendRecord":
        if not self.total_dividend:
            self.total_dividend = self.bonus_share + self.cash_dividend
        return self


class FinancialRecord(BaseModel):
    """Quarterly financial report figures."""

    security_id: int
    fiscal_year: str = Field(..., min_length=1)
    quarter: str = ""
    paid_up_capital: float = 0.0
    net_profit: float = 0.0
    earnings_per_share: float = 0.0
    net_worth_per_share: float = 0.0
    price_earnings_ratio: float = 0.0

    @field_validator("fiscal_year", "quarter", mode="before")
    @classmethod
    def parse_text(cls, value: Any) -> str:
        return clean_text(value)

    @field_validator(
        "paid_up_capital", "net_profit", "earnings_per_share",
        "net_worth_per_share", "price_earnings_ratio",
        mode="before",
    )
    @classmethod
    def parse_numeric(cls, value: Any) -> float:
        return parse_number(value)


class HistoryRecord(BaseModel):
    """One business day of one index."""

    business_date: date
    index_id: int | None = None
    index_name: str = ""
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    close: float = 0.0
    change: float = 0.0
    percent_change: float = 0.0
    fifty_two_week_high: float = 0.0
    fifty_two_week_low: float = 0.0
    turnover: float = 0.0
    traded_shares: float = 0.0
    total_transactions: int = 0

    @field_validator("business_date", mode="before")
    @classmethod
    def parse_business_date(cls, value: Any) -> Any:
        return _coerce_date(value)

    @field_validator(
        "open", "high", "low", "close", "change", "percent_change",
        "fifty_two_week_high", "fifty_two_week_low", "turnover", "traded_shares",
        mode="before",
    )
    @classmethod
    def parse_numeric(cls, value: Any) -> float:
        return parse_number(value)

    @field_validator("total_transactions", mode="before")
    @classmethod
    def parse_transactions(cls, value: Any) -> int:
        return parse_int(value)

    @field_validator("index_id", mode="before")
    @classmethod
    def parse_index_id(cls, value: Any) -> int | None:
        return parse_int(value) or None


class QualityMonitor:
    """Tracks how many scraped rows were usable and rejects a bad batch.

    Used by the HTML table strategy: when the failure ratio of one table
    exceeds ``table_failure_threshold`` the markup has most likely shifted,
    and a LayoutShiftError makes the pipeline move on instead of persisting
    garbage.

    Example:
        monitor = QualityMonitor()
        monitor.start_batch(page.url)
        for row in rows:
            monitor.record(row_is_usable)
        monitor.evaluate_batch()
    """

    def __init__(self, config: GlobalConfig | None = None) -> None:
        self.config = config or get_config()
        self._attempts = 0
        self._successes = 0
        self._url = ""

    def start_batch(self, url: str) -> None:
        self._attempts = 0
        self._successes = 0
        self._url = url

    def record(self, succeeded: bool) -> None:
        self._attempts += 1
        if succeeded:
            self._successes += 1

    @property
    def failure_ratio(self) -> float:
        if self._attempts == 0:
            return 0.0
        return 1.0 - (self._successes / self._attempts)

    def evaluate_batch(self) -> None:
        """Raise LayoutShiftError if the batch failure ratio exceeds the threshold."""
        threshold = self.config.table_failure_threshold
        ratio = self.failure_ratio

        log.debug(
            "Table quality evaluated",
            url=self._url,
            rows=self._attempts,
            usable=self._successes,
            failure_ratio=f"{ratio:.1%}",
        )

        # epsilon keeps a ratio exactly at the threshold acceptable
        if self._attempts and ratio > threshold + 1e-9:
            log.warning(
                "Table rows failed quality threshold",
                failure_ratio=f"{ratio:.1%}",
                threshold=f"{threshold:.1%}",
                url=self._url,
            )
            raise LayoutShiftError(
                failure_ratio=ratio,
                threshold=threshold,
                batch_size=self._attempts,
                url=self._url,
            )
