"""Global configuration management using pydantic-settings.

Values are loaded from environment variables (and an optional ``.env`` file)
with strict type validation. ``get_config()`` caches a single instance so
every component sees the same settings.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GlobalConfig(BaseSettings):
    """Centralized configuration with environment variable binding.

    Attributes:
        app_name: Application identifier for logging.
        environment: Deployment environment.
        debug: Enable verbose debugging output (loguru backtrace/diagnose).
        headless: Run Chromium without a visible window.
        log_level: Minimum log level for output filtering.
        log_dir: Directory path for structured JSON log files.
        log_rotation: Log file rotation interval.
        log_retention: Log file retention period.
        base_url: Exchange website root, without trailing slash.
        exchange_timezone: IANA timezone of the exchange (drives "today").
        market_open_hour / market_open_minute: Start of continuous session.
        market_close_hour / market_close_minute: End of continuous session.
        trading_weekdays: ISO weekdays (Mon=1 .. Sun=7) the exchange trades.
        request_timeout_ms: Default Playwright navigation/selector timeout.
        response_wait_ms: How long to wait for intercepted backend responses.
        retry_max_attempts: Attempts per scrape operation.
        retry_base_delay_sec: Base delay for exponential backoff.
        retry_max_delay_sec: Ceiling for backoff delay.
        watchdog_timeout_sec: Time budget for one job run before force release.
        index_interval_sec: Cadence of the index job during trading hours.
        price_interval_sec: Cadence of the price job during trading hours.
        page_size: Largest page size requested from paginated listings.
        table_failure_threshold: Max ratio of unusable HTML rows before the
            table strategy is rejected.
        blocked_resource_types: Request types aborted for throughput.
        user_agent: User-agent presented by the browser.
        state_dir: Directory for scheduler stats and sink files.
        output_dir: Directory for generated reports.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application Metadata
    app_name: str = Field(default="NepseWatch", description="Application identifier")
    environment: Literal["development", "staging", "production", "test"] = Field(
        default="development", description="Deployment environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Browser Configuration
    headless: bool = Field(default=True, description="Run browser in headless mode")
    user_agent: str = Field(
        default=(
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        description="Browser user-agent",
    )
    blocked_resource_types: list[str] = Field(
        default=["image", "stylesheet", "font", "media"],
        description="Resource types aborted by the request router",
    )

    # Logging Configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Minimum log level"
    )
    log_dir: Path = Field(default=Path("logs"), description="Log output directory")
    log_rotation: str = Field(default="1 day", description="Log rotation interval")
    log_retention: str = Field(default="2 weeks", description="Log retention period")

    # Target Configuration
    base_url: str = Field(
        default="https://www.nepalstock.com",
        description="Exchange website root",
    )

    # Exchange Calendar
    exchange_timezone: str = Field(
        default="Asia/Kathmandu", description="Exchange-local timezone"
    )
    market_open_hour: int = Field(default=11, ge=0, le=23)
    market_open_minute: int = Field(default=0, ge=0, le=59)
    market_close_hour: int = Field(default=15, ge=0, le=23)
    market_close_minute: int = Field(default=0, ge=0, le=59)
    trading_weekdays: list[int] = Field(
        default=[7, 1, 2, 3, 4], description="ISO weekdays, Sunday-Thursday"
    )

    # Resilience Parameters
    request_timeout_ms: int = Field(
        default=60000, ge=5000, le=180000, description="Request timeout in milliseconds"
    )
    response_wait_ms: int = Field(
        default=15000, ge=1000, le=120000, description="Intercepted response wait"
    )
    retry_max_attempts: int = Field(
        default=3, ge=1, le=10, description="Maximum retry attempts"
    )
    retry_base_delay_sec: float = Field(
        default=1.0, ge=0.0, le=30.0, description="Base delay for exponential backoff"
    )
    retry_max_delay_sec: float = Field(
        default=10.0, ge=0.0, le=300.0, description="Maximum backoff delay"
    )

    # Scheduler
    watchdog_timeout_sec: float = Field(
        default=600.0, gt=0.0, le=7200.0, description="Per-run watchdog budget"
    )
    index_interval_sec: int = Field(default=20, ge=5, le=3600)
    price_interval_sec: int = Field(default=30, ge=5, le=3600)

    # Extraction
    page_size: int = Field(default=500, ge=10, le=5000, description="Listing page size")
    table_failure_threshold: float = Field(
        default=0.30, ge=0.0, le=1.0, description="Unusable row ratio (0.30 = 30%)"
    )

    # Output Configuration
    state_dir: Path = Field(default=Path("state"), description="Stats and sink files")
    output_dir: Path = Field(default=Path("output"), description="Report output directory")

    @field_validator("log_dir", "output_dir", "state_dir", mode="before")
    @classmethod
    def ensure_path(cls, value: str | Path) -> Path:
        """Convert string paths to Path objects."""
        return Path(value) if isinstance(value, str) else value

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        """Keep base_url slash-free so endpoint paths can be appended."""
        return value.rstrip("/")

    @field_validator("trading_weekdays")
    @classmethod
    def validate_weekdays(cls, value: list[int]) -> list[int]:
        """Reject weekday numbers outside the ISO 1-7 range."""
        invalid = [day for day in value if day < 1 or day > 7]
        if invalid:
            raise ValueError(f"Invalid ISO weekdays: {invalid}")
        return value

    @model_validator(mode="after")
    def validate_session_window(self) -> "GlobalConfig":
        """The trading session must close after it opens."""
        opens = self.market_open_hour * 60 + self.market_open_minute
        closes = self.market_close_hour * 60 + self.market_close_minute
        if closes <= opens:
            raise ValueError("market close must be later than market open")
        if self.retry_max_delay_sec < self.retry_base_delay_sec:
            raise ValueError("retry_max_delay_sec must be >= retry_base_delay_sec")
        return self

    def url(self, path: str) -> str:
        """Join an absolute site path onto base_url."""
        return f"{self.base_url}/{path.lstrip('/')}"


@lru_cache(maxsize=1)
def get_config() -> GlobalConfig:
    """Retrieve the singleton GlobalConfig instance.

    Returns:
        GlobalConfig: The validated configuration instance.
    """
    return GlobalConfig()
