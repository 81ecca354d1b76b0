"""Pytest configuration and shared fixtures for the NepseWatch test suite.

Guarantees:
- No external network requests (Playwright fully mocked)
- Deterministic time (clocks are injected, never read from the host)
- Isolated state (config singleton cleared, files under tmp_path)
"""

from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytz
from pytest_mock import MockerFixture

from config.settings import GlobalConfig

KATHMANDU = pytz.timezone("Asia/Kathmandu")


@pytest.fixture
def mock_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> GlobalConfig:
    """Provide isolated GlobalConfig with safe test defaults.

    Overrides the lru_cache singleton to prevent state leakage between tests.
    Uses tmp_path for all file operations to avoid polluting the filesystem.
    """
    from config.settings import get_config

    get_config.cache_clear()

    log_dir = tmp_path / "logs"
    output_dir = tmp_path / "output"
    state_dir = tmp_path / "state"
    log_dir.mkdir()
    output_dir.mkdir()

    test_env = {
        "APP_NAME": "NepseWatch-Test",
        "ENVIRONMENT": "test",
        "DEBUG": "false",
        "HEADLESS": "true",
        "LOG_LEVEL": "DEBUG",
        "LOG_DIR": str(log_dir),
        "LOG_ROTATION": "1 day",
        "LOG_RETENTION": "1 day",
        "BASE_URL": "https://test.example.com/",
        "REQUEST_TIMEOUT_MS": "5000",
        "RESPONSE_WAIT_MS": "1000",
        "RETRY_MAX_ATTEMPTS": "2",
        "RETRY_BASE_DELAY_SEC": "0.0",
        "RETRY_MAX_DELAY_SEC": "0.0",
        "WATCHDOG_TIMEOUT_SEC": "600",
        "TABLE_FAILURE_THRESHOLD": "0.30",
        "STATE_DIR": str(state_dir),
        "OUTPUT_DIR": str(output_dir),
    }

    for key, value in test_env.items():
        monkeypatch.setenv(key, value)

    config = get_config()

    yield config

    get_config.cache_clear()


@pytest.fixture
def kathmandu_clock() -> Callable[..., Callable[[], datetime]]:
    """Factory for fixed exchange-local clocks.

    Example:
        def test_window(kathmandu_clock):
            clock = kathmandu_clock(2026, 1, 4, 11, 30)   # Sunday 11:30 NPT
    """

    def _make(*parts: int) -> Callable[[], datetime]:
        moment = KATHMANDU.localize(datetime(*parts))
        return lambda: moment

    return _make


class MutableClock:
    """Clock whose current time a test can move forward."""

    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


@pytest.fixture
def mutable_clock() -> Callable[..., MutableClock]:
    def _make(*parts: int) -> MutableClock:
        return MutableClock(KATHMANDU.localize(datetime(*parts)))

    return _make


def create_playwright_mock(mocker: MockerFixture) -> tuple[MagicMock, MagicMock, MagicMock, MagicMock]:
    """Create the mock chain for ``async_playwright().start()`` plus a persistent context.

    Returns:
        Tuple of (async_playwright_instance, playwright_mock, context_mock, page_mock)
    """
    page_mock = MagicMock()
    page_mock.close = AsyncMock()
    page_mock.set_default_timeout = MagicMock()
    page_mock.set_default_navigation_timeout = MagicMock()

    context_mock = MagicMock()
    context_mock.new_page = AsyncMock(return_value=page_mock)
    context_mock.close = AsyncMock()
    context_mock.route = AsyncMock()
    context_mock.on = MagicMock()

    playwright_mock = MagicMock()
    playwright_mock.chromium.launch_persistent_context = AsyncMock(return_value=context_mock)
    playwright_mock.stop = AsyncMock()

    async_playwright_instance = MagicMock()
    async_playwright_instance.start = AsyncMock(return_value=playwright_mock)

    return async_playwright_instance, playwright_mock, context_mock, page_mock


@pytest.fixture
def fake_session(mocker: MockerFixture) -> MagicMock:
    """BrowserSession stand-in whose pages are plain mocks."""
    session = mocker.MagicMock()
    session.init = mocker.AsyncMock()
    session.reset = mocker.AsyncMock()
    session.close = mocker.AsyncMock()

    def _new_page() -> MagicMock:
        page = mocker.MagicMock()
        page.close = mocker.AsyncMock()
        return page

    session.new_page = mocker.AsyncMock(side_effect=lambda: _new_page())
    return session


@pytest.fixture
def price_table_html() -> Callable[[list[list[str]]], str]:
    """Factory producing a today's-price style table.

    Columns: S.N., Symbol, LTP, Open, High, Low, Prev. Close, Qty.
    """

    def _generate(rows: list[list[str]]) -> str:
        body = []
        for row in rows:
            symbol = row[0]
            cells = [f'<td><a href="/company/detail/{row[-1]}">{symbol}</a></td>'] if symbol else ["<td></td>"]
            cells += [f"<td>{value}</td>" for value in row[1:-1]]
            body.append(f"<tr><td>{len(body) + 1}</td>{''.join(cells)}</tr>")

        return f"""
        <html><body>
        <table class="small"><tr><th>Notice</th></tr><tr><td>x</td></tr></table>
        <table class="table">
            <thead><tr>
                <th>S.N.</th><th>Symbol</th><th>LTP</th><th>Open</th>
                <th>High</th><th>Low</th><th>Prev. Close</th><th>Qty</th>
            </tr></thead>
            <tbody>{"".join(body)}</tbody>
        </table>
        </body></html>
        """

    return _generate


def pytest_configure(config: Any) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests requiring full stack",
    )
