"""Tests for the browser session lifecycle.

All Playwright calls are mocked; these tests check state transitions,
launch coalescing and profile directory cleanup.
"""

import asyncio
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from pytest_mock import MockerFixture

from config.settings import GlobalConfig
from nepsewatch.browser import BrowserSession, SessionState, navigate
from nepsewatch.exceptions import LaunchError, NavigationTimeoutError, SessionUnavailableError
from tests.conftest import create_playwright_mock


@pytest.fixture
def playwright_mocks(mocker: MockerFixture) -> tuple[MagicMock, MagicMock, MagicMock, MagicMock]:
    mocks = create_playwright_mock(mocker)
    mocker.patch("nepsewatch.browser.async_playwright", return_value=mocks[0])
    return mocks


class TestSessionLaunch:
    """UNINITIALIZED -> LAUNCHING -> READY and the failure path."""

    @pytest.mark.asyncio
    async def test_init_launches_persistent_context(
        self, mock_config: GlobalConfig, playwright_mocks: tuple[MagicMock, ...]
    ) -> None:
        _, pw_mock, context_mock, _ = playwright_mocks
        session = BrowserSession(mock_config)

        await session.init()

        assert session.state is SessionState.READY
        assert session.profile_dir is not None and session.profile_dir.exists()
        launch = pw_mock.chromium.launch_persistent_context
        launch.assert_awaited_once()
        assert launch.call_args.args[0] == str(session.profile_dir)
        assert launch.call_args.kwargs["headless"] is True
        context_mock.route.assert_awaited_once()
        assert context_mock.on.call_args.args[0] == "close"

        await session.close()

    @pytest.mark.asyncio
    async def test_concurrent_init_launches_once(
        self, mock_config: GlobalConfig, playwright_mocks: tuple[MagicMock, ...]
    ) -> None:
        _, pw_mock, _, _ = playwright_mocks
        session = BrowserSession(mock_config)

        await asyncio.gather(*(session.init() for _ in range(5)))

        pw_mock.chromium.launch_persistent_context.assert_awaited_once()
        assert session.is_ready

        await session.init()
        pw_mock.chromium.launch_persistent_context.assert_awaited_once()
        await session.close()

    @pytest.mark.asyncio
    async def test_launch_failure_leaves_uninitialized(
        self,
        mock_config: GlobalConfig,
        playwright_mocks: tuple[MagicMock, ...],
        mocker: MockerFixture,
        tmp_path: Path,
    ) -> None:
        _, pw_mock, _, _ = playwright_mocks
        pw_mock.chromium.launch_persistent_context.side_effect = PlaywrightError("Executable doesn't exist")
        profile = tmp_path / "nepsewatch-profile"
        profile.mkdir()
        mocker.patch("nepsewatch.browser.tempfile.mkdtemp", return_value=str(profile))
        session = BrowserSession(mock_config)

        with pytest.raises(LaunchError):
            await session.init()

        assert session.state is SessionState.UNINITIALIZED
        assert not profile.exists()
        pw_mock.stop.assert_awaited_once()

        pw_mock.chromium.launch_persistent_context.side_effect = None
        await session.init()
        assert session.state is SessionState.READY
        await session.close()


class TestSessionDisconnect:
    @pytest.mark.asyncio
    async def test_close_event_marks_disconnected_and_removes_profile(
        self, mock_config: GlobalConfig, playwright_mocks: tuple[MagicMock, ...]
    ) -> None:
        _, pw_mock, context_mock, _ = playwright_mocks
        session = BrowserSession(mock_config)
        await session.init()
        profile = session.profile_dir

        on_close = context_mock.on.call_args.args[1]
        on_close(context_mock)

        assert session.state is SessionState.DISCONNECTED
        assert not profile.exists()
        with pytest.raises(SessionUnavailableError):
            await session.new_page()

        await session.init()
        assert session.state is SessionState.READY
        assert pw_mock.chromium.launch_persistent_context.await_count == 2
        await session.close()

    @pytest.mark.asyncio
    async def test_close_tears_down(
        self, mock_config: GlobalConfig, playwright_mocks: tuple[MagicMock, ...]
    ) -> None:
        _, pw_mock, context_mock, _ = playwright_mocks

        async with BrowserSession.create(mock_config) as session:
            profile = session.profile_dir

        context_mock.close.assert_awaited_once()
        pw_mock.stop.assert_awaited_once()
        assert session.state is SessionState.UNINITIALIZED
        assert not profile.exists()

    @pytest.mark.asyncio
    async def test_reset_forces_relaunch(
        self, mock_config: GlobalConfig, playwright_mocks: tuple[MagicMock, ...]
    ) -> None:
        _, pw_mock, _, _ = playwright_mocks
        session = BrowserSession(mock_config)
        await session.init()

        await session.reset()
        await session.init()

        assert pw_mock.chromium.launch_persistent_context.await_count == 2
        await session.close()


class TestPages:
    @pytest.mark.asyncio
    async def test_new_page_requires_ready(self, mock_config: GlobalConfig) -> None:
        with pytest.raises(SessionUnavailableError):
            await BrowserSession(mock_config).new_page()

    @pytest.mark.asyncio
    async def test_new_page_applies_timeouts(
        self, mock_config: GlobalConfig, playwright_mocks: tuple[MagicMock, ...]
    ) -> None:
        _, _, _, page_mock = playwright_mocks

        async with BrowserSession.create(mock_config) as session:
            page = await session.new_page()

        assert page is page_mock
        page_mock.set_default_timeout.assert_called_once_with(mock_config.request_timeout_ms)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("resource_type,aborted", [("image", True), ("font", True), ("xhr", False)])
    async def test_resource_routing(
        self,
        mock_config: GlobalConfig,
        mocker: MockerFixture,
        resource_type: str,
        aborted: bool,
    ) -> None:
        route = mocker.MagicMock()
        route.request.resource_type = resource_type
        route.abort = mocker.AsyncMock()
        route.continue_ = mocker.AsyncMock()

        await BrowserSession(mock_config)._route_request(route)

        assert route.abort.await_count == int(aborted)
        assert route.continue_.await_count == int(not aborted)


class TestNavigate:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "outcome",
        [PlaywrightTimeoutError("Timeout 30000ms exceeded"), PlaywrightError("net::ERR_NAME_NOT_RESOLVED")],
    )
    async def test_errors_become_navigation_timeouts(self, mocker: MockerFixture, outcome: Exception) -> None:
        page = mocker.MagicMock()
        page.goto = mocker.AsyncMock(side_effect=outcome)

        with pytest.raises(NavigationTimeoutError):
            await navigate(page, "https://test.example.com/")

    @pytest.mark.asyncio
    async def test_http_error_status(self, mocker: MockerFixture) -> None:
        page = mocker.MagicMock()
        page.goto = mocker.AsyncMock(return_value=mocker.MagicMock(status=503))

        with pytest.raises(NavigationTimeoutError) as exc_info:
            await navigate(page, "https://test.example.com/")

        assert exc_info.value.status_code == 503
