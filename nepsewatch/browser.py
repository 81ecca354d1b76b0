"""Playwright browser session with an explicit lifecycle state machine.

One BrowserSession owns one Chromium process, launched as a persistent
context bound to a uniquely named temporary profile directory. States:

    UNINITIALIZED --init()--> LAUNCHING --ok--> READY
    LAUNCHING --LaunchError--> UNINITIALIZED
    READY --browser closed/crashed--> DISCONNECTED
    any --close()/reset()--> UNINITIALIZED

Entering DISCONNECTED or calling close() always removes the profile
directory. Concurrent ``init()`` calls while LAUNCHING await the same
launch task, so a burst of jobs never starts two browsers.

Pages are never reused: every scrape attempt asks for a fresh page and
closes it when done.
"""

import asyncio
import shutil
import tempfile
from contextlib import asynccontextmanager
from enum import StrEnum
from pathlib import Path
from typing import AsyncGenerator, Self

from playwright.async_api import (
    BrowserContext,
    Page,
    Playwright,
    Route,
    async_playwright,
)
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from config.settings import GlobalConfig, get_config
from nepsewatch.exceptions import LaunchError, NavigationTimeoutError, SessionUnavailableError
from nepsewatch.logger import get_logger

log = get_logger(__name__)

PROFILE_PREFIX = "nepsewatch-"

_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-blink-features=AutomationControlled",
    "--ignore-certificate-errors",
]


class SessionState(StrEnum):
    UNINITIALIZED = "UNINITIALIZED"
    LAUNCHING = "LAUNCHING"
    READY = "READY"
    DISCONNECTED = "DISCONNECTED"


class BrowserSession:
    """Shared headless browser used by every scrape operation.

    Attributes:
        config: GlobalConfig instance for runtime configuration.
        state: Current SessionState.
        profile_dir: Temporary profile directory while a browser is alive.

    Example:
        async with BrowserSession.create() as session:
            page = await session.new_page()
            ...
    """

    def __init__(self, config: GlobalConfig | None = None) -> None:
        self.config = config or get_config()
        self.state = SessionState.UNINITIALIZED
        self.profile_dir: Path | None = None
        self._playwright: Playwright | None = None
        self._context: BrowserContext | None = None
        self._launch_task: asyncio.Task[None] | None = None

    @classmethod
    @asynccontextmanager
    async def create(cls, config: GlobalConfig | None = None) -> AsyncGenerator[Self, None]:
        """Yield an initialized session and close it on exit.

        Raises:
            LaunchError: If the browser fails to start.
        """
        instance = cls(config)
        try:
            await instance.init()
            yield instance
        finally:
            await instance.close()

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY and self._context is not None

    async def init(self) -> None:
        """Ensure a connected browser exists.

        Reuses a READY browser. While another caller is LAUNCHING, waits on
        that same launch instead of starting a second process.

        Raises:
            LaunchError: If the launch fails. The session is left
                UNINITIALIZED so a later call may retry.
        """
        if self.is_ready:
            return

        if self.state is SessionState.DISCONNECTED:
            await self._teardown()

        if self._launch_task is None:
            self.state = SessionState.LAUNCHING
            self._launch_task = asyncio.create_task(self._launch())

        task = self._launch_task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._launch_task is task:
                self._launch_task = None

    async def _launch(self) -> None:
        profile_dir = Path(tempfile.mkdtemp(prefix=PROFILE_PREFIX))
        log.info("Launching browser", profile_dir=str(profile_dir), headless=self.config.headless)

        try:
            self._playwright = await async_playwright().start()
            context = await self._playwright.chromium.launch_persistent_context(
                str(profile_dir),
                headless=self.config.headless,
                args=_LAUNCH_ARGS,
                user_agent=self.config.user_agent,
                ignore_https_errors=True,
                viewport={"width": 1366, "height": 768},
            )
            await context.route("**/*", self._route_request)
            context.on("close", self._on_disconnect)
        except Exception as exc:
            log.error("Browser launch failed", error=str(exc))
            await self._stop_playwright()
            _remove_dir(profile_dir)
            self.state = SessionState.UNINITIALIZED
            raise LaunchError(reason=str(exc)) from exc

        self._context = context
        self.profile_dir = profile_dir
        self.state = SessionState.READY
        log.info("Browser ready", profile_dir=str(profile_dir))

    async def _route_request(self, route: Route) -> None:
        if route.request.resource_type in self.config.blocked_resource_types:
            await route.abort()
        else:
            await route.continue_()

    def _on_disconnect(self, *_: object) -> None:
        """READY -> DISCONNECTED transition, fired by the context close event."""
        if self.state is not SessionState.READY:
            return
        log.warning("Browser disconnected", profile_dir=str(self.profile_dir))
        self.state = SessionState.DISCONNECTED
        self._context = None
        _remove_dir(self.profile_dir)
        self.profile_dir = None

    async def new_page(self) -> Page:
        """Open a fresh page with the configured timeouts.

        Raises:
            SessionUnavailableError: If the session is not READY.
        """
        if not self.is_ready:
            raise SessionUnavailableError(state=self.state.value)

        page = await self._context.new_page()
        page.set_default_timeout(self.config.request_timeout_ms)
        page.set_default_navigation_timeout(self.config.request_timeout_ms)
        return page

    async def close(self) -> None:
        """Terminate the browser and remove the profile directory."""
        if self._launch_task is not None and not self._launch_task.done():
            try:
                await self._launch_task
            except LaunchError as exc:
                log.debug("Pending launch failed during close", error=str(exc))
        self._launch_task = None
        await self._teardown()
        log.info("Browser session closed")

    async def reset(self) -> None:
        """Force a full teardown so the next ``init()`` launches a new browser."""
        log.warning("Resetting browser session", state=self.state.value)
        await self.close()

    async def _teardown(self) -> None:
        context, self._context = self._context, None
        # close event fires during context.close(); keep it from re-entering
        self.state = SessionState.UNINITIALIZED
        try:
            if context is not None:
                try:
                    await context.close()
                except Exception as exc:
                    log.warning("Error closing browser context", error=str(exc))
            await self._stop_playwright()
        finally:
            _remove_dir(self.profile_dir)
            self.profile_dir = None

    async def _stop_playwright(self) -> None:
        if self._playwright is None:
            return
        try:
            await self._playwright.stop()
        except Exception as exc:
            log.warning("Error stopping playwright", error=str(exc))
        self._playwright = None


def _remove_dir(path: Path | None) -> None:
    if path is None:
        return
    shutil.rmtree(path, ignore_errors=True)


async def navigate(page: Page, url: str, wait_until: str = "domcontentloaded") -> None:
    """Navigate ``page`` to ``url``.

    Args:
        page: Playwright Page instance.
        url: Absolute target URL.
        wait_until: Navigation wait condition.

    Raises:
        NavigationTimeoutError: If navigation fails, times out or returns HTTP >= 400.
    """
    log.debug("Navigating to URL", url=url, wait_until=wait_until)

    try:
        response = await page.goto(url, wait_until=wait_until)
    except PlaywrightTimeoutError as exc:
        raise NavigationTimeoutError(url=url, reason="Navigation timeout") from exc
    except PlaywrightError as exc:
        raise NavigationTimeoutError(url=url, reason=str(exc)) from exc

    if response is not None and response.status >= 400:
        raise NavigationTimeoutError(
            url=url,
            reason=f"HTTP {response.status}",
            status_code=response.status,
        )

    log.debug("Navigation successful", url=url)
