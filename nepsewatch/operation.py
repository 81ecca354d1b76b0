"""Bounded retry envelope around one extraction pipeline.

Every attempt gets a fresh page from the shared BrowserSession and closes
it afterwards, so response listeners left over from a failed attempt cannot
leak into the next one. Protocol-level failures (target closed, browser
gone, disconnect) force a full session reset before retrying.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from config.settings import GlobalConfig, get_config
from nepsewatch.browser import BrowserSession
from nepsewatch.exceptions import LaunchError, OperationFailedError, StrategyExhaustedError
from nepsewatch.extractor import STRATEGY_ERRORS, ExtractionPipeline, PipelineResult
from nepsewatch.logger import get_logger

log = get_logger(__name__)

T = TypeVar("T")

INSTABILITY_MARKERS = (
    "Target closed",
    "Target page, context or browser has been closed",
    "Browser has been closed",
    "Protocol error",
    "disconnected",
)


def compute_backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay in seconds before retrying after failed attempt number ``attempt``.

    ``min(base_delay * 2 ** (attempt - 1), max_delay)``; attempt is 1-based.
    """
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


def is_unstable(exc: BaseException) -> bool:
    """True when the error means the browser process itself is suspect."""
    if isinstance(exc, LaunchError):
        return True
    texts = [str(exc)]
    if isinstance(exc, StrategyExhaustedError):
        texts.extend(exc.failures.values())
    return any(marker.lower() in text.lower() for text in texts for marker in INSTABILITY_MARKERS)


class ScrapeOperation(Generic[T]):
    """Runs a pipeline with retries and exponential backoff.

    Attributes:
        session: Shared BrowserSession.
        pipeline: The domain's ExtractionPipeline.
        max_attempts: Attempt budget.
        base_delay / max_delay: Backoff parameters in seconds.
        prepare: Optional coroutine run on the fresh page before the
            pipeline, typically navigation.
    """

    def __init__(
        self,
        session: BrowserSession,
        pipeline: ExtractionPipeline[T],
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        prepare: Callable[[Page], Awaitable[None]] | None = None,
        config: GlobalConfig | None = None,
    ) -> None:
        config = config or get_config()
        self.session = session
        self.pipeline = pipeline
        self.max_attempts = max_attempts or config.retry_max_attempts
        self.base_delay = config.retry_base_delay_sec if base_delay is None else base_delay
        self.max_delay = config.retry_max_delay_sec if max_delay is None else max_delay
        self.prepare = prepare

    def compute_backoff(self, attempt: int) -> float:
        return compute_backoff(attempt, self.base_delay, self.max_delay)

    async def run(self) -> PipelineResult[T]:
        """Execute the pipeline until it succeeds or the budget is spent.

        Raises:
            OperationFailedError: After ``max_attempts`` failed attempts.
        """
        last_error: BaseException | None = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._attempt_once()
            except STRATEGY_ERRORS as exc:
                last_error = exc
                log.warning(
                    "Scrape attempt failed",
                    domain=self.pipeline.domain,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(exc),
                )

            if is_unstable(last_error):
                await self.session.reset()

            if attempt < self.max_attempts:
                delay = self.compute_backoff(attempt)
                log.debug("Backing off", domain=self.pipeline.domain, delay_sec=delay)
                await asyncio.sleep(delay)

        raise OperationFailedError(
            operation=self.pipeline.domain,
            attempts=self.max_attempts,
            last_error=str(last_error),
        ) from last_error

    async def _attempt_once(self) -> PipelineResult[T]:
        await self.session.init()
        page = await self.session.new_page()
        try:
            if self.prepare is not None:
                await self.prepare(page)
            return await self.pipeline.run(page)
        finally:
            try:
                await page.close()
            except PlaywrightError as exc:
                log.debug("Page already closed", error=str(exc))
