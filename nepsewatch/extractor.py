"""Extraction strategies and the ordered pipeline that runs them.

Each data domain declares an ordered list of ExtractionStrategy objects.
The pipeline is a plain loop: try each strategy on the page, return the
first success, and raise StrategyExhaustedError only when all of them
failed. The fallback order is fixed per domain and independently testable.

Strategies hand back raw payloads; an optional ``canonicalize`` callable
maps them to canonical records inside the same guarded block, so a payload
that cannot be canonicalized counts as that strategy's failure.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from typing import Any, Generic, TypeVar

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Response
from pydantic import BaseModel, ConfigDict

from nepsewatch.exceptions import NepseWatchError, ParseError, StrategyExhaustedError
from nepsewatch.logger import get_logger

log = get_logger(__name__)

T = TypeVar("T")

# Everything a strategy may legitimately fail with. Malformed payloads
# surface as KeyError/TypeError/ValueError (pydantic ValidationError included).
STRATEGY_ERRORS: tuple[type[BaseException], ...] = (
    NepseWatchError,
    PlaywrightError,
    TimeoutError,
    KeyError,
    TypeError,
    ValueError,
)


class PipelineResult(BaseModel, Generic[T]):
    """Outcome of one successful pipeline run.

    Attributes:
        value: Output of the winning strategy, after canonicalization.
        strategy: Name of the strategy that succeeded.
        attempted: Names of every strategy tried, in order, winner included.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    value: T
    strategy: str
    attempted: list[str]


class ExtractionStrategy(ABC, Generic[T]):
    """One way of getting a domain's data out of a page."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Identifier used in logs and in StrategyExhaustedError.failures."""
        ...

    @abstractmethod
    async def attempt(self, page: Page) -> T:
        """Extract from ``page`` or raise one of STRATEGY_ERRORS."""
        ...


class ExtractionPipeline(Generic[T]):
    """Ordered strategy chain for one data domain.

    Example:
        pipeline = ExtractionPipeline(
            "prices",
            [ApiCaptureStrategy(), ExportCaptureStrategy(), HtmlTableStrategy()],
            canonicalize=canonicalize_prices,
        )
        result = await pipeline.run(page)
    """

    def __init__(
        self,
        domain: str,
        strategies: Sequence[ExtractionStrategy[Any]],
        canonicalize: Callable[[Any], T] | None = None,
    ) -> None:
        if not strategies:
            raise ValueError(f"Pipeline '{domain}' needs at least one strategy")
        self.domain = domain
        self.strategies = list(strategies)
        self.canonicalize = canonicalize

    async def run(self, page: Page) -> PipelineResult[T]:
        """Try each strategy in order and return the first success.

        Raises:
            StrategyExhaustedError: If every strategy failed.
        """
        failures: dict[str, str] = {}
        attempted: list[str] = []

        for strategy in self.strategies:
            attempted.append(strategy.name)
            try:
                raw = await strategy.attempt(page)
                value = self.canonicalize(raw) if self.canonicalize else raw
            except STRATEGY_ERRORS as exc:
                failures[strategy.name] = f"{type(exc).__name__}: {exc}"
                log.warning(
                    "Strategy failed",
                    domain=self.domain,
                    strategy=strategy.name,
                    error=str(exc),
                )
                continue

            log.info(
                "Strategy succeeded",
                domain=self.domain,
                strategy=strategy.name,
                attempted=len(attempted),
            )
            return PipelineResult(value=value, strategy=strategy.name, attempted=attempted)

        raise StrategyExhaustedError(domain=self.domain, failures=failures)


class ResponseCollector:
    """Passively records JSON bodies of page responses that match a predicate.

    Attach before triggering navigation or a click, then ``wait()`` for the
    first matching body. The listener is removed on exit so nothing leaks
    into the next attempt.

    Example:
        async with ResponseCollector(page, lambda url: "/api/" in url) as collector:
            await page.click("button.box__filter--search")
            await collector.wait(15000)
        payloads = collector.payloads
    """

    def __init__(
        self,
        page: Page,
        predicate: Callable[[str], bool],
        accepted_statuses: tuple[int, ...] = (200,),
    ) -> None:
        self.page = page
        self.predicate = predicate
        self.accepted_statuses = accepted_statuses
        self.payloads: list[tuple[str, Any]] = []
        self._arrived = asyncio.Event()
        self._closed = False

    async def __aenter__(self) -> "ResponseCollector":
        self.page.on("response", self._on_response)
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self._closed = True
        self.page.remove_listener("response", self._on_response)

    async def _on_response(self, response: Response) -> None:
        url = response.url
        if not self.predicate(url) or response.status not in self.accepted_statuses:
            return
        try:
            body = await response.json()
        except (PlaywrightError, ValueError) as exc:
            log.debug("Ignoring non-JSON response", url=url, error=str(exc))
            return
        self.add(url, body)

    def add(self, url: str, body: Any) -> None:
        # Handlers still awaiting a body when the listener was removed
        if self._closed:
            log.debug("Ignoring response after collector closed", url=url)
            return
        self.payloads.append((url, body))
        self._arrived.set()

    async def wait(self, timeout_ms: int, settle_ms: int = 0) -> bool:
        """Wait until one payload arrived, then linger ``settle_ms`` for more.

        Returns:
            True if at least one payload was captured.
        """
        if not self._arrived.is_set():
            try:
                await asyncio.wait_for(self._arrived.wait(), timeout=timeout_ms / 1000)
            except TimeoutError:
                return False
        if settle_ms:
            await asyncio.sleep(settle_ms / 1000)
        return True


def largest_content(payloads: Sequence[tuple[str, Any]]) -> list[Any]:
    """Pick the biggest ``content`` collection among captured paged payloads.

    The listing endpoints answer ``{"content": [...]}``; some variants send
    ``content`` as an object keyed by id, in which case its values are used.

    Raises:
        ParseError: If no payload carried a non-empty ``content``.
    """
    best: list[Any] = []
    for _, body in payloads:
        content = body.get("content") if isinstance(body, dict) else None
        if isinstance(content, dict):
            content = list(content.values())
        if isinstance(content, list) and len(content) > len(best):
            best = content
    if not best:
        raise ParseError(source="intercepted responses", reason="no non-empty content payload")
    return best


async def wait_for_content(page: Page, selector: str, timeout_ms: int) -> bool:
    """Wait for ``selector``; False instead of raising on timeout."""
    try:
        await page.wait_for_selector(selector, timeout=timeout_ms)
        return True
    except PlaywrightError:
        log.debug("Selector not found", selector=selector, timeout_ms=timeout_ms)
        return False
