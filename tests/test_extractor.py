"""Tests for the ordered strategy pipeline and response interception helpers."""

import asyncio
from typing import Any
from unittest.mock import MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError
from pytest_mock import MockerFixture

from nepsewatch.exceptions import ParseError, SelectorTimeoutError, StrategyExhaustedError
from nepsewatch.extractor import (
    ExtractionPipeline,
    ExtractionStrategy,
    ResponseCollector,
    largest_content,
    wait_for_content,
)


class FailingStrategy(ExtractionStrategy[Any]):
    name = "failing"

    def __init__(self, name: str, error: Exception) -> None:
        self.name = name
        self.error = error
        self.calls = 0

    async def attempt(self, page: Any) -> Any:
        self.calls += 1
        raise self.error


class StaticStrategy(ExtractionStrategy[Any]):
    name = "static"

    def __init__(self, name: str, value: Any) -> None:
        self.name = name
        self.value = value
        self.calls = 0

    async def attempt(self, page: Any) -> Any:
        self.calls += 1
        return self.value


class TestExtractionPipeline:
    """Test suite for fallback order and failure reporting."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failing", [0, 1, 2])
    async def test_k_failures_then_success(self, failing: int) -> None:
        """K failing strategies before the winner means K+1 attempts, in order."""
        errors = [
            ParseError(source="api", reason="empty"),
            SelectorTimeoutError(selector=".download-csv", url="u"),
            PlaywrightError("Timeout 15000ms exceeded"),
        ]
        strategies: list[ExtractionStrategy[Any]] = [
            FailingStrategy(f"s{i}", errors[i]) for i in range(failing)
        ]
        winner = StaticStrategy("winner", ["row"])
        later = StaticStrategy("later", ["other"])
        pipeline = ExtractionPipeline("prices", [*strategies, winner, later])

        result = await pipeline.run(MagicMock())

        assert result.value == ["row"]
        assert result.strategy == "winner"
        assert result.attempted == [*(f"s{i}" for i in range(failing)), "winner"]
        assert later.calls == 0

    @pytest.mark.asyncio
    async def test_all_failing_raises_with_every_failure(self) -> None:
        pipeline = ExtractionPipeline(
            "index",
            [
                FailingStrategy("index_api", ParseError(source="api", reason="HTTP 500")),
                FailingStrategy("index_dom", KeyError("index_value")),
            ],
        )

        with pytest.raises(StrategyExhaustedError) as exc_info:
            await pipeline.run(MagicMock())

        assert exc_info.value.domain == "index"
        assert set(exc_info.value.failures) == {"index_api", "index_dom"}
        assert exc_info.value.failures["index_dom"].startswith("KeyError")

    @pytest.mark.asyncio
    async def test_canonicalize_failure_falls_through(self) -> None:
        """A payload that cannot be canonicalized counts as a strategy failure."""

        def canonicalize(rows: list[dict[str, Any]]) -> list[str]:
            if not rows:
                raise ParseError(source="rows", reason="empty")
            return [row["symbol"] for row in rows]

        pipeline = ExtractionPipeline(
            "prices",
            [StaticStrategy("api", []), StaticStrategy("table", [{"symbol": "NABIL"}])],
            canonicalize=canonicalize,
        )

        result = await pipeline.run(MagicMock())

        assert result.value == ["NABIL"]
        assert result.attempted == ["api", "table"]

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self) -> None:
        pipeline = ExtractionPipeline(
            "prices",
            [FailingStrategy("api", RuntimeError("bug")), StaticStrategy("table", [])],
        )
        with pytest.raises(RuntimeError):
            await pipeline.run(MagicMock())

    def test_empty_strategy_list_rejected(self) -> None:
        with pytest.raises(ValueError):
            ExtractionPipeline("prices", [])


class TestResponseCollector:
    """Passive response interception."""

    def _response(self, mocker: MockerFixture, url: str, status: int, body: Any) -> MagicMock:
        response = mocker.MagicMock()
        response.url = url
        response.status = status
        response.json = mocker.AsyncMock(return_value=body)
        return response

    @pytest.mark.asyncio
    async def test_records_matching_json_and_detaches(self, mocker: MockerFixture) -> None:
        page = mocker.MagicMock()

        async with ResponseCollector(page, lambda url: "/api/" in url) as collector:
            handler = page.on.call_args.args[1]
            await handler(self._response(mocker, "https://x/api/today-price", 200, {"content": [1]}))
            await handler(self._response(mocker, "https://x/static/app.js", 200, {}))
            await handler(self._response(mocker, "https://x/api/today-price", 500, {}))
            assert await collector.wait(100) is True

        assert collector.payloads == [("https://x/api/today-price", {"content": [1]})]
        page.remove_listener.assert_called_once_with("response", handler)

    @pytest.mark.asyncio
    async def test_non_json_body_is_ignored(self, mocker: MockerFixture) -> None:
        page = mocker.MagicMock()
        response = self._response(mocker, "https://x/api/a", 200, None)
        response.json = mocker.AsyncMock(side_effect=ValueError("not json"))

        async with ResponseCollector(page, lambda url: True) as collector:
            await page.on.call_args.args[1](response)

        assert collector.payloads == []

    @pytest.mark.asyncio
    async def test_wait_times_out_without_payload(self, mocker: MockerFixture) -> None:
        async with ResponseCollector(mocker.MagicMock(), lambda url: True) as collector:
            assert await collector.wait(10) is False

    @pytest.mark.asyncio
    async def test_wait_returns_when_payload_arrives_later(self, mocker: MockerFixture) -> None:
        async with ResponseCollector(mocker.MagicMock(), lambda url: True) as collector:
            asyncio.get_running_loop().call_later(0.01, collector.add, "u", {"content": []})
            assert await collector.wait(1000) is True

    @pytest.mark.asyncio
    async def test_body_arriving_after_exit_is_dropped(self, mocker: MockerFixture) -> None:
        page = mocker.MagicMock()
        release = asyncio.Event()
        response = self._response(mocker, "https://x/api/security/131", 200, None)

        async def slow_json() -> dict[str, Any]:
            await release.wait()
            return {"id": 131}

        response.json = mocker.AsyncMock(side_effect=slow_json)

        async with ResponseCollector(page, lambda url: True) as collector:
            pending = asyncio.create_task(page.on.call_args.args[1](response))
            await asyncio.sleep(0)

        release.set()
        await pending

        assert collector.payloads == []
        assert await collector.wait(10) is False


class TestInterceptionHelpers:
    def test_largest_content_prefers_biggest_page(self) -> None:
        payloads = [
            ("u1", {"content": [1, 2]}),
            ("u2", {"content": [1, 2, 3, 4]}),
            ("u3", ["not", "paged"]),
        ]
        assert largest_content(payloads) == [1, 2, 3, 4]

    def test_largest_content_accepts_keyed_content(self) -> None:
        assert largest_content([("u", {"content": {"a": 1, "b": 2}})]) == [1, 2]

    def test_largest_content_raises_when_empty(self) -> None:
        with pytest.raises(ParseError):
            largest_content([("u", {"content": []}), ("v", {"other": 1})])

    @pytest.mark.asyncio
    async def test_wait_for_content_returns_false_on_timeout(self, mocker: MockerFixture) -> None:
        page = mocker.MagicMock()
        page.wait_for_selector = mocker.AsyncMock(side_effect=PlaywrightError("Timeout"))
        assert await wait_for_content(page, "table", 100) is False

        page.wait_for_selector = mocker.AsyncMock()
        assert await wait_for_content(page, "table", 100) is True
