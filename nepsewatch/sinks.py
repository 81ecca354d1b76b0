"""Persistence sinks for scraped records.

``PersistenceSink`` is what job bodies write to. Every method is an
idempotent upsert keyed by record identity, because a retried operation may
deliver the same entity twice. ``JsonFileSink`` stores one JSON document per
record type under ``state_dir``.
"""

import asyncio
import json
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel

from config.settings import GlobalConfig, get_config
from nepsewatch.logger import get_logger
from nepsewatch.models import (
    DividendRecord,
    FinancialRecord,
    HistoryRecord,
    Instrument,
    InstrumentProfile,
    MarketSnapshot,
    PriceRecord,
)

log = get_logger(__name__)


class PersistenceSink(Protocol):
    async def save_prices(self, records: Sequence[PriceRecord]) -> int: ...

    async def save_snapshot(self, snapshot: MarketSnapshot) -> None: ...

    async def save_profiles(self, records: Sequence[InstrumentProfile]) -> int: ...

    async def save_dividends(self, records: Sequence[DividendRecord]) -> int: ...

    async def save_financials(self, records: Sequence[FinancialRecord]) -> int: ...

    async def save_history(self, records: Sequence[HistoryRecord]) -> int: ...

    async def list_instruments(self, missing_profiles_only: bool = False) -> list[Instrument]: ...


def price_key(record: PriceRecord) -> str:
    return f"{record.symbol}|{record.business_date.isoformat()}"


def dividend_key(record: DividendRecord) -> str:
    return f"{record.security_id}|{record.fiscal_year}"


def financial_key(record: FinancialRecord) -> str:
    return f"{record.security_id}|{record.fiscal_year}|{record.quarter}"


def history_key(record: HistoryRecord) -> str:
    return f"{record.index_id}|{record.business_date.isoformat()}"


class JsonFileSink:
    """Upserting JSON document store, one file per record type.

    Example:
        sink = JsonFileSink()
        await sink.save_prices(records)
        latest = sink.load("prices")
    """

    def __init__(self, directory: Path | None = None, config: GlobalConfig | None = None) -> None:
        config = config or get_config()
        self.directory = directory or config.state_dir
        self._lock = asyncio.Lock()

    def path(self, name: str) -> Path:
        return self.directory / f"{name}.json"

    def load(self, name: str) -> dict[str, Any]:
        path = self.path(name)
        if not path.exists():
            return {}
        return json.loads(path.read_text(encoding="utf-8"))

    def _write(self, name: str, document: dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path(name)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(document, indent=2, default=str), encoding="utf-8")
        tmp_path.replace(path)

    async def _upsert(
        self,
        name: str,
        records: Sequence[BaseModel],
        key: Callable[[Any], str],
    ) -> int:
        if not records:
            return 0
        async with self._lock:
            document = self.load(name)
            for record in records:
                document[key(record)] = record.model_dump(mode="json")
            self._write(name, document)
        log.debug("Records upserted", kind=name, count=len(records), total=len(document))
        return len(records)

    async def save_prices(self, records: Sequence[PriceRecord]) -> int:
        return await self._upsert("prices", records, price_key)

    async def save_snapshot(self, snapshot: MarketSnapshot) -> None:
        async with self._lock:
            document = self.load("market")
            payload = snapshot.model_dump(mode="json")
            document["latest"] = payload
            document.setdefault("by_date", {})[snapshot.as_of.date().isoformat()] = payload
            self._write("market", document)

    async def save_profiles(self, records: Sequence[InstrumentProfile]) -> int:
        return await self._upsert("profiles", records, lambda r: str(r.security_id))

    async def save_dividends(self, records: Sequence[DividendRecord]) -> int:
        return await self._upsert("dividends", records, dividend_key)

    async def save_financials(self, records: Sequence[FinancialRecord]) -> int:
        return await self._upsert("financials", records, financial_key)

    async def save_history(self, records: Sequence[HistoryRecord]) -> int:
        return await self._upsert("history", records, history_key)

    async def list_instruments(self, missing_profiles_only: bool = False) -> list[Instrument]:
        """Instruments known from stored prices.

        Args:
            missing_profiles_only: Only those without a stored profile
                (the incremental nightly run).
        """
        async with self._lock:
            prices = self.load("prices")
            profiles = self.load("profiles")

        instruments: dict[int, Instrument] = {}
        for row in prices.values():
            security_id = row.get("security_id")
            if not security_id or security_id in instruments:
                continue
            if missing_profiles_only and str(security_id) in profiles:
                continue
            instruments[security_id] = Instrument(security_id=security_id, symbol=row["symbol"])
        return sorted(instruments.values(), key=lambda i: i.symbol)

    def load_prices(self) -> list[PriceRecord]:
        return [PriceRecord.model_validate(row) for row in self.load("prices").values()]
