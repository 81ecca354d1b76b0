"""Durable storage for scheduler stats.

``StatusStore`` is the narrow contract the scheduler needs; the real
deployment backs it with its database. ``JsonStatusStore`` keeps one JSON
document on disk, which is enough for a single process and for tests.
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Protocol

from config.settings import GlobalConfig, get_config
from nepsewatch.jobs import JobStat
from nepsewatch.logger import get_logger

log = get_logger(__name__)

STATUS_FILE = "scheduler_status.json"


class StatusStore(Protocol):
    async def save(self, job_key: str, stat: JobStat) -> None: ...

    async def load(self) -> dict[str, Any]: ...


class JsonStatusStore:
    """Scheduler stats as one JSON object keyed by job key.

    Writes go to a temporary file that replaces the document, so a crash
    mid-write never leaves a truncated file behind.
    """

    def __init__(self, path: Path | None = None, config: GlobalConfig | None = None) -> None:
        config = config or get_config()
        self.path = path or config.state_dir / STATUS_FILE
        self._lock = asyncio.Lock()

    async def save(self, job_key: str, stat: JobStat) -> None:
        async with self._lock:
            document = self._read()
            document[str(job_key)] = stat.model_dump(mode="json")
            self._write(document)

    async def load(self) -> dict[str, Any]:
        """Return raw rows; unknown keys are the caller's to filter.

        Raises:
            OSError: If the file exists but cannot be read.
            ValueError: If the file is not valid JSON.
        """
        async with self._lock:
            return self._read()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not hold a JSON object")
        return data

    def _write(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(document, indent=2, default=str), encoding="utf-8")
        tmp_path.replace(self.path)
        log.debug("Scheduler stats persisted", path=str(self.path), jobs=len(document))
