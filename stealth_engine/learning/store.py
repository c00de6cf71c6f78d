"""Durable storage for learning snapshots."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

_PREFIX = "learning_"


@runtime_checkable
class LearningStore(Protocol):
    async def save(self, snapshot: dict[str, Any]) -> str: ...

    async def load_latest(self) -> dict[str, Any] | None: ...


class FileLearningStore:
    """JSON files named ``learning_<timestamp>.json`` in one directory.

    Only the newest *retention* files are kept.  File names sort in
    creation order, so the latest snapshot is the last name in the listing.
    """

    def __init__(self, directory: str | Path, retention: int = 10) -> None:
        self.directory = Path(directory)
        self.retention = max(1, retention)
        self._seq = 0

    def _snapshot_files(self) -> list[Path]:
        if not self.directory.is_dir():
            return []
        return sorted(self.directory.glob(f"{_PREFIX}*.json"))

    async def save(self, snapshot: dict[str, Any]) -> str:
        self._seq = (self._seq + 1) % 10000
        name = f"{_PREFIX}{int(time.time() * 1000):013d}_{self._seq:04d}.json"
        path = self.directory / name
        payload = json.dumps(snapshot, default=str)
        await asyncio.to_thread(self._write, path, payload)
        logger.info("Learning snapshot saved to %s", path)
        return str(path)

    def _write(self, path: Path, payload: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(path)
        for stale in self._snapshot_files()[: -self.retention]:
            stale.unlink(missing_ok=True)

    async def load_latest(self) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._read_latest)

    def _read_latest(self) -> dict[str, Any] | None:
        for path in reversed(self._snapshot_files()):
            try:
                return json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                logger.error("Skipping unreadable learning snapshot %s: %s", path, exc)
        return None

    def list_snapshots(self) -> list[str]:
        return [str(p) for p in self._snapshot_files()]
