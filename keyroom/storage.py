"""
Durable storage for the room registry.
Full JSON snapshots, written to a temp file and renamed into place.
"""
import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class SnapshotError(Exception):
    """The snapshot file exists but cannot be used."""


class SnapshotStore:
    """Blocking load/save of one snapshot file."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @property
    def tmp_path(self) -> Path:
        return self.path.with_suffix(self.path.suffix + ".tmp")

    def load(self) -> Optional[dict]:
        """Read the snapshot, or None if nothing has been saved yet."""
        if not self.path.exists():
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise SnapshotError(f"Cannot read snapshot {self.path}: {e}") from e
        if not isinstance(payload, dict):
            raise SnapshotError(f"Snapshot {self.path} is not a JSON object")
        return payload

    def save(self, payload: dict) -> None:
        """Write the snapshot so readers only ever see a complete file."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.tmp_path
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, 0o600)
            tmp.replace(self.path)
        except OSError:
            if tmp.exists():
                tmp.unlink()
            raise


class SnapshotWriter:
    """
    Fire-and-forget snapshot writes, kept in order.

    A single drain task writes payloads one at a time; payloads scheduled
    while a write is running are coalesced so only the newest one lands.
    """

    def __init__(self, store: SnapshotStore):
        self.store = store
        self._pending: Optional[dict] = None
        self._task: Optional[asyncio.Task] = None
        self.writes = 0

    def schedule(self, payload: dict) -> None:
        self._pending = payload
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain())

    async def _drain(self):
        while self._pending is not None:
            payload, self._pending = self._pending, None
            try:
                await asyncio.to_thread(self.store.save, payload)
                self.writes += 1
                logger.debug(f"Snapshot written to {self.store.path}")
            except Exception as e:
                logger.error(f"Snapshot write failed: {e}", exc_info=True)

    async def close(self):
        """Wait for every scheduled write to finish."""
        if self._task is not None:
            await self._task
        if self._pending is not None:
            await self._drain()
