"""Named JSON slots on the local filesystem.

Each slot is one file under `base_dir`. Writes go to a temporary sibling
and are moved into place with `os.replace`, so a reader sees either the
previous or the new document, never a partial one.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import aiofiles
import aiofiles.os


class JsonSlotStore:
    """Async key-value persistence where each key is a JSON file."""

    def __init__(self, base_dir: Path | str) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self._lock = asyncio.Lock()

    def path_for(self, slot: str) -> Path:
        return self.base_dir / f"{slot}.json"

    async def read(self, slot: str) -> Optional[Any]:
        """Return the decoded slot, or None if it was never written."""
        path = self.path_for(slot)
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as fh:
            raw = await fh.read()
        return json.loads(raw) if raw.strip() else None

    async def write(self, slot: str, value: Any) -> None:
        """Replace the slot's content atomically."""
        async with self._lock:
            await self._write_locked(slot, value)

    async def write_many(self, values: dict) -> None:
        """Write several slots while holding the lock across all of them."""
        async with self._lock:
            for slot, value in values.items():
                await self._write_locked(slot, value)

    async def _write_locked(self, slot: str, value: Any) -> None:
        await aiofiles.os.makedirs(self.base_dir, exist_ok=True)
        path = self.path_for(slot)
        tmp_path = path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as fh:
            await fh.write(json.dumps(value, ensure_ascii=False))
            await fh.flush()
        await aiofiles.os.replace(tmp_path, path)
