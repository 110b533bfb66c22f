"""JSON file state store with write-temp-then-rename persistence."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

from consensus_tools.models import StateDocument
from consensus_tools.storage.base import StateStore, decode_state, encode_state


class JsonStateStore(StateStore):
    """State document kept as one pretty-printed JSON file."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = Path(path)

    def _ensure_file(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self._write(StateDocument())

    def _write(self, state: StateDocument) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp = self.path.with_name(self.path.name + ".tmp")
        temp.write_text(encode_state(state), encoding="utf-8")
        os.replace(temp, self.path)

    def _read(self) -> StateDocument:
        self._ensure_file()
        raw = self.path.read_text(encoding="utf-8")
        return decode_state(raw, str(self.path))

    async def _ensure(self) -> None:
        await asyncio.to_thread(self._ensure_file)

    async def _load(self) -> StateDocument:
        return await asyncio.to_thread(self._read)

    async def _save(self, state: StateDocument) -> None:
        await asyncio.to_thread(self._write, state)
