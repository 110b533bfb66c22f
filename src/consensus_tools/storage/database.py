"""SQLite state store (WAL mode) holding the document in a key-value table."""

from __future__ import annotations

from pathlib import Path

import aiosqlite

from consensus_tools.models import StateDocument
from consensus_tools.storage.base import StateStore, decode_state, encode_state

STATE_KEY = "state"


class SqliteStateStore(StateStore):
    """
    State document stored as one JSON row in SQLite.

    Same full-read / full-write discipline as the JSON file store; the write
    is a single upsert inside a transaction, so readers never observe a
    half-written document.
    """

    def __init__(self, db_path: Path) -> None:
        super().__init__()
        self.db_path = Path(db_path)

    async def _connect(self) -> aiosqlite.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self.db_path))
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
        return db

    async def _ensure(self) -> None:
        db = await self._connect()
        try:
            await db.execute(
                "INSERT OR IGNORE INTO kv (key, value) VALUES (?, ?)",
                (STATE_KEY, encode_state(StateDocument())),
            )
            await db.commit()
        finally:
            await db.close()

    async def _load(self) -> StateDocument:
        await self._ensure()
        db = await self._connect()
        try:
            cursor = await db.execute("SELECT value FROM kv WHERE key = ?", (STATE_KEY,))
            row = await cursor.fetchone()
        finally:
            await db.close()
        raw = row[0] if row else ""
        return decode_state(raw, str(self.db_path))

    async def _save(self, state: StateDocument) -> None:
        db = await self._connect()
        try:
            await db.execute(
                """INSERT INTO kv (key, value) VALUES (?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
                (STATE_KEY, encode_state(state)),
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise
        finally:
            await db.close()
