"""State document persistence."""

from __future__ import annotations

from consensus_tools.config import StorageSettings
from consensus_tools.storage.base import StateStore, decode_state, encode_state
from consensus_tools.storage.database import SqliteStateStore
from consensus_tools.storage.json_store import JsonStateStore


def create_store(settings: StorageSettings) -> StateStore:
    """Pick the backend named by ``settings.kind``."""
    if settings.kind == "sqlite":
        return SqliteStateStore(settings.path)
    return JsonStateStore(settings.path)


__all__ = [
    "JsonStateStore",
    "SqliteStateStore",
    "StateStore",
    "create_store",
    "decode_state",
    "encode_state",
]
