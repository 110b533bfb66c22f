"""State Store interface: one document, serialized mutations, atomic persistence."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TypeVar, cast

from consensus_tools.errors import ConsensusToolsError, StorageCorruption
from consensus_tools.models import StateDocument

logger = logging.getLogger(__name__)

T = TypeVar("T")


def encode_state(state: StateDocument) -> str:
    return json.dumps(state.to_dict(), indent=2)


def decode_state(raw: str, source: str) -> StateDocument:
    """Parse a persisted document; blank input is an empty document."""
    if not raw.strip():
        return StateDocument()
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise TypeError("state document must be a JSON object")
        return StateDocument.from_dict(data)
    except ConsensusToolsError as exc:
        raise StorageCorruption(f"State document corrupt at {source}: {exc}") from exc
    except (ValueError, TypeError, KeyError, AttributeError) as exc:
        raise StorageCorruption(f"State document corrupt at {source}: {exc}") from exc


class StateStore(ABC):
    """
    Repository for the single state document.

    Subclasses provide raw load/save of the whole document; this base class
    supplies the concurrency contract:

    - ``update`` runs one mutator at a time, in FIFO order, against a freshly
      loaded document, then persists it and returns the mutator's result.
    - A mutator that raises leaves the persisted document untouched.
    - ``get`` is not serialized against writers and may observe a document
      that a queued ``update`` is about to supersede.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    @abstractmethod
    async def _load(self) -> StateDocument:
        """Read the full document, creating an empty one if none exists."""

    @abstractmethod
    async def _save(self, state: StateDocument) -> None:
        """Persist the full document atomically."""

    @abstractmethod
    async def _ensure(self) -> None:
        """Create an empty document if none exists."""

    async def init(self) -> None:
        async with self._lock:
            await self._ensure()

    async def get(self) -> StateDocument:
        return await self._load()

    async def update(self, mutator: Callable[[StateDocument], T]) -> T:
        async with self._lock:
            state = await self._load()
            result = mutator(state)
            if inspect.isawaitable(result):
                result = await result
            await self._save(state)
            return cast(T, result)
