"""Shared fixtures: a controllable clock and engines over a temp state file."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from consensus_tools.config import Settings
from consensus_tools.consensus.policy import merge_layers
from consensus_tools.jobs import JobEngine
from consensus_tools.ledger import LedgerEngine
from consensus_tools.storage import create_store


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_settings(tmp_path: Path):
    def build(data: dict[str, Any] | None = None, kind: str = "json") -> Settings:
        name = "state.db" if kind == "sqlite" else "state.json"
        base = {"storage": {"kind": kind, "path": str(tmp_path / name)}}
        return Settings.from_mapping(merge_layers(base, data))

    return build


@pytest.fixture
def make_engines(make_settings, clock: FakeClock):
    def build(data: dict[str, Any] | None = None, kind: str = "json") -> tuple[JobEngine, LedgerEngine]:
        settings = make_settings(data, kind)
        store = create_store(settings.storage)
        ledger = LedgerEngine(store, settings.ledger, clock)
        return JobEngine(store, ledger, settings, clock), ledger

    return build


@pytest.fixture
def engines(make_engines) -> tuple[JobEngine, LedgerEngine]:
    return make_engines()


@pytest.fixture
def engine(engines) -> JobEngine:
    return engines[0]


@pytest.fixture
def ledger(engines) -> LedgerEngine:
    return engines[1]
