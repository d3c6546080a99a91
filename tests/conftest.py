"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from delegation_engine.config import Settings
from delegation_engine.delegation.engine import DelegationEngine
from delegation_engine.delegation.events import InMemoryEventSink


@pytest.fixture(autouse=True)
def _clean_engine_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer DELEGATION_ENGINE_* variables out of the tests."""
    for name in list(os.environ):
        if name.startswith("DELEGATION_ENGINE_"):
            monkeypatch.delenv(name)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "engine.db"


@pytest.fixture()
def sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture()
def engine(db_path: Path, sink: InMemoryEventSink) -> Iterator[DelegationEngine]:
    engine = DelegationEngine.from_settings(Settings(db_path=db_path), sink=sink)
    try:
        yield engine
    finally:
        engine.close()
