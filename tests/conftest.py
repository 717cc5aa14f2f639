from __future__ import annotations

from pathlib import Path

import pytest

from loop_engine import FileLoopStore, InMemoryLoopStore, LoopService, LoopStore, MemoryActivityLog


@pytest.fixture(params=["memory", "file"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> LoopStore:
    if request.param == "memory":
        return InMemoryLoopStore()
    return FileLoopStore(tmp_path / "state_store")


@pytest.fixture
def activity() -> MemoryActivityLog:
    return MemoryActivityLog()


@pytest.fixture
def service(store: LoopStore, activity: MemoryActivityLog) -> LoopService:
    return LoopService(store, activity=activity)
