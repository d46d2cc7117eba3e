# tests/fixtures/store.py
"""Store, recorder, manager and executor fixtures.

All fixtures are function-scoped for full test isolation.
No module-scoped databases - every test gets a fresh database.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from cairn.contracts import DeviceIdentity
from cairn.core.config import RetrySettings
from cairn.core.events import EventBus
from cairn.core.store.database import StoreDB
from cairn.core.store.recorder import StoreRecorder
from cairn.engine.executor import OrchestrationExecutor
from cairn.ingest.manager import IngestionSessionManager

# Generous retry budget for tests that hammer a file-backed SQLite database
CONTENDED_RETRY = RetrySettings(max_attempts=20, initial_delay_seconds=0.01, max_delay_seconds=0.5)


def make_store_db() -> StoreDB:
    """Factory for in-memory StoreDB."""
    return StoreDB.in_memory()


def make_recorder(db: StoreDB | None = None, *, events: EventBus | None = None) -> StoreRecorder:
    """Factory for StoreRecorder with its own event bus."""
    if db is None:
        db = make_store_db()
    return StoreRecorder(db, events=events if events is not None else EventBus())


def make_file_recorder(tmp_path: Path) -> StoreRecorder:
    """StoreRecorder over a file-backed SQLite database (real connection pool)."""
    db = StoreDB.from_url(f"sqlite:///{tmp_path / 'cairn.db'}")
    return StoreRecorder(db, events=EventBus(), retry=CONTENDED_RETRY)


@pytest.fixture
def store_db() -> StoreDB:
    """Function-scoped in-memory StoreDB - fresh per test."""
    return make_store_db()


@pytest.fixture
def recorder(store_db: StoreDB) -> StoreRecorder:
    """Function-scoped StoreRecorder."""
    return make_recorder(store_db)


@pytest.fixture
def file_recorder(tmp_path: Path) -> Iterator[StoreRecorder]:
    """StoreRecorder over a file-backed database, for concurrency tests."""
    rec = make_file_recorder(tmp_path)
    yield rec
    rec.db.close()


@pytest.fixture
def device(recorder: StoreRecorder) -> DeviceIdentity:
    return recorder.ensure_device("D1")


@pytest.fixture
def ingest_session(recorder: StoreRecorder, device: DeviceIdentity) -> str:
    """Open ingest session id on the D1 device."""
    return recorder.open_ingest_session(device.device_id, "pytest").ingest_session_id


@pytest.fixture
def orchestration_session(recorder: StoreRecorder, device: DeviceIdentity) -> str:
    """Open orchestration session id on the D1 device."""
    return recorder.begin_orchestration_session(device.device_id, "test-run", "1.0").orchestration_session_id


@pytest.fixture
def manager(recorder: StoreRecorder) -> IngestionSessionManager:
    return IngestionSessionManager(recorder)


@pytest.fixture
def executor(recorder: StoreRecorder) -> OrchestrationExecutor:
    return OrchestrationExecutor(recorder)
