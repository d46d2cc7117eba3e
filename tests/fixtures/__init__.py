# tests/fixtures/__init__.py
"""Shared pytest fixtures for cairn tests.

Available fixtures:
- store_db, recorder, file_recorder: fresh resource stores
- device, ingest_session, orchestration_session: owners for records
- manager, executor: ingestion manager and orchestration executor
"""

from tests.fixtures.store import (
    CONTENDED_RETRY,
    make_file_recorder,
    make_recorder,
    make_store_db,
)

__all__ = [
    "CONTENDED_RETRY",
    "make_file_recorder",
    "make_recorder",
    "make_store_db",
]
