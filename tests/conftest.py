"""Shared fixtures for kanban-sync tests."""

import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Ensure the package is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent))

from kanban_sync.store import SqliteTaskStore


class FakeClock:
    """Manually advanced clock; callable like time.monotonic / utc_now."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture
def db_path():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as tmp:
        path = tmp.name
    yield path
    for suffix in ("", "-wal", "-shm"):
        Path(path + suffix).unlink(missing_ok=True)


@pytest.fixture
def store(db_path):
    return SqliteTaskStore(db_path)


@pytest.fixture
def monotonic_clock():
    return FakeClock(1000.0)


@pytest.fixture
def wall_clock():
    return FakeClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))

