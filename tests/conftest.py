"""Shared fixtures: a temporary database, a deterministic clock and users."""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

from taskboard.core import users as users_mod
from taskboard.core.cache import MemoryCacheStore, TaskCache
from taskboard.core.events import EventBus, EventRecorder
from taskboard.core.tasks import TaskService
from taskboard.db.engine import init_db

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Returns a strictly increasing time on every call."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        self.now += self.step
        return self.now


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        yield conn
        conn.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def users(db):
    return SimpleNamespace(
        admin=users_mod.create_user(db, "admin", "admin"),
        pm=users_mod.create_user(db, "pm", "project_manager"),
        alice=users_mod.create_user(db, "alice", "developer"),
        bob=users_mod.create_user(db, "bob", "developer"),
        carol=users_mod.create_user(db, "carol", "client"),
    )


@pytest.fixture
def cache_store():
    return MemoryCacheStore()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def service(db, cache_store, bus, clock):
    return TaskService(db, cache=TaskCache(cache_store), bus=bus, clock=clock)
