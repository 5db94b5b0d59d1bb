"""Shared fixtures: a store on a fixed clock inside a temporary data dir."""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest

from trackline.storage.sqlite_store import SQLiteStorage

T0 = datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def data_dir(tmp_path) -> str:
    path = tmp_path / ".trackline"
    path.mkdir()
    return str(path)


@pytest.fixture
def store(data_dir, clock):
    s = SQLiteStorage(os.path.join(data_dir, "trackline.db"), clock=clock)
    s.set_config("issue_prefix", "test")
    yield s
    s.close()


@pytest.fixture
def open_store(data_dir, clock):
    """Factory for extra stores in the same data dir, sharing the clock."""
    opened: list[SQLiteStorage] = []

    def _open(name: str = "other.db", prefix: str = "test") -> SQLiteStorage:
        s = SQLiteStorage(os.path.join(data_dir, name), clock=clock)
        s.set_config("issue_prefix", prefix)
        opened.append(s)
        return s

    yield _open
    for s in opened:
        s.close()
