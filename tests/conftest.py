"""
Shared fixtures for the snapshot historian tests.

Everything here runs against the in-memory store; tests that need a live
warehouse database are marked 'postgres' and skip when it is unreachable.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest

# Keep test runs from writing rotating log files
os.environ.setdefault("LOG_TO_FILE", "false")

from historian.config import SnapshotConfig
from historian.runner import SnapshotRunner
from historian.warehouse.run_metadata import RunLog
from historian.warehouse.store import InMemoryHistoryStore

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def ts(hours: float) -> datetime:
    """BASE_TIME plus a number of hours."""
    return BASE_TIME + timedelta(hours=hours)


class FakeClock:
    """Settable run execution clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture(autouse=True)
def _reset_run_registry():
    SnapshotRunner._active_runs.clear()
    yield
    SnapshotRunner._active_runs.clear()


@pytest.fixture
def make_config():
    def factory(**overrides):
        options = {
            "name": "customers_snapshot",
            "target_table": "customers_history",
            "unique_key": "id",
            "updated_at": "updated_at",
            "max_write_attempts": 3,
            "retry_backoff_seconds": 0.0,
            "lock_timeout_seconds": 1.0,
        }
        options.update(overrides)
        return SnapshotConfig(**options)
    return factory


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def store():
    return InMemoryHistoryStore("customers_history")


@pytest.fixture
def clock():
    return FakeClock(ts(1000))


@pytest.fixture
def run_log():
    return RunLog()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_runner(store, clock, run_log, sleeps):
    def factory(config, target_store=None):
        return SnapshotRunner(
            config,
            target_store or store,
            run_log=run_log,
            clock=clock,
            sleep=sleeps.append,
        )
    return factory


@pytest.fixture
def runner(make_runner, config):
    return make_runner(config)
