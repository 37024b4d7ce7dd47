import os
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from shoplytics.adapters.sqlite.migrator import SQLiteMigrator
from shoplytics.adapters.sqlite_db import SQLiteAnalyticsStore
from shoplytics.components.analytics import InMemoryAnalyticsStore
from shoplytics.rules.loader import load_rules

PROJECT_ROOT = Path(__file__).parent.parent

# Saturday, mid-afternoon UTC.
FIXED_NOW = datetime(2024, 6, 15, 14, 30, tzinfo=UTC)


class MockTimePort:
    """Mock time provider."""

    def __init__(self, now: datetime | None = None) -> None:
        self._now = now or datetime.now(UTC)

    def now_utc(self) -> datetime:
        return self._now

    def set_now(self, now: datetime) -> None:
        self._now = now

    def advance(self, days: int = 0, seconds: int = 0) -> None:
        self._now += timedelta(days=days, seconds=seconds)


@pytest.fixture
def test_data_dir(tmp_path):
    return str(tmp_path)


@pytest.fixture
def db_path(test_data_dir):
    """Temporary SQLite database with all migrations applied."""
    path = os.path.join(test_data_dir, "shoplytics.db")
    SQLiteMigrator(path, str(PROJECT_ROOT / "migrations")).run_migrations()
    return path


@pytest.fixture
def sqlite_store(db_path) -> SQLiteAnalyticsStore:
    return SQLiteAnalyticsStore(db_path)


@pytest.fixture
def memory_store() -> InMemoryAnalyticsStore:
    return InMemoryAnalyticsStore()


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    """Every store implementation must behave the same."""
    if request.param == "memory":
        return InMemoryAnalyticsStore()
    return request.getfixturevalue("sqlite_store")


@pytest.fixture
def time_port() -> MockTimePort:
    return MockTimePort(FIXED_NOW)


@pytest.fixture
def rules():
    """Real rules from the project root."""
    return load_rules(PROJECT_ROOT / "rules.yaml")
