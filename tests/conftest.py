"""Shared fixtures for the crm_dedupe test suite."""

from datetime import datetime, timedelta, timezone

import pytest

from crm_dedupe.storage.db import Database
from crm_dedupe.storage.group_repository import GroupRepository
from crm_dedupe.storage.token_store import TokenStore


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2024, 1, 20, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def db():
    """Create an initialized in-memory database."""
    database = Database(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def store(db):
    return TokenStore(db)


@pytest.fixture
def repo(db):
    return GroupRepository(db)


@pytest.fixture
def clock():
    return FakeClock()
