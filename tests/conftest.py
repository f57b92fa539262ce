"""Shared fixtures for the progress store tests."""

from datetime import datetime, timedelta, timezone

import pytest

from quiz_progress.models.catalog import CategoryCatalog, CategoryInfo
from quiz_progress.progress.repository import ProgressRepository
from quiz_progress.storage.backends import MemoryBackend
from quiz_progress.storage.gateway import StorageGateway


class FakeClock:
    """Controllable clock for repository tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def catalog():
    return CategoryCatalog(categories=[
        CategoryInfo(id="The Regulatory Environment", total_questions=42),
        CategoryInfo(id="Investment Principles", total_questions=10),
        CategoryInfo(id="Mock 1", total_questions=75, mock_number=1),
        CategoryInfo(id="Mock 2", total_questions=75, mock_number=2),
    ])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return StorageGateway(MemoryBackend())


@pytest.fixture
def repository(gateway, catalog, clock):
    return ProgressRepository(gateway, catalog, clock=clock)
