"""Shared pytest fixtures."""

from datetime import datetime

import pytest

from fakes import NOW, FakeJobStore


@pytest.fixture
def store() -> FakeJobStore:
    return FakeJobStore()


@pytest.fixture
def now() -> datetime:
    return NOW
