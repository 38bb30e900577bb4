"""Shared fixtures for the task engine tests."""

import pytest

from a2a_engine.database import SqliteTaskStore
from a2a_engine.settings import Settings
from a2a_engine.task_store import InMemoryTaskStore

from factories import make_settings


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Every TaskStore implementation, so contract tests run against both."""
    if request.param == "memory":
        task_store = InMemoryTaskStore()
    else:
        task_store = SqliteTaskStore(tmp_path / "tasks.db")
    yield task_store
    task_store.close()
