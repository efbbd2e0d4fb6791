"""Pytest configuration and shared fixtures."""

import os
from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Set test environment
os.environ.setdefault("TASKDAG_LOG_LEVEL", "CRITICAL")
os.environ.setdefault("TASKDAG_BACKOFF_BASE_SECONDS", "0")


@pytest.fixture(autouse=True)
def clear_settings() -> Generator[None, None, None]:
    """Clear the settings cache around every test."""
    from taskdag.core.config import clear_settings_cache

    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings(tmp_path: Path) -> Any:
    """Settings writing the store and sessions below ``tmp_path``."""
    from taskdag.core.config import Settings

    return Settings(
        store_path=str(tmp_path / "tasks.json"),
        session_dir=str(tmp_path / "sessions"),
        log_level="CRITICAL",
        backoff_base_seconds=0.0,
    )


@pytest.fixture
def memory_store() -> Any:
    """Provide an empty in-memory task store."""
    from taskdag.store.memory import InMemoryTaskStore

    return InMemoryTaskStore()


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Backoff sleep that returns immediately and records delays."""
    return AsyncMock(return_value=None)


@pytest.fixture
def make_goal() -> Any:
    """Factory for goal nodes with sensible atomic defaults."""
    from taskdag.decomposition.models import GoalNode, GoalType

    def factory(goal_id: str, title: str, order: int = 0, **kwargs: Any) -> GoalNode:
        kwargs.setdefault("type", GoalType.SUBTASK)
        kwargs.setdefault("acceptance", [f"Tests for '{title}' pass"])
        kwargs.setdefault("atomicity_score", 100)
        return GoalNode(id=goal_id, title=title, order=order, **kwargs)

    return factory


@pytest.fixture
def login_request() -> str:
    """A feature request that decomposes into four atomic goals."""
    return "Add login endpoint to src/api/login.py and tests/test_login.py"


@pytest.fixture
def mock_invoker() -> Any:
    """Agent invoker whose ``invoke`` is an AsyncMock."""
    from taskdag.agents.base import AgentInvoker

    class MockInvoker(AgentInvoker):
        name = "mock"

        def __init__(self) -> None:
            self.invoke = AsyncMock(return_value={})

        async def invoke(self, phase, payload, tier):  # type: ignore[override]
            raise NotImplementedError

    return MockInvoker()


# Markers
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
