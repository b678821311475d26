"""Shared test fixtures.

IMPORTANT: STEPWISE_* variables are cleared at module level, BEFORE any
stepwise module builds Settings during test collection.
"""

import os

for _key in [k for k in os.environ if k.startswith("STEPWISE_")]:
    del os.environ[_key]

import pytest  # noqa: E402

from stepwise.config import Settings  # noqa: E402
from stepwise.engine.events import EventBus  # noqa: E402
from stepwise.engine.executor import WorkflowEngine  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    """Small, fast limits for tests (no .env lookup)."""
    return Settings(
        _env_file=None,
        default_timeout=5.0,
        external_call_timeout=5.0,
        max_workers=8,
        max_external_concurrency=4,
    )


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def engine(settings: Settings, bus: EventBus) -> WorkflowEngine:
    return WorkflowEngine(settings=settings, events=bus)
