"""Global test fixtures for the Lifeline test suite."""

from __future__ import annotations

import os

import pytest

from lifeline.core.config import clear_config_cache
from lifeline.core.logging import bind_connection
from lifeline.supervision.store import InMemoryStore


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture
def clean_env(monkeypatch):
    """Remove all LIFELINE_ environment variables."""
    for key in list(os.environ.keys()):
        if key.startswith("LIFELINE_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset the config singleton and bound connection around each test."""
    clear_config_cache()
    bind_connection(None)
    yield
    clear_config_cache()
    bind_connection(None)


# ============================================================================
# Shared Fixtures
# ============================================================================


@pytest.fixture
def clock():
    """A fake clock starting at a fixed epoch."""
    return FakeClock()


@pytest.fixture
def memory_store():
    """An empty in-memory durable store."""
    return InMemoryStore()
