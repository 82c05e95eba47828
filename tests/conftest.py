"""Shared fixtures for strata tests."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from strata.core.config import Config
from strata.core.types import EpisodicMemory, ModelResponse, to_iso
from strata.store import MemoryStore

#: Fixed clock used throughout the suite (a Wednesday, 12:00 UTC).
NOW = datetime(2026, 3, 18, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory that persists for the test."""
    return tmp_path


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    """A ``now()`` callable frozen at ``NOW``."""
    return lambda: NOW


@pytest.fixture
def config(tmp_dir):
    """Provide a Config pointing at a temp directory."""
    cfg = Config.from_data_dir(
        tmp_dir,
        llm_provider="custom",
        ai_budget_daily_usd=2.0,
        ai_budget_monthly_usd=45.0,
    )
    cfg.ensure_directories()
    return cfg


@pytest.fixture
def store():
    """Provide a fresh in-memory MemoryStore."""
    s = MemoryStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def file_store(config):
    """MemoryStore backed by a real file (WAL mode)."""
    s = MemoryStore(config.db_path)
    yield s
    s.close()


@pytest.fixture
def add_event(store):
    """Record an episodic row ``days_ago`` / ``hours_ago`` before ``NOW``."""

    def _add(
        event_type,
        organization_id="org-1",
        platform=None,
        days_ago=0.0,
        hours_ago=0.0,
        at=None,
        **kwargs,
    ):
        created = at or (NOW - timedelta(days=days_ago, hours=hours_ago))
        memory = EpisodicMemory(
            organization_id=organization_id,
            event_type=event_type,
            platform=platform,
            created_at=to_iso(created),
            **kwargs,
        )
        return store.episodic.record(memory)

    return _add


@pytest.fixture
def model_func():
    """Mock model capability returning a fixed JSON body."""
    func = MagicMock()
    func.return_value = ModelResponse(
        text='{"text": "Hello from the model"}',
        provider="anthropic",
        model="claude-3-5-haiku-latest",
        input_tokens=1000,
        output_tokens=500,
        latency_ms=120,
    )
    return func
