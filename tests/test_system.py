"""Integration tests for strata.system.MemorySystem."""

from datetime import timedelta

import pytest

from conftest import NOW
from strata import MemorySystem
from strata.core.types import ErrorCode


@pytest.fixture
def times():
    return [NOW]


@pytest.fixture
def memory(tmp_dir, model_func, times):
    system = MemorySystem(
        data_dir=tmp_dir,
        llm_provider="custom",
        model_func=model_func,
        now=lambda: times[0],
    )
    yield system
    system.close()


def _seed(memory, times, count=10, platform="instagram"):
    for day in range(count):
        times[0] = NOW - timedelta(days=day)
        assert memory.record_event("org-1", "post_success", platform=platform).ok
    times[0] = NOW


class TestMemorySystemInit:
    def test_creates_directories(self, memory, tmp_dir):
        assert (tmp_dir / "strata.db").exists()
        assert (tmp_dir / "locks").is_dir()

    def test_stats(self, memory):
        stats = memory.stats()
        assert stats["db_path"].endswith("strata.db")
        assert stats["tables"]["episodic_memory"] == 0

    def test_context_manager(self, tmp_dir):
        with MemorySystem(data_dir=tmp_dir) as system:
            assert system.record_event("org-1", "post_published").ok


class TestEpisodic:
    def test_record_event(self, memory):
        result = memory.record_event(
            "org-1", " post_success ", platform="instagram", summary="Reel took off",
            content={"post_id": "p1"}, importance=0.9,
        )
        assert result.ok
        assert result.value.event_type == "post_success"
        assert result.value.created_at.startswith("2026-03-18T12:00:00")

    def test_record_event_validation(self, memory):
        assert memory.record_event("", "post_success").code == ErrorCode.VALIDATION
        assert memory.record_event("org-1", "  ").code == ErrorCode.VALIDATION

    def test_recall_prefers_recent(self, memory, times):
        times[0] = NOW - timedelta(days=10)
        old = memory.record_event("org-1", "post_success", summary="old").value
        times[0] = NOW - timedelta(days=1)
        new = memory.record_event("org-1", "post_success", summary="new").value
        times[0] = NOW
        recalled = memory.recall("org-1").value
        assert [m.id for m in recalled] == [new.id, old.id]

    def test_recall_window_and_filter(self, memory, times):
        times[0] = NOW - timedelta(days=40)
        memory.record_event("org-1", "post_success")
        times[0] = NOW
        memory.record_event("org-1", "post_failure")
        assert memory.recall("org-1", event_type="post_success").value == []
        assert len(memory.recall("org-1", days=60).value) == 2

    def test_recall_is_per_org(self, memory):
        memory.record_event("org-2", "post_success")
        assert memory.recall("org-1").value == []


class TestRunConsolidation:
    def test_run(self, memory, times):
        _seed(memory, times)
        results = memory.run_consolidation(["org-1"])
        stats = results["org-1"].value
        assert stats.patterns_promoted >= 1
        trail = memory.audit_trail("org-1").value
        assert trail[0].actor == "cron"
        state = memory.store.working.get("org-1", "metacognitive", "state", now=NOW)
        assert state["accuracy_samples"] == 0
        assert state["official_temperature"] == pytest.approx(0.6)

    def test_one_failure_does_not_stop_others(self, memory, times):
        _seed(memory, times)
        results = memory.run_consolidation(["", "org-1"])
        assert results[""].code == ErrorCode.VALIDATION
        assert results["org-1"].ok

    def test_dry_run(self, memory, times):
        _seed(memory, times)
        results = memory.run_consolidation(["org-1"], dry_run=True)
        assert results["org-1"].value.dry_run
        assert memory.audit_trail("org-1").value == []
        assert memory.store.working.get("org-1", "metacognitive", "state", now=NOW) is None

    def test_expired_working_memory_purged(self, memory):
        memory.store.working.set(
            "org-1", "s1", "draft", {"text": "x"}, ttl_seconds=60, now=NOW - timedelta(hours=1)
        )
        memory.run_consolidation(["org-1"])
        assert memory.store.table_counts()["working_memory"] == 1  # only the fresh state row

    def test_budget_status(self, memory):
        status = memory.budget_status("org-1").value
        assert status["decision"]["allowed"] is True
        assert status["decision"]["caps"]["daily_usd"] == 2.0
