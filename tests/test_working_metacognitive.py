"""Tests for working memory and the metacognitive self-assessment."""

from datetime import timedelta

import pytest

from conftest import NOW
from strata.metacognitive import (
    PRIOR_MEAN,
    STATE_KEY,
    STATE_SESSION,
    bayesian_accuracy,
    temperature_for,
)


class TestWorkingMemory:
    def test_set_get(self, store):
        store.working.set("org-1", "s1", "draft", {"text": "hi"}, now=NOW)
        assert store.working.get("org-1", "s1", "draft", now=NOW) == {"text": "hi"}

    def test_expired_items_are_invisible(self, store):
        store.working.set("org-1", "s1", "draft", "x", ttl_seconds=60, now=NOW)
        assert store.working.get("org-1", "s1", "draft", now=NOW + timedelta(seconds=61)) is None

    def test_overwrite_extends_expiry(self, store):
        store.working.set("org-1", "s1", "draft", "a", ttl_seconds=60, now=NOW)
        later = NOW + timedelta(seconds=50)
        store.working.set("org-1", "s1", "draft", "b", ttl_seconds=60, now=later)
        assert store.working.get("org-1", "s1", "draft", now=NOW + timedelta(seconds=100)) == "b"

    def test_session(self, store):
        store.working.set("org-1", "s1", "b", 2, now=NOW)
        store.working.set("org-1", "s1", "a", 1, now=NOW)
        store.working.set("org-1", "s2", "a", 9, now=NOW)
        assert store.working.session("org-1", "s1", now=NOW) == {"a": 1, "b": 2}

    def test_delete(self, store):
        store.working.set("org-1", "s1", "a", 1, now=NOW)
        store.working.delete("org-1", "s1", "a")
        assert store.working.get("org-1", "s1", "a", now=NOW) is None

    def test_purge_expired(self, store):
        store.working.set("org-1", "s1", "old", 1, ttl_seconds=60, now=NOW - timedelta(hours=1))
        store.working.set("org-1", "s1", "new", 1, now=NOW)
        assert store.working.purge_expired(NOW) == 1
        assert store.working.session("org-1", "s1", now=NOW) == {"new": 1}


class TestBayesianAccuracy:
    def test_prior_when_empty(self):
        assert bayesian_accuracy([]) == PRIOR_MEAN

    def test_smoothing(self):
        assert bayesian_accuracy([1.0, 1.0, 1.0]) == pytest.approx(0.75)

    def test_out_of_range_ignored(self):
        assert bayesian_accuracy([1.5, -0.2, float("nan")]) == PRIOR_MEAN

    @pytest.mark.parametrize("accuracy,temp", [(0.0, 0.3), (0.5, 0.6), (1.0, 0.9)])
    def test_temperature(self, accuracy, temp):
        assert temperature_for(accuracy) == pytest.approx(temp)


class TestMetacognitiveStore:
    def test_log_accuracy(self, store):
        entry = store.metacognitive.log_accuracy("org-1", expected=10.0, actual=8.0)
        assert entry.value == pytest.approx(0.8)
        perfect = store.metacognitive.log_accuracy("org-1", expected=0.0, actual=0.0)
        assert perfect.value == 1.0

    def test_refresh_state_caches_in_working_memory(self, store):
        for _ in range(3):
            store.metacognitive.log_accuracy("org-1", expected=5.0, actual=5.0)
        state = store.metacognitive.refresh_state("org-1", store.working, now=NOW)
        assert state["accuracy_samples"] == 3
        assert state["accuracy_bayesian"] == pytest.approx(0.75)
        assert state["official_temperature"] == pytest.approx(0.75)
        cached = store.working.get("org-1", STATE_SESSION, STATE_KEY, now=NOW)
        assert cached == state

    def test_state_expires_after_six_hours(self, store):
        store.metacognitive.refresh_state("org-1", store.working, now=NOW)
        later = NOW + timedelta(hours=6, seconds=1)
        assert store.working.get("org-1", STATE_SESSION, STATE_KEY, now=later) is None
