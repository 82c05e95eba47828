"""
Tests for strata.governor — intent cache keys, pricing, budget gate,
the guarded run state machine, and the premium ROI gate.
"""

from __future__ import annotations

import sqlite3
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from conftest import NOW
from strata.core.filelock import OrgLock
from strata.core.settings import AIBudgetSettings, OrganizationSettings
from strata.core.tokens import estimate_tokens_from_text, estimate_tokens_messages, trim_to_budget
from strata.core.types import ErrorCode, ModelResponse, to_iso
from strata.governor.budget import BudgetCaps
from strata.governor.cache import build_intent_cache_key, with_cache_meta
from strata.governor.governor import AIGovernor, GovernorState, parse_model_text
from strata.governor.ledger import AIUsageEvent
from strata.governor.pricing import ModelPrice, estimate_model_cost_usd, is_router_model
from strata.governor.roi import FREE_UPGRADE_ROI, evaluate_premium_roi_gate

MESSAGES = [{"role": "user", "content": "Write a caption about autumn coffee"}]
FALLBACK = {"text": "Autumn is here."}


@pytest.fixture
def governor(store, config, model_func, clock):
    config.llm_model = "claude-3-5-haiku-latest"
    return AIGovernor(store, config, model_func=model_func, now=clock)


def _spend(store, usd, at=NOW, organization_id="org-1"):
    store.usage.log(
        AIUsageEvent(
            organization_id=organization_id,
            route_key="content_generate:v1",
            estimated_cost_usd=usd,
            created_at=to_iso(at),
        )
    )


def _run(governor, params=None, **kwargs):
    return governor.run(
        "org-1",
        "content_generate:v1",
        params if params is not None else {"topic": "coffee", "tone": "warm"},
        MESSAGES,
        FALLBACK,
        **kwargs,
    )


# =========================================================================
# Intent cache key
# =========================================================================


class TestIntentCacheKey:
    def test_key_order_and_whitespace_ignored(self):
        a = build_intent_cache_key("content_generate:v1", {"a": 1, "b": "Hello   World"})
        b = build_intent_cache_key("content_generate:v1", {"b": " hello world ", "a": 1})
        assert a == b

    def test_route_version_changes_key(self):
        params = {"topic": "coffee"}
        assert build_intent_cache_key("content_generate:v1", params) != build_intent_cache_key(
            "content_generate:v2", params
        )

    def test_nested_values(self):
        a = build_intent_cache_key("r", {"opts": {"y": [1, "A  b"], "x": None}})
        b = build_intent_cache_key("r", {"opts": {"x": None, "y": [1, "a b"]}})
        assert a == b
        assert len(a) == 64

    def test_cache_meta(self):
        out = with_cache_meta(
            {"text": "hi"},
            created_at=to_iso(NOW - timedelta(seconds=2)),
            mode="ai",
            now=NOW,
        )
        assert out["meta"]["cached"] is True
        assert out["meta"]["cache_age_ms"] == 2000
        assert out["meta"]["provider"] == "template"


# =========================================================================
# Pricing and tokens
# =========================================================================


class TestPricing:
    def test_haiku(self):
        assert estimate_model_cost_usd("claude-3-5-haiku-latest", 1000, 500) == pytest.approx(0.0028)

    def test_unknown_names_by_family(self):
        assert estimate_model_cost_usd("claude-haiku-next", 1_000_000, 0) == pytest.approx(0.8)
        assert estimate_model_cost_usd("claude-opus-next", 1_000_000, 0) == pytest.approx(3.0)

    def test_router_models(self):
        assert is_router_model("meta-llama/llama-3.1-8b")
        assert is_router_model("gpt-4o-mini")
        assert not is_router_model("claude-3-5-haiku-latest")
        price = ModelPrice(1.0, 2.0)
        assert estimate_model_cost_usd("qwen-2", 1_000_000, 1_000_000, price) == pytest.approx(3.0)

    def test_negative_tokens(self):
        assert estimate_model_cost_usd("claude-3-5-haiku-latest", -5, -5) == 0.0

    def test_token_estimates(self):
        assert estimate_tokens_from_text("") == 0
        assert estimate_tokens_from_text("   ") == 0
        assert estimate_tokens_from_text("abcd efgh") == 3
        assert estimate_tokens_messages([{"role": "user", "content": "abcd efgh"}]) == 7

    def test_trim_to_budget(self):
        assert trim_to_budget("short", 10) == "short"
        trimmed = trim_to_budget("x" * 100, 5)
        assert trimmed == "x" * 17 + "..."
        assert estimate_tokens_from_text(trimmed) <= 5


# =========================================================================
# Budget gate
# =========================================================================


class TestBudget:
    def test_just_under_cap_then_over(self, store, governor):
        _spend(store, 1.99)
        assert governor.decide_paid_ai_access("org-1", 0.005).value.allowed
        decision = governor.decide_paid_ai_access("org-1", 0.02).value
        assert not decision.allowed
        assert decision.reason == "Daily AI budget exceeded (2.010 / 2.000 USD)."
        assert decision.projected_daily_usd == pytest.approx(2.01)

    def test_monthly_cap(self, store, governor):
        _spend(store, 44.99, at=NOW - timedelta(days=5))
        decision = governor.decide_paid_ai_access("org-1", 0.02).value
        assert not decision.allowed
        assert decision.reason.startswith("Monthly AI budget exceeded")
        assert decision.usage.daily_spent_usd == 0.0

    def test_daily_reason_wins(self, store, governor):
        _spend(store, 44.99)
        decision = governor.decide_paid_ai_access("org-1", 0.02).value
        assert decision.reason.startswith("Daily AI budget exceeded")

    def test_last_month_ignored(self, store, governor):
        _spend(store, 44.0, at=NOW - timedelta(days=30))
        assert governor.decide_paid_ai_access("org-1", 1.0).value.allowed

    def test_org_override(self, store, governor):
        store.settings.save("org-1", OrganizationSettings(ai_budget=AIBudgetSettings(daily_usd=0.5)))
        _spend(store, 0.49)
        assert not governor.decide_paid_ai_access("org-1", 0.02).value.allowed

    def test_explicit_caps(self, governor):
        decision = governor.decide_paid_ai_access("org-1", 0.2, caps=BudgetCaps(0.1, 1.0)).value
        assert not decision.allowed

    def test_other_orgs_do_not_count(self, store, governor):
        _spend(store, 1.99, organization_id="org-2")
        assert governor.decide_paid_ai_access("org-1", 0.02).value.allowed

    def test_ledger_unavailable(self, store, governor, monkeypatch):
        monkeypatch.setattr(
            store.usage, "spend_since", MagicMock(side_effect=sqlite3.OperationalError("locked"))
        )
        result = governor.decide_paid_ai_access("org-1", 0.01)
        assert result.code == ErrorCode.STORE_UNAVAILABLE

    def test_blank_org(self, governor):
        assert governor.decide_paid_ai_access("  ", 0.01).code == ErrorCode.VALIDATION

    def test_budget_status(self, store, governor):
        _spend(store, 0.25)
        status = governor.budget_status("org-1").value
        assert status["decision"]["usage"]["daily_spent_usd"] == pytest.approx(0.25)
        assert status["month"]["routes"]["content_generate:v1"]["requests"] == 1


class TestCacheAndLedger:
    def test_set_then_get(self, governor):
        key = build_intent_cache_key("score:v2", {"text": "hi"})
        expires = governor.set_intent_cache(
            "org-1", "score:v2", key, {"score": 71}, "anthropic", "claude-3-5-haiku-latest",
            ttl_seconds=600,
        )
        assert expires.value == to_iso(NOW + timedelta(seconds=600))
        hit = governor.get_intent_cache("org-1", "score:v2", key)
        assert hit.response == {"score": 71}
        assert hit.provider == "anthropic"
        assert governor.get_intent_cache("org-2", "score:v2", key) is None

    def test_ttl_floor(self, governor):
        expires = governor.set_intent_cache("org-1", "r", "h", {}, "p", "m", ttl_seconds=1)
        assert expires.value == to_iso(NOW + timedelta(seconds=60))

    def test_blank_org(self, governor):
        assert governor.set_intent_cache(" ", "r", "h", {}, "p", "m").code == ErrorCode.VALIDATION
        assert governor.get_intent_cache("", "r", "h") is None

    def test_cache_read_failure_is_miss(self, store, governor, monkeypatch):
        monkeypatch.setattr(
            store.db, "query_one", MagicMock(side_effect=sqlite3.OperationalError("locked"))
        )
        assert governor.get_intent_cache("org-1", "r", "h") is None

    def test_log_usage_event(self, store, governor):
        event = AIUsageEvent(
            organization_id="org-1", route_key="score:v2", estimated_cost_usd=0.01,
            created_at=to_iso(NOW),
        )
        assert governor.log_ai_usage_event(event).ok
        assert [e.route_key for e in store.usage.recent("org-1")] == ["score:v2"]

    def test_log_usage_event_store_error(self, store, governor, monkeypatch):
        monkeypatch.setattr(store.usage, "log", MagicMock(side_effect=sqlite3.OperationalError("x")))
        result = governor.log_ai_usage_event(AIUsageEvent(organization_id="org-1", route_key="r"))
        assert result.code == ErrorCode.STORE_UNAVAILABLE


# =========================================================================
# run()
# =========================================================================


class TestRun:
    def test_miss_calls_model_and_logs(self, store, governor, model_func):
        result = _run(governor)
        assert result.mode == "ai"
        assert result.response["text"] == "Hello from the model"
        assert result.response["meta"]["provider"] == "anthropic"
        assert result.response["meta"]["cached"] is False
        assert result.estimated_cost_usd == pytest.approx(0.0028)
        assert result.states[-1] == GovernorState.WRITE_CACHE
        model_func.assert_called_once()

        events = store.usage.recent("org-1")
        assert len(events) == 1
        assert events[0].input_tokens == 1000
        assert events[0].estimated_cost_usd == pytest.approx(0.0028)
        assert events[0].created_at == to_iso(NOW)

    def test_second_call_is_cache_hit(self, store, governor, model_func):
        _run(governor)
        result = _run(governor, params={"tone": "WARM", "topic": " coffee "})
        assert result.cache_hit
        assert result.mode == "ai"
        assert result.response["meta"]["cached"] is True
        assert GovernorState.HIT in result.states
        model_func.assert_called_once()

        hits = [e for e in store.usage.recent("org-1") if e.cache_hit]
        assert len(hits) == 1
        assert hits[0].estimated_cost_usd == 0.0

    def test_expired_cache_entry_misses(self, store, config, model_func):
        config.llm_model = "claude-3-5-haiku-latest"
        times = [NOW]
        governor = AIGovernor(store, config, model_func=model_func, now=lambda: times[0])
        _run(governor, ttl_seconds=60)
        times[0] = NOW + timedelta(seconds=61)
        assert not _run(governor).cache_hit
        assert model_func.call_count == 2

    def test_budget_denied(self, store, governor, model_func):
        _spend(store, 1.999)
        result = _run(governor)
        assert result.mode == "deterministic"
        assert result.budget_fallback
        assert result.error.code == ErrorCode.BUDGET_EXCEEDED
        assert result.response["text"] == "Autumn is here."
        assert result.response["meta"]["provider"] == "template"
        assert GovernorState.DENIED in result.states
        model_func.assert_not_called()
        assert any(e.budget_fallback for e in store.usage.recent("org-1"))

    def test_ledger_unavailable_denies(self, store, governor, model_func, monkeypatch):
        monkeypatch.setattr(
            store.usage, "spend_since", MagicMock(side_effect=sqlite3.OperationalError("locked"))
        )
        result = _run(governor)
        assert result.budget_fallback
        assert result.error.code == ErrorCode.STORE_UNAVAILABLE
        model_func.assert_not_called()

    def test_timeout_serves_fallback(self, store, governor):
        def slow(messages, max_tokens):
            time.sleep(0.5)
            return ModelResponse(text="late")

        governor._model_func = slow
        result = _run(governor, timeout_seconds=0.05)
        assert result.mode == "deterministic"
        assert result.error.code == ErrorCode.MODEL_TIMEOUT
        assert not result.budget_fallback
        event = store.usage.recent("org-1")[0]
        assert event.success is False
        assert event.estimated_cost_usd == 0.0
        assert event.error_code == "MODEL_TIMEOUT"

    def test_model_error_serves_fallback(self, store, governor, model_func):
        model_func.side_effect = RuntimeError("503 from provider")
        result = _run(governor)
        assert result.mode == "deterministic"
        assert result.error.code == ErrorCode.MODEL_UNAVAILABLE
        # nothing was cached, so the next call tries the model again
        model_func.side_effect = None
        assert _run(governor).mode == "ai"
        assert model_func.call_count == 2

    def test_callable_fallback_only_when_needed(self, governor):
        fallback = MagicMock(return_value={"text": "plain"})
        governor.run("org-1", "r:v1", {"x": 1}, MESSAGES, fallback)
        fallback.assert_not_called()

    def test_blank_org_validation(self, governor, model_func):
        result = governor.run(" ", "r:v1", {}, MESSAGES, FALLBACK)
        assert result.error.code == ErrorCode.VALIDATION
        model_func.assert_not_called()

    def test_plain_text_response(self, governor, model_func):
        model_func.return_value = ModelResponse(text="Just words", provider="anthropic")
        assert _run(governor).response["text"] == "Just words"

    def test_write_failure_after_success(self, store, governor, monkeypatch):
        monkeypatch.setattr(
            store.intent_cache, "set", MagicMock(side_effect=sqlite3.OperationalError("disk full"))
        )
        result = _run(governor)
        assert result.mode == "ai"
        assert result.response["text"] == "Hello from the model"
        assert result.error.code == ErrorCode.STORE_UNAVAILABLE
        # ledger row and cache entry share one transaction
        assert store.usage.recent("org-1") == []

    def test_strict_budget_lock_busy(self, store, config, model_func, clock):
        config.strict_budget = True
        config.budget_lock_timeout = 0.1
        governor = AIGovernor(store, config, model_func=model_func, now=clock)
        holder = OrgLock(config.lock_dir, "budget", "org-1", stale_after=60)
        assert holder.try_acquire()
        try:
            result = _run(governor)
        finally:
            holder.release()
        assert result.budget_fallback
        assert result.error.code == ErrorCode.BUDGET_EXCEEDED
        model_func.assert_not_called()
        event = store.usage.recent("org-1")[0]
        assert event.metadata["reason"] == "budget_lock_timeout"

    def test_strict_budget_from_org_settings(self, store, config, model_func, clock):
        config.llm_model = "claude-3-5-haiku-latest"
        store.settings.save("org-1", OrganizationSettings(ai_budget=AIBudgetSettings(strict=True)))
        governor = AIGovernor(store, config, model_func=model_func, now=clock)
        assert _run(governor).mode == "ai"
        # lock released after the call
        after = OrgLock(config.lock_dir, "budget", "org-1", timeout=0)
        assert after.try_acquire()
        after.release()

    def test_strict_lock_outlives_model_timeout(self, store, config, model_func, clock):
        config.lock_stale_after_seconds = 5.0
        governor = AIGovernor(store, config, model_func=model_func, now=clock)
        assert governor._lock_stale_after(None) == config.model_timeout_seconds + 30.0
        assert governor._lock_stale_after(120.0) == 150.0
        config.lock_stale_after_seconds = 600.0
        assert governor._lock_stale_after(None) == 600.0


class TestParseModelText:
    def test_json_object(self):
        assert parse_model_text('{"a": 1}') == {"a": 1}

    def test_json_array_is_text(self):
        assert parse_model_text("[1, 2]") == {"text": "[1, 2]"}


# =========================================================================
# Premium ROI gate
# =========================================================================


class TestRoiGate:
    def test_no_uplift(self):
        decision = evaluate_premium_roi_gate(70, 65, 0.001, 0.01)
        assert not decision.should_escalate
        assert decision.reason == "no_uplift_predicted"

    def test_free_upgrade(self):
        decision = evaluate_premium_roi_gate(60, 70, 0.01, 0.01)
        assert decision.should_escalate
        assert decision.reason == "premium_not_more_expensive"
        assert decision.roi_multiple == FREE_UPGRADE_ROI

    def test_roi_pass(self):
        decision = evaluate_premium_roi_gate(60, 80, 0.001, 0.01)
        assert decision.should_escalate
        assert decision.reason == "roi_pass"
        assert decision.expected_incremental_value_usd == pytest.approx(0.6)
        assert decision.roi_multiple == pytest.approx(66.666667)

    def test_roi_below_threshold(self):
        decision = evaluate_premium_roi_gate(60, 61, 0.001, 0.02)
        assert not decision.should_escalate
        assert decision.reason == "roi_below_threshold"

    def test_scores_are_clamped(self):
        decision = evaluate_premium_roi_gate(-50, 150, 0.0, 0.0)
        assert decision.expected_uplift_points == 100.0

    def test_leads_value_more(self):
        engagement = evaluate_premium_roi_gate(60, 61, 0.001, 0.02, objective="engagement")
        leads = evaluate_premium_roi_gate(60, 61, 0.001, 0.02, objective="leads")
        assert leads.roi_multiple > engagement.roi_multiple
        assert leads.should_escalate

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("STRATA_AI_PREMIUM_MIN_ROI_MULTIPLE_ENGAGEMENT", "100")
        assert not evaluate_premium_roi_gate(60, 80, 0.001, 0.01).should_escalate
