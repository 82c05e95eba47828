"""Tests for strata.outcomes.bandit — UCB variant selection."""

from __future__ import annotations

import sqlite3
from unittest.mock import MagicMock

import pytest

from strata.core.settings import CreativeSettings, OrganizationSettings
from strata.core.types import ErrorCode
from strata.outcomes.bandit import objective_bonus, select_best_variant
from strata.outcomes.learning import OutcomeLearner, PublishedPost
from strata.outcomes.signals import derive_creative_signals

QUESTION = "What is your biggest content struggle? Comment below."
STATEMENT = "Our new feature launches today."


@pytest.fixture
def learner(store):
    return OutcomeLearner(store, success_thresholds={"engagement": 2.0})


def _feed(learner, text, rates, prefix):
    for n, rate in enumerate(rates):
        post = PublishedPost(
            id=f"{prefix}{n}",
            organization_id="org-1",
            platform="instagram",
            text=text,
            engagement_rate=rate,
        )
        assert learner.refresh_creative_memory_from_post(post).ok


class TestSelectBestVariant:
    def test_single_variant(self, learner):
        result = select_best_variant(learner, "org-1", "instagram", [STATEMENT])
        assert result.value.selected_index == 0
        assert result.value.reason == "single_variant"

    def test_blank_variants_keep_positions(self, learner):
        result = select_best_variant(learner, "org-1", "instagram", ["", "   ", STATEMENT])
        assert result.value.selected_index == 2
        assert result.value.reason == "single_variant"

    def test_proven_recipe_wins(self, learner):
        _feed(learner, QUESTION, [5.0] * 10, "q")
        _feed(learner, STATEMENT, [0.5] * 10, "s")
        result = select_best_variant(learner, "org-1", "instagram", [STATEMENT, QUESTION])
        selection = result.value
        assert selection.selected_index == 1
        assert selection.reason == "bandit_ucb_objective_engagement"
        assert [s.index for s in selection.scores] == [1, 0]

    def test_unexplored_recipe_gets_a_chance(self, learner):
        _feed(learner, QUESTION, [3.0] * 20 + [1.0] * 20, "q")
        result = select_best_variant(learner, "org-1", "instagram", [QUESTION, STATEMENT])
        assert result.value.selected_index == 1

    def test_zero_exploration_exploits(self, learner):
        _feed(learner, QUESTION, [3.0] * 20 + [1.0] * 20, "q")
        result = select_best_variant(
            learner, "org-1", "instagram", [QUESTION, STATEMENT], exploration=0.0
        )
        assert result.value.selected_index == 0

    def test_org_exploration_override(self, store, learner):
        _feed(learner, QUESTION, [3.0] * 20 + [1.0] * 20, "q")
        store.settings.save(
            "org-1", OrganizationSettings(creative=CreativeSettings(bandit_exploration=0.0001))
        )
        result = select_best_variant(learner, "org-1", "instagram", [QUESTION, STATEMENT])
        assert result.value.selected_index == 0

    def test_tie_goes_to_lower_index(self, learner):
        result = select_best_variant(
            learner, "org-1", "instagram", [STATEMENT, "Our new app ships today."]
        )
        assert result.value.selected_index == 0

    def test_past_decisions_credit_variant_slot(self, learner):
        texts = ["Our new feature launches today.", "Our new app ships today."]
        for n in range(3):
            post_id = f"p{n}"
            draft = {"platform_versions": {"instagram": {"text": texts[1], "selected_variant": "v1"}}}
            assert learner.log_decision_for_published_post(
                "org-1", post_id, "instagram", "content_generate", draft=draft
            ).ok
            post = PublishedPost(
                id=post_id, organization_id="org-1", platform="instagram", text=texts[1],
                engagement_rate=8.0,
            )
            assert learner.log_outcome_for_post(post, "sync", "snapshot").value is True
        result = select_best_variant(learner, "org-1", "instagram", texts)
        selection = result.value
        assert selection.selected_index == 1
        top = selection.scores[0]
        assert top.sample_size == 3
        assert top.avg_engagement == pytest.approx(8.0)

    def test_validation(self, learner):
        assert select_best_variant(learner, "", "instagram", [STATEMENT]).code == ErrorCode.VALIDATION
        result = select_best_variant(learner, "org-1", "instagram", [STATEMENT], objective="fame")
        assert result.code == ErrorCode.VALIDATION

    def test_store_failure(self, store, learner, monkeypatch):
        monkeypatch.setattr(
            store.outcomes, "recent_decisions", MagicMock(side_effect=sqlite3.OperationalError("x"))
        )
        result = select_best_variant(learner, "org-1", "instagram", [STATEMENT, QUESTION])
        assert result.code == ErrorCode.STORE_UNAVAILABLE


class TestObjectiveBonus:
    def test_leads_favour_links(self):
        assert objective_bonus("leads", derive_creative_signals("Sign up. Link in bio")) > 0

    def test_engagement_favours_questions(self):
        assert objective_bonus("engagement", derive_creative_signals(QUESTION)) > 0

    def test_no_bonus(self):
        assert objective_bonus("saves", derive_creative_signals(STATEMENT)) == 0.0
