"""
strata.outcomes.bandit — Upper-confidence-bound choice between variants.

Given several candidate texts for one post, pick the one most likely
to hit the objective while still giving under-sampled recipes a
chance.  Evidence comes from two places:

  - creative memory for each variant's recipe (``hook|framework|cta``);
  - past decisions that picked the same variant slot, joined to the
    latest outcome of the resulting post.

Score per variant:

    success_rate = (successes + 1) / (samples + 2)          # Laplace
    ucb          = success_rate + c * sqrt(ln(N + 2) / (samples + 1))
    score        = ucb + 0.25 * min(1, avg_engagement / 10) + objective_bonus

Ties go to the less-sampled variant, then the lower index.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

from strata.core.types import Err, ErrorCode, Ok, Result, require_org
from strata.outcomes.learning import (
    OBJECTIVES,
    derive_engagement_rate,
    parse_selected_variant_index,
)
from strata.outcomes.signals import CreativeSignals, derive_creative_signals, normalize_text

if TYPE_CHECKING:
    from strata.outcomes.learning import OutcomeLearner

log = logging.getLogger(__name__)

ENGAGEMENT_WEIGHT = 0.25
HISTORY_LIMIT = 200


@dataclass
class VariantScore:
    index: int
    memory_key: str
    score: float
    success_rate: float
    sample_size: int
    avg_engagement: float

    def to_dict(self) -> Dict:
        return {
            "index": self.index,
            "memory_key": self.memory_key,
            "score": self.score,
            "success_rate": self.success_rate,
            "sample_size": self.sample_size,
            "avg_engagement": self.avg_engagement,
        }


@dataclass
class VariantSelection:
    selected_index: int
    reason: str
    scores: List[VariantScore] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "selected_index": self.selected_index,
            "reason": self.reason,
            "scores": [s.to_dict() for s in self.scores],
        }


def objective_bonus(objective: str, signals: CreativeSignals) -> float:
    """Small prior nudging recipes that fit the objective."""
    bonus = 0.0
    if objective == "leads" and signals.cta_type == "link":
        bonus += 0.08
    if objective == "saves" and signals.cta_type == "save":
        bonus += 0.08
    if objective == "reach" and signals.hook_type in ("contrarian", "list"):
        bonus += 0.04
    if objective == "engagement" and (
        signals.cta_type == "comment" or signals.hook_type == "question"
    ):
        bonus += 0.05
    return bonus


def select_best_variant(
    learner: "OutcomeLearner",
    organization_id: str,
    platform: str,
    variants: List[str],
    objective: str = "engagement",
    exploration: Optional[float] = None,
) -> Result[VariantSelection]:
    """Choose among *variants* with a UCB bandit over creative memory."""
    err = require_org(organization_id)
    if err is not None:
        return err
    if objective not in OBJECTIVES:
        return Err(ErrorCode.VALIDATION, f"Unknown objective {objective!r}")

    # blank variants are skipped but keep their caller-side index
    cleaned = [(i, normalize_text(v or "")) for i, v in enumerate(variants)]
    cleaned = [(i, t) for i, t in cleaned if t]
    if len(cleaned) <= 1:
        index, text = cleaned[0] if cleaned else (0, "")
        key = derive_creative_signals(text).memory_key
        return Ok(
            VariantSelection(
                selected_index=index,
                reason="single_variant",
                scores=[VariantScore(index, key, 1.0, 0.5, 0, 0.0)],
            )
        )

    store = learner.store
    try:
        settings = store.settings.get(organization_id)
        if exploration is None:
            exploration = settings.creative.bandit_exploration
        threshold = learner.success_threshold(organization_id, objective)

        signals = [(i, derive_creative_signals(text)) for i, text in cleaned]
        memory = store.outcomes.creative_memory_for_keys(
            organization_id, platform, objective, (s.memory_key for _, s in signals)
        )

        history = {i: {"samples": 0, "success": 0, "engagement": 0.0} for i, _ in cleaned}
        decisions = store.outcomes.recent_decisions(
            organization_id, platform, objective, limit=HISTORY_LIMIT
        )
        outcomes = store.outcomes.latest_outcomes(
            organization_id, (d["post_id"] for d in decisions)
        )
    except sqlite3.Error as exc:
        log.warning("Bandit history unavailable for %s: %s", organization_id, exc)
        return Err(ErrorCode.STORE_UNAVAILABLE, f"Bandit history unavailable: {exc}", exc)

    if exploration is None:
        exploration = learner.bandit_exploration

    for decision in decisions:
        index = parse_selected_variant_index(decision.get("selected_variant"))
        outcome = outcomes.get(decision["post_id"])
        if index is None or index not in history or outcome is None:
            continue
        engagement = derive_engagement_rate(outcome)
        state = history[index]
        state["samples"] += 1
        state["engagement"] += engagement
        if engagement >= threshold:
            state["success"] += 1

    total_samples = sum(int(r["sample_size"]) for r in memory.values()) + sum(
        h["samples"] for h in history.values()
    )
    log_term = math.log(max(2, total_samples + 2))

    scored: List[VariantScore] = []
    for index, sig in signals:
        row = memory.get(sig.memory_key) or {}
        mem_samples = int(row.get("sample_size") or 0)
        mem_success = int(row.get("success_count") or 0)
        mem_avg = float(row.get("avg_engagement") or 0.0)
        hist = history[index]

        sample_size = mem_samples + hist["samples"]
        success_count = mem_success + hist["success"]
        avg_engagement = (
            (mem_avg * mem_samples + hist["engagement"]) / sample_size if sample_size else 0.0
        )
        success_rate = (success_count + 1) / (sample_size + 2)
        ucb = success_rate + exploration * math.sqrt(log_term / (sample_size + 1))
        normalized = max(0.0, min(1.0, avg_engagement / 10.0))
        score = ucb + normalized * ENGAGEMENT_WEIGHT + objective_bonus(objective, sig)
        scored.append(
            VariantScore(
                index=index,
                memory_key=sig.memory_key,
                score=round(score, 6),
                success_rate=round(success_rate, 6),
                sample_size=sample_size,
                avg_engagement=round(avg_engagement, 4),
            )
        )

    scored.sort(key=lambda s: (-s.score, s.sample_size, s.index))
    return Ok(
        VariantSelection(
            selected_index=scored[0].index,
            reason=f"bandit_ucb_objective_{objective}",
            scores=scored,
        )
    )
