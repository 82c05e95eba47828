"""Premium-model escalation gate.

Decides whether paying for a premium model over the economy one is
worth it, given the predicted score uplift.  Defaults per objective can
be overridden from the environment:

    STRATA_AI_PREMIUM_MIN_ROI_MULTIPLE_<OBJECTIVE>
    STRATA_AI_OBJECTIVE_VALUE_MULTIPLIER_<OBJECTIVE>
    STRATA_AI_DEFAULT_VALUE_PER_SCORE_POINT_USD
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from strata.core.config import env_float
from strata.governor.pricing import normalize_usd

OBJECTIVE_VALUE_MULTIPLIERS: Dict[str, float] = {
    "engagement": 1.0,
    "reach": 0.9,
    "saves": 1.3,
    "leads": 3.2,
}

MIN_ROI_MULTIPLES: Dict[str, float] = {
    "engagement": 3.0,
    "reach": 3.2,
    "saves": 2.8,
    "leads": 1.8,
}

DEFAULT_VALUE_PER_SCORE_POINT_USD = 0.03

#: ROI reported when the premium model costs no more than the economy one.
FREE_UPGRADE_ROI = 9999.0


@dataclass
class PremiumRoiDecision:
    should_escalate: bool
    reason: str
    expected_uplift_points: float
    expected_incremental_value_usd: float
    incremental_cost_usd: float
    roi_multiple: float

    def to_dict(self) -> Dict:
        return {
            "should_escalate": self.should_escalate,
            "reason": self.reason,
            "expected_uplift_points": self.expected_uplift_points,
            "expected_incremental_value_usd": self.expected_incremental_value_usd,
            "incremental_cost_usd": self.incremental_cost_usd,
            "roi_multiple": self.roi_multiple,
        }


def _clamp_score(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


def evaluate_premium_roi_gate(
    baseline_score: float,
    projected_premium_score: float,
    economy_cost_usd: float,
    premium_cost_usd: float,
    objective: str = "engagement",
    min_roi_multiple: Optional[float] = None,
    value_per_score_point_usd: Optional[float] = None,
) -> PremiumRoiDecision:
    """Escalate when the uplift's dollar value covers the extra cost often enough.

    Scores are on a 0..100 scale and are clamped.  Unknown objectives
    fall back to ``engagement``.
    """
    if objective not in OBJECTIVE_VALUE_MULTIPLIERS:
        objective = "engagement"
    suffix = objective.upper()

    minimum = max(
        1.0,
        min_roi_multiple
        or env_float(f"STRATA_AI_PREMIUM_MIN_ROI_MULTIPLE_{suffix}", MIN_ROI_MULTIPLES[objective]),
    )
    multiplier = env_float(
        f"STRATA_AI_OBJECTIVE_VALUE_MULTIPLIER_{suffix}", OBJECTIVE_VALUE_MULTIPLIERS[objective]
    )
    base_value = max(
        0.0,
        value_per_score_point_usd
        or env_float("STRATA_AI_DEFAULT_VALUE_PER_SCORE_POINT_USD", DEFAULT_VALUE_PER_SCORE_POINT_USD),
    )
    value_per_point = base_value * multiplier

    uplift = max(0.0, _clamp_score(projected_premium_score) - _clamp_score(baseline_score))
    incremental_cost = normalize_usd(max(0.0, premium_cost_usd - economy_cost_usd))

    if uplift <= 0:
        return PremiumRoiDecision(
            should_escalate=False,
            reason="no_uplift_predicted",
            expected_uplift_points=0.0,
            expected_incremental_value_usd=0.0,
            incremental_cost_usd=incremental_cost,
            roi_multiple=0.0,
        )

    incremental_value = normalize_usd(uplift * value_per_point)

    if incremental_cost <= 0:
        return PremiumRoiDecision(
            should_escalate=True,
            reason="premium_not_more_expensive",
            expected_uplift_points=normalize_usd(uplift),
            expected_incremental_value_usd=incremental_value,
            incremental_cost_usd=0.0,
            roi_multiple=FREE_UPGRADE_ROI,
        )

    roi = normalize_usd(incremental_value / incremental_cost)
    escalate = roi >= minimum
    return PremiumRoiDecision(
        should_escalate=escalate,
        reason="roi_pass" if escalate else "roi_below_threshold",
        expected_uplift_points=normalize_usd(uplift),
        expected_incremental_value_usd=incremental_value,
        incremental_cost_usd=incremental_cost,
        roi_multiple=roi,
    )
