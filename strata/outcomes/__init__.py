"""strata.outcomes — Outcome learning: signals, outcome logging, creative memory, bandit."""

from strata.outcomes.bandit import VariantScore, VariantSelection, select_best_variant
from strata.outcomes.channel import OutcomeChannel, OutcomeNotice
from strata.outcomes.learning import OutcomeLearner, PublishedPost, derive_engagement_rate
from strata.outcomes.signals import CreativeSignals, derive_creative_signals

__all__ = [
    "CreativeSignals",
    "OutcomeChannel",
    "OutcomeLearner",
    "OutcomeNotice",
    "PublishedPost",
    "VariantScore",
    "VariantSelection",
    "derive_creative_signals",
    "derive_engagement_rate",
    "select_best_variant",
]
