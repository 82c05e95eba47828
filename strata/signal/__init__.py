"""strata.signal — Memory strength decay."""

from strata.signal.decay import (
    DecayConfig,
    DecayEngine,
    composite_score,
    days_since,
    decay_weight,
    resolve_decay_config,
)

__all__ = [
    "DecayConfig",
    "DecayEngine",
    "composite_score",
    "days_since",
    "decay_weight",
    "resolve_decay_config",
]
