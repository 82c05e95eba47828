"""
strata.metacognitive — How well has the system been predicting?

Each organization accumulates ``prediction_accuracy`` observations
(expected vs. actual engagement of published posts).  New orgs have
none, so the rolling accuracy is Bayesian-smoothed toward a neutral
prior:

    accuracy = (PRIOR_MEAN * PRIOR_STRENGTH + sum(obs)) / (PRIOR_STRENGTH + n)

The smoothed value is mapped linearly onto a generation temperature in
[0.3, 0.9] and cached in working memory for six hours, where request
handlers pick it up.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional

from strata.core.database import Database
from strata.core.types import MetacognitiveEntry, clamp01, now_iso, to_iso, utcnow
from strata.working.store import WorkingMemoryStore

log = logging.getLogger(__name__)

PRIOR_MEAN = 0.5
PRIOR_STRENGTH = 3.0

ACCURACY_METRIC = "prediction_accuracy"
STATE_SESSION = "metacognitive"
STATE_KEY = "state"
STATE_TTL_SECONDS = 6 * 3600.0

MIN_TEMPERATURE = 0.3
MAX_TEMPERATURE = 0.9


def bayesian_accuracy(values: List[float]) -> float:
    """Prior-smoothed mean of *values*; out-of-range values are ignored."""
    observed = [v for v in values if v == v and 0.0 <= v <= 1.0]
    if not observed:
        return PRIOR_MEAN
    return (PRIOR_MEAN * PRIOR_STRENGTH + sum(observed)) / (PRIOR_STRENGTH + len(observed))


def temperature_for(accuracy: float) -> float:
    return max(MIN_TEMPERATURE, min(MAX_TEMPERATURE, MIN_TEMPERATURE + accuracy * 0.6))


class MetacognitiveStore:
    """Append-only self-assessment log."""

    def __init__(self, db: Database):
        self.db = db

    def log(self, entry: MetacognitiveEntry) -> MetacognitiveEntry:
        self.db.execute(
            """INSERT INTO metacognitive_log
               (id, organization_id, metric, value, sample_size, period_end, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.id,
                entry.organization_id,
                entry.metric,
                entry.value,
                entry.sample_size,
                entry.period_end,
                entry.created_at,
            ),
        )
        return entry

    def log_accuracy(
        self, organization_id: str, expected: float, actual: float, period_end: Optional[str] = None
    ) -> MetacognitiveEntry:
        """Record one prediction: accuracy = 1 - relative error, clamped to [0, 1]."""
        denominator = max(abs(expected), abs(actual), 1e-9)
        accuracy = clamp01(1.0 - abs(expected - actual) / denominator)
        return self.log(
            MetacognitiveEntry(
                organization_id=organization_id,
                metric=ACCURACY_METRIC,
                value=accuracy,
                period_end=period_end or now_iso(),
            )
        )

    def recent_values(
        self, organization_id: str, metric: str = ACCURACY_METRIC, limit: int = 10
    ) -> List[float]:
        rows = self.db.query(
            """SELECT value FROM metacognitive_log
               WHERE organization_id = ? AND metric = ?
               ORDER BY period_end DESC LIMIT ?""",
            (organization_id, metric, int(limit)),
        )
        return [float(r["value"]) for r in rows]

    def refresh_state(
        self,
        organization_id: str,
        working: WorkingMemoryStore,
        now: Optional[datetime] = None,
    ) -> Dict:
        """Recompute the smoothed accuracy and cache it in working memory."""
        now = now or utcnow()
        values = self.recent_values(organization_id)
        accuracy = bayesian_accuracy(values)
        state = {
            "accuracy_bayesian": round(accuracy, 4),
            "accuracy_samples": len(values),
            "official_temperature": round(temperature_for(accuracy), 4),
            "prior_strength": PRIOR_STRENGTH,
            "calculated_at": to_iso(now),
        }
        working.set(
            organization_id, STATE_SESSION, STATE_KEY, state, ttl_seconds=STATE_TTL_SECONDS, now=now
        )
        log.debug("Metacognitive state for %s: %s", organization_id, state)
        return state
