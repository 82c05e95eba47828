"""
strata.signal.decay — Forgetting-curve weighting for episodic memories.

Every episodic row carries a ``strength`` and an ``importance``; its
weight halves every ``half_life_days``:

    weight = strength * importance * 2 ** (-days / half_life)

Half-lives are per event type (a viral moment stays relevant longer
than a budget alert).  Recall ranks rows by ``composite_score``, which
multiplies the weight by a caller-supplied similarity and a recency
bias, and quietly skips rows whose weight fell below the floor.  Rows
are never deleted.

The module-level functions are pure.  ``DecayEngine`` binds them to a
half-life table so stores can rank and filter rows.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from strata.core.types import EpisodicMemory, parse_iso, utcnow

#: Default half-life (days) per episodic event type.
EVENT_HALF_LIVES: Dict[str, float] = {
    "post_success": 30.0,
    "post_failure": 14.0,
    "viral_moment": 60.0,
    "audience_shift": 45.0,
    "goal_milestone": 90.0,
    "strategy_change": 21.0,
    "competitor_insight": 30.0,
    "trend_detected": 14.0,
    "budget_exhausted": 7.0,
    "content_gap_found": 21.0,
}

DEFAULT_HALF_LIFE_DAYS = 30.0
DEFAULT_MIN_STRENGTH = 0.05
DEFAULT_RECALL_BOOST = 1.2

_LN2 = math.log(2)
_SECONDS_PER_DAY = 86_400.0


@dataclass(frozen=True)
class DecayConfig:
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS
    min_strength: float = DEFAULT_MIN_STRENGTH
    recall_boost_factor: float = DEFAULT_RECALL_BOOST

    def __post_init__(self) -> None:
        if not self.half_life_days > 0:
            raise ValueError(f"half_life_days must be positive, got {self.half_life_days!r}")
        if not 0.0 <= self.min_strength <= 1.0:
            raise ValueError(f"min_strength must be within [0, 1], got {self.min_strength!r}")
        if self.recall_boost_factor < 1.0:
            raise ValueError(
                f"recall_boost_factor must be >= 1, got {self.recall_boost_factor!r}"
            )


# ---------------------------------------------------------------------------
# Pure functions
# ---------------------------------------------------------------------------


def decay_weight(
    strength: float,
    importance: float,
    half_life_days: float,
    days_since_created: float,
) -> float:
    """Current weight of a memory.

    A zero ``strength``, ``importance`` or ``half_life_days`` yields 0:
    a half-life of 0 decays instantly, it does not mean "never decays".
    Negative ages are clamped to 0 so future-dated rows are not boosted.
    """
    if strength <= 0 or importance <= 0 or half_life_days <= 0:
        return 0.0
    days = max(0.0, days_since_created)
    return strength * importance * math.pow(2.0, -days / half_life_days)


def composite_score(
    strength: float,
    importance: float,
    half_life_days: float,
    days_since_created: float,
    similarity: float = 1.0,
    recency_bias_multiplier: float = 1.0,
) -> float:
    """Recall ranking score: ``similarity * decay_weight * recency_bias``."""
    weight = decay_weight(strength, importance, half_life_days, days_since_created)
    return similarity * weight * recency_bias_multiplier


def resolve_decay_config(
    event_type: str,
    overrides: Optional[Dict[str, Any]] = None,
    table: Optional[Dict[str, float]] = None,
) -> DecayConfig:
    """Decay settings for *event_type*; explicit *overrides* win.

    Raises ``ValueError`` for an override outside the valid range.
    """
    half_lives = table if table is not None else EVENT_HALF_LIVES
    overrides = overrides or {}
    return DecayConfig(
        half_life_days=float(
            overrides.get("half_life_days", half_lives.get(event_type, DEFAULT_HALF_LIFE_DAYS))
        ),
        min_strength=float(overrides.get("min_strength", DEFAULT_MIN_STRENGTH)),
        recall_boost_factor=float(overrides.get("recall_boost_factor", DEFAULT_RECALL_BOOST)),
    )


def half_life_to_decay_rate(half_life_days: float) -> float:
    """``ln 2 / h``; a non-positive half-life maps to the sentinel rate 1."""
    if half_life_days <= 0:
        return 1.0
    return _LN2 / half_life_days


def decay_rate_to_half_life(decay_rate: float) -> float:
    """``ln 2 / rate``; a non-positive rate means "never decays" (inf)."""
    if decay_rate <= 0:
        return math.inf
    return _LN2 / decay_rate


def estimate_memory_lifespan(
    strength: float,
    importance: float,
    half_life_days: float,
    min_threshold: float = DEFAULT_MIN_STRENGTH,
) -> float:
    """Days until the weight falls to *min_threshold*.

    Returns 0 when the memory is born below the threshold, has no
    strength, or has a non-positive half-life.
    """
    initial = strength * importance
    if initial <= 0 or initial <= min_threshold or half_life_days <= 0:
        return 0.0
    return -half_life_days * math.log(min_threshold / initial) / _LN2


def days_since(timestamp: Any, now: Optional[datetime] = None) -> float:
    """Fractional days elapsed since *timestamp*.

    Unparsable and future timestamps both yield 0.
    """
    created = parse_iso(timestamp)
    if created is None:
        return 0.0
    now = now or utcnow()
    if now.tzinfo is None:
        now = parse_iso(now)
    return max(0.0, (now - created).total_seconds() / _SECONDS_PER_DAY)


# ---------------------------------------------------------------------------
# DecayEngine
# ---------------------------------------------------------------------------


class DecayEngine:
    """
    Decay math bound to a half-life table.

    Parameters
    ----------
    half_life_overrides : dict
        Per-event-type half-lives (days) merged over ``EVENT_HALF_LIVES``.
    min_weight : float
        Rows whose current weight is below this are treated as forgotten
        by ``is_alive`` and ``rank``.
    """

    def __init__(
        self,
        half_life_overrides: Optional[Dict[str, float]] = None,
        min_weight: float = DEFAULT_MIN_STRENGTH,
    ) -> None:
        self.half_lives: Dict[str, float] = dict(EVENT_HALF_LIVES)
        for event_type, half_life in (half_life_overrides or {}).items():
            if half_life <= 0:
                raise ValueError(
                    f"Half-life for {event_type!r} must be positive, got {half_life!r}"
                )
            self.half_lives[event_type] = float(half_life)
        self.min_weight = min_weight

    @classmethod
    def from_config(cls, config: Any) -> "DecayEngine":
        return cls(
            half_life_overrides=config.decay_half_lives,
            min_weight=config.recall_min_weight,
        )

    def half_life_for(self, memory: EpisodicMemory) -> float:
        """Row-level half-life if set, else the event-type default."""
        if memory.half_life_days and memory.half_life_days > 0:
            return float(memory.half_life_days)
        return self.half_lives.get(memory.event_type, DEFAULT_HALF_LIFE_DAYS)

    def weight(self, memory: EpisodicMemory, now: Optional[datetime] = None) -> float:
        return decay_weight(
            memory.strength,
            memory.importance,
            self.half_life_for(memory),
            days_since(memory.created_at, now),
        )

    def is_alive(self, memory: EpisodicMemory, now: Optional[datetime] = None) -> bool:
        return self.weight(memory, now) >= self.min_weight

    def lifespan_days(self, memory: EpisodicMemory) -> float:
        return estimate_memory_lifespan(
            memory.strength, memory.importance, self.half_life_for(memory), self.min_weight
        )

    def rank(
        self,
        memories: Iterable[EpisodicMemory],
        similarity_fn: Optional[Callable[[EpisodicMemory], float]] = None,
        recency_bias_fn: Optional[Callable[[EpisodicMemory], float]] = None,
        now: Optional[datetime] = None,
    ) -> List[Tuple[EpisodicMemory, float]]:
        """Score and sort *memories*, highest first, dropping forgotten ones.

        Ties keep the newer row first.
        """
        now = now or utcnow()
        scored: List[Tuple[EpisodicMemory, float]] = []
        for memory in memories:
            if not self.is_alive(memory, now):
                continue
            score = composite_score(
                memory.strength,
                memory.importance,
                self.half_life_for(memory),
                days_since(memory.created_at, now),
                similarity=similarity_fn(memory) if similarity_fn else 1.0,
                recency_bias_multiplier=recency_bias_fn(memory) if recency_bias_fn else 1.0,
            )
            scored.append((memory, score))
        scored.sort(key=lambda pair: (pair[1], pair[0].created_at), reverse=True)
        return scored
