"""
strata.patterns.detector — Mining patterns out of episodic memory.

Three rule-based stages run over an organization's recent events:

  frequency      event types (per platform) that keep happening
  temporal       event types that cluster on a weekday or a 3-hour
                 UTC window
  co_occurrence  pairs of different event types that land within a
                 time window of each other

An optional fourth stage asks a model for subtler patterns, gated by
the AI governor's budget.  Every stage yields ``PatternCandidate`` rows
for consolidation; ``validate_candidates`` filters them first.

Day-of-week numbering is 0 = Sunday through 6 = Saturday.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np

from strata.core.tokens import trim_to_budget
from strata.core.types import (
    EpisodicMemory,
    Err,
    ErrorCode,
    Ok,
    PatternCandidate,
    Result,
    parse_iso,
    require_org,
    utcnow,
)
from strata.governor.pricing import estimate_model_cost_usd, estimate_tokens_from_text
from strata.signal.decay import DecayEngine, days_since, decay_weight

if TYPE_CHECKING:
    from strata.core.config import Config
    from strata.governor.governor import AIGovernor
    from strata.store import MemoryStore

log = logging.getLogger(__name__)

DAY_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")
HOUR_BUCKET = 3

#: Frequency confidence saturates at this many occurrences.
FREQUENCY_SATURATION = 10

LLM_PATTERN_MODEL = "gpt-4o-mini"
LLM_PATTERN_ROUTE = "pattern_detection_llm"
LLM_MAX_EVENTS = 50
LLM_MAX_CANDIDATES = 10
LLM_MAX_SUMMARY_TOKENS = 3000
LLM_PROMPT_TOKENS = 200
LLM_EXPECTED_OUTPUT_TOKENS = 500
LLM_MAX_TOKENS = 800
MAX_EVIDENCE_IDS = 50

LLM_SYSTEM_PROMPT = """\
You are a pattern detection engine for social media content strategy. \
Analyze the episodic memories below and identify recurring patterns.

Output a JSON array of patterns. Each pattern object:
{
  "patternType": "content_topic" | "timing" | "audience_reaction" | "strategy" | "platform_behavior",
  "patternKey": "short descriptive key",
  "patternValue": {"description": "...", "evidence": ["..."]},
  "confidence": 0.0-1.0,
  "reasoning": "brief explanation"
}

Rules:
- Only report patterns with confidence >= 0.5
- Each pattern must have at least 2 supporting events
- Be specific, not generic
- Maximum 5 patterns
- Output ONLY a valid JSON array, no markdown"""


# ---------------------------------------------------------------------------
# Stage results
# ---------------------------------------------------------------------------


@dataclass
class FrequencyPattern:
    event_type: str
    platform: Optional[str]
    count: int
    time_window_days: int
    avg_importance: float
    confidence: float
    evidence_ids: List[str]

    def to_candidate(self, organization_id: str) -> PatternCandidate:
        return PatternCandidate(
            organization_id=organization_id,
            pattern_type="frequency",
            platform=self.platform,
            pattern_key=f"{self.event_type}_frequency",
            pattern_value={
                "count": self.count,
                "time_window_days": self.time_window_days,
                "avg_importance": self.avg_importance,
            },
            confidence=self.confidence,
            sample_size=self.count,
            evidence_ids=self.evidence_ids[:MAX_EVIDENCE_IDS],
        )


@dataclass
class TemporalPattern:
    event_type: str
    day_of_week: Optional[int]
    hour_of_day: Optional[int]
    frequency: float
    sample_size: int
    description: str

    @property
    def pattern_key(self) -> str:
        if self.day_of_week is not None:
            return f"{self.event_type}_day{self.day_of_week}"
        return f"{self.event_type}_hour{self.hour_of_day}"

    def to_candidate(self, organization_id: str) -> PatternCandidate:
        return PatternCandidate(
            organization_id=organization_id,
            pattern_type="temporal",
            pattern_key=self.pattern_key,
            pattern_value={
                "day_of_week": self.day_of_week,
                "hour_of_day": self.hour_of_day,
                "frequency": self.frequency,
                "description": self.description,
            },
            confidence=self.frequency,
            sample_size=self.sample_size,
        )


@dataclass
class CoOccurrencePattern:
    event_a: str
    event_b: str
    co_occurrence_count: int
    window_hours: float
    confidence: float

    def to_candidate(self, organization_id: str) -> PatternCandidate:
        return PatternCandidate(
            organization_id=organization_id,
            pattern_type="co_occurrence",
            pattern_key=f"{self.event_a}_with_{self.event_b}",
            pattern_value={
                "event_a": self.event_a,
                "event_b": self.event_b,
                "co_occurrence_count": self.co_occurrence_count,
                "window_hours": self.window_hours,
            },
            confidence=self.confidence,
            sample_size=self.co_occurrence_count,
        )


# ---------------------------------------------------------------------------
# LLM response parsing
# ---------------------------------------------------------------------------

_FENCE_OPEN = re.compile(r"^```(?:json)?\n?")
_FENCE_CLOSE = re.compile(r"\n?```$")


def parse_llm_patterns(content: str, organization_id: str) -> List[PatternCandidate]:
    """Candidates from a model's JSON array; malformed output yields ``[]``."""
    text = (content or "").strip()
    if text.startswith("```"):
        text = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text))
    try:
        parsed = json.loads(text)
    except ValueError:
        return []
    if not isinstance(parsed, list):
        return []

    candidates: List[PatternCandidate] = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        confidence = item.get("confidence")
        if not (
            isinstance(item.get("patternType"), str)
            and isinstance(item.get("patternKey"), str)
            and isinstance(confidence, (int, float))
            and not isinstance(confidence, bool)
            and 0 <= confidence <= 1
        ):
            continue
        value = item.get("patternValue")
        reasoning = item.get("reasoning")
        candidates.append(
            PatternCandidate(
                organization_id=organization_id,
                pattern_type=item["patternType"],
                pattern_key=item["patternKey"],
                pattern_value=value if isinstance(value, dict) else {},
                confidence=float(confidence),
                sample_size=0,
                source_type="llm_detected",
                llm_reasoning=reasoning if isinstance(reasoning, str) else None,
            )
        )
    return candidates[:LLM_MAX_CANDIDATES]


def _summary_line(index: int, memory: EpisodicMemory) -> str:
    tag = memory.event_type
    platform = memory.platform or memory.content.get("platform")
    if platform:
        tag = f"{tag}/{platform}"
    text = memory.summary or memory.content.get("summary") or memory.content.get("text") or ""
    return f"{index}. [{tag}] {text}"


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


class PatternDetector:
    """Rule-based (and optionally model-assisted) pattern mining.

    Parameters
    ----------
    store : MemoryStore
        Source of episodic rows.
    lookback_days : int
        Window for the frequency and temporal stages.
    co_occurrence_window_hours : float
        Maximum gap between two events counted as co-occurring.
    min_co_occurrences : int
        Pairs seen fewer times are dropped.
    min_confidence : float
        Default threshold for ``validate_candidates``.
    decay : DecayEngine, optional
        Half-life table used to recency-weight frequency confidence.
    now : callable, optional
        Clock returning an aware UTC ``datetime``.
    """

    def __init__(
        self,
        store: "MemoryStore",
        lookback_days: int = 30,
        co_occurrence_window_hours: float = 48.0,
        min_co_occurrences: int = 2,
        min_confidence: float = 0.6,
        min_occurrences: int = 3,
        co_occurrence_lookback_days: int = 60,
        day_min_events: int = 3,
        day_peak_share: float = 0.3,
        hour_min_events: int = 5,
        hour_peak_share: float = 0.25,
        llm_min_events: int = 5,
        llm_max_cost_usd: float = 0.01,
        decay: Optional[DecayEngine] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.lookback_days = lookback_days
        self.co_occurrence_window_hours = co_occurrence_window_hours
        self.min_co_occurrences = min_co_occurrences
        self.min_confidence = min_confidence
        self.min_occurrences = min_occurrences
        self.co_occurrence_lookback_days = co_occurrence_lookback_days
        self.day_min_events = day_min_events
        self.day_peak_share = day_peak_share
        self.hour_min_events = hour_min_events
        self.hour_peak_share = hour_peak_share
        self.llm_min_events = llm_min_events
        self.llm_max_cost_usd = llm_max_cost_usd
        self.decay = decay or DecayEngine()
        self._now = now or utcnow

    @classmethod
    def from_config(
        cls,
        store: "MemoryStore",
        config: "Config",
        now: Optional[Callable[[], datetime]] = None,
    ) -> "PatternDetector":
        return cls(
            store,
            lookback_days=config.pattern_lookback_days,
            co_occurrence_window_hours=config.co_occurrence_window_hours,
            min_co_occurrences=config.min_co_occurrences,
            min_confidence=config.candidate_min_confidence,
            min_occurrences=config.pattern_min_occurrences,
            co_occurrence_lookback_days=config.co_occurrence_lookback_days,
            day_min_events=config.temporal_day_min_events,
            day_peak_share=config.temporal_day_peak_share,
            hour_min_events=config.temporal_hour_min_events,
            hour_peak_share=config.temporal_hour_peak_share,
            llm_min_events=config.llm_pattern_min_events,
            llm_max_cost_usd=config.llm_pattern_max_cost_usd,
            decay=DecayEngine.from_config(config),
            now=now,
        )

    # -- helpers ------------------------------------------------------------

    def _fetch(
        self, organization_id: str, days: int, ascending: bool = False, limit: Optional[int] = None
    ) -> List[EpisodicMemory]:
        since = self._now() - timedelta(days=days)
        return self.store.episodic.list_since(
            organization_id, since, ascending=ascending, limit=limit
        )

    @staticmethod
    def _store_error(stage: str, exc: sqlite3.Error) -> Err:
        log.warning("%s detection failed: %s", stage, exc)
        return Err(ErrorCode.STORE_UNAVAILABLE, f"{stage} detection failed: {exc}", exc)

    # -- stage 1: frequency -------------------------------------------------

    def detect_frequency_patterns(
        self,
        organization_id: str,
        min_occurrences: Optional[int] = None,
        platform: Optional[str] = None,
    ) -> Result[List[FrequencyPattern]]:
        """Event types seen at least *min_occurrences* times in the window.

        With *platform*, rows tagged with another platform are skipped;
        untagged rows still count.  Confidence is the mean recency weight
        of the group's rows scaled by ``min(1, count / 10)``.
        """
        invalid = require_org(organization_id)
        if invalid:
            return invalid
        min_occurrences = self.min_occurrences if min_occurrences is None else min_occurrences
        try:
            rows = self._fetch(organization_id, self.lookback_days)
        except sqlite3.Error as exc:
            return self._store_error("Frequency", exc)

        now = self._now()
        groups: Dict[Tuple[str, Optional[str]], List[EpisodicMemory]] = {}
        for row in rows:
            if platform and row.platform and row.platform != platform:
                continue
            groups.setdefault((row.event_type, row.platform), []).append(row)

        patterns: List[FrequencyPattern] = []
        for (event_type, row_platform), members in groups.items():
            count = len(members)
            if count < min_occurrences:
                continue
            importance = np.array([m.importance for m in members], dtype=float)
            recency = np.array(
                [
                    decay_weight(
                        m.strength,
                        1.0,
                        self.decay.half_life_for(m),
                        days_since(m.created_at, now),
                    )
                    for m in members
                ],
                dtype=float,
            )
            confidence = float(recency.mean()) * min(1.0, count / FREQUENCY_SATURATION)
            patterns.append(
                FrequencyPattern(
                    event_type=event_type,
                    platform=row_platform,
                    count=count,
                    time_window_days=self.lookback_days,
                    avg_importance=round(float(importance.mean()), 4),
                    confidence=round(min(1.0, max(0.0, confidence)), 4),
                    evidence_ids=[m.id for m in members],
                )
            )
        patterns.sort(key=lambda p: p.count, reverse=True)
        return Ok(patterns)

    # -- stage 2: temporal --------------------------------------------------

    def detect_temporal_patterns(self, organization_id: str) -> Result[List[TemporalPattern]]:
        """Weekday and 3-hour-bucket peaks per event type."""
        invalid = require_org(organization_id)
        if invalid:
            return invalid
        try:
            rows = self._fetch(organization_id, self.lookback_days)
        except sqlite3.Error as exc:
            return self._store_error("Temporal", exc)

        stamps: Dict[str, List[datetime]] = {}
        for row in rows:
            ts = parse_iso(row.created_at)
            if ts is not None:
                stamps.setdefault(row.event_type, []).append(ts)

        patterns: List[TemporalPattern] = []
        for event_type in sorted(stamps):
            times = stamps[event_type]
            total = len(times)
            # isoweekday(): Mon=1..Sun=7, so % 7 puts Sunday at 0
            days = np.bincount([t.isoweekday() % 7 for t in times], minlength=7)
            buckets = np.bincount([t.hour // HOUR_BUCKET for t in times], minlength=24 // HOUR_BUCKET)

            if total >= self.day_min_events:
                for day in np.flatnonzero(days / total >= self.day_peak_share):
                    freq = float(days[day]) / total
                    patterns.append(
                        TemporalPattern(
                            event_type=event_type,
                            day_of_week=int(day),
                            hour_of_day=None,
                            frequency=round(freq, 4),
                            sample_size=total,
                            description=(
                                f"{event_type} peaks on {DAY_NAMES[day]} "
                                f"({round(freq * 100)}% of occurrences)"
                            ),
                        )
                    )

            if total >= self.hour_min_events:
                for bucket in np.flatnonzero(buckets / total >= self.hour_peak_share):
                    freq = float(buckets[bucket]) / total
                    start = int(bucket) * HOUR_BUCKET
                    patterns.append(
                        TemporalPattern(
                            event_type=event_type,
                            day_of_week=None,
                            hour_of_day=start,
                            frequency=round(freq, 4),
                            sample_size=total,
                            description=(
                                f"{event_type} clusters {start}:00-{start + HOUR_BUCKET}:00 UTC "
                                f"({round(freq * 100)}%)"
                            ),
                        )
                    )
        return Ok(patterns)

    # -- stage 3: co-occurrence --------------------------------------------

    def detect_co_occurrence_patterns(
        self, organization_id: str
    ) -> Result[List[CoOccurrencePattern]]:
        """Pairs of different event types within the window of each other.

        Confidence is ``min(1, count / total_pairs * 10)`` where
        ``total_pairs = n * (n - 1) / 2`` over all fetched events.
        """
        invalid = require_org(organization_id)
        if invalid:
            return invalid
        try:
            rows = self._fetch(organization_id, self.co_occurrence_lookback_days, ascending=True)
        except sqlite3.Error as exc:
            return self._store_error("Co-occurrence", exc)

        timed = [(parse_iso(r.created_at), r.event_type) for r in rows]
        timed = [(ts, ev) for ts, ev in timed if ts is not None]
        n = len(timed)
        if n < 2:
            return Ok([])

        seconds = np.array([ts.timestamp() for ts, _ in timed], dtype=float)
        window = self.co_occurrence_window_hours * 3600.0
        # first index past each event's window
        ends = np.searchsorted(seconds, seconds + window, side="right")

        counts: Dict[Tuple[str, str], int] = {}
        for i in range(n):
            a = timed[i][1]
            for j in range(i + 1, int(ends[i])):
                b = timed[j][1]
                if a == b:
                    continue
                key = (a, b) if a < b else (b, a)
                counts[key] = counts.get(key, 0) + 1

        total_pairs = n * (n - 1) / 2
        patterns = [
            CoOccurrencePattern(
                event_a=a,
                event_b=b,
                co_occurrence_count=count,
                window_hours=self.co_occurrence_window_hours,
                confidence=round(min(1.0, count / max(1.0, total_pairs) * 10), 4),
            )
            for (a, b), count in counts.items()
            if count >= self.min_co_occurrences
        ]
        patterns.sort(key=lambda p: p.co_occurrence_count, reverse=True)
        return Ok(patterns)

    # -- stage 4: model-assisted --------------------------------------------

    def detect_llm_patterns(
        self,
        organization_id: str,
        events: List[EpisodicMemory],
        governor: "AIGovernor",
        max_cost_usd: Optional[float] = None,
    ) -> Result[List[PatternCandidate]]:
        """Ask the model for patterns in the first 50 event summaries.

        Refused with ``BUDGET_EXCEEDED`` when the pre-flight estimate is
        above *max_cost_usd* or the governor denies the spend; model
        failures come back as ``MODEL_UNAVAILABLE`` / ``MODEL_TIMEOUT``.
        """
        invalid = require_org(organization_id)
        if invalid:
            return invalid
        if not events:
            return Ok([])
        max_cost_usd = self.llm_max_cost_usd if max_cost_usd is None else max_cost_usd

        summaries = trim_to_budget(
            "\n".join(_summary_line(i + 1, m) for i, m in enumerate(events[:LLM_MAX_EVENTS])),
            LLM_MAX_SUMMARY_TOKENS,
        )
        input_tokens = estimate_tokens_from_text(summaries) + LLM_PROMPT_TOKENS
        estimated = estimate_model_cost_usd(
            LLM_PATTERN_MODEL,
            input_tokens,
            LLM_EXPECTED_OUTPUT_TOKENS,
            router_price=governor.router_price,
        )
        if estimated > max_cost_usd:
            return Err(
                ErrorCode.BUDGET_EXCEEDED,
                f"LLM pattern detection estimated cost ${estimated:.4f} "
                f"exceeds max ${max_cost_usd:.4f}",
            )

        messages = [
            {"role": "system", "content": LLM_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": f"Recent episodic memories for this organization:\n\n{summaries}",
            },
        ]
        result = governor.run(
            organization_id,
            LLM_PATTERN_ROUTE,
            {"summaries": summaries},
            messages,
            fallback={"patterns": []},
            max_tokens=LLM_MAX_TOKENS,
            model=LLM_PATTERN_MODEL,
            parse=lambda text: {
                "patterns": [c.to_dict() for c in parse_llm_patterns(text, organization_id)]
            },
        )
        if result.mode != "ai":
            return result.error or Err(ErrorCode.MODEL_UNAVAILABLE, "model unavailable")

        candidates = []
        for item in result.response.get("patterns") or []:
            item = dict(item, organization_id=organization_id, status="pending")
            candidates.append(PatternCandidate(**item))
        return Ok(candidates)

    # -- pipeline -----------------------------------------------------------

    def run_detection_pipeline(
        self,
        organization_id: str,
        platform: Optional[str] = None,
        governor: Optional["AIGovernor"] = None,
    ) -> Result[List[PatternCandidate]]:
        """All stages, concatenated as pending candidates.

        A failing stage is logged and skipped; the LLM stage needs a
        governor and at least ``llm_min_events`` recent events.
        """
        invalid = require_org(organization_id)
        if invalid:
            return invalid

        candidates: List[PatternCandidate] = []
        failures: List[Err] = []

        freq = self.detect_frequency_patterns(organization_id, platform=platform)
        co = self.detect_co_occurrence_patterns(organization_id)
        temporal = self.detect_temporal_patterns(organization_id)
        for stage in (freq, co, temporal):
            if stage.ok:
                candidates.extend(p.to_candidate(organization_id) for p in stage.value)
            else:
                failures.append(stage)

        if len(failures) == 3:
            return Err(
                ErrorCode.PATTERN_DETECTION_FAILED,
                "; ".join(f.message for f in failures),
                failures[0].cause,
            )
        for failure in failures:
            log.warning("Detection stage skipped for %s: %s", organization_id, failure.message)

        if governor is not None:
            candidates.extend(self._llm_stage(organization_id, governor))

        log.debug("Detected %d candidates for %s", len(candidates), organization_id)
        return Ok(candidates)

    def _llm_stage(self, organization_id: str, governor: "AIGovernor") -> List[PatternCandidate]:
        try:
            recent = self._fetch(organization_id, self.lookback_days, limit=LLM_MAX_EVENTS)
        except sqlite3.Error as exc:
            log.warning("LLM detection skipped for %s: %s", organization_id, exc)
            return []
        if len(recent) < self.llm_min_events:
            return []
        result = self.detect_llm_patterns(organization_id, recent, governor)
        if not result.ok:
            log.info("LLM detection skipped for %s: %s", organization_id, result.message)
            return []
        return result.value

    # -- validation ---------------------------------------------------------

    def validate_candidates(
        self,
        candidates: Iterable[PatternCandidate],
        min_confidence: Optional[float] = None,
    ) -> List[PatternCandidate]:
        """Drop weak candidates, dedupe by ``(pattern_type, platform, pattern_key)``.

        Survivors are marked ``validated``; of duplicates, the most
        confident wins (first seen on ties).
        """
        threshold = self.min_confidence if min_confidence is None else min_confidence
        best: Dict[Tuple[str, Optional[str], str], PatternCandidate] = {}
        for candidate in candidates:
            if candidate.confidence < threshold:
                continue
            key = (candidate.pattern_type, candidate.platform, candidate.pattern_key)
            current = best.get(key)
            if current is None or candidate.confidence > current.confidence:
                best[key] = replace(candidate, status="validated")
        return list(best.values())
