"""
strata.outcomes.learning — Feeding published-post results back into memory.

Outcome metrics arrive asynchronously: once at publish time and then as
periodic snapshots from the metrics sync.  For each arrival the caller
runs two steps on ``OutcomeLearner``:

  1. ``log_outcome_for_post`` writes an ``outcome_events`` row, skipped
     when nothing changed since the last identical snapshot (same post,
     source, event type and metrics hash), and publishes an
     ``OutcomeNotice`` on the optional channel;
  2. ``refresh_creative_memory_from_post`` folds the post into the
     creative-memory aggregate for its recipe (hook / framework / CTA).

``log_decision_for_published_post`` records which variant was chosen
at publish time so later outcomes can be attributed to it.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional

from strata.core.settings import OrganizationSettings
from strata.core.types import Err, ErrorCode, Ok, Result, now_iso, require_org
from strata.outcomes.channel import OutcomeChannel, OutcomeNotice
from strata.outcomes.signals import derive_creative_signals

if TYPE_CHECKING:
    from strata.store import MemoryStore

log = logging.getLogger(__name__)

OBJECTIVES = ("engagement", "reach", "leads", "saves")
OUTCOME_SOURCES = ("publish", "sync", "manual")
OUTCOME_EVENT_TYPES = ("published", "snapshot", "manual")

DEFAULT_SUCCESS_THRESHOLD = 2.0
DEFAULT_BANDIT_EXPLORATION = 0.45


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if value != value or value in (float("inf"), float("-inf")):
        return 0.0
    return float(value)


def _record(value: Any) -> Dict:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> Optional[str]:
    return value.strip() if isinstance(value, str) and value.strip() else None


# ---------------------------------------------------------------------------
# Published post
# ---------------------------------------------------------------------------


@dataclass
class PublishedPost:
    """A post as seen by the metrics sync."""

    id: str
    organization_id: str
    platform: str
    text: str = ""
    hook_type: Optional[str] = None
    cta_type: Optional[str] = None
    likes: int = 0
    comments: int = 0
    shares: int = 0
    saves: int = 0
    reach: int = 0
    impressions: int = 0
    views: int = 0
    clicks: int = 0
    engagement_rate: Optional[float] = None
    published_at: Optional[str] = None
    metadata: Dict = field(default_factory=dict)

    def metrics(self) -> Dict[str, float]:
        return {
            "likes": _number(self.likes),
            "comments": _number(self.comments),
            "shares": _number(self.shares),
            "saves": _number(self.saves),
            "reach": _number(self.reach),
            "impressions": _number(self.impressions),
            "views": _number(self.views),
            "clicks": _number(self.clicks),
        }

    def has_metrics(self) -> bool:
        return any(v > 0 for v in self.metrics().values()) or _number(self.engagement_rate) > 0

    def metrics_hash(self) -> str:
        """SHA-256 over the metrics (and reported engagement rate)."""
        payload = dict(self.metrics())
        payload["engagement"] = _number(self.engagement_rate)
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def engagement(self) -> float:
        """Reported engagement rate, or one derived from raw counts."""
        return derive_engagement_rate(dict(self.metrics(), engagement_rate=self.engagement_rate))


def derive_engagement_rate(row: Dict[str, Any]) -> float:
    """Engagement rate (percent) of an outcome row.

    Uses ``engagement_rate`` when positive, else weighted interactions
    (comments and saves count double, shares triple) over the largest
    audience figure available.
    """
    direct = _number(row.get("engagement_rate"))
    if direct > 0:
        return direct
    interactions = (
        _number(row.get("likes"))
        + 2 * _number(row.get("comments"))
        + 3 * _number(row.get("shares"))
        + 2 * _number(row.get("saves"))
    )
    denominator = max(
        _number(row.get("reach")), _number(row.get("impressions")), _number(row.get("views")), 1.0
    )
    return round(interactions / denominator * 100.0, 4)


_VARIANT_RE = re.compile(r"^v?(\d{1,2})$", re.IGNORECASE)


def parse_selected_variant_index(value: Any) -> Optional[int]:
    """``3`` / ``"3"`` / ``"v3"`` -> 3; anything else -> None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if value >= 0 and value == value else None
    if not isinstance(value, str):
        return None
    match = _VARIANT_RE.match(value.strip())
    return int(match.group(1)) if match else None


# ---------------------------------------------------------------------------
# Draft metadata helpers
# ---------------------------------------------------------------------------


def _resolve_draft_meta(draft: Optional[Dict]) -> Dict[str, Any]:
    meta = _record(_record(_record(draft).get("ai_suggestions")).get("meta"))
    roi_gate = _record(meta.get("roi_gate", meta.get("roiGate")))
    objective = _text(meta.get("objective"))
    return {
        "provider": _text(meta.get("provider")) or "template",
        "model": _text(meta.get("model")) or "template",
        "mode": "ai" if _text(meta.get("mode")) == "ai" else "deterministic",
        "objective": objective if objective in OBJECTIVES else "engagement",
        "roi_multiple": roi_gate.get("roi_multiple"),
        "roi_gate_reason": _text(roi_gate.get("reason")),
        "quality_mode": _text(meta.get("quality_mode")),
    }


def _resolve_draft_score(draft: Optional[Dict], platform: str) -> Optional[float]:
    scores = _record(_record(_record(draft).get("algorithm_scores")).get(platform))
    for candidate in (scores.get("overall_score"), scores.get("overallScore")):
        if isinstance(candidate, (int, float)) and not isinstance(candidate, bool):
            return float(candidate)
    nested = _record(scores.get("algorithm_score"))
    value = nested.get("overall_score")
    return float(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else None


def _resolve_draft_variant(draft: Optional[Dict], platform: str) -> Dict[str, Any]:
    row = _record(_record(_record(draft).get("platform_versions")).get(platform))
    index = parse_selected_variant_index(row.get("selected_variant", row.get("selectedVariant")))
    alternatives = [a for a in row.get("alternative_versions") or [] if isinstance(a, str)]
    has_primary = bool(_text(row.get("text")))
    count = (1 if has_primary else 0) + len(alternatives)
    return {
        "selected_variant": f"v{index}" if index is not None else None,
        "candidate_count": count or None,
        "text": _text(row.get("text")),
    }


# ---------------------------------------------------------------------------
# OutcomeLearner
# ---------------------------------------------------------------------------


class OutcomeLearner:
    """
    Writes outcomes, creative-memory aggregates, and decision logs.

    Parameters
    ----------
    store : MemoryStore
        Backing store (``outcomes`` and ``settings`` repositories are used).
    success_thresholds : dict
        Objective -> engagement rate counted as a success.  Per-org
        ``CreativeSettings`` override these.
    channel : OutcomeChannel, optional
        Receives one ``OutcomeNotice`` per written outcome.
    bandit_exploration : float
        UCB exploration constant used by ``select_best_variant`` when
        the org has no override.
    """

    def __init__(
        self,
        store: "MemoryStore",
        success_thresholds: Optional[Dict[str, float]] = None,
        channel: Optional[OutcomeChannel] = None,
        bandit_exploration: float = DEFAULT_BANDIT_EXPLORATION,
    ) -> None:
        self.store = store
        self.success_thresholds = dict(success_thresholds or {})
        self.channel = channel
        self.bandit_exploration = bandit_exploration

    def success_threshold(self, organization_id: str, objective: str) -> float:
        settings: OrganizationSettings = self.store.settings.get(organization_id)
        org_thresholds = settings.creative.success_thresholds
        if objective in org_thresholds:
            return org_thresholds[objective]
        return self.success_thresholds.get(
            objective, self.success_thresholds.get("engagement", DEFAULT_SUCCESS_THRESHOLD)
        )

    @staticmethod
    def _validate_post(post: PublishedPost, objective: str) -> Optional[Err]:
        err = require_org(post.organization_id)
        if err is not None:
            return err
        if not _text(post.id):
            return Err(ErrorCode.VALIDATION, "post id is required")
        if objective not in OBJECTIVES:
            return Err(ErrorCode.VALIDATION, f"Unknown objective {objective!r}")
        return None

    # ── Outcomes ─────────────────────────────────────────────

    def log_outcome_for_post(
        self,
        post: PublishedPost,
        source: str,
        event_type: str,
        objective: str = "engagement",
        metadata: Optional[Dict] = None,
    ) -> Result[bool]:
        """Write one outcome row; ``Ok(False)`` when it was skipped.

        A row is written iff the post has a non-zero metric or the
        event is ``published``, and no identical snapshot exists.
        """
        err = self._validate_post(post, objective)
        if err is not None:
            return err
        if source not in OUTCOME_SOURCES:
            return Err(ErrorCode.VALIDATION, f"Unknown outcome source {source!r}")
        if event_type not in OUTCOME_EVENT_TYPES:
            return Err(ErrorCode.VALIDATION, f"Unknown outcome event type {event_type!r}")

        if not post.has_metrics() and event_type != "published":
            return Ok(False)

        digest = post.metrics_hash()
        engagement = post.engagement()
        try:
            if self.store.outcomes.outcome_exists(post.id, source, event_type, digest):
                log.debug("Skipping duplicate %s outcome for post %s", event_type, post.id)
                return Ok(False)
            self.store.outcomes.insert_outcome(
                organization_id=post.organization_id,
                post_id=post.id,
                platform=post.platform,
                source=source,
                event_type=event_type,
                objective=objective,
                metrics=post.metrics(),
                engagement_rate=engagement,
                metrics_hash=digest,
                metadata=metadata,
            )
        except sqlite3.Error as exc:
            log.warning("Outcome write failed for post %s: %s", post.id, exc)
            return Err(ErrorCode.STORE_UNAVAILABLE, f"Outcome write failed: {exc}", exc)

        if self.channel is not None:
            signals = derive_creative_signals(post.text, post.hook_type, post.cta_type)
            self.channel.publish(
                OutcomeNotice(
                    organization_id=post.organization_id,
                    post_id=post.id,
                    platform=post.platform,
                    event_type=event_type,
                    objective=objective,
                    engagement_rate=engagement,
                    memory_key=signals.memory_key,
                )
            )
        return Ok(True)

    # ── Creative memory ──────────────────────────────────────

    def refresh_creative_memory_from_post(
        self,
        post: PublishedPost,
        objective: str = "engagement",
        metadata: Optional[Dict] = None,
    ) -> Result[Dict]:
        """Streaming update of the post's creative-memory aggregate.

        Returns the row as written.
        """
        err = self._validate_post(post, objective)
        if err is not None:
            return err

        signals = derive_creative_signals(post.text, post.hook_type, post.cta_type)
        engagement = post.engagement()
        try:
            threshold = self.success_threshold(post.organization_id, objective)
            success = 1 if engagement >= threshold else 0
            with self.store.batch():
                existing = self.store.outcomes.get_creative_memory(
                    post.organization_id, post.platform, objective, signals.memory_key
                )
                if existing is None:
                    sample_size, success_count, total = 1, success, engagement
                    merged_meta = dict(metadata or {})
                else:
                    sample_size = int(existing["sample_size"]) + 1
                    success_count = int(existing["success_count"]) + success
                    total = float(existing["total_engagement"]) + engagement
                    merged_meta = dict(existing.get("metadata") or {})
                    merged_meta.update(metadata or {})
                merged_meta["last_engagement_rate"] = engagement
                row = {
                    "organization_id": post.organization_id,
                    "platform": post.platform,
                    "objective": objective,
                    "hook_type": signals.hook_type,
                    "framework": signals.framework,
                    "cta_type": signals.cta_type,
                    "memory_key": signals.memory_key,
                    "sample_size": sample_size,
                    "success_count": success_count,
                    "total_engagement": round(total, 4),
                    "avg_engagement": round(total / sample_size, 4),
                    "last_post_id": post.id,
                    "last_outcome_at": now_iso(),
                    "metadata": merged_meta,
                }
                self.store.outcomes.save_creative_memory(row)
        except sqlite3.Error as exc:
            log.warning("Creative memory update failed for post %s: %s", post.id, exc)
            return Err(ErrorCode.STORE_UNAVAILABLE, f"Creative memory update failed: {exc}", exc)
        return Ok(row)

    # ── Decisions ────────────────────────────────────────────

    def log_decision_for_published_post(
        self,
        organization_id: str,
        post_id: str,
        platform: str,
        route_key: str,
        draft: Optional[Dict] = None,
        objective: Optional[str] = None,
        user_id: Optional[str] = None,
        decision_context: Optional[Dict] = None,
    ) -> Result[str]:
        """Link a draft's chosen variant to the resulting post.  Returns the row id."""
        err = require_org(organization_id)
        if err is not None:
            return err
        if not _text(post_id):
            return Err(ErrorCode.VALIDATION, "post id is required")

        meta = _resolve_draft_meta(draft)
        objective = objective or meta["objective"]
        if objective not in OBJECTIVES:
            return Err(ErrorCode.VALIDATION, f"Unknown objective {objective!r}")
        variant = _resolve_draft_variant(draft, platform)
        signals = derive_creative_signals(variant["text"] or "")

        context = {
            "draft_id": _record(draft).get("id"),
            "draft_source": _record(draft).get("source"),
            "quality_mode": meta["quality_mode"],
            "roi_multiple": meta["roi_multiple"],
            "roi_gate_reason": meta["roi_gate_reason"],
            "variant_candidate_count": variant["candidate_count"],
        }
        context.update(decision_context or {})

        try:
            decision_id = self.store.outcomes.insert_decision(
                {
                    "organization_id": organization_id,
                    "post_id": post_id,
                    "platform": platform,
                    "route_key": route_key,
                    "user_id": user_id,
                    "objective": objective,
                    "hook_type": signals.hook_type,
                    "framework": signals.framework,
                    "cta_type": signals.cta_type,
                    "memory_key": signals.memory_key,
                    "selected_variant": variant["selected_variant"],
                    "expected_score": _resolve_draft_score(draft, platform),
                    "provider": meta["provider"],
                    "model": meta["model"],
                    "mode": meta["mode"],
                    "decision_context": context,
                }
            )
        except sqlite3.Error as exc:
            log.warning("Decision log failed for post %s: %s", post_id, exc)
            return Err(ErrorCode.STORE_UNAVAILABLE, f"Decision log failed: {exc}", exc)
        return Ok(decision_id)
