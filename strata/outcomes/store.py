"""
strata.outcomes.store — Outcome events, creative memory, decision logs.

Three tables close the loop between what the system suggested and how
the published post actually did:

  - ``outcome_events``: one row per metrics observation of a post,
    deduplicated by a hash of the metrics;
  - ``creative_memory``: running aggregates per creative recipe
    (hook / framework / CTA) and objective;
  - ``decision_logs``: which variant was chosen for which post, so
    outcomes that arrive hours later can be attributed.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

from strata.core.database import Database
from strata.core.types import generate_id, now_iso

_METRIC_COLUMNS = (
    "likes",
    "comments",
    "shares",
    "saves",
    "reach",
    "impressions",
    "views",
    "clicks",
)


class OutcomeStore:
    """SQLite-backed outcome-learning tables."""

    def __init__(self, db: Database):
        self.db = db

    # ------------------------------------------------------------------
    # Outcome events
    # ------------------------------------------------------------------

    def outcome_exists(self, post_id: str, source: str, event_type: str, metrics_hash: str) -> bool:
        row = self.db.query_one(
            """SELECT id FROM outcome_events
               WHERE post_id = ? AND source = ? AND event_type = ? AND metrics_hash = ?
               LIMIT 1""",
            (post_id, source, event_type, metrics_hash),
        )
        return row is not None

    def insert_outcome(
        self,
        organization_id: str,
        post_id: str,
        platform: Optional[str],
        source: str,
        event_type: str,
        objective: str,
        metrics: Dict[str, float],
        engagement_rate: float,
        metrics_hash: str,
        metadata: Optional[Dict] = None,
    ) -> str:
        outcome_id = generate_id()
        self.db.execute(
            """INSERT INTO outcome_events
               (id, organization_id, post_id, platform, source, event_type, objective,
                likes, comments, shares, saves, reach, impressions, views, clicks,
                engagement_rate, metrics_hash, metadata, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                outcome_id,
                organization_id,
                post_id,
                platform,
                source,
                event_type,
                objective,
                *(int(metrics.get(col, 0) or 0) for col in _METRIC_COLUMNS),
                engagement_rate,
                metrics_hash,
                json.dumps(metadata or {}, default=str),
                now_iso(),
            ),
        )
        return outcome_id

    def latest_outcomes(self, organization_id: str, post_ids: Iterable[str]) -> Dict[str, Dict]:
        """Most recent outcome row per post id."""
        ids = list(dict.fromkeys(post_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        rows = self.db.query(
            f"""SELECT * FROM outcome_events
                WHERE organization_id = ? AND post_id IN ({placeholders})
                ORDER BY created_at DESC""",
            [organization_id, *ids],
        )
        latest: Dict[str, Dict] = {}
        for row in rows:
            latest.setdefault(row["post_id"], row)
        return latest

    def count_outcomes(self, organization_id: str, post_id: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) FROM outcome_events WHERE organization_id = ?"
        params: list = [organization_id]
        if post_id is not None:
            sql += " AND post_id = ?"
            params.append(post_id)
        return int(self.db.scalar(sql, params, default=0))

    # ------------------------------------------------------------------
    # Creative memory
    # ------------------------------------------------------------------

    def get_creative_memory(
        self,
        organization_id: str,
        platform: str,
        objective: str,
        memory_key: str,
    ) -> Optional[Dict]:
        row = self.db.query_one(
            """SELECT * FROM creative_memory
               WHERE organization_id = ? AND platform = ? AND objective = ? AND memory_key = ?""",
            (organization_id, platform, objective, memory_key),
        )
        if row is not None:
            row["metadata"] = json.loads(row["metadata"] or "{}")
        return row

    def creative_memory_for_keys(
        self,
        organization_id: str,
        platform: str,
        objective: str,
        memory_keys: Iterable[str],
    ) -> Dict[str, Dict]:
        keys = list(dict.fromkeys(memory_keys))
        if not keys:
            return {}
        placeholders = ",".join("?" for _ in keys)
        rows = self.db.query(
            f"""SELECT memory_key, sample_size, success_count, avg_engagement
                FROM creative_memory
                WHERE organization_id = ? AND platform = ? AND objective = ?
                  AND memory_key IN ({placeholders})""",
            [organization_id, platform, objective, *keys],
        )
        return {r["memory_key"]: r for r in rows}

    def save_creative_memory(self, row: Dict[str, Any]) -> None:
        """Insert or overwrite one aggregate row (keyed by its recipe)."""
        ts = now_iso()
        self.db.execute(
            """INSERT INTO creative_memory
               (organization_id, platform, objective, hook_type, framework, cta_type,
                memory_key, sample_size, success_count, total_engagement,
                avg_engagement, last_post_id, last_outcome_at, metadata,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(organization_id, platform, objective, hook_type, framework, cta_type)
               DO UPDATE SET
                 sample_size = excluded.sample_size,
                 success_count = excluded.success_count,
                 total_engagement = excluded.total_engagement,
                 avg_engagement = excluded.avg_engagement,
                 last_post_id = excluded.last_post_id,
                 last_outcome_at = excluded.last_outcome_at,
                 metadata = excluded.metadata,
                 updated_at = excluded.updated_at""",
            (
                row["organization_id"],
                row["platform"],
                row["objective"],
                row["hook_type"],
                row["framework"],
                row["cta_type"],
                row["memory_key"],
                int(row["sample_size"]),
                int(row["success_count"]),
                float(row["total_engagement"]),
                float(row["avg_engagement"]),
                row.get("last_post_id"),
                row.get("last_outcome_at") or ts,
                json.dumps(row.get("metadata") or {}, default=str),
                ts,
                ts,
            ),
        )

    # ------------------------------------------------------------------
    # Decision logs
    # ------------------------------------------------------------------

    def insert_decision(self, row: Dict[str, Any]) -> str:
        decision_id = generate_id()
        self.db.execute(
            """INSERT INTO decision_logs
               (id, organization_id, post_id, platform, route_key, user_id, objective,
                hook_type, framework, cta_type, memory_key, selected_variant,
                expected_score, provider, model, mode, decision_context, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                decision_id,
                row["organization_id"],
                row["post_id"],
                row.get("platform"),
                row.get("route_key"),
                row.get("user_id"),
                row.get("objective"),
                row.get("hook_type"),
                row.get("framework"),
                row.get("cta_type"),
                row.get("memory_key"),
                row.get("selected_variant"),
                row.get("expected_score"),
                row.get("provider"),
                row.get("model"),
                row.get("mode"),
                json.dumps(row.get("decision_context") or {}, default=str),
                now_iso(),
            ),
        )
        return decision_id

    def recent_decisions(
        self,
        organization_id: str,
        platform: str,
        objective: str,
        limit: int = 200,
    ) -> List[Dict]:
        """Decisions with a recorded variant, newest first."""
        rows = self.db.query(
            """SELECT * FROM decision_logs
               WHERE organization_id = ? AND platform = ? AND objective = ?
                 AND selected_variant IS NOT NULL
               ORDER BY created_at DESC LIMIT ?""",
            (organization_id, platform, objective, int(limit)),
        )
        for row in rows:
            row["decision_context"] = json.loads(row["decision_context"] or "{}")
        return rows
