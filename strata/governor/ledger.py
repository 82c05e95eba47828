"""
strata.governor.ledger — Append-only AI usage ledger.

Every governed request leaves exactly one row: paid calls, cache hits
(cost 0), budget fallbacks and failures alike.  The budget check sums
``estimated_cost_usd`` over this table, so the ledger is the single
source of truth for spend.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from strata.core.database import Database
from strata.core.types import _json_load, generate_id, now_iso, to_iso
from strata.governor.pricing import normalize_usd

log = logging.getLogger(__name__)

USAGE_MODES = ("deterministic", "ai")


def _non_negative_int(value: Any) -> int:
    try:
        return max(0, int(float(value)))
    except (TypeError, ValueError):
        return 0


@dataclass
class AIUsageEvent:
    organization_id: str
    route_key: str
    mode: str = "ai"
    user_id: Optional[str] = None
    intent_hash: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost_usd: float = 0.0
    latency_ms: int = 0
    success: bool = True
    cache_hit: bool = False
    budget_fallback: bool = False
    error_code: Optional[str] = None
    metadata: Dict = field(default_factory=dict)
    id: Optional[str] = None
    created_at: Optional[str] = None

    def __post_init__(self) -> None:
        if self.mode not in USAGE_MODES:
            self.mode = "ai"
        self.input_tokens = _non_negative_int(self.input_tokens)
        self.output_tokens = _non_negative_int(self.output_tokens)
        self.latency_ms = _non_negative_int(self.latency_ms)
        self.estimated_cost_usd = normalize_usd(self.estimated_cost_usd or 0.0)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "route_key": self.route_key,
            "intent_hash": self.intent_hash,
            "provider": self.provider,
            "model": self.model,
            "mode": self.mode,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "estimated_cost_usd": self.estimated_cost_usd,
            "latency_ms": self.latency_ms,
            "success": self.success,
            "cache_hit": self.cache_hit,
            "budget_fallback": self.budget_fallback,
            "error_code": self.error_code,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, d: Dict) -> "AIUsageEvent":
        return cls(
            id=d.get("id"),
            organization_id=d["organization_id"],
            user_id=d.get("user_id"),
            route_key=d["route_key"],
            intent_hash=d.get("intent_hash"),
            provider=d.get("provider"),
            model=d.get("model"),
            mode=d.get("mode") or "ai",
            input_tokens=d.get("input_tokens") or 0,
            output_tokens=d.get("output_tokens") or 0,
            estimated_cost_usd=d.get("estimated_cost_usd") or 0.0,
            latency_ms=d.get("latency_ms") or 0,
            success=bool(d.get("success", 1)),
            cache_hit=bool(d.get("cache_hit", 0)),
            budget_fallback=bool(d.get("budget_fallback", 0)),
            error_code=d.get("error_code"),
            metadata=_json_load(d.get("metadata"), {}),
            created_at=d.get("created_at"),
        )


class UsageLedger:
    """Rows of ``ai_usage_events``."""

    def __init__(self, db: Database):
        self.db = db

    def log(self, event: AIUsageEvent) -> AIUsageEvent:
        """Append *event*, filling ``id``/``created_at``.  Raises on store failure."""
        event.id = event.id or generate_id()
        event.created_at = event.created_at or now_iso()
        self.db.execute(
            """INSERT INTO ai_usage_events
               (id, organization_id, user_id, route_key, intent_hash, provider,
                model, mode, input_tokens, output_tokens, estimated_cost_usd,
                latency_ms, success, cache_hit, budget_fallback, error_code,
                metadata, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                event.id,
                event.organization_id,
                event.user_id,
                event.route_key,
                event.intent_hash,
                event.provider,
                event.model,
                event.mode,
                event.input_tokens,
                event.output_tokens,
                event.estimated_cost_usd,
                event.latency_ms,
                int(event.success),
                int(event.cache_hit),
                int(event.budget_fallback),
                event.error_code,
                json.dumps(event.metadata or {}, default=str),
                event.created_at,
            ),
        )
        log.debug(
            "AI usage %s/%s mode=%s cost=%.6f hit=%s fallback=%s",
            event.organization_id,
            event.route_key,
            event.mode,
            event.estimated_cost_usd,
            event.cache_hit,
            event.budget_fallback,
        )
        return event

    def spend_since(self, organization_id: str, since: datetime) -> float:
        """Sum of positive estimated costs recorded at or after *since*."""
        total = self.db.scalar(
            """SELECT COALESCE(SUM(estimated_cost_usd), 0) FROM ai_usage_events
               WHERE organization_id = ? AND created_at >= ? AND estimated_cost_usd > 0""",
            (organization_id, to_iso(since)),
            default=0.0,
        )
        return normalize_usd(total or 0.0)

    def recent(self, organization_id: str, limit: int = 50) -> List[AIUsageEvent]:
        rows = self.db.query(
            """SELECT * FROM ai_usage_events WHERE organization_id = ?
               ORDER BY created_at DESC LIMIT ?""",
            (organization_id, max(1, limit)),
        )
        return [AIUsageEvent.from_row(r) for r in rows]

    def summary(self, organization_id: str, since: datetime) -> Dict[str, Any]:
        """Per-route counts and spend since *since*, for the CLI and dashboards."""
        rows = self.db.query(
            """SELECT route_key,
                      COUNT(*) AS requests,
                      SUM(cache_hit) AS cache_hits,
                      SUM(budget_fallback) AS budget_fallbacks,
                      SUM(CASE WHEN success = 0 THEN 1 ELSE 0 END) AS failures,
                      COALESCE(SUM(CASE WHEN estimated_cost_usd > 0
                                        THEN estimated_cost_usd ELSE 0 END), 0) AS cost_usd
               FROM ai_usage_events
               WHERE organization_id = ? AND created_at >= ?
               GROUP BY route_key ORDER BY cost_usd DESC""",
            (organization_id, to_iso(since)),
        )
        routes = {
            r["route_key"]: {
                "requests": int(r["requests"] or 0),
                "cache_hits": int(r["cache_hits"] or 0),
                "budget_fallbacks": int(r["budget_fallbacks"] or 0),
                "failures": int(r["failures"] or 0),
                "cost_usd": normalize_usd(r["cost_usd"] or 0.0),
            }
            for r in rows
        }
        return {
            "organization_id": organization_id,
            "since": to_iso(since),
            "total_cost_usd": normalize_usd(sum(v["cost_usd"] for v in routes.values())),
            "routes": routes,
        }
