"""
strata.governor.cache — Intent cache for AI responses.

Two requests with the same *intent* should not pay twice.  The intent
hash is SHA-256 over a canonical rendering of the route key and the
request parameters: keys sorted, strings case-folded with whitespace
collapsed, compact separators.  Reordering keys or reformatting text
therefore hits the same entry, while bumping the version suffix of the
route key (``"score:v2"`` -> ``"score:v3"``) invalidates every entry
for that route.

Entries are unique per ``(organization, route, intent)`` and
last-write-wins.  A read never raises: a broken store looks like a miss.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from strata.core.database import Database
from strata.core.types import parse_iso, to_iso, utcnow

log = logging.getLogger(__name__)

MIN_TTL_SECONDS = 60.0


def _canonical(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, str):
        return " ".join(value.split()).lower()
    return value


def build_intent_cache_key(route_key: str, params: Any) -> str:
    """Deterministic hash of *route_key* plus normalised *params*."""
    payload = {"route_key": route_key, "params": _canonical(params)}
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


@dataclass
class IntentCacheHit:
    response: Dict
    provider: Optional[str]
    model: Optional[str]
    estimated_cost_usd: float
    created_at: str
    expires_at: str

    def to_dict(self) -> Dict:
        return {
            "response": self.response,
            "provider": self.provider,
            "model": self.model,
            "estimated_cost_usd": self.estimated_cost_usd,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }


def with_cache_meta(
    payload: Dict,
    created_at: Optional[str] = None,
    mode: Optional[str] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict:
    """Copy of *payload* whose ``meta`` marks it as served from cache."""
    meta = dict(payload.get("meta") or {}) if isinstance(payload.get("meta"), dict) else {}
    meta.update(
        {
            "mode": mode or meta.get("mode") or "deterministic",
            "provider": provider or meta.get("provider") or "template",
            "model": model or meta.get("model") or "template",
            "cached": True,
        }
    )
    created = parse_iso(created_at) if created_at else None
    if created is not None:
        age = (now or utcnow()) - created
        meta["cache_age_ms"] = max(0, int(age.total_seconds() * 1000))
    out = dict(payload)
    out["meta"] = meta
    return out


class IntentCacheStore:
    """Rows of ``ai_request_cache``."""

    def __init__(self, db: Database):
        self.db = db

    def get(
        self,
        organization_id: str,
        route_key: str,
        intent_hash: str,
        now: Optional[datetime] = None,
    ) -> Optional[IntentCacheHit]:
        """Live entry or None (missing, expired, unreadable, or store error)."""
        try:
            row = self.db.query_one(
                """SELECT * FROM ai_request_cache
                   WHERE organization_id = ? AND route_key = ? AND intent_hash = ?
                     AND expires_at > ?""",
                (organization_id, route_key, intent_hash, to_iso(now or utcnow())),
            )
        except sqlite3.Error as exc:
            log.warning("Intent cache read failed for %s/%s: %s", organization_id, route_key, exc)
            return None
        if row is None:
            return None
        try:
            response = json.loads(row["response"] or "null")
        except json.JSONDecodeError:
            log.warning("Discarding unreadable cache entry %s/%s", route_key, intent_hash[:12])
            return None
        if not isinstance(response, dict):
            return None
        return IntentCacheHit(
            response=response,
            provider=row.get("provider"),
            model=row.get("model"),
            estimated_cost_usd=float(row.get("estimated_cost_usd") or 0.0),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def set(
        self,
        organization_id: str,
        route_key: str,
        intent_hash: str,
        response: Dict,
        provider: str,
        model: str,
        ttl_seconds: float,
        estimated_cost_usd: float = 0.0,
        now: Optional[datetime] = None,
    ) -> str:
        """Upsert one entry; returns its ``expires_at``.  Raises on store failure."""
        now = now or utcnow()
        expires_at = to_iso(now + timedelta(seconds=max(MIN_TTL_SECONDS, ttl_seconds)))
        self.db.execute(
            """INSERT INTO ai_request_cache
               (organization_id, route_key, intent_hash, response, provider, model,
                estimated_cost_usd, created_at, expires_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(organization_id, route_key, intent_hash) DO UPDATE SET
                 response = excluded.response,
                 provider = excluded.provider,
                 model = excluded.model,
                 estimated_cost_usd = excluded.estimated_cost_usd,
                 created_at = excluded.created_at,
                 expires_at = excluded.expires_at""",
            (
                organization_id,
                route_key,
                intent_hash,
                json.dumps(response, default=str),
                provider,
                model,
                max(0.0, round(estimated_cost_usd, 6)),
                to_iso(now),
                expires_at,
            ),
        )
        return expires_at

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        cur = self.db.execute(
            "DELETE FROM ai_request_cache WHERE expires_at <= ?", (to_iso(now or utcnow()),)
        )
        return cur.rowcount
