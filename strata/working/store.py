"""
strata.working.store — Session-scoped scratch state.

Working memory holds what a single editing session or task needs
(the draft under review, the last variants offered) and nothing more.
Every item carries its own ``expires_at``; it is not decay-scored and
expired items are invisible to reads before ``purge_expired`` removes
them.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from strata.core.database import Database
from strata.core.types import WorkingMemoryItem, to_iso, utcnow

DEFAULT_TTL_SECONDS = 3600.0


class WorkingMemoryStore:
    """Key/value scratch space per ``(organization, session)``."""

    def __init__(self, db: Database):
        self.db = db

    def set(
        self,
        organization_id: str,
        session_id: str,
        key: str,
        value: Any,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        now: Optional[datetime] = None,
    ) -> WorkingMemoryItem:
        now = now or utcnow()
        item = WorkingMemoryItem(
            organization_id=organization_id,
            session_id=session_id,
            key=key,
            value=value,
            created_at=to_iso(now),
            expires_at=to_iso(now + timedelta(seconds=max(1.0, ttl_seconds))),
        )
        self.db.execute(
            """INSERT INTO working_memory
               (organization_id, session_id, key, value, created_at, expires_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(organization_id, session_id, key) DO UPDATE SET
                 value = excluded.value,
                 created_at = excluded.created_at,
                 expires_at = excluded.expires_at""",
            (
                organization_id,
                session_id,
                key,
                json.dumps(value),
                item.created_at,
                item.expires_at,
            ),
        )
        return item

    def get(
        self,
        organization_id: str,
        session_id: str,
        key: str,
        now: Optional[datetime] = None,
    ) -> Optional[Any]:
        row = self.db.query_one(
            """SELECT value FROM working_memory
               WHERE organization_id = ? AND session_id = ? AND key = ?
                 AND expires_at > ?""",
            (organization_id, session_id, key, to_iso(now or utcnow())),
        )
        return json.loads(row["value"]) if row else None

    def session(
        self, organization_id: str, session_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """All live items of one session as a dict."""
        rows = self.db.query(
            """SELECT key, value FROM working_memory
               WHERE organization_id = ? AND session_id = ? AND expires_at > ?
               ORDER BY key""",
            (organization_id, session_id, to_iso(now or utcnow())),
        )
        return {r["key"]: json.loads(r["value"]) for r in rows}

    def delete(self, organization_id: str, session_id: str, key: str) -> None:
        self.db.execute(
            "DELETE FROM working_memory WHERE organization_id = ? AND session_id = ? AND key = ?",
            (organization_id, session_id, key),
        )

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete expired items; returns how many were removed."""
        cur = self.db.execute(
            "DELETE FROM working_memory WHERE expires_at <= ?", (to_iso(now or utcnow()),)
        )
        return cur.rowcount
