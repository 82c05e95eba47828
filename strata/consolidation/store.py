"""
strata.consolidation.store — Audit ledger and run watermarks.

The audit log is append-only: rows are inserted, read back newest
first, and never updated or deleted.  The run table keeps one
watermark row per organization so a retried job can tell that a run
is in progress or finished too recently.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Dict, List, Optional

from strata.core.database import Database
from strata.core.types import AuditEntry, now_iso, to_iso


class AuditStore:
    """Rows of ``consolidation_audit_log``."""

    def __init__(self, db: Database):
        self.db = db

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Insert *entry*; fills in ``id`` and ``created_at``."""
        created_at = entry.created_at or now_iso()
        cur = self.db.execute(
            """INSERT INTO consolidation_audit_log
               (organization_id, action_type, source_ids, target_id,
                details, confidence, actor, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.organization_id,
                entry.action_type,
                json.dumps(list(entry.source_ids)),
                entry.target_id,
                json.dumps(entry.details, default=str),
                entry.confidence,
                entry.actor,
                created_at,
            ),
        )
        entry.id = str(cur.lastrowid)
        entry.created_at = created_at
        return entry

    def query(
        self,
        organization_id: str,
        action_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> List[AuditEntry]:
        sql = "SELECT * FROM consolidation_audit_log WHERE organization_id = ?"
        params: list = [organization_id]
        if action_type is not None:
            sql += " AND action_type = ?"
            params.append(action_type)
        if since is not None:
            sql += " AND created_at >= ?"
            params.append(to_iso(since))
        # id breaks ties between rows written in the same microsecond
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(int(limit))
        return [AuditEntry.from_row(r) for r in self.db.query(sql, params)]

    def count(self, organization_id: str) -> int:
        return int(
            self.db.scalar(
                "SELECT COUNT(*) FROM consolidation_audit_log WHERE organization_id = ?",
                (organization_id,),
                default=0,
            )
        )


class RunStore:
    """One watermark row per organization in ``consolidation_runs``."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, organization_id: str) -> Optional[Dict]:
        row = self.db.query_one(
            "SELECT * FROM consolidation_runs WHERE organization_id = ?", (organization_id,)
        )
        if row and row.get("last_stats"):
            row["last_stats"] = json.loads(row["last_stats"])
        return row

    def mark_started(self, organization_id: str, started_at: str) -> None:
        self.db.execute(
            """INSERT INTO consolidation_runs (organization_id, last_started_at, status)
               VALUES (?, ?, 'running')
               ON CONFLICT(organization_id) DO UPDATE SET
                 last_started_at = excluded.last_started_at,
                 status = 'running'""",
            (organization_id, started_at),
        )

    def mark_finished(
        self,
        organization_id: str,
        status: str,
        stats: Optional[Dict] = None,
        finished_at: Optional[str] = None,
    ) -> None:
        self.db.execute(
            """UPDATE consolidation_runs
               SET last_finished_at = ?, status = ?, last_stats = ?
               WHERE organization_id = ?""",
            (finished_at or now_iso(), status, json.dumps(stats or {}), organization_id),
        )
