"""
Episodic memory store — one immutable row per observed event.

Rows are written by whatever subsystem saw the event (a post that did
well, a budget alert, an audience shift) and are never updated.  Old
rows fade through decay weighting at read time rather than deletion,
so the audit trail can always point back at its evidence.
"""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime
from typing import List, Optional

from strata.core.database import Database
from strata.core.types import EpisodicMemory, parse_iso, to_iso
from strata.signal.decay import DecayEngine


class EpisodicStore:
    """SQLite-backed episodic memory for all organizations."""

    def __init__(self, db: Database):
        self.db = db

    def record(self, memory: EpisodicMemory) -> EpisodicMemory:
        """Persist *memory* and return it with ``created_at`` in UTC ``...Z`` form.

        Window queries compare timestamps as strings, so every stored
        ``created_at`` goes through ``to_iso``.  Raises ``ValueError`` when
        it is not an ISO-8601 timestamp.
        """
        created = parse_iso(memory.created_at)
        if created is None:
            raise ValueError(f"created_at is not an ISO-8601 timestamp: {memory.created_at!r}")
        memory = replace(memory, created_at=to_iso(created))
        self.db.execute(
            """INSERT INTO episodic_memory
               (id, organization_id, event_type, platform, summary, content,
                importance, strength, half_life_days, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                memory.id,
                memory.organization_id,
                memory.event_type,
                memory.platform,
                memory.summary,
                json.dumps(memory.content),
                memory.importance,
                memory.strength,
                memory.half_life_days,
                memory.created_at,
            ),
        )
        return memory

    def get(self, memory_id: str) -> Optional[EpisodicMemory]:
        row = self.db.query_one("SELECT * FROM episodic_memory WHERE id = ?", (memory_id,))
        return EpisodicMemory.from_row(row) if row else None

    def list_since(
        self,
        organization_id: str,
        since: datetime,
        platform: Optional[str] = None,
        event_type: Optional[str] = None,
        ascending: bool = False,
        limit: Optional[int] = None,
    ) -> List[EpisodicMemory]:
        """Rows for one org created at or after *since*.

        Newest first unless *ascending*.
        """
        sql = "SELECT * FROM episodic_memory WHERE organization_id = ? AND created_at >= ?"
        params: list = [organization_id, to_iso(since)]
        if platform is not None:
            sql += " AND platform = ?"
            params.append(platform)
        if event_type is not None:
            sql += " AND event_type = ?"
            params.append(event_type)
        sql += " ORDER BY created_at " + ("ASC" if ascending else "DESC")
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [EpisodicMemory.from_row(r) for r in self.db.query(sql, params)]

    def count(self, organization_id: str, since: Optional[datetime] = None) -> int:
        if since is None:
            return int(
                self.db.scalar(
                    "SELECT COUNT(*) FROM episodic_memory WHERE organization_id = ?",
                    (organization_id,),
                    default=0,
                )
            )
        return int(
            self.db.scalar(
                "SELECT COUNT(*) FROM episodic_memory "
                "WHERE organization_id = ? AND created_at >= ?",
                (organization_id, to_iso(since)),
                default=0,
            )
        )

    def recall(
        self,
        organization_id: str,
        decay: DecayEngine,
        since: datetime,
        limit: int = 20,
        event_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[EpisodicMemory]:
        """Top *limit* live rows by composite score (forgotten rows skipped)."""
        rows = self.list_since(organization_id, since, event_type=event_type)
        return [memory for memory, _score in decay.rank(rows, now=now)[:limit]]
