"""
strata.semantic.store — Semantic patterns and the candidate staging table.

A semantic pattern is a named regularity ("post_success on instagram
happens often", "trend_detected tends to follow competitor_insight").
Only the consolidation pipeline writes here.  Rows with a NULL
``organization_id`` are global patterns: visible to every tenant,
never written through this API on a tenant's behalf.

``CandidateStore`` keeps every candidate consolidation handled, with
the status it ended in, so a rejected pattern can be traced back to the
run that saw it.
"""

from __future__ import annotations

import json
from typing import List, Optional

from strata.core.database import Database
from strata.core.types import PatternCandidate, SemanticPattern, generate_id, now_iso


class SemanticStore:
    """Tenant-scoped semantic pattern rows."""

    def __init__(self, db: Database):
        self.db = db

    def find(
        self,
        organization_id: str,
        pattern_type: str,
        platform: Optional[str],
        pattern_key: str,
    ) -> Optional[SemanticPattern]:
        """The org's pattern with this identity, or None.  Global rows never match."""
        row = self.db.query_one(
            """SELECT * FROM semantic_patterns
               WHERE organization_id = ? AND pattern_type = ?
                 AND platform IS ? AND pattern_key = ?
               ORDER BY updated_at DESC LIMIT 1""",
            (organization_id, pattern_type, platform, pattern_key),
        )
        return SemanticPattern.from_row(row) if row else None

    def get(self, pattern_id: str) -> Optional[SemanticPattern]:
        row = self.db.query_one("SELECT * FROM semantic_patterns WHERE id = ?", (pattern_id,))
        return SemanticPattern.from_row(row) if row else None

    def insert(self, pattern: SemanticPattern) -> SemanticPattern:
        if pattern.organization_id is None:
            raise ValueError("Global patterns are read-only through the tenant store")
        self.db.execute(
            """INSERT INTO semantic_patterns
               (id, organization_id, pattern_type, platform, pattern_key,
                pattern_value, confidence, sample_size, source_type,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                pattern.id,
                pattern.organization_id,
                pattern.pattern_type,
                pattern.platform,
                pattern.pattern_key,
                json.dumps(pattern.pattern_value),
                pattern.confidence,
                pattern.sample_size,
                pattern.source_type,
                pattern.created_at,
                pattern.updated_at,
            ),
        )
        return pattern

    def update(self, pattern: SemanticPattern) -> SemanticPattern:
        """Overwrite value/confidence/sample size; bumps ``updated_at``."""
        if pattern.organization_id is None:
            raise ValueError("Global patterns are read-only through the tenant store")
        pattern.updated_at = now_iso()
        self.db.execute(
            """UPDATE semantic_patterns
               SET pattern_value = ?, confidence = ?, sample_size = ?,
                   source_type = ?, updated_at = ?
               WHERE id = ? AND organization_id = ?""",
            (
                json.dumps(pattern.pattern_value),
                pattern.confidence,
                pattern.sample_size,
                pattern.source_type,
                pattern.updated_at,
                pattern.id,
                pattern.organization_id,
            ),
        )
        return pattern

    def list_for_org(
        self,
        organization_id: str,
        pattern_type: Optional[str] = None,
        include_global: bool = True,
        limit: int = 200,
    ) -> List[SemanticPattern]:
        """The org's patterns (plus global ones), most confident first."""
        sql = "SELECT * FROM semantic_patterns WHERE "
        if include_global:
            sql += "(organization_id = ? OR organization_id IS NULL)"
        else:
            sql += "organization_id = ?"
        params: list = [organization_id]
        if pattern_type is not None:
            sql += " AND pattern_type = ?"
            params.append(pattern_type)
        sql += " ORDER BY confidence DESC, sample_size DESC LIMIT ?"
        params.append(int(limit))
        return [SemanticPattern.from_row(r) for r in self.db.query(sql, params)]


class CandidateStore:
    """Staging rows for candidates that went through consolidation."""

    def __init__(self, db: Database):
        self.db = db

    def record(self, candidate: PatternCandidate) -> str:
        """Persist *candidate* with its current status; returns the row id."""
        candidate_id = generate_id()
        ts = now_iso()
        self.db.execute(
            """INSERT INTO pattern_candidates
               (id, organization_id, pattern_type, platform, pattern_key,
                pattern_value, confidence, sample_size, source_type,
                evidence_ids, status, llm_reasoning, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                candidate_id,
                candidate.organization_id,
                candidate.pattern_type,
                candidate.platform,
                candidate.pattern_key,
                json.dumps(candidate.pattern_value),
                candidate.confidence,
                candidate.sample_size,
                candidate.source_type,
                json.dumps(candidate.evidence_ids),
                candidate.status,
                candidate.llm_reasoning,
                ts,
                ts,
            ),
        )
        return candidate_id

    def list_for_org(
        self, organization_id: str, status: Optional[str] = None, limit: int = 200
    ) -> List[dict]:
        sql = "SELECT * FROM pattern_candidates WHERE organization_id = ?"
        params: list = [organization_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(int(limit))
        rows = self.db.query(sql, params)
        for row in rows:
            row["pattern_value"] = json.loads(row["pattern_value"] or "{}")
            row["evidence_ids"] = json.loads(row["evidence_ids"] or "[]")
        return rows
