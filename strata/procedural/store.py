"""
strata.procedural.store — Promoted, actionable strategies.

A strategy exists for a semantic pattern once that pattern is confident
enough and backed by enough samples to act on automatically.  There is
at most one strategy per pattern: re-promotion refreshes the existing
row instead of adding a second one.
"""

from __future__ import annotations

import json
from typing import List, Optional, Tuple

from strata.core.database import Database
from strata.core.types import ProceduralStrategy, now_iso


class ProceduralStore:
    """SQLite-backed procedural strategies."""

    def __init__(self, db: Database):
        self.db = db

    def get_for_pattern(self, pattern_id: str) -> Optional[ProceduralStrategy]:
        row = self.db.query_one(
            "SELECT * FROM procedural_strategies WHERE pattern_id = ?", (pattern_id,)
        )
        return ProceduralStrategy.from_row(row) if row else None

    def upsert_for_pattern(self, strategy: ProceduralStrategy) -> Tuple[ProceduralStrategy, bool]:
        """Insert, or refresh the pattern's existing strategy.

        Returns ``(strategy, created)``.  The refreshed row keeps its id
        and ``created_at`` and is re-activated.
        """
        existing = self.get_for_pattern(strategy.pattern_id)
        if existing is None:
            self.db.execute(
                """INSERT INTO procedural_strategies
                   (id, organization_id, pattern_id, pattern_type, platform,
                    strategy_key, strategy_value, confidence, sample_size,
                    active, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    strategy.id,
                    strategy.organization_id,
                    strategy.pattern_id,
                    strategy.pattern_type,
                    strategy.platform,
                    strategy.strategy_key,
                    json.dumps(strategy.strategy_value),
                    strategy.confidence,
                    strategy.sample_size,
                    1 if strategy.active else 0,
                    strategy.created_at,
                    strategy.updated_at,
                ),
            )
            return strategy, True

        existing.strategy_value = dict(strategy.strategy_value)
        existing.confidence = strategy.confidence
        existing.sample_size = max(existing.sample_size, strategy.sample_size)
        existing.active = True
        existing.updated_at = now_iso()
        self.db.execute(
            """UPDATE procedural_strategies
               SET strategy_value = ?, confidence = ?, sample_size = ?,
                   active = 1, updated_at = ?
               WHERE id = ?""",
            (
                json.dumps(existing.strategy_value),
                existing.confidence,
                existing.sample_size,
                existing.updated_at,
                existing.id,
            ),
        )
        return existing, False

    def deactivate_for_pattern(self, pattern_id: str) -> bool:
        """Mark the pattern's strategy inactive.  Returns whether one was active."""
        cur = self.db.execute(
            "UPDATE procedural_strategies SET active = 0, updated_at = ? "
            "WHERE pattern_id = ? AND active = 1",
            (now_iso(), pattern_id),
        )
        return cur.rowcount > 0

    def list_active(
        self, organization_id: str, platform: Optional[str] = None
    ) -> List[ProceduralStrategy]:
        sql = "SELECT * FROM procedural_strategies WHERE organization_id = ? AND active = 1"
        params: list = [organization_id]
        if platform is not None:
            sql += " AND (platform = ? OR platform IS NULL)"
            params.append(platform)
        sql += " ORDER BY confidence DESC"
        return [ProceduralStrategy.from_row(r) for r in self.db.query(sql, params)]
