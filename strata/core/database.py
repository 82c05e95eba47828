"""
strata.core.database — The SQLite engine shared by every repository.

One connection per ``Database`` object, WAL mode, ``sqlite3.Row``
rows, JSON stored in TEXT columns.  The connection is opened with
``check_same_thread=False`` and every statement runs under an
``RLock``, so a single ``MemoryStore`` can be shared between the
consolidation job and request threads.

Repositories never commit directly; they call ``_commit()`` which is
suppressed inside ``batch()`` so multi-row writes land atomically.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

log = logging.getLogger(__name__)


SCHEMA = (
    # -- episodic ------------------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS episodic_memory (
        id              TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        event_type      TEXT NOT NULL,
        platform        TEXT,
        summary         TEXT DEFAULT '',
        content         JSON,
        importance      REAL DEFAULT 0.5,
        strength        REAL DEFAULT 1.0,
        half_life_days  REAL,
        created_at      TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_episodic_org_created "
    "ON episodic_memory(organization_id, created_at)",
    # -- semantic ------------------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS semantic_patterns (
        id              TEXT PRIMARY KEY,
        organization_id TEXT,
        pattern_type    TEXT NOT NULL,
        platform        TEXT,
        pattern_key     TEXT NOT NULL,
        pattern_value   JSON,
        confidence      REAL DEFAULT 0.5,
        sample_size     INTEGER DEFAULT 0,
        source_type     TEXT DEFAULT 'rule_based',
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_semantic_lookup "
    "ON semantic_patterns(organization_id, pattern_type, pattern_key)",
    """
    CREATE TABLE IF NOT EXISTS pattern_candidates (
        id              TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        pattern_type    TEXT NOT NULL,
        platform        TEXT,
        pattern_key     TEXT NOT NULL,
        pattern_value   JSON,
        confidence      REAL DEFAULT 0.5,
        sample_size     INTEGER DEFAULT 0,
        source_type     TEXT DEFAULT 'rule_based',
        evidence_ids    JSON,
        status          TEXT DEFAULT 'pending',
        llm_reasoning   TEXT,
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_candidates_org_status "
    "ON pattern_candidates(organization_id, status)",
    # -- procedural ----------------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS procedural_strategies (
        id              TEXT PRIMARY KEY,
        organization_id TEXT,
        pattern_id      TEXT NOT NULL UNIQUE,
        pattern_type    TEXT NOT NULL,
        platform        TEXT,
        strategy_key    TEXT NOT NULL,
        strategy_value  JSON,
        confidence      REAL DEFAULT 0.0,
        sample_size     INTEGER DEFAULT 0,
        active          INTEGER DEFAULT 1,
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL
    )
    """,
    # -- working / metacognitive --------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS working_memory (
        organization_id TEXT NOT NULL,
        session_id      TEXT NOT NULL,
        key             TEXT NOT NULL,
        value           JSON,
        created_at      TEXT NOT NULL,
        expires_at      TEXT NOT NULL,
        PRIMARY KEY (organization_id, session_id, key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS metacognitive_log (
        id              TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        metric          TEXT NOT NULL,
        value           REAL NOT NULL,
        sample_size     INTEGER DEFAULT 1,
        period_end      TEXT NOT NULL,
        created_at      TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_metacog_org_metric "
    "ON metacognitive_log(organization_id, metric, created_at)",
    # -- consolidation -------------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS consolidation_audit_log (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        organization_id TEXT NOT NULL,
        action_type     TEXT NOT NULL,
        source_ids      JSON,
        target_id       TEXT,
        details         JSON,
        confidence      REAL,
        actor           TEXT DEFAULT 'system',
        created_at      TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_org_created "
    "ON consolidation_audit_log(organization_id, created_at)",
    """
    CREATE TRIGGER IF NOT EXISTS trg_audit_no_update
    BEFORE UPDATE ON consolidation_audit_log
    BEGIN
        SELECT RAISE(ABORT, 'consolidation_audit_log is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS trg_audit_no_delete
    BEFORE DELETE ON consolidation_audit_log
    BEGIN
        SELECT RAISE(ABORT, 'consolidation_audit_log is append-only');
    END
    """,
    """
    CREATE TABLE IF NOT EXISTS consolidation_runs (
        organization_id  TEXT PRIMARY KEY,
        last_started_at  TEXT,
        last_finished_at TEXT,
        status           TEXT,
        last_stats       JSON
    )
    """,
    # -- outcome learning ----------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS creative_memory (
        organization_id  TEXT NOT NULL,
        platform         TEXT NOT NULL,
        objective        TEXT NOT NULL,
        hook_type        TEXT NOT NULL,
        framework        TEXT NOT NULL,
        cta_type         TEXT NOT NULL,
        memory_key       TEXT NOT NULL,
        sample_size      INTEGER DEFAULT 0,
        success_count    INTEGER DEFAULT 0,
        total_engagement REAL DEFAULT 0,
        avg_engagement   REAL DEFAULT 0,
        last_post_id     TEXT,
        last_outcome_at  TEXT,
        metadata         JSON,
        created_at       TEXT NOT NULL,
        updated_at       TEXT NOT NULL,
        PRIMARY KEY (organization_id, platform, objective, hook_type, framework, cta_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS outcome_events (
        id              TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        post_id         TEXT NOT NULL,
        platform        TEXT,
        source          TEXT NOT NULL,
        event_type      TEXT NOT NULL,
        objective       TEXT,
        likes           INTEGER DEFAULT 0,
        comments        INTEGER DEFAULT 0,
        shares          INTEGER DEFAULT 0,
        saves           INTEGER DEFAULT 0,
        reach           INTEGER DEFAULT 0,
        impressions     INTEGER DEFAULT 0,
        views           INTEGER DEFAULT 0,
        clicks          INTEGER DEFAULT 0,
        engagement_rate REAL DEFAULT 0,
        metrics_hash    TEXT NOT NULL,
        metadata        JSON,
        created_at      TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_outcome_dedup "
    "ON outcome_events(post_id, source, event_type, metrics_hash)",
    """
    CREATE TABLE IF NOT EXISTS decision_logs (
        id               TEXT PRIMARY KEY,
        organization_id  TEXT NOT NULL,
        post_id          TEXT NOT NULL,
        platform         TEXT,
        route_key        TEXT,
        user_id          TEXT,
        objective        TEXT,
        hook_type        TEXT,
        framework        TEXT,
        cta_type         TEXT,
        memory_key       TEXT,
        selected_variant TEXT,
        expected_score   REAL,
        provider         TEXT,
        model            TEXT,
        mode             TEXT,
        decision_context JSON,
        created_at       TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_decisions_org_platform "
    "ON decision_logs(organization_id, platform, created_at)",
    # -- governor ------------------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS ai_request_cache (
        organization_id    TEXT NOT NULL,
        route_key          TEXT NOT NULL,
        intent_hash        TEXT NOT NULL,
        response           JSON,
        provider           TEXT,
        model              TEXT,
        estimated_cost_usd REAL DEFAULT 0,
        created_at         TEXT NOT NULL,
        expires_at         TEXT NOT NULL,
        UNIQUE (organization_id, route_key, intent_hash)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_usage_events (
        id                 TEXT PRIMARY KEY,
        organization_id    TEXT NOT NULL,
        user_id            TEXT,
        route_key          TEXT NOT NULL,
        intent_hash        TEXT,
        provider           TEXT,
        model              TEXT,
        mode               TEXT NOT NULL,
        input_tokens       INTEGER DEFAULT 0,
        output_tokens      INTEGER DEFAULT 0,
        estimated_cost_usd REAL DEFAULT 0,
        latency_ms         INTEGER DEFAULT 0,
        success            INTEGER DEFAULT 1,
        cache_hit          INTEGER DEFAULT 0,
        budget_fallback    INTEGER DEFAULT 0,
        error_code         TEXT,
        metadata           JSON,
        created_at         TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_usage_org_created "
    "ON ai_usage_events(organization_id, created_at)",
    # -- organization settings -----------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS organization_settings (
        organization_id TEXT PRIMARY KEY,
        settings        JSON,
        updated_at      TEXT NOT NULL
    )
    """,
)


class Database:
    """Thread-shared SQLite connection with batch (deferred-commit) support."""

    def __init__(self, db_path: Path | str):
        if str(db_path) == ":memory:":
            self.db_path: Optional[Path] = None
            target = ":memory:"
        else:
            self.db_path = Path(db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(self.db_path)
        self.conn = sqlite3.connect(target, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self._lock = threading.RLock()
        # > 0 while inside batch(); commits are deferred to the outermost exit
        self._batch_depth: int = 0
        self._create_tables()

    # ── Batch writes ────────────────────────────────────────────

    class _BatchContext:
        """Context manager that holds the lock and defers commits until exit."""

        def __init__(self, db: "Database") -> None:
            self._db = db

        def __enter__(self) -> "Database":
            self._db._lock.acquire()
            self._db._batch_depth += 1
            return self._db

        def __exit__(self, exc_type, exc_val, exc_tb) -> None:
            try:
                self._db._batch_depth -= 1
                if self._db._batch_depth <= 0:
                    self._db._batch_depth = 0
                    if exc_type is None:
                        self._db.conn.commit()
                    else:
                        self._db.conn.rollback()
            finally:
                self._db._lock.release()

    def batch(self) -> "_BatchContext":
        """Return a context manager that makes the enclosed writes atomic.

        Usage::

            with db.batch():
                usage.log(event)
                cache.set(...)
            # single commit here; rollback if the block raised
        """
        return self._BatchContext(self)

    @property
    def in_batch(self) -> bool:
        return self._batch_depth > 0

    def _commit(self) -> None:
        """Commit unless inside a batch context."""
        if self._batch_depth <= 0:
            self.conn.commit()

    # ── Statements ────────────────────────────────────────────

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Run a write statement and commit (deferred inside ``batch()``)."""
        with self._lock:
            try:
                cur = self.conn.execute(sql, tuple(params))
            except sqlite3.Error:
                if self._batch_depth <= 0:
                    self.conn.rollback()
                raise
            self._commit()
            return cur

    def executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> None:
        with self._lock:
            self.conn.executemany(sql, [tuple(r) for r in rows])
            self._commit()

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self.conn.execute(sql, tuple(params)).fetchall()
        return [dict(r) for r in rows]

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(sql, tuple(params)).fetchone()
        return dict(row) if row is not None else None

    def scalar(self, sql: str, params: Sequence[Any] = (), default: Any = None) -> Any:
        with self._lock:
            row = self.conn.execute(sql, tuple(params)).fetchone()
        if row is None or row[0] is None:
            return default
        return row[0]

    # ── Schema ────────────────────────────────────────────────

    def _create_tables(self) -> None:
        with self._lock:
            for statement in SCHEMA:
                self.conn.execute(statement)
            self.conn.commit()
        log.debug("Schema ready at %s", self.db_path or ":memory:")

    def table_counts(self) -> Dict[str, int]:
        """Row count per strata table (used by ``stats``)."""
        names = [
            r["name"]
            for r in self.query(
                "SELECT name FROM sqlite_master WHERE type='table' "
                "AND name NOT LIKE 'sqlite_%' ORDER BY name"
            )
        ]
        return {name: int(self.scalar(f"SELECT COUNT(*) FROM {name}", default=0)) for name in names}

    def close(self) -> None:
        with self._lock:
            self.conn.close()
