"""
strata.system -- Top-level MemorySystem: one object wiring every layer.

    from strata import MemorySystem

    memory = MemorySystem(data_dir="./data")
    memory.record_event("org-1", "post_success", platform="instagram")
    results = memory.run_consolidation(["org-1"])

Everything is built from a single ``Config``: the SQLite store, the
decay engine, the pattern detector, the consolidator, the AI governor
and the outcome learner.  ``run_consolidation`` is what the scheduled
job calls.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from strata.consolidation.consolidator import ConsolidationStats, Consolidator
from strata.core.config import Config
from strata.core.types import (
    AuditEntry,
    EpisodicMemory,
    Err,
    ErrorCode,
    ModelFunc,
    Ok,
    Result,
    require_org,
    to_iso,
    utcnow,
)
from strata.governor.governor import AIGovernor
from strata.outcomes.channel import OutcomeChannel
from strata.outcomes.learning import OutcomeLearner
from strata.patterns.detector import PatternDetector
from strata.signal.decay import DecayEngine
from strata.store import MemoryStore

log = logging.getLogger("strata.system")


class MemorySystem:
    """Top-level API over the memory and governance layers.

    Parameters
    ----------
    config:
        Full ``Config`` object.  If not given, ``data_dir`` and
        ``**kwargs`` are forwarded to ``Config``.
    data_dir:
        Shortcut -- if you just want to point at a directory and go.
    model_func:
        Optional model callable for the governor; defaults to the one
        built from the config's provider settings on first paid call.
    now:
        Clock override, handed to every time-dependent component.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        data_dir: Optional[str | Path] = None,
        model_func: Optional[ModelFunc] = None,
        now: Optional[Callable[[], datetime]] = None,
        **kwargs: Any,
    ) -> None:
        if config is not None:
            self.config = config
        elif data_dir is not None:
            self.config = Config.from_data_dir(data_dir, **kwargs)
        else:
            self.config = Config(**kwargs)

        self.config.ensure_directories()

        if self.config.structured_logging:
            from strata.core.logging import configure_logging

            configure_logging(structured=True, level=self.config.log_level)

        self._now = now or utcnow

        self.store = MemoryStore(self.config.db_path)
        self.decay = DecayEngine.from_config(self.config)
        self.detector = PatternDetector.from_config(self.store, self.config, now=now)
        self.consolidator = Consolidator.from_config(self.store, self.config, now=now)
        self.governor = AIGovernor(self.store, self.config, model_func=model_func, now=now)
        self.outcome_channel = OutcomeChannel()
        self.outcomes = OutcomeLearner(
            self.store,
            success_thresholds=self.config.creative_success_thresholds,
            channel=self.outcome_channel,
            bandit_exploration=self.config.bandit_exploration,
        )

    # ------------------------------------------------------------------
    # Episodic
    # ------------------------------------------------------------------

    def record_event(
        self,
        organization_id: str,
        event_type: str,
        platform: Optional[str] = None,
        summary: str = "",
        content: Optional[Dict] = None,
        importance: float = 0.5,
        half_life_days: Optional[float] = None,
    ) -> Result[EpisodicMemory]:
        invalid = require_org(organization_id)
        if invalid:
            return invalid
        if not event_type or not event_type.strip():
            return Err(ErrorCode.VALIDATION, "event_type is required")
        memory = EpisodicMemory(
            organization_id=organization_id,
            event_type=event_type.strip(),
            platform=platform,
            summary=summary,
            content=dict(content or {}),
            importance=importance,
            half_life_days=half_life_days,
            created_at=to_iso(self._now()),
        )
        try:
            return Ok(self.store.episodic.record(memory))
        except sqlite3.Error as exc:
            return Err(ErrorCode.STORE_UNAVAILABLE, f"Episodic write failed: {exc}", exc)

    def recall(
        self,
        organization_id: str,
        days: int = 30,
        limit: int = 20,
        event_type: Optional[str] = None,
    ) -> Result[List[EpisodicMemory]]:
        """Strongest live memories of the last *days*, best first."""
        invalid = require_org(organization_id)
        if invalid:
            return invalid
        now = self._now()
        try:
            rows = self.store.episodic.recall(
                organization_id,
                self.decay,
                since=now - timedelta(days=days),
                limit=limit,
                event_type=event_type,
                now=now,
            )
        except sqlite3.Error as exc:
            return Err(ErrorCode.STORE_UNAVAILABLE, f"Episodic recall failed: {exc}", exc)
        return Ok(rows)

    # ------------------------------------------------------------------
    # Scheduled consolidation
    # ------------------------------------------------------------------

    def run_consolidation(
        self,
        organization_ids: Iterable[str],
        platform: Optional[str] = None,
        dry_run: bool = False,
        use_llm: bool = False,
    ) -> Dict[str, Result[ConsolidationStats]]:
        """Consolidate each organization; one failure does not stop the rest.

        After a real run, expired working memory and intent cache rows
        are purged and each organization's metacognitive state is
        refreshed.
        """
        results: Dict[str, Result[ConsolidationStats]] = {}
        governor = self.governor if use_llm else None
        for organization_id in organization_ids:
            result = self.consolidator.consolidate_organization(
                organization_id,
                self.detector,
                platform=platform,
                dry_run=dry_run,
                governor=governor,
                actor="cron",
            )
            if not result.ok:
                log.warning(
                    "Consolidation failed for %s: %s %s",
                    organization_id,
                    result.code.value,
                    result.message,
                )
            results[organization_id] = result

        if dry_run:
            return results

        now = self._now()
        try:
            expired = self.store.working.purge_expired(now)
            stale = self.store.intent_cache.purge_expired(now)
            log.debug("Purged %d working-memory and %d cache rows", expired, stale)
        except sqlite3.Error as exc:
            log.warning("Expiry sweep failed: %s", exc)

        for organization_id in results:
            if require_org(organization_id):
                continue
            try:
                self.store.metacognitive.refresh_state(organization_id, self.store.working, now=now)
            except sqlite3.Error as exc:
                log.warning("Metacognitive refresh failed for %s: %s", organization_id, exc)
        return results

    def audit_trail(
        self,
        organization_id: str,
        action_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 50,
    ) -> Result[List[AuditEntry]]:
        return self.consolidator.query_audit_trail(organization_id, action_type, since, limit)

    def budget_status(self, organization_id: str) -> Result[Dict]:
        return self.governor.budget_status(organization_id)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Row counts per table plus the storage location."""
        return {
            "db_path": str(self.store.db_path) if self.store.db_path else ":memory:",
            "tables": self.store.table_counts(),
        }

    def close(self) -> None:
        """Close the database connection."""
        self.store.close()

    def __enter__(self) -> "MemorySystem":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
