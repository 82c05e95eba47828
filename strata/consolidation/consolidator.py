"""
strata.consolidation.consolidator — Candidates into long-term memory.

Each validated candidate either becomes a new semantic pattern or is
reconciled with the organization's existing pattern of the same
``(pattern_type, platform, pattern_key)``:

  replace        the candidate is clearly more confident *and* better
                 sampled; its value and confidence win
  keep_existing  the existing pattern has far more samples; no change
  merge          otherwise; confidence becomes the sample-weighted
                 average and sample sizes add up

Patterns that are confident and well-sampled enough are promoted to a
procedural strategy (one per pattern); patterns that fall back below
the bar have their strategy deactivated.

Every action leaves an audit row.  The audit append is attempted even
when the memory write it describes failed, and a failed audit append
fails the whole call: losing provenance is not acceptable.  Source rows
are never deleted.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple, Union

from strata.core.filelock import OrgLock
from strata.core.types import (
    AuditEntry,
    Err,
    ErrorCode,
    Ok,
    PatternCandidate,
    ProceduralStrategy,
    Result,
    SemanticPattern,
    parse_iso,
    require_org,
    to_iso,
    utcnow,
)

if TYPE_CHECKING:
    from strata.core.config import Config
    from strata.governor.governor import AIGovernor
    from strata.patterns.detector import PatternDetector
    from strata.store import MemoryStore

log = logging.getLogger(__name__)

REPLACE = "replace"
KEEP_EXISTING = "keep_existing"
MERGE = "merge"


@dataclass
class ConsolidationStats:
    patterns_detected: int = 0
    patterns_promoted: int = 0
    patterns_merged: int = 0
    patterns_replaced: int = 0
    patterns_rejected: int = 0
    conflicts_resolved: int = 0
    strategies_promoted: int = 0
    strategies_deactivated: int = 0
    audit_entries_created: int = 0
    duration_ms: int = 0
    dry_run: bool = False
    skipped: bool = False

    def to_dict(self) -> Dict:
        return {
            "patterns_detected": self.patterns_detected,
            "patterns_promoted": self.patterns_promoted,
            "patterns_merged": self.patterns_merged,
            "patterns_replaced": self.patterns_replaced,
            "patterns_rejected": self.patterns_rejected,
            "conflicts_resolved": self.conflicts_resolved,
            "strategies_promoted": self.strategies_promoted,
            "strategies_deactivated": self.strategies_deactivated,
            "audit_entries_created": self.audit_entries_created,
            "duration_ms": self.duration_ms,
            "dry_run": self.dry_run,
            "skipped": self.skipped,
        }


def merged_confidence(
    existing_confidence: float,
    existing_samples: int,
    new_confidence: float,
    new_samples: int,
) -> float:
    """Sample-weighted average, rounded to 4 places.

    With no samples on either side the plain mean is used.
    """
    total = existing_samples + new_samples
    if total <= 0:
        return round((existing_confidence + new_confidence) / 2, 4)
    value = (existing_confidence * existing_samples + new_confidence * new_samples) / total
    return round(value, 4)


class Consolidator:
    """Promotes validated candidates and keeps the audit trail.

    Parameters
    ----------
    store : MemoryStore
        Semantic, procedural, candidate, audit and run repositories.
    promotion_threshold : float
        Minimum pattern confidence for a procedural strategy.
    min_sample_for_strategy : int
        Minimum pattern sample size for a procedural strategy.
    conflict_confidence_gap : float
        How much more confident a candidate must be to replace.
    keep_existing_sample_ratio : float
        Existing samples above ``ratio * new samples`` keep the existing row.
    lock_dir : Path, optional
        Directory for per-org run lock files.  Without it runs are only
        serialised within this process.
    lock_timeout : float
        Seconds to wait for a run lock before reporting "already running".
    lock_stale_after : float
        Age in seconds before a run lock left by a dead process is broken;
        must exceed the longest run, model-assisted detection included.
    min_interval_seconds : float
        A run finishing less than this long ago makes the next one a no-op.
    """

    def __init__(
        self,
        store: "MemoryStore",
        promotion_threshold: float = 0.8,
        min_sample_for_strategy: int = 10,
        conflict_confidence_gap: float = 0.2,
        keep_existing_sample_ratio: float = 3.0,
        lock_dir: Optional[Path] = None,
        lock_timeout: float = 5.0,
        lock_stale_after: float = 600.0,
        min_interval_seconds: float = 0.0,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.promotion_threshold = promotion_threshold
        self.min_sample_for_strategy = min_sample_for_strategy
        self.conflict_confidence_gap = conflict_confidence_gap
        self.keep_existing_sample_ratio = keep_existing_sample_ratio
        self.lock_dir = Path(lock_dir) if lock_dir is not None else None
        self.lock_timeout = lock_timeout
        self.lock_stale_after = lock_stale_after
        self.min_interval_seconds = min_interval_seconds
        self._now = now or utcnow
        self._local_locks: Dict[str, threading.Lock] = {}
        self._local_locks_guard = threading.Lock()

    @classmethod
    def from_config(
        cls,
        store: "MemoryStore",
        config: "Config",
        now: Optional[Callable[[], datetime]] = None,
    ) -> "Consolidator":
        return cls(
            store,
            promotion_threshold=config.promotion_threshold,
            min_sample_for_strategy=config.min_sample_for_strategy,
            conflict_confidence_gap=config.conflict_confidence_gap,
            keep_existing_sample_ratio=config.keep_existing_sample_ratio,
            lock_dir=config.lock_dir,
            lock_timeout=config.consolidation_lock_timeout,
            lock_stale_after=config.lock_stale_after_seconds,
            min_interval_seconds=config.consolidation_min_interval_seconds,
            now=now,
        )

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def append_audit_entry(self, entry: AuditEntry) -> Result[AuditEntry]:
        """Append one audit row; ``Ok`` carries the stored entry."""
        invalid = require_org(entry.organization_id)
        if invalid:
            return invalid
        try:
            return Ok(self.store.audit.append(entry))
        except sqlite3.Error as exc:
            log.error(
                "Audit write failed for %s (%s): %s",
                entry.organization_id,
                entry.action_type,
                exc,
            )
            return Err(ErrorCode.CONSOLIDATION_FAILED, f"Audit entry write failed: {exc}", exc)

    def query_audit_trail(
        self,
        organization_id: str,
        action_type: Optional[str] = None,
        since: Union[datetime, str, None] = None,
        limit: int = 50,
    ) -> Result[List[AuditEntry]]:
        """Newest-first audit rows, optionally filtered.  Read-only."""
        invalid = require_org(organization_id)
        if invalid:
            return invalid
        if isinstance(since, str):
            parsed = parse_iso(since)
            if parsed is None:
                return Err(ErrorCode.VALIDATION, f"Unparsable 'since' timestamp: {since!r}")
            since = parsed
        try:
            return Ok(self.store.audit.query(organization_id, action_type, since, max(1, limit)))
        except sqlite3.Error as exc:
            return Err(ErrorCode.STORE_UNAVAILABLE, f"Audit trail query failed: {exc}", exc)

    # ------------------------------------------------------------------
    # Conflict resolution
    # ------------------------------------------------------------------

    def decide_conflict(self, existing: SemanticPattern, candidate: PatternCandidate) -> str:
        gap = candidate.confidence - existing.confidence
        if gap > self.conflict_confidence_gap and candidate.sample_size > existing.sample_size:
            return REPLACE
        if existing.sample_size > candidate.sample_size * self.keep_existing_sample_ratio:
            return KEEP_EXISTING
        return MERGE

    def resolve_conflict(
        self, existing: SemanticPattern, candidate: PatternCandidate
    ) -> Tuple[str, SemanticPattern]:
        """Decide and apply (in memory) the reconciliation of *candidate* into *existing*.

        Returns ``(decision, pattern)``; the caller persists the pattern
        unless the decision is ``keep_existing``.
        """
        decision = self.decide_conflict(existing, candidate)
        if decision == KEEP_EXISTING:
            return decision, existing
        updated = replace(existing)
        if decision == REPLACE:
            updated.pattern_value = dict(candidate.pattern_value)
            updated.confidence = candidate.confidence
            updated.sample_size = max(existing.sample_size, candidate.sample_size)
            updated.source_type = candidate.source_type
        else:
            updated.pattern_value = {**existing.pattern_value, **candidate.pattern_value}
            updated.confidence = merged_confidence(
                existing.confidence,
                existing.sample_size,
                candidate.confidence,
                candidate.sample_size,
            )
            updated.sample_size = existing.sample_size + candidate.sample_size
        return decision, updated

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------

    def _qualifies(self, pattern: SemanticPattern) -> bool:
        return (
            pattern.confidence >= self.promotion_threshold
            and pattern.sample_size >= self.min_sample_for_strategy
        )

    def _apply(
        self, organization_id: str, candidate: PatternCandidate, actor: str
    ) -> Tuple[List[AuditEntry], str, Optional[Exception]]:
        """Write one candidate; returns (planned audit rows, outcome, write error)."""
        planned: List[AuditEntry] = []
        outcome = "rejected"
        try:
            with self.store.batch():
                existing = self.store.semantic.find(
                    organization_id, candidate.pattern_type, candidate.platform, candidate.pattern_key
                )
                if existing is None:
                    pattern = SemanticPattern(
                        organization_id=organization_id,
                        pattern_type=candidate.pattern_type,
                        platform=candidate.platform,
                        pattern_key=candidate.pattern_key,
                        pattern_value=dict(candidate.pattern_value),
                        confidence=candidate.confidence,
                        sample_size=candidate.sample_size,
                        source_type=candidate.source_type,
                    )
                    planned.append(
                        AuditEntry(
                            organization_id=organization_id,
                            action_type="episodic_promoted" if candidate.evidence_ids else "pattern_created",
                            source_ids=list(candidate.evidence_ids),
                            target_id=pattern.id,
                            details={
                                "pattern_type": pattern.pattern_type,
                                "pattern_key": pattern.pattern_key,
                                "sample_size": pattern.sample_size,
                                "source_type": pattern.source_type,
                            },
                            confidence=pattern.confidence,
                            actor=actor,
                        )
                    )
                    self.store.semantic.insert(pattern)
                    outcome = "created"
                else:
                    decision, pattern = self.resolve_conflict(existing, candidate)
                    planned.append(
                        AuditEntry(
                            organization_id=organization_id,
                            action_type="conflict_resolved",
                            source_ids=[existing.id],
                            target_id=existing.id,
                            details={
                                "decision": decision,
                                "pattern_key": existing.pattern_key,
                                "existing_confidence": existing.confidence,
                                "new_confidence": candidate.confidence,
                                "existing_samples": existing.sample_size,
                                "new_samples": candidate.sample_size,
                            },
                            confidence=pattern.confidence,
                            actor=actor,
                        )
                    )
                    if decision == KEEP_EXISTING:
                        outcome = KEEP_EXISTING
                    else:
                        planned.append(
                            AuditEntry(
                                organization_id=organization_id,
                                action_type="pattern_replaced" if decision == REPLACE else "pattern_merged",
                                source_ids=[existing.id] + list(candidate.evidence_ids),
                                target_id=pattern.id,
                                details={
                                    "previous_confidence": existing.confidence,
                                    "previous_samples": existing.sample_size,
                                    "sample_size": pattern.sample_size,
                                },
                                confidence=pattern.confidence,
                                actor=actor,
                            )
                        )
                        self.store.semantic.update(pattern)
                        outcome = decision

                if outcome != KEEP_EXISTING:
                    planned.extend(self._sync_strategy(pattern, actor))
        except sqlite3.Error as exc:
            log.error(
                "Consolidation write failed for %s/%s: %s",
                organization_id,
                candidate.pattern_key,
                exc,
            )
            for entry in planned:
                entry.details["error"] = str(exc)
                entry.details["applied"] = False
            if not planned:
                planned.append(
                    AuditEntry(
                        organization_id=organization_id,
                        action_type="pattern_invalidated",
                        source_ids=list(candidate.evidence_ids),
                        details={
                            "pattern_key": candidate.pattern_key,
                            "error": str(exc),
                            "applied": False,
                        },
                        confidence=candidate.confidence,
                        actor=actor,
                    )
                )
            return planned, "rejected", exc
        return planned, outcome, None

    def _sync_strategy(self, pattern: SemanticPattern, actor: str) -> List[AuditEntry]:
        if self._qualifies(pattern):
            strategy, created = self.store.procedural.upsert_for_pattern(
                ProceduralStrategy(
                    organization_id=pattern.organization_id,
                    pattern_id=pattern.id,
                    pattern_type=pattern.pattern_type,
                    platform=pattern.platform,
                    strategy_key=pattern.pattern_key,
                    strategy_value=dict(pattern.pattern_value),
                    confidence=pattern.confidence,
                    sample_size=pattern.sample_size,
                )
            )
            return [
                AuditEntry(
                    organization_id=pattern.organization_id,
                    action_type="strategy_promoted",
                    source_ids=[pattern.id],
                    target_id=strategy.id,
                    details={"created": created, "sample_size": strategy.sample_size},
                    confidence=strategy.confidence,
                    actor=actor,
                )
            ]
        if self.store.procedural.deactivate_for_pattern(pattern.id):
            return [
                AuditEntry(
                    organization_id=pattern.organization_id,
                    action_type="pattern_invalidated",
                    source_ids=[pattern.id],
                    target_id=pattern.id,
                    details={
                        "reason": "below_promotion_threshold",
                        "sample_size": pattern.sample_size,
                    },
                    confidence=pattern.confidence,
                    actor=actor,
                )
            ]
        return []

    def consolidate(
        self,
        organization_id: str,
        candidates: List[PatternCandidate],
        actor: str = "system",
        stats: Optional[ConsolidationStats] = None,
    ) -> Result[List[AuditEntry]]:
        """Create, merge or replace a pattern per candidate and audit each action.

        Returns the written audit entries.  ``CONSOLIDATION_FAILED`` if
        any audit append failed; ``STORE_UNAVAILABLE`` if only memory
        writes failed (their audit rows are still written, marked
        ``applied: False``).
        """
        invalid = require_org(organization_id)
        if invalid:
            return invalid
        stats = stats if stats is not None else ConsolidationStats()
        written: List[AuditEntry] = []
        audit_failures: List[Err] = []
        write_failure: Optional[Exception] = None

        for candidate in candidates:
            planned, outcome, error = self._apply(organization_id, candidate, actor)
            if error is not None:
                write_failure = write_failure or error

            if outcome == "created":
                stats.patterns_promoted += 1
            elif outcome == MERGE:
                stats.patterns_merged += 1
            elif outcome == REPLACE:
                stats.patterns_replaced += 1
            else:
                stats.patterns_rejected += 1
            if error is None and outcome in (MERGE, REPLACE, KEEP_EXISTING):
                stats.conflicts_resolved += 1

            for entry in planned:
                appended = self.append_audit_entry(entry)
                if appended.ok:
                    written.append(appended.value)
                    stats.audit_entries_created += 1
                    if entry.action_type == "strategy_promoted":
                        stats.strategies_promoted += 1
                    elif entry.action_type == "pattern_invalidated" and error is None:
                        stats.strategies_deactivated += 1
                else:
                    audit_failures.append(appended)

            status = "rejected" if outcome in ("rejected", KEEP_EXISTING) else "promoted"
            try:
                self.store.candidates.record(
                    replace(candidate, organization_id=organization_id, status=status)
                )
            except sqlite3.Error as exc:
                log.warning("Candidate staging write failed for %s: %s", candidate.pattern_key, exc)

        if audit_failures:
            return Err(
                ErrorCode.CONSOLIDATION_FAILED,
                f"{len(audit_failures)} audit entr{'y' if len(audit_failures) == 1 else 'ies'} "
                f"could not be written: {audit_failures[0].message}",
                audit_failures[0].cause,
            )
        if write_failure is not None:
            return Err(
                ErrorCode.STORE_UNAVAILABLE,
                f"Consolidation write failed: {write_failure}",
                write_failure,
            )
        return Ok(written)

    # ------------------------------------------------------------------
    # Scheduled run
    # ------------------------------------------------------------------

    def _local_lock(self, organization_id: str) -> threading.Lock:
        with self._local_locks_guard:
            return self._local_locks.setdefault(organization_id, threading.Lock())

    def _ran_recently(self, organization_id: str) -> bool:
        if self.min_interval_seconds <= 0:
            return False
        run = self.store.runs.get(organization_id)
        finished = parse_iso(run.get("last_finished_at")) if run else None
        if finished is None:
            return False
        return self._now() - finished < timedelta(seconds=self.min_interval_seconds)

    def consolidate_organization(
        self,
        organization_id: str,
        detector: "PatternDetector",
        platform: Optional[str] = None,
        dry_run: bool = False,
        governor: Optional["AIGovernor"] = None,
        actor: str = "system",
    ) -> Result[ConsolidationStats]:
        """Detect, validate and consolidate one organization.

        Runs for the same organization never overlap: a second run that
        cannot get the lock within ``lock_timeout`` returns
        ``CONSOLIDATION_FAILED``.  ``dry_run`` writes nothing and reports
        every validated candidate as promoted.
        """
        invalid = require_org(organization_id)
        if invalid:
            return invalid

        local = self._local_lock(organization_id)
        if not local.acquire(timeout=self.lock_timeout):
            return Err(ErrorCode.CONSOLIDATION_FAILED, f"Consolidation already running for {organization_id}")
        file_lock: Optional[OrgLock] = None
        try:
            if self.lock_dir is not None:
                file_lock = OrgLock(
                    self.lock_dir,
                    "consolidation",
                    organization_id,
                    timeout=self.lock_timeout,
                    stale_after=self.lock_stale_after,
                )
                if not file_lock.try_acquire():
                    file_lock = None
                    return Err(
                        ErrorCode.CONSOLIDATION_FAILED,
                        f"Consolidation already running for {organization_id}",
                    )
            return self._run(organization_id, detector, platform, dry_run, governor, actor)
        finally:
            if file_lock is not None:
                file_lock.release()
            local.release()

    def _run(
        self,
        organization_id: str,
        detector: "PatternDetector",
        platform: Optional[str],
        dry_run: bool,
        governor: Optional["AIGovernor"],
        actor: str,
    ) -> Result[ConsolidationStats]:
        started = time.monotonic()
        stats = ConsolidationStats(dry_run=dry_run)

        def done() -> ConsolidationStats:
            stats.duration_ms = int((time.monotonic() - started) * 1000)
            return stats

        if not dry_run:
            try:
                if self._ran_recently(organization_id):
                    stats.skipped = True
                    log.info("Consolidation for %s ran recently; skipping", organization_id)
                    return Ok(done())
                self.store.runs.mark_started(organization_id, to_iso(self._now()))
            except sqlite3.Error as exc:
                return Err(ErrorCode.STORE_UNAVAILABLE, f"Run watermark unavailable: {exc}", exc)

        detected = detector.run_detection_pipeline(organization_id, platform=platform, governor=governor)
        if not detected.ok:
            self._finish(organization_id, "failed", stats, dry_run)
            return Err(
                ErrorCode.CONSOLIDATION_FAILED,
                f"Detection pipeline failed: {detected.message}",
                detected.cause,
            )
        stats.patterns_detected = len(detected.value)
        if not detected.value:
            self._finish(organization_id, "ok", done(), dry_run)
            return Ok(stats)

        validated = detector.validate_candidates(detected.value)
        stats.patterns_rejected = stats.patterns_detected - len(validated)

        if dry_run:
            stats.patterns_promoted = len(validated)
            return Ok(done())

        result = self.consolidate(organization_id, validated, actor=actor, stats=stats)

        summary = self.append_audit_entry(
            AuditEntry(
                organization_id=organization_id,
                action_type="episodic_promoted",
                details={
                    "run": True,
                    "patterns_detected": stats.patterns_detected,
                    "patterns_promoted": stats.patterns_promoted,
                    "patterns_merged": stats.patterns_merged,
                    "patterns_replaced": stats.patterns_replaced,
                    "patterns_rejected": stats.patterns_rejected,
                    "conflicts_resolved": stats.conflicts_resolved,
                },
                actor=actor,
            )
        )
        if summary.ok:
            stats.audit_entries_created += 1

        failed = not result.ok or not summary.ok
        self._finish(organization_id, "failed" if failed else "ok", done(), dry_run)
        log.info(
            "Consolidated %s: detected=%d promoted=%d merged=%d rejected=%d (%dms)",
            organization_id,
            stats.patterns_detected,
            stats.patterns_promoted,
            stats.patterns_merged,
            stats.patterns_rejected,
            stats.duration_ms,
        )
        if not result.ok:
            return result
        if not summary.ok:
            return summary
        return Ok(stats)

    def _finish(
        self, organization_id: str, status: str, stats: ConsolidationStats, dry_run: bool
    ) -> None:
        if dry_run:
            return
        try:
            self.store.runs.mark_finished(
                organization_id, status, stats.to_dict(), finished_at=to_iso(self._now())
            )
        except sqlite3.Error as exc:
            log.warning("Could not record run watermark for %s: %s", organization_id, exc)
