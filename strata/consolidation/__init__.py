"""
strata.consolidation — Promotion of detected patterns into long-term
memory, with an append-only audit trail.

Conflicting observations are reconciled rather than overwritten, and
every reconciliation is recorded so a reviewer can replay why a
strategy exists.
"""

from strata.consolidation.consolidator import (
    KEEP_EXISTING,
    MERGE,
    REPLACE,
    ConsolidationStats,
    Consolidator,
    merged_confidence,
)
from strata.consolidation.store import AuditStore, RunStore

__all__ = [
    "AuditStore",
    "ConsolidationStats",
    "Consolidator",
    "KEEP_EXISTING",
    "MERGE",
    "REPLACE",
    "RunStore",
    "merged_confidence",
]
