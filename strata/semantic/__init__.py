"""strata.semantic — Consolidated patterns and the candidate staging table."""

from strata.semantic.store import CandidateStore, SemanticStore

__all__ = ["CandidateStore", "SemanticStore"]
