"""strata.working — Session-scoped scratch state with expiry."""

from strata.working.store import DEFAULT_TTL_SECONDS, WorkingMemoryStore

__all__ = ["DEFAULT_TTL_SECONDS", "WorkingMemoryStore"]
