"""
strata -- Adaptive memory and AI governance for a social publishing dashboard.

    from strata import MemorySystem

    memory = MemorySystem(data_dir="./data")
    memory.record_event("org-1", "post_success", platform="instagram")
    results = memory.run_consolidation(["org-1"])
"""

from strata.core.config import Config
from strata.core.types import (
    AuditEntry,
    EpisodicMemory,
    Err,
    ErrorCode,
    ModelResponse,
    Ok,
    PatternCandidate,
    ProceduralStrategy,
    Result,
    SemanticPattern,
)
from strata.store import MemoryStore
from strata.system import MemorySystem

__version__ = "0.1.0"

__all__ = [
    "MemorySystem",
    "MemoryStore",
    "Config",
    "AuditEntry",
    "EpisodicMemory",
    "Err",
    "ErrorCode",
    "ModelResponse",
    "Ok",
    "PatternCandidate",
    "ProceduralStrategy",
    "Result",
    "SemanticPattern",
]
