"""strata.core — Configuration, result types, storage engine, and token utilities."""

from strata.core.config import Config
from strata.core.database import Database
from strata.core.tokens import estimate_tokens_from_text
from strata.core.types import (
    AuditEntry,
    EpisodicMemory,
    Err,
    ErrorCode,
    ModelFunc,
    ModelResponse,
    Ok,
    PatternCandidate,
    ProceduralStrategy,
    Result,
    SemanticPattern,
    generate_id,
    now_iso,
)

__all__ = [
    "Config",
    "Database",
    "estimate_tokens_from_text",
    "AuditEntry",
    "EpisodicMemory",
    "Err",
    "ErrorCode",
    "ModelFunc",
    "ModelResponse",
    "Ok",
    "PatternCandidate",
    "ProceduralStrategy",
    "Result",
    "SemanticPattern",
    "generate_id",
    "now_iso",
]
