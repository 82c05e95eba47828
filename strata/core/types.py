"""
strata.core.types — Result discriminant and memory-layer data types.

Every structure here is a plain dataclass: no ORM, no magic,
serialisable to dict/JSON in one call.  Public component functions
return ``Ok(value)`` or ``Err(code, message)`` instead of raising;
only programmer errors (bad configuration) raise.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import InitVar, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, Generic, List, Optional, TypeVar, Union

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


class ErrorCode(str, Enum):
    """Error taxonomy shared by every component."""

    VALIDATION = "VALIDATION"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    PATTERN_DETECTION_FAILED = "PATTERN_DETECTION_FAILED"
    CONSOLIDATION_FAILED = "CONSOLIDATION_FAILED"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
    MODEL_TIMEOUT = "MODEL_TIMEOUT"


class ResultError(RuntimeError):
    """Raised by ``Err.unwrap()``."""

    def __init__(self, err: "Err") -> None:
        super().__init__(f"{err.code.value}: {err.message}")
        self.err = err


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: ClassVar[bool] = True

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    code: ErrorCode
    message: str
    cause: Optional[BaseException] = field(default=None, compare=False)
    ok: ClassVar[bool] = False

    @property
    def value(self) -> None:
        return None

    def unwrap(self) -> Any:
        raise ResultError(self)

    def unwrap_or(self, default: T) -> T:
        return default

    def to_dict(self) -> Dict:
        return {"code": self.code.value, "message": self.message}


Result = Union[Ok[T], Err]


def require_org(organization_id: Optional[str]) -> Optional[Err]:
    """Return a VALIDATION error for a missing/blank org id, else None."""
    if not isinstance(organization_id, str) or not organization_id.strip():
        return Err(ErrorCode.VALIDATION, "organization_id is required")
    return None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

#: Canonical type for model callables.
#: Signature: ``(messages: list[dict], max_tokens: int) -> ModelResponse``
ModelFunc = Callable[[List[Dict[str, str]], int], "ModelResponse"]

_ISO_FMT = "%Y-%m-%dT%H:%M:%S.%fZ"


def generate_id() -> str:
    """12-hex-char unique identifier."""
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO-8601 (``...%fZ``) so stored strings sort by time."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_ISO_FMT)


def now_iso() -> str:
    """Current UTC timestamp in fixed-width ISO-8601 with Z suffix."""
    return to_iso(utcnow())


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware UTC datetime (None if invalid)."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def clamp01(value: Any, default: float = 0.0) -> float:
    """Clamp *value* to [0, 1]; non-numeric input becomes *default*."""
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    if v != v:  # NaN
        return default
    return max(0.0, min(1.0, v))


def _json_load(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default


# ---------------------------------------------------------------------------
# Episodic layer
# ---------------------------------------------------------------------------


@dataclass
class EpisodicMemory:
    """A single timestamped observation.  Immutable once written."""

    organization_id: str
    event_type: str
    platform: Optional[str] = None
    summary: str = ""
    content: Dict = field(default_factory=dict)
    importance: float = 0.5
    strength: float = 1.0
    half_life_days: Optional[float] = None

    id: str = field(default_factory=generate_id)
    created_at: str = field(default_factory=now_iso)

    def __post_init__(self) -> None:
        self.importance = clamp01(self.importance, 0.5)
        self.strength = clamp01(self.strength, 1.0)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "event_type": self.event_type,
            "platform": self.platform,
            "summary": self.summary,
            "content": dict(self.content),
            "importance": round(self.importance, 4),
            "strength": round(self.strength, 4),
            "half_life_days": self.half_life_days,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, d: Dict) -> "EpisodicMemory":
        return cls(
            id=d["id"],
            organization_id=d["organization_id"],
            event_type=d["event_type"],
            platform=d.get("platform"),
            summary=d.get("summary") or "",
            content=_json_load(d.get("content"), {}),
            importance=d.get("importance", 0.5),
            strength=d.get("strength", 1.0),
            half_life_days=d.get("half_life_days"),
            created_at=d.get("created_at") or now_iso(),
        )


# ---------------------------------------------------------------------------
# Semantic layer
# ---------------------------------------------------------------------------


@dataclass
class SemanticPattern:
    """A named, typed regularity.  ``organization_id=None`` means global."""

    pattern_type: str
    pattern_key: str
    organization_id: Optional[str] = None
    platform: Optional[str] = None
    pattern_value: Dict = field(default_factory=dict)
    confidence: float = 0.5
    sample_size: int = 0
    source_type: str = "rule_based"

    id: str = field(default_factory=generate_id)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def __post_init__(self) -> None:
        self.confidence = clamp01(self.confidence)
        self.sample_size = max(0, int(self.sample_size or 0))

    @property
    def is_global(self) -> bool:
        return self.organization_id is None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "pattern_type": self.pattern_type,
            "platform": self.platform,
            "pattern_key": self.pattern_key,
            "pattern_value": dict(self.pattern_value),
            "confidence": round(self.confidence, 4),
            "sample_size": self.sample_size,
            "source_type": self.source_type,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, d: Dict) -> "SemanticPattern":
        return cls(
            id=d["id"],
            organization_id=d.get("organization_id"),
            pattern_type=d["pattern_type"],
            platform=d.get("platform"),
            pattern_key=d["pattern_key"],
            pattern_value=_json_load(d.get("pattern_value"), {}),
            confidence=d.get("confidence", 0.5),
            sample_size=d.get("sample_size") or 0,
            source_type=d.get("source_type") or "rule_based",
            created_at=d.get("created_at") or now_iso(),
            updated_at=d.get("updated_at") or now_iso(),
        )


CANDIDATE_STATUSES = frozenset({"pending", "validated", "promoted", "rejected"})


@dataclass
class PatternCandidate:
    """A detected, not-yet-consolidated pattern."""

    organization_id: str
    pattern_type: str
    pattern_key: str
    platform: Optional[str] = None
    pattern_value: Dict = field(default_factory=dict)
    confidence: float = 0.5
    sample_size: int = 0
    source_type: str = "rule_based"
    evidence_ids: List[str] = field(default_factory=list)
    status: str = "pending"
    llm_reasoning: Optional[str] = None

    def __post_init__(self) -> None:
        self.confidence = clamp01(self.confidence)
        self.sample_size = max(0, int(self.sample_size or 0))
        if self.status not in CANDIDATE_STATUSES:
            raise ValueError(
                f"Invalid candidate status {self.status!r}; "
                f"expected one of {sorted(CANDIDATE_STATUSES)}"
            )

    def to_dict(self) -> Dict:
        return {
            "organization_id": self.organization_id,
            "pattern_type": self.pattern_type,
            "platform": self.platform,
            "pattern_key": self.pattern_key,
            "pattern_value": dict(self.pattern_value),
            "confidence": round(self.confidence, 4),
            "sample_size": self.sample_size,
            "source_type": self.source_type,
            "evidence_ids": list(self.evidence_ids),
            "status": self.status,
            "llm_reasoning": self.llm_reasoning,
        }


# ---------------------------------------------------------------------------
# Procedural layer
# ---------------------------------------------------------------------------


@dataclass
class ProceduralStrategy:
    """A semantic pattern promoted to actionable status."""

    organization_id: Optional[str]
    pattern_id: str
    pattern_type: str
    strategy_key: str
    platform: Optional[str] = None
    strategy_value: Dict = field(default_factory=dict)
    confidence: float = 0.0
    sample_size: int = 0
    active: bool = True

    id: str = field(default_factory=generate_id)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def __post_init__(self) -> None:
        self.confidence = clamp01(self.confidence)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "pattern_id": self.pattern_id,
            "pattern_type": self.pattern_type,
            "platform": self.platform,
            "strategy_key": self.strategy_key,
            "strategy_value": dict(self.strategy_value),
            "confidence": round(self.confidence, 4),
            "sample_size": self.sample_size,
            "active": self.active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, d: Dict) -> "ProceduralStrategy":
        return cls(
            id=d["id"],
            organization_id=d.get("organization_id"),
            pattern_id=d["pattern_id"],
            pattern_type=d["pattern_type"],
            platform=d.get("platform"),
            strategy_key=d["strategy_key"],
            strategy_value=_json_load(d.get("strategy_value"), {}),
            confidence=d.get("confidence", 0.0),
            sample_size=d.get("sample_size") or 0,
            active=bool(d.get("active", 1)),
            created_at=d.get("created_at") or now_iso(),
            updated_at=d.get("updated_at") or now_iso(),
        )


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

AUDIT_ACTION_TYPES = frozenset(
    {
        "episodic_promoted",  # run summary / episodic rows rolled into patterns
        "pattern_created",
        "pattern_merged",
        "pattern_replaced",
        "pattern_invalidated",
        "strategy_promoted",
        "conflict_resolved",
    }
)

AUDIT_ACTORS = frozenset({"system", "llm", "user", "cron"})


@dataclass
class AuditEntry:
    """One row of the append-only consolidation ledger."""

    organization_id: str
    action_type: str
    source_ids: List[str] = field(default_factory=list)
    target_id: Optional[str] = None
    details: Dict = field(default_factory=dict)
    confidence: Optional[float] = None
    actor: str = "system"
    created_at: Optional[str] = None
    id: Optional[str] = None
    validate: InitVar[bool] = True

    def __post_init__(self, validate: bool) -> None:
        # stored rows are history and are read back as written
        if validate and self.action_type not in AUDIT_ACTION_TYPES:
            raise ValueError(
                f"Invalid audit action {self.action_type!r}; "
                f"expected one of {sorted(AUDIT_ACTION_TYPES)}"
            )
        if validate and self.actor not in AUDIT_ACTORS:
            raise ValueError(f"Invalid audit actor {self.actor!r}")
        if self.confidence is not None:
            self.confidence = clamp01(self.confidence)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "action_type": self.action_type,
            "source_ids": list(self.source_ids),
            "target_id": self.target_id,
            "details": dict(self.details),
            "confidence": self.confidence,
            "actor": self.actor,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, d: Dict) -> "AuditEntry":
        return cls(
            id=str(d["id"]) if d.get("id") is not None else None,
            organization_id=d["organization_id"],
            action_type=d["action_type"],
            source_ids=_json_load(d.get("source_ids"), []),
            target_id=d.get("target_id"),
            details=_json_load(d.get("details"), {}),
            confidence=d.get("confidence"),
            actor=d.get("actor") or "system",
            created_at=d.get("created_at"),
            validate=False,
        )


# ---------------------------------------------------------------------------
# Working + metacognitive layers
# ---------------------------------------------------------------------------


@dataclass
class WorkingMemoryItem:
    """Session-scoped scratch state with its own expiry."""

    organization_id: str
    session_id: str
    key: str
    value: Any = None
    created_at: str = field(default_factory=now_iso)
    expires_at: str = ""

    def to_dict(self) -> Dict:
        return {
            "organization_id": self.organization_id,
            "session_id": self.session_id,
            "key": self.key,
            "value": self.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }


@dataclass
class MetacognitiveEntry:
    """Self-assessment record, e.g. ``prediction_accuracy`` for a period."""

    organization_id: str
    metric: str
    value: float
    sample_size: int = 1
    period_end: str = field(default_factory=now_iso)
    created_at: str = field(default_factory=now_iso)
    id: str = field(default_factory=generate_id)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "metric": self.metric,
            "value": round(self.value, 4),
            "sample_size": self.sample_size,
            "period_end": self.period_end,
            "created_at": self.created_at,
        }


# ---------------------------------------------------------------------------
# Model capability
# ---------------------------------------------------------------------------


@dataclass
class ModelResponse:
    """What the opaque model capability hands back."""

    text: str
    provider: str = "custom"
    model: str = "custom"
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0

    def to_dict(self) -> Dict:
        return {
            "text": self.text,
            "provider": self.provider,
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "latency_ms": self.latency_ms,
        }
