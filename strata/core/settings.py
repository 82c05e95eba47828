"""
strata.core.settings — Typed, versioned per-organization settings.

Organization settings used to travel as an open JSON blob that every
caller poked at with string keys.  Each concern now has its own tagged
dataclass with a ``kind`` and a ``schema_version``; ``from_dict``
migrates older payloads forward and ignores keys it does not know.

    budget = AIBudgetSettings.from_dict(org_settings.get("aiBudget"))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional


def _positive(value: Any) -> Optional[float]:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if v != v or v <= 0:
        return None
    return v


@dataclass
class AIBudgetSettings:
    """Per-organization AI spend caps.  ``None`` = use the config default.

    Version history:
      1 — ``{"dailyUsd": .., "monthlyUsd": ..}`` (camelCase blob)
      2 — ``{"daily_usd": .., "monthly_usd": .., "strict": ..}``
    """

    kind: ClassVar[str] = "ai_budget"
    CURRENT_VERSION: ClassVar[int] = 2

    daily_usd: Optional[float] = None
    monthly_usd: Optional[float] = None
    strict: bool = False
    schema_version: int = 2

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AIBudgetSettings":
        if not isinstance(data, dict):
            return cls()
        version = int(data.get("schema_version", 1) or 1)
        if version < 2:
            return cls(
                daily_usd=_positive(data.get("dailyUsd")),
                monthly_usd=_positive(data.get("monthlyUsd")),
            )
        return cls(
            daily_usd=_positive(data.get("daily_usd")),
            monthly_usd=_positive(data.get("monthly_usd")),
            strict=bool(data.get("strict", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "schema_version": self.CURRENT_VERSION,
            "daily_usd": self.daily_usd,
            "monthly_usd": self.monthly_usd,
            "strict": self.strict,
        }


@dataclass
class CreativeSettings:
    """Per-organization overrides for outcome learning.

    ``success_thresholds`` maps an objective (``engagement``, ``reach``,
    ``leads``, ``saves``) to the engagement rate a post must reach to
    count as a success in creative memory.
    """

    kind: ClassVar[str] = "creative"
    CURRENT_VERSION: ClassVar[int] = 1

    success_thresholds: Dict[str, float] = field(default_factory=dict)
    bandit_exploration: Optional[float] = None
    schema_version: int = 1

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CreativeSettings":
        if not isinstance(data, dict):
            return cls()
        thresholds: Dict[str, float] = {}
        for objective, value in (data.get("success_thresholds") or {}).items():
            v = _positive(value)
            if v is not None:
                thresholds[str(objective)] = v
        exploration = _positive(data.get("bandit_exploration"))
        return cls(success_thresholds=thresholds, bandit_exploration=exploration)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "schema_version": self.CURRENT_VERSION,
            "success_thresholds": dict(self.success_thresholds),
            "bandit_exploration": self.bandit_exploration,
        }


@dataclass
class OrganizationSettings:
    """Container for every typed settings concern of one organization."""

    ai_budget: AIBudgetSettings = field(default_factory=AIBudgetSettings)
    creative: CreativeSettings = field(default_factory=CreativeSettings)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OrganizationSettings":
        if not isinstance(data, dict):
            return cls()
        # v1 payloads stored the budget under camelCase "aiBudget"
        budget_raw = data.get("ai_budget", data.get("aiBudget"))
        return cls(
            ai_budget=AIBudgetSettings.from_dict(budget_raw),
            creative=CreativeSettings.from_dict(data.get("creative")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ai_budget": self.ai_budget.to_dict(),
            "creative": self.creative.to_dict(),
        }
