"""
strata.governor.budget — Daily / monthly spend caps.

Caps resolve in order: explicit caps passed by the caller, the
organization's ``AIBudgetSettings``, then the process ``Config``
(itself defaulting to ``STRATA_AI_BUDGET_DAILY_USD`` /
``STRATA_AI_BUDGET_MONTHLY_USD``, 2 and 45 USD).  Each cap resolves
independently, so an org may override only its monthly cap.

Usage is read from the ledger: positive costs since the start of the
UTC month, and the subset since the start of the UTC day.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from strata.core.settings import AIBudgetSettings
from strata.core.types import Err, ErrorCode, Ok, Result, require_org, utcnow
from strata.governor.ledger import UsageLedger
from strata.governor.pricing import normalize_usd

log = logging.getLogger(__name__)

DEFAULT_DAILY_BUDGET_USD = 2.0
DEFAULT_MONTHLY_BUDGET_USD = 45.0


@dataclass(frozen=True)
class BudgetCaps:
    daily_usd: float = DEFAULT_DAILY_BUDGET_USD
    monthly_usd: float = DEFAULT_MONTHLY_BUDGET_USD

    def to_dict(self) -> Dict:
        return {"daily_usd": self.daily_usd, "monthly_usd": self.monthly_usd}


@dataclass(frozen=True)
class BudgetUsage:
    daily_spent_usd: float = 0.0
    monthly_spent_usd: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "daily_spent_usd": self.daily_spent_usd,
            "monthly_spent_usd": self.monthly_spent_usd,
        }


@dataclass
class BudgetDecision:
    allowed: bool
    caps: BudgetCaps
    usage: BudgetUsage
    projected_daily_usd: float
    projected_monthly_usd: float
    reason: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "caps": self.caps.to_dict(),
            "usage": self.usage.to_dict(),
            "projected_daily_usd": self.projected_daily_usd,
            "projected_monthly_usd": self.projected_monthly_usd,
        }


def start_of_utc_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_utc_month(now: datetime) -> datetime:
    return start_of_utc_day(now).replace(day=1)


def resolve_budget_caps(
    defaults: BudgetCaps,
    settings: Optional[AIBudgetSettings] = None,
    caps: Optional[BudgetCaps] = None,
) -> BudgetCaps:
    if caps is not None:
        return caps
    if settings is None:
        return defaults
    return BudgetCaps(
        daily_usd=settings.daily_usd or defaults.daily_usd,
        monthly_usd=settings.monthly_usd or defaults.monthly_usd,
    )


def load_budget_usage(ledger: UsageLedger, organization_id: str, now: datetime) -> BudgetUsage:
    """Raises ``sqlite3.Error`` if the ledger cannot be read."""
    return BudgetUsage(
        daily_spent_usd=ledger.spend_since(organization_id, start_of_utc_day(now)),
        monthly_spent_usd=ledger.spend_since(organization_id, start_of_utc_month(now)),
    )


def decide_paid_ai_access(
    ledger: UsageLedger,
    organization_id: str,
    estimated_additional_cost_usd: float,
    caps: BudgetCaps,
    now: Optional[datetime] = None,
) -> Result[BudgetDecision]:
    """Would spending *estimated_additional_cost_usd* more stay within *caps*?

    The daily cap is checked before the monthly one, so a request that
    breaks both reports the daily reason.  An unreadable ledger is an
    ``Err(STORE_UNAVAILABLE)``; callers must treat it as a denial.
    """
    invalid = require_org(organization_id)
    if invalid:
        return invalid
    now = now or utcnow()
    try:
        usage = load_budget_usage(ledger, organization_id, now)
    except sqlite3.Error as exc:
        log.warning("Budget usage unavailable for %s: %s", organization_id, exc)
        return Err(ErrorCode.STORE_UNAVAILABLE, "AI usage ledger unavailable", exc)

    add_cost = max(0.0, estimated_additional_cost_usd or 0.0)
    projected_daily = normalize_usd(usage.daily_spent_usd + add_cost)
    projected_monthly = normalize_usd(usage.monthly_spent_usd + add_cost)

    decision = BudgetDecision(
        allowed=True,
        caps=caps,
        usage=usage,
        projected_daily_usd=projected_daily,
        projected_monthly_usd=projected_monthly,
    )
    if projected_daily > caps.daily_usd:
        decision.allowed = False
        decision.reason = (
            f"Daily AI budget exceeded ({projected_daily:.3f} / {caps.daily_usd:.3f} USD)."
        )
    elif projected_monthly > caps.monthly_usd:
        decision.allowed = False
        decision.reason = (
            f"Monthly AI budget exceeded ({projected_monthly:.3f} / {caps.monthly_usd:.3f} USD)."
        )
    if not decision.allowed:
        log.info("Paid AI denied for %s: %s", organization_id, decision.reason)
    return Ok(decision)
