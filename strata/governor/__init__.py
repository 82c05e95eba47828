"""strata.governor — Budget, intent cache and usage ledger around paid model calls."""

from strata.governor.budget import BudgetCaps, BudgetDecision, BudgetUsage
from strata.governor.cache import (
    IntentCacheHit,
    IntentCacheStore,
    build_intent_cache_key,
    with_cache_meta,
)
from strata.governor.governor import AIGovernor, GovernedResult, GovernorState, parse_model_text
from strata.governor.ledger import AIUsageEvent, UsageLedger
from strata.governor.pricing import (
    estimate_anthropic_cost_usd,
    estimate_model_cost_usd,
    estimate_tokens_from_text,
)
from strata.governor.roi import PremiumRoiDecision, evaluate_premium_roi_gate

__all__ = [
    "AIGovernor",
    "AIUsageEvent",
    "BudgetCaps",
    "BudgetDecision",
    "BudgetUsage",
    "GovernedResult",
    "GovernorState",
    "IntentCacheHit",
    "IntentCacheStore",
    "PremiumRoiDecision",
    "UsageLedger",
    "build_intent_cache_key",
    "estimate_anthropic_cost_usd",
    "estimate_model_cost_usd",
    "estimate_tokens_from_text",
    "evaluate_premium_roi_gate",
    "parse_model_text",
    "with_cache_meta",
]
