"""
strata.governor.pricing — Pre-flight cost estimates.

Prices are USD per one million tokens.  Known models are looked up
directly; unknown Anthropic-style names fall back to haiku or sonnet
pricing depending on the name; open-weight and router-hosted models
(llama, mistral, qwen, deepseek, ``google/...``, ``gpt-4o-mini``) use a
single configurable router price.

Estimates only ever feed budget decisions.  They are never used for
billing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from strata.core.config import env_float
from strata.core.tokens import estimate_tokens_from_text, estimate_tokens_messages

__all__ = [
    "ModelPrice",
    "MODEL_PRICING_PER_1M",
    "ROUTER_DEFAULT_PRICE",
    "estimate_anthropic_cost_usd",
    "estimate_model_cost_usd",
    "estimate_tokens_from_text",
    "estimate_tokens_messages",
    "is_router_model",
    "normalize_usd",
]


@dataclass(frozen=True)
class ModelPrice:
    input: float
    output: float


MODEL_PRICING_PER_1M: Dict[str, ModelPrice] = {
    "claude-3-5-haiku-latest": ModelPrice(0.8, 4.0),
    "claude-3-7-sonnet-latest": ModelPrice(3.0, 15.0),
    "claude-sonnet-4-5-20250929": ModelPrice(3.0, 15.0),
    "claude-sonnet-4-20250514": ModelPrice(3.0, 15.0),
}

_HAIKU = MODEL_PRICING_PER_1M["claude-3-5-haiku-latest"]
_SONNET = MODEL_PRICING_PER_1M["claude-sonnet-4-5-20250929"]

ROUTER_DEFAULT_PRICE = ModelPrice(0.6, 2.4)

_ROUTER_MARKERS = (
    "openrouter",
    "deepseek",
    "llama",
    "mistral",
    "qwen",
    "google/",
    "gpt-4o-mini",
)


def normalize_usd(value: float) -> float:
    """Round to 6 decimals and floor at 0."""
    return max(0.0, round(float(value), 6))


def is_router_model(model: str) -> bool:
    lowered = (model or "").lower()
    return any(marker in lowered for marker in _ROUTER_MARKERS)


def _router_price() -> ModelPrice:
    return ModelPrice(
        env_float("STRATA_ROUTER_INPUT_USD_PER_1M", ROUTER_DEFAULT_PRICE.input),
        env_float("STRATA_ROUTER_OUTPUT_USD_PER_1M", ROUTER_DEFAULT_PRICE.output),
    )


def price_for(model: str, router_price: Optional[ModelPrice] = None) -> ModelPrice:
    if is_router_model(model):
        return router_price or _router_price()
    if model in MODEL_PRICING_PER_1M:
        return MODEL_PRICING_PER_1M[model]
    return _HAIKU if "haiku" in (model or "").lower() else _SONNET


def estimate_model_cost_usd(
    model: str,
    input_tokens: int,
    output_tokens: int,
    router_price: Optional[ModelPrice] = None,
) -> float:
    """Estimated USD cost of one call; negative token counts count as 0."""
    price = price_for(model, router_price)
    cost = (max(0, input_tokens) / 1_000_000) * price.input
    cost += (max(0, output_tokens) / 1_000_000) * price.output
    return normalize_usd(cost)


#: Name kept for callers that only ever priced Anthropic models.
estimate_anthropic_cost_usd = estimate_model_cost_usd
