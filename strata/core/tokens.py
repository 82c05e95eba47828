"""
strata.core.tokens — Conservative token estimation.

Kept in its own module so callers that only need token math
don't have to import the governor.

These numbers feed pre-flight budget decisions only.  They are
deterministic (same text, same count) and deliberately rounded up;
billing always uses the token counts the provider reports.
"""

from __future__ import annotations

import math
from typing import Dict, List

#: Characters per token assumed for English prose.
CHARS_PER_TOKEN = 4

#: Role / separator overhead added per chat message.
MESSAGE_OVERHEAD_TOKENS = 4


def estimate_tokens_from_text(text: str) -> int:
    """Estimate tokens in *text*: ``ceil(len(stripped) / 4)``, 0 when blank."""
    if not text:
        return 0
    length = len(text.strip())
    if not length:
        return 0
    return max(1, math.ceil(length / CHARS_PER_TOKEN))


def estimate_tokens_messages(messages: List[Dict[str, str]]) -> int:
    """Estimate total tokens across a list of ``{"role", "content"}`` dicts."""
    total = 0
    for msg in messages:
        total += estimate_tokens_from_text(msg.get("content", "")) + MESSAGE_OVERHEAD_TOKENS
    return total


def trim_to_budget(text: str, budget: int, suffix: str = "...") -> str:
    """Trim *text* so its estimated token count fits *budget*.

    Trims at character boundaries and appends *suffix* to mark the cut.
    Returns the original text unchanged if it already fits.
    """
    if estimate_tokens_from_text(text) <= budget:
        return text
    target_chars = max(0, budget * CHARS_PER_TOKEN - len(suffix))
    return text[:target_chars] + suffix
