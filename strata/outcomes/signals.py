"""
strata.outcomes.signals — Deterministic creative-signal classification.

Reduces a post's text to three labels (hook, framework, call-to-action)
with keyword rules, no model call.  The labels combine into the
``memory_key`` (``"hook|framework|cta"``) under which creative memory
aggregates outcomes.

The hook is read from the opening of the text (first 180 characters),
the CTA from the closing (last 240 characters); the framework looks at
the whole text.  Matching runs on accent-stripped, lower-cased,
whitespace-collapsed text so "Ça marche?" and "ca marche ?" agree.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Dict, Optional

HOOK_TYPES = (
    "question",
    "contrarian",
    "transformation",
    "list",
    "story",
    "statistic",
    "statement",
    "unknown",
)
CTA_TYPES = ("comment", "save", "share", "link", "follow", "none")
FRAMEWORKS = ("pas", "bab", "listicle", "story", "aida", "generic", "unknown")

_HOOK_WINDOW = 180
_CTA_WINDOW = 240


@dataclass(frozen=True)
class CreativeSignals:
    hook_type: str
    framework: str
    cta_type: str

    @property
    def memory_key(self) -> str:
        return f"{self.hook_type}|{self.framework}|{self.cta_type}"

    def to_dict(self) -> Dict[str, str]:
        return {
            "hook_type": self.hook_type,
            "framework": self.framework,
            "cta_type": self.cta_type,
            "memory_key": self.memory_key,
        }


# ── Text normalisation ───────────────────────────────────────


def normalize_text(value: str) -> str:
    """Collapse runs of whitespace and strip."""
    return re.sub(r"\s+", " ", value or "").strip()


def normalize_for_detection(value: str) -> str:
    """Whitespace-collapsed, accent-stripped, lower-cased text."""
    decomposed = unicodedata.normalize("NFD", normalize_text(value))
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.lower()


# ── Rules (first match wins) ─────────────────────────────────

_HOOK_RULES = (
    ("contrarian", re.compile(
        r"\b(stop|unpopular opinion|nobody tells you|myth|wrong about|"
        r"overrated|forget what|don'?t)\b"
    )),
    ("statistic", re.compile(r"(\d+(\.\d+)?\s?%|\b\d+x\b|\$\d)")),
    ("transformation", re.compile(
        r"\b(from .{1,40} to|before and after|went from|transformed|"
        r"how i (grew|went|turned))\b"
    )),
    ("list", re.compile(r"\b(3|5|7|10|top|ways|tips|reasons|steps|mistakes)\b")),
    ("story", re.compile(r"\b(yesterday|last (week|year|month)|i remember|story|when i)\b")),
)

_FRAMEWORK_RULES = (
    ("pas", re.compile(r"\b(problem|struggl\w*|frustrat\w*|pain|stuck|stress\w*)\b")),
    ("bab", re.compile(r"\b(before|after|transform\w*|result\w*|imagine)\b")),
    ("listicle", re.compile(r"\b(3|5|7|10|top|steps|tips|ways|list)\b")),
    ("story", re.compile(r"\b(story|yesterday|i learned|when i|experience)\b")),
    ("aida", re.compile(r"\b(attention|interest|desire|action|limited|now)\b")),
)

_CTA_RULES = (
    ("comment", re.compile(
        r"\b(comment\w*|tell me|let me know|drop a|reply|what do you think)\b"
    )),
    ("save", re.compile(r"\b(save|bookmark)\b")),
    ("share", re.compile(r"\b(share|send this|tag (a|someone|your))\b")),
    ("link", re.compile(
        r"\b(link in bio|click|sign up|register|book|visit|shop|dm me|call us)\b"
    )),
    ("follow", re.compile(r"\b(follow|subscribe)\b")),
)


def detect_hook_type(text: str) -> str:
    opening = normalize_for_detection(text)[:_HOOK_WINDOW]
    if not opening:
        return "unknown"
    if "?" in opening:
        return "question"
    for label, pattern in _HOOK_RULES:
        if pattern.search(opening):
            return label
    return "statement"


def detect_framework(text: str) -> str:
    value = normalize_for_detection(text)
    if not value:
        return "unknown"
    for label, pattern in _FRAMEWORK_RULES:
        if pattern.search(value):
            return label
    return "generic"


def detect_cta_type(text: str) -> str:
    closing = normalize_for_detection(text)[-_CTA_WINDOW:]
    if not closing:
        return "none"
    for label, pattern in _CTA_RULES:
        if pattern.search(closing):
            return label
    return "none"


def derive_creative_signals(
    text: Optional[str],
    hook_type: Optional[str] = None,
    cta_type: Optional[str] = None,
) -> CreativeSignals:
    """Classify *text*.  Explicit non-blank *hook_type* / *cta_type* win."""
    text = text or ""
    hook = (hook_type or "").strip() or detect_hook_type(text)
    cta = (cta_type or "").strip() or detect_cta_type(text)
    return CreativeSignals(hook_type=hook, framework=detect_framework(text), cta_type=cta)
