"""strata.patterns — Rule-based and model-assisted pattern detection."""

from strata.patterns.detector import (
    CoOccurrencePattern,
    FrequencyPattern,
    PatternDetector,
    TemporalPattern,
    parse_llm_patterns,
)

__all__ = [
    "CoOccurrencePattern",
    "FrequencyPattern",
    "PatternDetector",
    "TemporalPattern",
    "parse_llm_patterns",
]
