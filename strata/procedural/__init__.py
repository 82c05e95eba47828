"""strata.procedural — Strategies promoted from confident patterns."""

from strata.procedural.store import ProceduralStore

__all__ = ["ProceduralStore"]
