"""strata.episodic — Timestamped observations, ranked by decayed strength."""

from strata.episodic.store import EpisodicStore

__all__ = ["EpisodicStore"]
