"""
strata.outcomes.channel — Outcome notifications as an explicit channel.

When an outcome is logged, interested parts of the application (a
dashboard refresher, a retraining trigger) may want to know.  Instead
of a process-global listener list, the learner is handed an
``OutcomeChannel`` and publishes ``OutcomeNotice`` objects onto it;
consumers ``drain()`` or ``get()`` at their own pace.

Publishing never blocks: when the bounded queue is full the notice is
dropped and counted.
"""

from __future__ import annotations

import logging
import queue
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from strata.core.types import now_iso

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutcomeNotice:
    organization_id: str
    post_id: str
    platform: Optional[str]
    event_type: str
    objective: str
    engagement_rate: float
    memory_key: str
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict:
        return {
            "organization_id": self.organization_id,
            "post_id": self.post_id,
            "platform": self.platform,
            "event_type": self.event_type,
            "objective": self.objective,
            "engagement_rate": self.engagement_rate,
            "memory_key": self.memory_key,
            "created_at": self.created_at,
        }


class OutcomeChannel:
    """Bounded, thread-safe FIFO of ``OutcomeNotice``s."""

    def __init__(self, maxsize: int = 1000) -> None:
        self._queue: "queue.Queue[OutcomeNotice]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def publish(self, notice: OutcomeNotice) -> bool:
        """Enqueue *notice*; returns False if it was dropped."""
        try:
            self._queue.put_nowait(notice)
        except queue.Full:
            self.dropped += 1
            log.warning(
                "Outcome channel full, dropping notice for post %s (%d dropped)",
                notice.post_id,
                self.dropped,
            )
            return False
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[OutcomeNotice]:
        """Next notice, waiting up to *timeout* seconds (None if none arrived)."""
        try:
            if timeout is None:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self, max_items: Optional[int] = None) -> List[OutcomeNotice]:
        """Everything currently queued (up to *max_items*), oldest first."""
        items: List[OutcomeNotice] = []
        while max_items is None or len(items) < max_items:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return items

    def __len__(self) -> int:
        return self._queue.qsize()
