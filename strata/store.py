"""
strata.store — One SQLite database, one repository per memory family.

``MemoryStore`` is what components receive instead of a raw connection:

    store = MemoryStore(config.db_path)
    store.episodic.record(memory)
    with store.batch():
        store.usage.log(event)
        store.intent_cache.set(...)

Repositories raise ``sqlite3.Error`` on failure; components translate
that into ``Err(STORE_UNAVAILABLE)`` at their public boundary.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Optional

from strata.consolidation.store import AuditStore, RunStore
from strata.core.database import Database
from strata.core.settings import OrganizationSettings
from strata.core.types import _json_load, now_iso
from strata.episodic.store import EpisodicStore
from strata.governor.cache import IntentCacheStore
from strata.governor.ledger import UsageLedger
from strata.metacognitive import MetacognitiveStore
from strata.outcomes.store import OutcomeStore
from strata.procedural.store import ProceduralStore
from strata.semantic.store import CandidateStore, SemanticStore
from strata.working.store import WorkingMemoryStore


class OrganizationSettingsStore:
    """Typed per-org settings, stored as one JSON blob per organization."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, organization_id: str) -> OrganizationSettings:
        row = self.db.query_one(
            "SELECT settings FROM organization_settings WHERE organization_id = ?",
            (organization_id,),
        )
        return OrganizationSettings.from_dict(_json_load(row["settings"], {}) if row else None)

    def save(self, organization_id: str, settings: OrganizationSettings) -> None:
        self.db.execute(
            """INSERT INTO organization_settings (organization_id, settings, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(organization_id) DO UPDATE SET
                 settings = excluded.settings, updated_at = excluded.updated_at""",
            (organization_id, json.dumps(settings.to_dict()), now_iso()),
        )


class MemoryStore:
    """All repositories over a shared ``Database``.

    Pass ``":memory:"`` (the default) for an ephemeral store.
    """

    def __init__(self, db_path: Path | str = ":memory:"):
        self.db = Database(db_path)
        self.episodic = EpisodicStore(self.db)
        self.semantic = SemanticStore(self.db)
        self.candidates = CandidateStore(self.db)
        self.procedural = ProceduralStore(self.db)
        self.working = WorkingMemoryStore(self.db)
        self.metacognitive = MetacognitiveStore(self.db)
        self.audit = AuditStore(self.db)
        self.runs = RunStore(self.db)
        self.outcomes = OutcomeStore(self.db)
        self.intent_cache = IntentCacheStore(self.db)
        self.usage = UsageLedger(self.db)
        self.settings = OrganizationSettingsStore(self.db)

    @property
    def db_path(self) -> Optional[Path]:
        return self.db.db_path

    def batch(self):
        """Defer commits until the outermost ``with`` block exits."""
        return self.db.batch()

    def table_counts(self) -> Dict[str, int]:
        return self.db.table_counts()

    def close(self) -> None:
        self.db.close()

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
