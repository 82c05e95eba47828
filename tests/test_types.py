"""Tests for strata.core.types."""

from datetime import datetime, timedelta, timezone

import pytest

from strata.core.types import (
    AuditEntry,
    EpisodicMemory,
    Err,
    ErrorCode,
    Ok,
    PatternCandidate,
    ResultError,
    SemanticPattern,
    clamp01,
    generate_id,
    parse_iso,
    require_org,
    to_iso,
)


class TestResult:
    def test_ok(self):
        r = Ok(5)
        assert r.ok
        assert r.unwrap() == 5
        assert r.unwrap_or(0) == 5

    def test_err(self):
        r = Err(ErrorCode.VALIDATION, "bad input")
        assert not r.ok
        assert r.value is None
        assert r.unwrap_or(0) == 0
        assert r.to_dict() == {"code": "VALIDATION", "message": "bad input"}
        with pytest.raises(ResultError, match="VALIDATION: bad input"):
            r.unwrap()

    def test_cause_ignored_in_equality(self):
        a = Err(ErrorCode.STORE_UNAVAILABLE, "x", RuntimeError("a"))
        b = Err(ErrorCode.STORE_UNAVAILABLE, "x", RuntimeError("b"))
        assert a == b

    @pytest.mark.parametrize("org", [None, "", "   ", 42])
    def test_require_org_rejects(self, org):
        assert require_org(org).code == ErrorCode.VALIDATION

    def test_require_org_accepts(self):
        assert require_org("org-1") is None


class TestTimestamps:
    def test_to_iso_fixed_width(self):
        dt = datetime(2026, 3, 18, 12, 0, tzinfo=timezone.utc)
        assert to_iso(dt) == "2026-03-18T12:00:00.000000Z"

    def test_to_iso_converts_offsets(self):
        dt = datetime(2026, 3, 18, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert to_iso(dt) == "2026-03-18T12:00:00.000000Z"

    def test_naive_treated_as_utc(self):
        assert to_iso(datetime(2026, 1, 1)) == "2026-01-01T00:00:00.000000Z"

    def test_parse_round_trip(self):
        dt = datetime(2026, 3, 18, 12, 0, 1, 500, tzinfo=timezone.utc)
        assert parse_iso(to_iso(dt)) == dt

    @pytest.mark.parametrize("value", ["", "yesterday", None, 12])
    def test_parse_invalid(self, value):
        assert parse_iso(value) is None

    def test_parse_date_only(self):
        assert parse_iso("2026-03-18") == datetime(2026, 3, 18, tzinfo=timezone.utc)

    def test_strings_sort_chronologically(self):
        early = to_iso(datetime(2026, 3, 18, 9, 0, tzinfo=timezone.utc))
        late = to_iso(datetime(2026, 3, 18, 10, 0, 0, 1, tzinfo=timezone.utc))
        assert early < late


class TestHelpers:
    def test_generate_id(self):
        ids = {generate_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(len(i) == 12 for i in ids)

    @pytest.mark.parametrize(
        "value,expected", [(1.5, 1.0), (-1, 0.0), ("0.3", 0.3), ("x", 0.0), (float("nan"), 0.0)]
    )
    def test_clamp01(self, value, expected):
        assert clamp01(value) == expected


class TestDataclasses:
    def test_episodic_clamps(self):
        m = EpisodicMemory(organization_id="o", event_type="post_success", importance=3, strength=-1)
        assert m.importance == 1.0
        assert m.strength == 0.0

    def test_episodic_from_row(self):
        m = EpisodicMemory(organization_id="o", event_type="e", content={"a": 1})
        row = dict(m.to_dict(), content='{"a": 1}')
        assert EpisodicMemory.from_row(row).content == {"a": 1}

    def test_semantic_global(self):
        assert SemanticPattern(pattern_type="frequency", pattern_key="k").is_global

    def test_candidate_status_checked(self):
        with pytest.raises(ValueError, match="Invalid candidate status"):
            PatternCandidate("o", "frequency", "k", status="maybe")

    def test_audit_action_checked(self):
        with pytest.raises(ValueError, match="Invalid audit action"):
            AuditEntry(organization_id="o", action_type="pattern_deleted")

    def test_audit_actor_checked(self):
        with pytest.raises(ValueError, match="Invalid audit actor"):
            AuditEntry(organization_id="o", action_type="pattern_created", actor="robot")
