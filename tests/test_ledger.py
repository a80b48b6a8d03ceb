"""
Tests for ledger hash computation, chain verification and daily roots.
"""

import json
from datetime import date

import pytest

from riskmate.ledger import (
    DEFAULT_LEDGER_SALT,
    canonical_ledger_json,
    compute_event_hash,
    compute_ledger_hash,
    compute_daily_roots,
    compute_org_daily_root,
    compute_root_hash,
    get_ledger_salt,
    ledger_status,
    verify_chain,
    verify_event,
    walk_chain,
)


def build_chain(count=3, org_id="org-1"):
    """Hash a run of events the way the database trigger does."""
    events = []
    prev_hash = None
    for seq in range(1, count + 1):
        event = {
            "id": f"evt-{seq}",
            "organization_id": org_id,
            "actor_id": "user-1",
            "event_name": "job.updated",
            "target_type": "job",
            "target_id": "job-1",
            "metadata": {"field": f"value-{seq}"},
            "created_at": f"2025-01-0{seq}T10:00:00+00:00",
            "ledger_seq": seq,
            "prev_hash": prev_hash,
        }
        event["hash"] = compute_event_hash(event)
        prev_hash = event["hash"]
        events.append(event)
    return events


@pytest.fixture(autouse=True)
def default_salt(monkeypatch):
    monkeypatch.delenv("LEDGER_HASH_SALT", raising=False)


# =============================================================================
# HASHING
# =============================================================================

class TestHashing:

    def test_canonical_key_order_and_indent(self):
        canonical = canonical_ledger_json(1, "org-1", None, "job.created", "job", None, "2025-01-01T00:00:00Z", None)
        parsed = json.loads(canonical)
        assert list(parsed.keys()) == [
            "seq", "org_id", "actor_id", "event", "target_type", "target_id", "created_at", "metadata",
        ]
        assert parsed["actor_id"] == ""
        assert parsed["target_id"] == ""
        assert parsed["metadata"] == {}
        assert canonical.startswith('{\n  "seq": 1')

    def test_hash_depends_on_prev_hash(self):
        args = (1, "org-1", "user-1", "job.created", "job", "job-1", {}, "2025-01-01T00:00:00Z")
        first = compute_ledger_hash(None, *args)
        second = compute_ledger_hash("abc", *args)
        assert first != second
        assert len(first) == 64

    def test_salt_from_environment(self, monkeypatch):
        assert get_ledger_salt() == DEFAULT_LEDGER_SALT
        event = build_chain(1)[0]
        default_hash = compute_event_hash(event)

        monkeypatch.setenv("LEDGER_HASH_SALT", "other-salt")
        assert get_ledger_salt() == "other-salt"
        assert compute_event_hash(event) != default_hash
        assert compute_event_hash(event, salt=DEFAULT_LEDGER_SALT) == default_hash


# =============================================================================
# VERIFICATION
# =============================================================================

class TestVerification:

    def test_intact_chain(self):
        result = verify_chain(build_chain(5))
        assert result.ok
        assert result.checked == 5
        assert result.first_broken_seq is None

    def test_order_of_input_does_not_matter(self):
        events = build_chain(4)
        assert verify_chain(list(reversed(events))).ok

    def test_tampered_metadata_detected(self):
        events = build_chain(4)
        events[2]["metadata"] = {"field": "rewritten"}
        result = verify_chain(events)
        assert not result.ok
        assert result.first_broken_seq == 3
        assert "recomputed" in result.errors[0]

    def test_broken_link_detected(self):
        events = build_chain(3)
        events[2]["prev_hash"] = "0" * 64
        events[2]["hash"] = compute_event_hash(events[2])
        result = verify_chain(events)
        assert not result.ok
        assert result.first_broken_seq == 3
        assert any("prev_hash" in e for e in result.errors)

    def test_first_row_prev_hash_is_trusted(self):
        events = build_chain(4)[1:]
        assert verify_chain(events).ok

    def test_verify_event(self):
        events = build_chain(2)
        check = verify_event(events[1], events[0])
        assert check["hash_matches"]
        assert check["prev_exists"]
        assert check["prev_hash_valid"]

    def test_verify_event_missing_predecessor(self):
        events = build_chain(2)
        check = verify_event(events[1], None)
        assert check["hash_matches"]
        assert not check["prev_hash_valid"]

    def test_ledger_status(self):
        events = build_chain(3)
        assert ledger_status(events) == "verified"
        assert ledger_status([{"id": "x"}]) == "not_verified"
        events[0]["target_id"] = "job-2"
        assert ledger_status(events) == "broken"

    def test_ledger_status_on_filtered_subset(self):
        events = build_chain(4)
        assert ledger_status([events[0], events[2]]) == "verified"
        assert ledger_status([events[3], events[1]]) == "verified"

    def test_ledger_status_adjacent_broken_link(self):
        events = build_chain(3)
        events[2]["prev_hash"] = "f" * 64
        events[2]["hash"] = compute_event_hash(events[2])
        assert ledger_status(events) == "broken"
        assert ledger_status([events[0], events[2]]) == "verified"

    def test_walk_chain(self, fake_db):
        events = build_chain(3)
        fake_db.set_results("audit_logs", [events[1]], [events[0]])
        result = walk_chain(fake_db.client, "org-1", events[2])
        assert result == {"chain_ok": True, "chain_depth_checked": 2}

    def test_walk_chain_missing_link(self, fake_db):
        events = build_chain(2)
        fake_db.set("audit_logs", [])
        result = walk_chain(fake_db.client, "org-1", events[1])
        assert result == {"chain_ok": False, "chain_depth_checked": 0}


# =============================================================================
# DAILY ROOTS
# =============================================================================

class TestDailyRoots:

    def test_root_hash_is_order_independent(self):
        assert compute_root_hash(["b", "a", "c"]) == compute_root_hash(["c", "b", "a"])

    def test_empty_day(self, fake_db):
        fake_db.set("audit_logs", [])
        assert compute_org_daily_root(fake_db.client, "org-1", date(2025, 1, 1)) is None
        fake_db.table("ledger_roots").upsert.assert_not_called()

    def test_root_upserted(self, fake_db):
        events = build_chain(3)
        fake_db.set("audit_logs", [{"id": e["id"], "hash": e["hash"], "ledger_seq": e["ledger_seq"]} for e in events])

        root = compute_org_daily_root(fake_db.client, "org-1", date(2025, 1, 2))

        assert root["event_count"] == 3
        assert root["first_seq"] == 1
        assert root["last_seq"] == 3
        assert root["root_hash"] == compute_root_hash([e["hash"] for e in events])
        upsert = fake_db.table("ledger_roots").upsert
        assert upsert.call_args.kwargs["on_conflict"] == "organization_id,date"

    def test_disabled_orgs_are_skipped(self, fake_db):
        fake_db.set("organizations", [{"id": "org-1"}])
        fake_db.set("org_settings", [{"feature_flags": {"enable_ledger_roots": False}}])

        summary = compute_daily_roots(fake_db.client, date(2025, 1, 1))

        assert summary == {"date": "2025-01-01", "computed": 0, "failed": 0, "organizations": 1}
        fake_db.table("ledger_roots").upsert.assert_not_called()
