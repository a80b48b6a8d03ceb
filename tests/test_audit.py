"""
Tests for the audit ledger writer and the event catalog.
"""

import pytest
from unittest.mock import MagicMock

from riskmate.audit import (
    AuditEntry,
    MAX_METADATA_SIZE,
    build_audit_row,
    derive_action,
    extract_client_metadata,
    get_category_from_event_name,
    get_outcome_from_event_name,
    get_severity_from_event_name,
    humanize_event_name,
    is_material_event,
    record_audit_log,
    truncate_metadata,
)
from riskmate.event_catalog import get_event_mapping, validate_ledger_event
from riskmate.executive_cache import get_cached, set_cached


# =============================================================================
# CLASSIFICATION
# =============================================================================

class TestClassification:

    @pytest.mark.parametrize("event_name,expected", [
        ("auth.role_violation", "governance"),
        ("policy.updated", "governance"),
        ("user_role_changed", "governance"),
        ("team.invite_sent", "access"),
        ("security.login", "access"),
        ("account.organization_updated", "access"),
        ("job.created", "operations"),
        ("proof_pack.generated", "operations"),
    ])
    def test_category(self, event_name, expected):
        assert get_category_from_event_name(event_name) == expected

    def test_outcome(self):
        assert get_outcome_from_event_name("auth.role_violation") == "blocked"
        assert get_outcome_from_event_name("export.denied") == "blocked"
        assert get_outcome_from_event_name("job.updated") == "allowed"

    def test_severity(self):
        assert get_severity_from_event_name("auth.role_violation") == "critical"
        assert get_severity_from_event_name("job.flagged_for_review") == "material"
        assert get_severity_from_event_name("job.risk_score_changed") == "material"
        assert get_severity_from_event_name("team.member_removed") == "material"
        assert get_severity_from_event_name("job.created") == "info"

    def test_material_events(self):
        assert is_material_event("job.created", "material")
        assert is_material_event("signoff.created", "info")
        assert not is_material_event("document.uploaded", "info")
        assert is_material_event("review.resolved", "info")
        assert is_material_event("incident.closed", "info")

    def test_derive_action(self):
        assert derive_action("job.created") == "job.create"
        assert derive_action("job.unflagged") == "job.unflag"
        assert derive_action("proof_pack.generated") == "proof_pack.generated"

    def test_humanize(self):
        assert humanize_event_name("job.risk_score_changed") == "Job Risk Score Changed"


# =============================================================================
# METADATA
# =============================================================================

class TestMetadata:

    def test_small_metadata_untouched(self):
        metadata = {"job_id": "job-1", "count": 3}
        assert truncate_metadata(metadata) is metadata

    def test_oversized_metadata_marked_truncated(self):
        metadata = {"blob": "x" * (MAX_METADATA_SIZE + 100)}
        assert truncate_metadata(metadata) == {"truncated": True}

    def test_empty_metadata(self):
        assert truncate_metadata(None) is None
        assert truncate_metadata({}) == {}

    def test_client_metadata_defaults(self):
        assert extract_client_metadata(None) == {
            "client": "unknown", "app_version": "unknown", "device_id": "unknown",
        }

    def test_client_metadata_from_headers(self):
        request = MagicMock()
        request.headers = {"x-client": "ios", "x-app-version": "2.1.0"}
        meta = extract_client_metadata(request)
        assert meta == {"client": "ios", "app_version": "2.1.0", "device_id": "unknown"}


# =============================================================================
# ROW BUILDING
# =============================================================================

class TestBuildAuditRow:

    def test_job_target_fills_job_id(self):
        entry = AuditEntry(
            organization_id="org-1",
            actor_id="user-1",
            event_name="job.created",
            target_type="job",
            target_id="job-1",
            metadata={"client_name": "Acme"},
        )
        row = build_audit_row(entry, {"email": "a@example.com", "role": "owner", "full_name": "Ann"})

        assert row["job_id"] == "job-1"
        assert row["category"] == "operations"
        assert row["action"] == "job.create"
        assert row["actor_name"] == "Ann"
        assert row["metadata"]["subject"] == {"type": "job", "id": "job-1"}
        assert row["metadata"]["client"] == "unknown"
        assert row["summary"] == "Job Created for job"

    def test_work_record_from_metadata(self):
        entry = AuditEntry(
            organization_id="org-1",
            event_name="document.uploaded",
            target_type="document",
            target_id="doc-1",
            metadata={"work_record_id": "job-9", "site_id": "site-2"},
        )
        row = build_audit_row(entry, {})
        assert row["job_id"] == "job-9"
        assert row["site_id"] == "site-2"
        assert row["actor_name"] is None

    def test_entry_metadata_overrides_client_defaults(self):
        entry = AuditEntry(
            organization_id="org-1",
            event_name="job.updated",
            target_type="job",
            target_id="job-1",
            metadata={"client": "ios", "device_id": "dev-7"},
            client="web",
        )
        row = build_audit_row(entry, {})
        assert row["metadata"]["client"] == "ios"
        assert row["metadata"]["device_id"] == "dev-7"
        assert row["metadata"]["app_version"] == "unknown"

    def test_violation_gets_policy_statement(self):
        entry = AuditEntry(
            organization_id="org-1",
            event_name="auth.role_violation",
            target_type="system",
            metadata={},
        )
        row = build_audit_row(entry, {})
        assert row["outcome"] == "blocked"
        assert row["severity"] == "critical"
        assert row["policy_statement"]


# =============================================================================
# WRITER
# =============================================================================

class TestRecordAuditLog:

    def test_no_database(self):
        result = record_audit_log(None, AuditEntry("org-1", "job.created", "job"))
        assert not result.ok
        assert result.error == "Database unavailable"

    def test_insert_failure_is_reported_not_raised(self, fake_db):
        fake_db.table("audit_logs").insert.side_effect = Exception("connection reset")
        result = record_audit_log(fake_db.client, AuditEntry("org-1", "job.created", "job", actor_id="user-1"))
        assert not result.ok
        assert "connection reset" in result.error

    def test_successful_insert_returns_id(self, fake_db):
        fake_db.set("audit_logs", [{"id": "evt-1"}])
        result = record_audit_log(fake_db.client, AuditEntry("org-1", "job.created", "job", target_id="job-1"))
        assert result.ok
        assert result.id == "evt-1"
        assert fake_db.inserted("audit_logs")[0]["event_name"] == "job.created"

    def test_material_event_invalidates_executive_cache(self, fake_db):
        fake_db.set("audit_logs", [{"id": "evt-2"}])
        set_cached("org-1", "30d", {"posture": {}})
        set_cached("org-2", "30d", {"posture": {}})

        record_audit_log(fake_db.client, AuditEntry("org-1", "signoff.created", "signoff", target_id="s-1"))

        assert get_cached("org-1", "30d") is None
        assert get_cached("org-2", "30d") is not None

    def test_info_event_keeps_cache(self, fake_db):
        fake_db.set("audit_logs", [{"id": "evt-3"}])
        set_cached("org-1", "7d", {"posture": {}})
        record_audit_log(fake_db.client, AuditEntry("org-1", "document.uploaded", "document"))
        assert get_cached("org-1", "7d") is not None


# =============================================================================
# EVENT CATALOG
# =============================================================================

class TestEventCatalog:

    def test_known_event(self):
        mapping = get_event_mapping("job.risk_score_changed")
        assert mapping["severity"] == "material"
        assert mapping["category"] == "operations"

    @pytest.mark.parametrize("event_name", [
        "review.assigned", "review.resolved", "review.waived", "review_queue.created_from_access",
        "incident.closed", "incident.corrective_action_created", "access.revoked", "access.flagged_suspicious",
    ])
    def test_governance_actions_are_cataloged(self, event_name):
        assert get_event_mapping(event_name)["description"] != "System event recorded"

    def test_unknown_event_is_derived(self):
        mapping = get_event_mapping("team.something_new")
        assert mapping["category"] == "access"
        assert mapping["title"]

    def test_contract_requires_fields(self):
        problems = validate_ledger_event({
            "event_name": "export.proof_pack.completed",
            "organization_id": "org-1",
            "target_type": "export",
            "metadata": {},
        })
        assert any("target_id" in p for p in problems)
        assert any("export_type" in p for p in problems)

    def test_valid_event(self):
        assert validate_ledger_event({
            "event_name": "export.ledger.completed",
            "organization_id": "org-1",
            "target_type": "export",
            "target_id": "exp-1",
            "metadata": {"export_type": "ledger"},
        }) == []

    def test_missing_event_name(self):
        assert validate_ledger_event({}) == ["event_name is required"]
