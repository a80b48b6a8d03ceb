"""
HTTP-level tests for review queue, incident, access and job review flag actions.
"""

JOB = {"id": "job-1", "client_name": "Acme Roofing", "status": "incident", "metadata": {"crew": "north"}}

ASSIGNEE = {"id": "user-2", "email": "bo@example.com", "full_name": "Bo Chen", "role": "safety_lead"}

ACCESS_EVENT = {"id": "evt-5", "event_name": "security.login", "job_id": None, "actor_id": "user-7"}


def event_names(fake_db):
    return [e["event_name"] for e in fake_db.inserted("audit_logs")]


# =============================================================================
# JOB REVIEW FLAG
# =============================================================================

class TestJobFlag:

    def test_member_can_flag(self, client, fake_db, as_role):
        as_role("member")
        fake_db.set("jobs", [{"id": "job-1", "client_name": "Acme Roofing", "review_flag": False}])

        response = client.post("/api/jobs/job-1/flag", json={"flagged": True, "reason": "fall hazard"})

        assert response.status_code == 200
        assert response.json()["data"] == {"id": "job-1", "review_flag": True}
        assert fake_db.table("jobs").update.call_args.args[0]["review_flag"] is True
        event = fake_db.inserted("audit_logs")[0]
        assert event["event_name"] == "job.flagged_for_review"
        assert event["job_id"] == "job-1"

    def test_member_cannot_clear_flag(self, client, fake_db, as_role):
        as_role("member")
        response = client.post("/api/jobs/job-1/flag", json={"flagged": False})
        assert response.status_code == 403
        fake_db.table("jobs").update.assert_not_called()

    def test_safety_lead_clears_flag(self, client, fake_db, as_role):
        as_role("safety_lead")
        fake_db.set("jobs", [{"id": "job-1", "review_flag": True}])
        client.post("/api/jobs/job-1/flag", json={"flagged": False})
        assert event_names(fake_db) == ["job.unflagged"]

    def test_executive_is_read_only(self, client, fake_db, as_role):
        as_role("executive")
        response = client.post("/api/jobs/job-1/flag", json={"flagged": True})
        assert response.status_code == 403
        assert response.json()["code"] == "AUTH_ROLE_READ_ONLY"
        assert event_names(fake_db) == ["auth.role_violation"]


# =============================================================================
# REVIEW QUEUE
# =============================================================================

class TestReviewQueue:

    def test_assign_requires_items(self, client, fake_db, as_role):
        as_role("safety_lead")
        response = client.post("/api/review-queue/assign", json={"item_ids": [], "assignee_id": "user-2", "due_at": "2025-02-01"})
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_assign_requires_due_date(self, client, fake_db, as_role):
        as_role("safety_lead")
        response = client.post("/api/review-queue/assign", json={"item_ids": ["job-1"], "assignee_id": "user-2"})
        assert response.status_code == 400

    def test_member_cannot_assign(self, client, fake_db, as_role):
        as_role("member")
        response = client.post("/api/review-queue/assign", json={
            "item_ids": ["job-1"], "assignee_id": "user-2", "due_at": "2025-02-01",
        })
        assert response.status_code == 403
        assert response.json()["code"] == "AUTH_ROLE_FORBIDDEN"

    def test_unknown_assignee(self, client, fake_db, as_role):
        as_role("safety_lead")
        fake_db.set("users", [])
        response = client.post("/api/review-queue/assign", json={
            "item_ids": ["job-1"], "assignee_id": "user-404", "due_at": "2025-02-01",
        })
        assert response.status_code == 404
        assert response.json()["code"] == "USER_NOT_FOUND"

    def test_assign_job_and_event(self, client, fake_db, as_role):
        as_role("admin")
        fake_db.set("users", [ASSIGNEE])
        fake_db.set_results("jobs", [JOB], [], [])
        fake_db.set("audit_logs", [{"id": "evt-9", "event_name": "auth.role_violation", "job_id": "job-1"}])

        response = client.post("/api/review-queue/assign", json={
            "item_ids": ["job-1", "evt-9"], "assignee_id": "user-2", "priority": "high", "due_at": "2025-02-01",
        })

        assert response.status_code == 200
        assert response.json()["data"]["assigned_count"] == 2

        update = fake_db.table("jobs").update.call_args.args[0]
        assert update["owner_id"] == "user-2"
        assert update["due_date"] == "2025-02-01"
        assert update["review_flag"] is True
        assert update["metadata"]["crew"] == "north"
        assert update["metadata"]["assignment"]["priority"] == "high"
        fake_db.table("audit_logs").update.assert_not_called()

        job_event, ledger_event = fake_db.inserted("audit_logs")
        assert job_event["event_name"] == ledger_event["event_name"] == "review.assigned"
        assert job_event["metadata"]["work_record_id"] == "job-1"
        assert ledger_event["target_type"] == "event"
        assert ledger_event["job_id"] == "job-1"
        assert ledger_event["metadata"]["subject"]["related_event_id"] == "evt-9"

    def test_unknown_items_are_skipped(self, client, fake_db, as_role):
        as_role("safety_lead")
        fake_db.set("users", [ASSIGNEE])
        fake_db.set("jobs", [])
        fake_db.set("audit_logs", [])
        response = client.post("/api/review-queue/assign", json={
            "item_ids": ["nope"], "assignee_id": "user-2", "due_at": "2025-02-01",
        })
        assert response.json()["data"]["assigned_count"] == 0
        fake_db.table("audit_logs").insert.assert_not_called()

    def test_invalid_priority(self, client, fake_db, as_role):
        as_role("safety_lead")
        response = client.post("/api/review-queue/assign", json={
            "item_ids": ["job-1"], "assignee_id": "user-2", "due_at": "2025-02-01", "priority": "urgent",
        })
        assert response.status_code == 422

    def test_resolve_requires_resolution(self, client, fake_db, as_role):
        as_role("safety_lead")
        response = client.post("/api/review-queue/resolve", json={"item_ids": ["job-1"]})
        assert response.status_code == 400

    def test_waiver_needs_reason(self, client, fake_db, as_role):
        as_role("safety_lead")
        response = client.post("/api/review-queue/resolve", json={
            "item_ids": ["job-1"], "resolution": "accepted_risk", "waived": True,
        })
        assert response.status_code == 400

    def test_resolve_waived_job(self, client, fake_db, as_role):
        as_role("safety_lead")
        fake_db.set("jobs", [JOB])

        response = client.post("/api/review-queue/resolve", json={
            "item_ids": ["job-1"], "resolution": "accepted_risk", "waived": True, "waiver_reason": "client sign-off",
        })

        assert response.json()["data"]["resolved_count"] == 1
        update = fake_db.table("jobs").update.call_args.args[0]
        assert update["review_flag"] is False
        assert update["metadata"]["resolution"]["waiver_reason"] == "client sign-off"
        event = fake_db.inserted("audit_logs")[0]
        assert event["event_name"] == "review.waived"
        assert event["job_id"] == "job-1"


# =============================================================================
# INCIDENTS
# =============================================================================

class TestIncidents:

    def test_close_requires_summary(self, client, fake_db, as_role):
        as_role("member")
        response = client.post("/api/incidents/close", json={"work_record_id": "job-1"})
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_no_action_requires_justification(self, client, fake_db, as_role):
        as_role("member")
        response = client.post("/api/incidents/close", json={
            "work_record_id": "job-1", "closure_summary": "Resolved", "no_action_required": True,
        })
        assert response.status_code == 400

    def test_close_missing_job(self, client, fake_db, as_role):
        as_role("member")
        fake_db.set("jobs", [])
        response = client.post("/api/incidents/close", json={"work_record_id": "job-404", "closure_summary": "Resolved"})
        assert response.status_code == 404
        assert response.json()["code"] == "JOB_NOT_FOUND"

    def test_open_actions_block_closure(self, client, fake_db, as_role):
        as_role("safety_lead")
        fake_db.set("jobs", [JOB])
        fake_db.set("mitigation_items", [{"id": "mit-1"}, {"id": "mit-2"}], count=2)

        response = client.post("/api/incidents/close", json={"work_record_id": "job-1", "closure_summary": "Resolved"})

        assert response.status_code == 400
        assert response.json()["details"] == {"open_actions_count": 2}
        fake_db.table("jobs").update.assert_not_called()
        fake_db.table("mitigation_items").eq.assert_any_call("done", False)

    def test_close_with_attestation(self, client, fake_db, as_role):
        as_role("safety_lead")
        fake_db.set("jobs", [JOB])
        fake_db.set("mitigation_items", [], count=0)
        fake_db.set("job_signoffs", [{"id": "so-9"}])

        response = client.post("/api/incidents/close", json={
            "work_record_id": "job-1", "closure_summary": "Guardrail replaced", "root_cause": "Worn bolts",
        })

        assert response.status_code == 200
        assert response.json()["data"]["attestation_id"] == "so-9"
        update = fake_db.table("jobs").update.call_args.args[0]
        assert update["status"] == "completed"
        assert update["review_flag"] is False
        assert update["metadata"]["incident_closed"]["root_cause"] == "Worn bolts"
        assert fake_db.inserted("job_signoffs")[0]["signoff_type"] == "incident_closure"
        event = fake_db.inserted("audit_logs")[0]
        assert event["event_name"] == "incident.closed"
        assert event["metadata"]["previous_status"] == "incident"
        assert event["job_id"] == "job-1"

    def test_no_action_closure_skips_open_action_check(self, client, fake_db, as_role):
        as_role("member")
        fake_db.set("jobs", [JOB])
        response = client.post("/api/incidents/close", json={
            "work_record_id": "job-1", "closure_summary": "False alarm", "no_action_required": True,
            "no_action_justification": "Sensor fault", "require_attestation": False,
        })
        assert response.status_code == 200
        fake_db.table("mitigation_items").select.assert_not_called()
        fake_db.table("job_signoffs").insert.assert_not_called()

    def test_corrective_action(self, client, fake_db, as_role):
        as_role("safety_lead")
        fake_db.set("jobs", [{"id": "job-1"}])
        fake_db.set("users", [ASSIGNEE])
        fake_db.set("mitigation_items", [{"id": "mit-9", "title": "Replace harness"}])

        response = client.post("/api/incidents/corrective-action", json={
            "work_record_id": "job-1", "title": "Replace harness", "owner_id": "user-2",
            "due_date": "2025-02-10", "incident_event_id": "evt-3",
        })

        assert response.status_code == 201
        assert response.json()["data"]["id"] == "mit-9"
        item = fake_db.inserted("mitigation_items")[0]
        assert item["done"] is False
        assert item["verification_method"] == "attestation"
        event = fake_db.inserted("audit_logs")[0]
        assert event["event_name"] == "incident.corrective_action_created"
        assert event["target_type"] == "control"
        assert event["target_id"] == "mit-9"
        assert event["job_id"] == "job-1"
        assert event["metadata"]["subject"]["related_event_id"] == "evt-3"

    def test_corrective_action_unknown_owner(self, client, fake_db, as_role):
        as_role("member")
        fake_db.set("jobs", [{"id": "job-1"}])
        fake_db.set("users", [])
        response = client.post("/api/incidents/corrective-action", json={
            "work_record_id": "job-1", "title": "Fix", "owner_id": "user-404", "due_date": "2025-02-10",
        })
        assert response.status_code == 404
        fake_db.table("mitigation_items").insert.assert_not_called()


# =============================================================================
# ACCESS
# =============================================================================

class TestAccess:

    def test_cannot_revoke_self(self, client, fake_db, as_role):
        as_role("admin", user_id="user-1")
        response = client.post("/api/access/revoke", json={"user_id": "user-1", "reason": "test"})
        assert response.status_code == 400

    def test_safety_lead_cannot_revoke(self, client, fake_db, as_role):
        as_role("safety_lead")
        response = client.post("/api/access/revoke", json={"user_id": "user-2", "reason": "left company"})
        assert response.status_code == 403

    def test_executives_are_immutable(self, client, fake_db, as_role):
        as_role("owner")
        fake_db.set("users", [{"id": "user-2", "role": "executive"}])
        response = client.post("/api/access/revoke", json={"user_id": "user-2", "reason": "left company"})
        assert response.status_code == 403
        fake_db.table("users").update.assert_not_called()

    def test_revoke_archives_member(self, client, fake_db, as_role):
        as_role("admin")
        fake_db.set("users", [{"id": "user-2", "role": "member", "email": "m@example.com"}])

        response = client.post("/api/access/revoke", json={"user_id": "user-2", "reason": "left company"})

        assert response.status_code == 200
        update = fake_db.table("users").update.call_args.args[0]
        assert update["account_status"] == "deactivated"
        event = fake_db.inserted("audit_logs")[0]
        assert event["event_name"] == "access.revoked"
        assert event["category"] == "access"
        assert event["metadata"]["target_user_role"] == "member"

    def test_revoke_downgrades_role(self, client, fake_db, as_role):
        as_role("admin")
        fake_db.set("users", [{"id": "user-2", "role": "safety_lead"}])
        client.post("/api/access/revoke", json={"user_id": "user-2", "reason": "scope change", "new_role": "member"})
        update = fake_db.table("users").update.call_args.args[0]
        assert update["role"] == "member"
        assert "archived_at" not in update

    def test_admin_cannot_grant_admin(self, client, fake_db, as_role):
        as_role("admin")
        response = client.post("/api/access/revoke", json={"user_id": "user-2", "reason": "x", "new_role": "admin"})
        assert response.status_code == 403

    def test_flag_needs_target(self, client, fake_db, as_role):
        as_role("safety_lead")
        response = client.post("/api/access/flag-suspicious", json={"reason": "odd hours"})
        assert response.status_code == 400

    def test_flag_reason_too_short(self, client, fake_db, as_role):
        as_role("safety_lead")
        response = client.post("/api/access/flag-suspicious", json={"user_id": "user-7", "reason": " a "})
        assert response.status_code == 400

    def test_flag_event_opens_review(self, client, fake_db, as_role):
        as_role("safety_lead")
        fake_db.set("audit_logs", [ACCESS_EVENT])

        response = client.post("/api/access/flag-suspicious", json={
            "event_id": "evt-5", "reason": "login from unknown country", "severity": "critical",
        })

        assert response.status_code == 200
        assert response.json()["data"]["incident_opened"] is True
        assert event_names(fake_db) == ["review_queue.created_from_access", "access.flagged_suspicious"]
        flagged = fake_db.inserted("audit_logs")[1]
        assert flagged["target_type"] == "event"
        assert flagged["metadata"]["target_user_id"] == "user-7"
        assert flagged["metadata"]["subject"]["related_event_id"] == "evt-5"
        fake_db.table("audit_logs").update.assert_not_called()

    def test_flag_unknown_user(self, client, fake_db, as_role):
        as_role("safety_lead")
        fake_db.set("users", [])
        response = client.post("/api/access/flag-suspicious", json={"user_id": "user-404", "reason": "shared login"})
        assert response.status_code == 404
