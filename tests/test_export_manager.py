"""
Tests for the export queue: idempotency, claiming, retries and the worker step.
"""

import pytest
from unittest.mock import MagicMock, patch

from riskmate.export_manager import (
    EXPORT_GENERATION_FAILED,
    ExportManager,
    ExportState,
    ExportType,
)
from riskmate.export_worker import generate_export, process_export

from conftest import make_result


EXPORT = {
    "id": "0f1e2d3c-aaaa-bbbb-cccc-000000000001",
    "organization_id": "org-1",
    "created_by": "user-1",
    "export_type": "proof_pack",
    "work_record_id": "job-1",
    "filters": {"time_range": "30d"},
    "failure_count": 0,
    "state": "preparing",
}


@pytest.fixture
def manager(fake_db):
    return ExportManager(fake_db.client)


def updates(fake_db):
    return [c.args[0] for c in fake_db.table("exports").update.call_args_list]


# =============================================================================
# IDEMPOTENCY
# =============================================================================

class TestIdempotency:

    def test_key_is_deterministic(self, manager):
        a = manager.compute_idempotency_key(ExportType.PROOF_PACK, "job-1", {"time_range": "30d", "site_id": None})
        b = manager.compute_idempotency_key("proof_pack", "job-1", {"time_range": "30d"})
        assert a == b
        assert a.startswith("proof_pack:job:job-1:filters:")

    def test_key_varies_with_inputs(self, manager):
        base = manager.compute_idempotency_key(ExportType.LEDGER, None, {})
        assert base.startswith("ledger:job:all:")
        assert base != manager.compute_idempotency_key(ExportType.LEDGER, None, {"category": "governance"})
        assert base != manager.compute_idempotency_key(ExportType.PROOF_PACK, None, {})

    def test_existing_active_export_is_returned(self, manager, fake_db):
        fake_db.set("exports", [{"id": "exp-1", "state": "generating"}])

        export, existing = manager.create_export("org-1", "user-1", ExportType.LEDGER)

        assert existing is True
        assert export["id"] == "exp-1"
        fake_db.table("exports").insert.assert_not_called()

    def test_new_export_is_queued(self, manager, fake_db):
        fake_db.set_results("exports", [], [])

        export, existing = manager.create_export(
            "org-1", "user-1", ExportType.PROOF_PACK, work_record_id="job-1",
            request_id="req-1", custom_idempotency_key="client-key-1",
        )

        assert existing is False
        row = fake_db.inserted("exports")[0]
        assert row["state"] == "queued"
        assert row["progress"] == 0
        assert row["idempotency_key"] == "client-key-1"
        assert row["export_type"] == "proof_pack"
        assert export["id"] == row["id"]

    def test_duplicate_key_race_returns_winner(self, manager, fake_db):
        fake_db.set_results("exports", [], [{"id": "exp-winner"}])
        fake_db.table("exports").insert.side_effect = Exception("duplicate key value violates unique constraint")

        export, existing = manager.create_export("org-1", "user-1", ExportType.LEDGER)

        assert existing is True
        assert export["id"] == "exp-winner"

    def test_other_insert_errors_propagate(self, manager, fake_db):
        fake_db.set("exports", [])
        fake_db.table("exports").insert.side_effect = Exception("connection refused")
        with pytest.raises(Exception, match="connection refused"):
            manager.create_export("org-1", "user-1", ExportType.LEDGER)


# =============================================================================
# CLAIMING / STATE
# =============================================================================

class TestClaiming:

    def test_claim_via_database_function(self, manager, fake_db):
        fake_db.client.rpc.return_value.execute.return_value = make_result([EXPORT])
        assert manager.claim_next() == EXPORT
        fake_db.client.rpc.assert_called_with("claim_export_job", {"p_max_concurrent": 3})

    def test_claim_nothing_queued(self, manager, fake_db):
        fake_db.client.rpc.return_value.execute.return_value = make_result([])
        assert manager.claim_next() is None

    def test_fallback_claim(self, manager, fake_db):
        fake_db.client.rpc.side_effect = Exception("function claim_export_job does not exist")
        fake_db.set_results("exports", [{"id": "exp-1", "state": "queued"}], [{"id": "exp-1", "state": "preparing"}])

        claimed = manager.claim_next()

        assert claimed["state"] == "preparing"
        assert updates(fake_db)[0]["state"] == "preparing"

    def test_fallback_claim_lost_race(self, manager, fake_db):
        fake_db.client.rpc.side_effect = Exception("unavailable")
        fake_db.set_results("exports", [{"id": "exp-1", "state": "queued"}], [])
        assert manager.claim_next() is None

    def test_progress_is_clamped(self, manager, fake_db):
        manager.update_state("exp-1", ExportState.GENERATING, progress=140)
        assert updates(fake_db)[0] == {"state": "generating", "progress": 100}

    def test_failure_requeues(self, manager, fake_db):
        state, error_id = manager.mark_failed({"id": "exp-1", "failure_count": 1}, "boom")

        assert state == "queued"
        update = updates(fake_db)[0]
        assert update["failure_count"] == 2
        assert update["error_code"] == EXPORT_GENERATION_FAILED
        assert update["error_id"] == error_id
        assert "completed_at" not in update

    def test_third_failure_is_final(self, manager, fake_db):
        state, _ = manager.mark_failed({"id": "exp-1", "failure_count": 2}, "boom")
        assert state == "failed"
        assert "completed_at" in updates(fake_db)[0]


# =============================================================================
# WORKER STEP
# =============================================================================

class TestProcessExport:

    ARTIFACT = {
        "storage_path": "org-1/proof-packs/job-1.zip",
        "manifest_path": "org-1/proof-packs/job-1-manifest.json",
        "manifest": {"pack_id": "EXP-0F1E2D3C"},
        "manifest_hash": "f" * 64,
    }

    def test_success_walks_states(self, manager, fake_db):
        with patch("riskmate.export_worker.generate_export", return_value=self.ARTIFACT):
            assert process_export(fake_db.client, manager, EXPORT) is True

        states = [(u["state"], u.get("progress")) for u in updates(fake_db)]
        assert states == [("generating", 10), ("uploading", 80), ("ready", 100)]
        assert updates(fake_db)[-1]["manifest_hash"] == "f" * 64

        events = fake_db.inserted("audit_logs")
        assert [e["event_name"] for e in events] == ["export.proof_pack.started", "export.proof_pack.completed"]
        assert events[1]["metadata"]["manifest_hash"] == "f" * 64
        assert events[1]["target_id"] == EXPORT["id"]

    def test_failure_is_recorded_not_raised(self, manager, fake_db):
        with patch("riskmate.export_worker.generate_export", side_effect=RuntimeError("render crashed")):
            assert process_export(fake_db.client, manager, EXPORT) is False

        assert updates(fake_db)[-1]["state"] == "queued"
        failed = fake_db.inserted("audit_logs")[-1]
        assert failed["event_name"] == "export.proof_pack.failed"
        assert failed["metadata"]["error_message"] == "render crashed"
        assert failed["metadata"]["failure_count"] == 1


class TestGenerateExport:

    def test_ledger_export_uploads_pdf(self, fake_db):
        export = dict(EXPORT, export_type="ledger", work_record_id=None, filters={})
        storage = MagicMock()
        fake_db.client.storage = storage

        result = generate_export(fake_db.client, export)

        path, data, options = storage.from_.return_value.upload.call_args.args
        assert path.startswith("org-1/ledger-exports/") and path.endswith(".pdf")
        assert data.startswith(b"%PDF")
        assert options["content-type"] == "application/pdf"
        assert result["manifest_path"] is None
        assert len(result["manifest_hash"]) == 64

    def test_proof_pack_uploads_zip_and_manifest(self, fake_db):
        storage = MagicMock()
        fake_db.client.storage = storage

        result = generate_export(fake_db.client, EXPORT)

        paths = [c.args[0] for c in storage.from_.return_value.upload.call_args_list]
        assert paths[0].startswith("org-1/proof-packs/job-1-") and paths[0].endswith(".zip")
        assert paths[1].endswith("-manifest.json")
        assert result["manifest"]["pack_id"] == "EXP-0F1E2D3C"
