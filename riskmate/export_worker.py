"""
Export Worker

Polls the exports queue, generates proof packs and ledger exports, uploads
them to storage and records started/completed/failed ledger events.
Optionally computes daily ledger roots once per UTC day.
"""

import asyncio
import logging
import os
import signal
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Optional

from riskmate.audit import AuditEntry, record_audit_log
from riskmate.event_catalog import validate_ledger_event
from riskmate.export_manager import ExportManager, ExportState, ExportType, MAX_CONCURRENT_EXPORTS
from riskmate.ledger import compute_daily_roots
from riskmate.org_settings_loader import get_default
from riskmate.proof_pack_service import (
    EXPORT_BUCKET,
    LEDGER_EXPORT_MAX_ROWS,
    build_ledger_export,
    build_pack_meta,
    build_proof_pack,
    manifest_bytes,
    manifest_hash,
    ensure_bucket_exists,
    upload_artifact,
)
from riskmate.supabase_client import get_supabase

logger = logging.getLogger(__name__)


def _storage_timestamp() -> str:
    return datetime.utcnow().strftime("%Y%m%dT%H%M%S")


def _record_export_event(supabase, export: Dict[str, Any], outcome: str, metadata: Dict[str, Any]):
    export_type = export.get("export_type") or "export"
    entry = AuditEntry(
        organization_id=export["organization_id"],
        actor_id=export.get("created_by"),
        event_name=f"export.{export_type}.{outcome}",
        target_type="export",
        target_id=export["id"],
        metadata={"export_type": export_type, "work_record_id": export.get("work_record_id"), **metadata},
        client="worker",
    )
    problems = validate_ledger_event(asdict(entry))
    if problems:
        logger.warning(f"Export event for {export['id']} breaks its contract: {problems}")
    record_audit_log(supabase, entry)


def generate_export(supabase, export: Dict[str, Any]) -> Dict[str, Any]:
    """
    Build and upload the artifact for one export.
    Returns storage_path, manifest_path, manifest and manifest_hash.
    """
    org_id = export["organization_id"]
    work_record_id = export.get("work_record_id")
    filters = export.get("filters") or {}
    meta = build_pack_meta(
        supabase,
        org_id,
        export.get("created_by"),
        pack_id=f"EXP-{export['id'][:8].upper()}",
        time_range=filters.get("time_range"),
    )
    ts = _storage_timestamp()

    if export.get("export_type") == ExportType.LEDGER.value:
        max_rows = get_default(supabase, org_id, "ledger_export_max_rows", LEDGER_EXPORT_MAX_ROWS)
        pdf, manifest = build_ledger_export(supabase, org_id, meta=meta, filters=filters, max_rows=max_rows)
        storage_path = upload_artifact(supabase, f"{org_id}/ledger-exports/{ts}.pdf", pdf, "application/pdf")
        manifest_path = None
    else:
        zip_bytes, manifest = build_proof_pack(supabase, org_id, meta=meta, job_id=work_record_id, filters=filters)
        base = f"{org_id}/proof-packs/{work_record_id or 'all'}-{ts}"
        storage_path = upload_artifact(supabase, f"{base}.zip", zip_bytes, "application/zip")
        manifest_path = upload_artifact(supabase, f"{base}-manifest.json", manifest_bytes(manifest), "application/json")

    return {
        "storage_path": storage_path,
        "manifest_path": manifest_path,
        "manifest": manifest,
        "manifest_hash": manifest_hash(manifest),
    }


def process_export(supabase, manager: ExportManager, export: Dict[str, Any]) -> bool:
    """
    Run one claimed export through generating -> uploading -> ready.
    Failures are recorded on the export row and in the ledger, never raised.
    """
    export_id = export["id"]
    try:
        manager.update_state(export_id, ExportState.GENERATING, progress=10)
        _record_export_event(supabase, export, "started", {"filters": export.get("filters") or {}})

        artifact = generate_export(supabase, export)

        manager.update_state(export_id, ExportState.UPLOADING, progress=80)
        manager.mark_ready(
            export_id,
            storage_path=artifact["storage_path"],
            manifest_path=artifact["manifest_path"],
            manifest=artifact["manifest"],
            manifest_hash=artifact["manifest_hash"],
        )
        _record_export_event(supabase, export, "completed", {"manifest_hash": artifact["manifest_hash"]})
        logger.info(f"Export {export_id} ready at {artifact['storage_path']}")
        return True

    except Exception as e:
        logger.exception(f"Export {export_id} generation failed")
        state, error_id = manager.mark_failed(export, str(e))
        _record_export_event(supabase, export, "failed", {
            "error_id": error_id,
            "error_message": str(e)[:500],
            "state": state,
            "failure_count": int(export.get("failure_count") or 0) + 1,
        })
        return False


class ExportWorker:
    """
    Worker that polls for and processes queued exports.
    """

    def __init__(
        self,
        worker_id: str = None,
        concurrency: int = MAX_CONCURRENT_EXPORTS,
        poll_interval: float = 5.0,
        compute_roots: bool = False,
        roots_check_interval: float = 3600.0
    ):
        self.worker_id = worker_id or f"export-worker-{os.getpid()}-{datetime.utcnow().strftime('%H%M%S')}"
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.compute_roots = compute_roots
        self.roots_check_interval = roots_check_interval

        self.supabase = get_supabase()
        self.manager = ExportManager(self.supabase)

        self._running = False
        self._active_tasks: dict = {}
        self._shutdown_event = asyncio.Event()
        self._last_roots_day: Optional[str] = None

        logger.info(f"Worker {self.worker_id} initialized with concurrency={concurrency}")

    async def start(self):
        """Start the worker and begin processing exports."""
        self._running = True
        logger.info(f"Worker {self.worker_id} starting...")

        if self.supabase:
            ensure_bucket_exists(self.supabase, EXPORT_BUCKET)

        loop = asyncio.get_event_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                pass

        loops = [self._poll_loop()]
        if self.compute_roots:
            loops.append(self._daily_roots_loop())

        try:
            await asyncio.gather(*loops)
        except asyncio.CancelledError:
            logger.info("Worker cancelled")
        finally:
            await self._cleanup()

    def _handle_shutdown(self):
        logger.info(f"Worker {self.worker_id} received shutdown signal")
        self._running = False
        self._shutdown_event.set()

    async def _wait_or_shutdown(self, timeout: float) -> bool:
        """Sleep up to timeout; True when shutdown was requested."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _poll_loop(self):
        logger.info("Starting export poll loop")

        while self._running:
            try:
                if len(self._active_tasks) < self.concurrency:
                    export = self.manager.claim_next(self.concurrency)
                    if export:
                        export_id = export["id"]
                        logger.info(f"Claimed export {export_id} ({export.get('export_type')})")
                        task = asyncio.create_task(self._run_export(export))
                        self._active_tasks[export_id] = task
                        task.add_done_callback(lambda t, eid=export_id: self._active_tasks.pop(eid, None))
                        # Claim again immediately while there is capacity
                        continue

                if await self._wait_or_shutdown(self.poll_interval):
                    break

            except Exception as e:
                logger.error(f"Error in poll loop: {e}")
                await asyncio.sleep(self.poll_interval)

        logger.info("Export poll loop stopped")

    async def _run_export(self, export: Dict[str, Any]):
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, process_export, self.supabase, self.manager, export)

    async def _daily_roots_loop(self):
        """Compute yesterday's ledger roots once per UTC day."""
        while self._running:
            today = datetime.utcnow().date().isoformat()
            if today != self._last_roots_day:
                try:
                    loop = asyncio.get_event_loop()
                    summary = await loop.run_in_executor(None, compute_daily_roots, self.supabase)
                    self._last_roots_day = today
                    logger.info(f"Daily ledger roots: {summary}")
                except Exception as e:
                    logger.error(f"Error computing daily ledger roots: {e}")

            if await self._wait_or_shutdown(self.roots_check_interval):
                break

    async def _cleanup(self):
        """Wait for in-flight exports; they finish or are re-queued by mark_failed."""
        logger.info("Worker cleaning up...")
        if self._active_tasks:
            logger.info(f"Waiting for {len(self._active_tasks)} active export(s)")
            await asyncio.gather(*self._active_tasks.values(), return_exceptions=True)
        logger.info("Worker cleanup complete")
