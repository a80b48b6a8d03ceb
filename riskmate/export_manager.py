"""
Export Manager

Handles export record creation, idempotency enforcement, claiming and state
transitions for the async export queue (proof packs and ledger exports).
"""

import hashlib
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from riskmate.supabase_client import get_supabase

logger = logging.getLogger(__name__)


class ExportType(str, Enum):
    PROOF_PACK = "proof_pack"
    LEDGER = "ledger"


class ExportState(str, Enum):
    QUEUED = "queued"
    PREPARING = "preparing"
    GENERATING = "generating"
    UPLOADING = "uploading"
    READY = "ready"
    FAILED = "failed"


ACTIVE_STATES = [
    ExportState.QUEUED.value,
    ExportState.PREPARING.value,
    ExportState.GENERATING.value,
    ExportState.UPLOADING.value,
]

MAX_FAILURES = 3
MAX_CONCURRENT_EXPORTS = 3
EXPORT_GENERATION_FAILED = "EXPORT_GENERATION_FAILED"


class ExportManager:
    """
    Manages the export lifecycle: queued -> preparing -> generating -> uploading -> ready.
    Failures re-queue the export until MAX_FAILURES, then mark it failed.
    """

    def __init__(self, supabase=None):
        self.supabase = supabase or get_supabase()

    def compute_idempotency_key(
        self,
        export_type: ExportType,
        work_record_id: Optional[str],
        filters: Optional[Dict[str, Any]]
    ) -> str:
        """
        Deterministic key from type, work record and filters.
        Same inputs = same key = no duplicate exports while one is active.
        """
        key_parts = [ExportType(export_type).value]
        key_parts.append(f"job:{work_record_id or 'all'}")

        filters_for_hash = {k: v for k, v in (filters or {}).items() if v not in (None, "")}
        filters_hash = hashlib.md5(
            json.dumps(filters_for_hash, sort_keys=True, default=str).encode()
        ).hexdigest()[:12]
        key_parts.append(f"filters:{filters_hash}")

        return ":".join(key_parts)

    def find_existing_export(
        self,
        organization_id: str,
        idempotency_key: str
    ) -> Optional[Dict[str, Any]]:
        """Find an active export with the same idempotency key."""
        try:
            result = self.supabase.table("exports")\
                .select("*")\
                .eq("organization_id", organization_id)\
                .eq("idempotency_key", idempotency_key)\
                .in_("state", ACTIVE_STATES)\
                .order("created_at", desc=True)\
                .limit(1)\
                .execute()

            return result.data[0] if result.data else None
        except Exception as e:
            logger.error(f"Error finding existing export: {e}")
            return None

    def create_export(
        self,
        organization_id: str,
        user_id: str,
        export_type: ExportType,
        work_record_id: Optional[str] = None,
        filters: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        custom_idempotency_key: Optional[str] = None
    ) -> Tuple[Dict[str, Any], bool]:
        """
        Create a queued export or return the active one with the same key.

        Returns:
            Tuple of (export_record, is_existing)
        """
        filters = filters or {}
        idempotency_key = custom_idempotency_key or self.compute_idempotency_key(
            export_type, work_record_id, filters
        )

        existing = self.find_existing_export(organization_id, idempotency_key)
        if existing:
            logger.info(f"Returning existing export {existing['id']} for idempotency key {idempotency_key}")
            return existing, True

        record = {
            "id": str(uuid4()),
            "organization_id": organization_id,
            "work_record_id": work_record_id,
            "export_type": ExportType(export_type).value,
            "idempotency_key": idempotency_key,
            "request_id": request_id,
            "verification_token": uuid4().hex,
            "state": ExportState.QUEUED.value,
            "progress": 0,
            "filters": filters,
            "failure_count": 0,
            "created_by": user_id,
            "requested_at": datetime.utcnow().isoformat(),
        }

        try:
            result = self.supabase.table("exports").insert(record).execute()
            created = result.data[0] if result.data else record
            logger.info(f"Created export {record['id']} of type {record['export_type']}")
            return created, False

        except Exception as e:
            # Unique constraint race with a concurrent request
            if "duplicate key" in str(e).lower() or "unique" in str(e).lower():
                existing = self.find_existing_export(organization_id, idempotency_key)
                if existing:
                    return existing, True

            logger.error(f"Error creating export: {e}")
            raise

    def get_export(self, organization_id: str, export_id: str) -> Optional[Dict[str, Any]]:
        """Get an export scoped to its organization."""
        try:
            result = self.supabase.table("exports")\
                .select("*")\
                .eq("id", export_id)\
                .eq("organization_id", organization_id)\
                .limit(1)\
                .execute()
            return result.data[0] if result.data else None
        except Exception as e:
            logger.error(f"Error getting export {export_id}: {e}")
            return None

    def claim_next(self, max_concurrent: int = MAX_CONCURRENT_EXPORTS) -> Optional[Dict[str, Any]]:
        """
        Claim the next queued export. Uses the claim_export_job database
        function, falling back to an optimistic update guarded on state.
        """
        try:
            result = self.supabase.rpc("claim_export_job", {"p_max_concurrent": max_concurrent}).execute()
            data = result.data
            if isinstance(data, list):
                return data[0] if data else None
            return data or None
        except Exception as e:
            logger.warning(f"claim_export_job unavailable, using fallback claim: {e}")

        queued = self.supabase.table("exports")\
            .select("*")\
            .eq("state", ExportState.QUEUED.value)\
            .order("created_at")\
            .limit(1)\
            .execute()
        if not queued.data:
            return None

        candidate = queued.data[0]
        claimed = self.supabase.table("exports")\
            .update({
                "state": ExportState.PREPARING.value,
                "started_at": datetime.utcnow().isoformat(),
            })\
            .eq("id", candidate["id"])\
            .eq("state", ExportState.QUEUED.value)\
            .execute()

        # Another worker won the race
        if not claimed.data:
            return None
        return claimed.data[0]

    def update_state(
        self,
        export_id: str,
        state: ExportState,
        progress: Optional[int] = None,
        **fields: Any
    ) -> bool:
        update_data: Dict[str, Any] = {"state": ExportState(state).value, **fields}
        if progress is not None:
            update_data["progress"] = min(100, max(0, progress))

        try:
            self.supabase.table("exports")\
                .update(update_data)\
                .eq("id", export_id)\
                .execute()
            return True
        except Exception as e:
            logger.error(f"Error updating export {export_id} to {update_data['state']}: {e}")
            return False

    def mark_ready(
        self,
        export_id: str,
        storage_path: str,
        manifest_path: Optional[str],
        manifest: Dict[str, Any],
        manifest_hash: str
    ) -> bool:
        return self.update_state(
            export_id,
            ExportState.READY,
            progress=100,
            storage_path=storage_path,
            manifest_path=manifest_path,
            manifest=manifest,
            manifest_hash=manifest_hash,
            completed_at=datetime.utcnow().isoformat(),
        )

    def mark_failed(self, export: Dict[str, Any], message: str) -> Tuple[str, str]:
        """
        Record a failed attempt. Re-queues below MAX_FAILURES, otherwise the
        export is failed for good. Returns (new_state, error_id).
        """
        failure_count = int(export.get("failure_count") or 0) + 1
        state = ExportState.FAILED if failure_count >= MAX_FAILURES else ExportState.QUEUED
        error_id = str(uuid4())

        fields: Dict[str, Any] = {
            "failure_count": failure_count,
            "error_code": EXPORT_GENERATION_FAILED,
            "error_id": error_id,
            "error_message": message[:500],
            "failure_reason": message[:500],
        }
        if state == ExportState.FAILED:
            fields["completed_at"] = datetime.utcnow().isoformat()

        self.update_state(export["id"], state, **fields)

        if state == ExportState.FAILED:
            logger.error(f"Export {export['id']} failed permanently after {failure_count} attempts: {message}")
        else:
            logger.warning(f"Export {export['id']} attempt {failure_count} failed, re-queued: {message}")

        return state.value, error_id
