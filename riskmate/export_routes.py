"""
Export Routes

Endpoints for:
- POST /api/exports - queue a proof pack or ledger export (idempotent)
- GET /api/exports/{export_id} - export status, with a signed link once ready
- GET /api/exports/{export_id}/download - stream the artifact or its manifest
"""

import io
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from riskmate.export_manager import ExportManager, ExportState, ExportType
from riskmate.org_settings_loader import get_default, get_feature_flag
from riskmate.proof_pack_service import EXPORT_BUCKET, create_signed_download_url
from riskmate.rbac import AuthContext, get_auth_context, rate_limited
from riskmate.router_utils import create_error_response, require_db
from riskmate.schemas import ExportCreate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/exports", tags=["exports"])

PUBLIC_EXPORT_FIELDS = (
    "id", "export_type", "work_record_id", "state", "progress", "filters",
    "failure_count", "error_code", "error_id", "error_message",
    "manifest_hash", "created_by", "requested_at", "started_at", "completed_at",
)

MEDIA_TYPES = {
    ExportType.PROOF_PACK.value: ("application/zip", "zip"),
    ExportType.LEDGER.value: ("application/pdf", "pdf"),
}


def _public_export(export: Dict[str, Any]) -> Dict[str, Any]:
    return {k: export.get(k) for k in PUBLIC_EXPORT_FIELDS}


def _load_export(supabase, auth: AuthContext, export_id: str) -> Dict[str, Any]:
    export = ExportManager(supabase).get_export(auth.organization_id, export_id)
    if not export:
        raise HTTPException(status_code=404, detail={"message": "Export not found", "code": "EXPORT_NOT_FOUND"})
    return export


@router.post("")
async def create_export(
    body: ExportCreate,
    request: Request,
    auth: AuthContext = Depends(rate_limited("export")),
):
    """
    Queue an export. An identical active request returns the existing
    export with 200 and X-Idempotency-Replayed instead of a new one.
    Read-only roles may export.
    """
    supabase = require_db()
    org_id = auth.organization_id

    if body.export_type == ExportType.PROOF_PACK.value and not get_feature_flag(
        supabase, org_id, "enable_proof_packs", True
    ):
        return create_error_response("Proof packs are disabled for this organization", "FEATURE_DISABLED", 403)

    if body.work_record_id:
        job = supabase.table("jobs")\
            .select("id")\
            .eq("id", body.work_record_id)\
            .eq("organization_id", org_id)\
            .is_("deleted_at", "null")\
            .limit(1)\
            .execute()
        if not job.data:
            return create_error_response("Work record not found", "JOB_NOT_FOUND", 404)

    filters = dict(body.filters)
    if body.export_type == ExportType.PROOF_PACK.value:
        filters.setdefault("time_range", get_default(supabase, org_id, "proof_pack_time_range", "30d"))

    export, is_existing = ExportManager(supabase).create_export(
        organization_id=org_id,
        user_id=auth.user_id,
        export_type=ExportType(body.export_type),
        work_record_id=body.work_record_id,
        filters=filters,
        request_id=auth.request_id,
        custom_idempotency_key=request.headers.get("Idempotency-Key"),
    )

    payload = {"data": _public_export(export)}
    if is_existing:
        return JSONResponse(status_code=200, content=payload, headers={"X-Idempotency-Replayed": "true"})
    return JSONResponse(status_code=201, content=payload)


@router.get("/{export_id}")
async def get_export(export_id: str, auth: AuthContext = Depends(get_auth_context)):
    supabase = require_db()
    export = _load_export(supabase, auth, export_id)

    data = _public_export(export)
    if export.get("state") == ExportState.READY.value and export.get("storage_path"):
        ttl = get_default(supabase, auth.organization_id, "export_link_ttl_seconds", 3600)
        data["download_url"] = create_signed_download_url(supabase, EXPORT_BUCKET, export["storage_path"], ttl)
        if export.get("manifest_path"):
            data["manifest_url"] = create_signed_download_url(supabase, EXPORT_BUCKET, export["manifest_path"], ttl)

    return {"data": data}


@router.get("/{export_id}/download")
async def download_export(
    export_id: str,
    artifact: str = Query("file", pattern="^(file|manifest)$"),
    auth: AuthContext = Depends(get_auth_context),
):
    """Stream the export artifact, or its manifest.json with artifact=manifest."""
    supabase = require_db()
    export = _load_export(supabase, auth, export_id)

    if export.get("state") != ExportState.READY.value:
        return create_error_response(
            "Export is not ready for download",
            "EXPORT_NOT_READY",
            400,
            details={"state": export.get("state"), "progress": export.get("progress")},
        )

    if artifact == "manifest":
        path = export.get("manifest_path")
        media_type, ext = "application/json", "json"
        if not path:
            return create_error_response("This export has no manifest", "MANIFEST_NOT_FOUND", 404)
    else:
        path = export.get("storage_path")
        media_type, ext = MEDIA_TYPES.get(export.get("export_type"), ("application/octet-stream", "bin"))

    try:
        data = supabase.storage.from_(EXPORT_BUCKET).download(path)
    except Exception as e:
        logger.error(f"Download failed for export {export_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to download export")

    suffix = "-manifest" if artifact == "manifest" else ""
    filename = f"{export.get('export_type')}-{export_id[:8]}{suffix}.{ext}"
    return StreamingResponse(
        io.BytesIO(data),
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
