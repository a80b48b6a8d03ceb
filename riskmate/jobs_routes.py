"""
Jobs Routes

Endpoints for:
- GET/POST /api/jobs - list and create work records
- GET/PATCH/DELETE /api/jobs/{job_id} - read, update (optimistic concurrency), soft delete
- PATCH /api/jobs/{job_id}/mitigations/{mitigation_id} - toggle a checklist item
- GET/POST /api/jobs/{job_id}/documents - list and upload evidence documents
- POST /api/jobs/{job_id}/signoffs - record a sign-off
- POST /api/jobs/{job_id}/flag - raise or clear the safety review flag
- GET /api/jobs/{job_id}/audit - ledger activity for one job
- POST /api/jobs/{job_id}/proof-pack - single-job proof pack PDF
"""

import base64
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile

from riskmate.audit import record_request_event
from riskmate.org_settings_loader import get_default
from riskmate.proof_pack_service import (
    _safe_filename,
    build_job_proof_pack_pdf,
    build_pack_meta,
    create_signed_download_url,
)
from riskmate.rbac import (
    AuthContext,
    Role,
    check_rate_limit,
    get_auth_context,
    rate_limited,
    require_write_access,
    validate_file_upload,
)
from riskmate.risk_scoring import apply_risk_factors
from riskmate.router_utils import create_error_response, handle_conflict, require_db
from riskmate.schemas import JobCreate, JobFlagRequest, JobUpdate, MitigationUpdate, SignoffCreate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])

DOCUMENTS_BUCKET = "documents"
JOB_AUDIT_LIMIT = 100

JOB_LIST_COLUMNS = (
    "id, client_name, client_type, job_type, location, status, risk_score, risk_level, "
    "site_id, start_date, end_date, created_at, updated_at"
)


# =============================================================================
# HELPERS
# =============================================================================

def _get_job(supabase, org_id: str, job_id: str, columns: str = "*") -> Dict[str, Any]:
    """Fetch a live job scoped to the organization or raise 404."""
    result = supabase.table("jobs")\
        .select(columns)\
        .eq("id", job_id)\
        .eq("organization_id", org_id)\
        .is_("deleted_at", "null")\
        .limit(1)\
        .execute()
    if not result.data:
        raise HTTPException(status_code=404, detail={"message": "Job not found", "code": "JOB_NOT_FOUND"})
    return result.data[0]


def _job_detail(supabase, job: Dict[str, Any]) -> Dict[str, Any]:
    job_id = job["id"]
    score = supabase.table("job_risk_scores")\
        .select("*")\
        .eq("job_id", job_id)\
        .order("created_at", desc=True)\
        .limit(1)\
        .execute()
    mitigations = supabase.table("mitigation_items")\
        .select("id, title, description, done, is_completed, completed_at, created_at")\
        .eq("job_id", job_id)\
        .order("created_at")\
        .execute()
    return {
        **job,
        "risk_score_detail": score.data[0] if score.data else None,
        "mitigation_items": mitigations.data or [],
    }


def _apply_scoring(supabase, job_id: str, codes) -> Optional[Dict[str, Any]]:
    """Score the job; a scoring failure is logged and leaves the job unscored."""
    try:
        return apply_risk_factors(supabase, job_id, codes)
    except Exception as e:
        logger.error(f"Risk scoring failed for job {job_id}: {e}")
        return None


# =============================================================================
# LIST / READ
# =============================================================================

@router.get("")
async def list_jobs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = Query(None),
    risk_level: Optional[str] = Query(None),
    auth: AuthContext = Depends(get_auth_context),
):
    supabase = require_db()
    offset = (page - 1) * limit

    query = supabase.table("jobs")\
        .select(JOB_LIST_COLUMNS, count="exact")\
        .eq("organization_id", auth.organization_id)\
        .is_("deleted_at", "null")
    if status:
        query = query.eq("status", status)
    if risk_level:
        query = query.eq("risk_level", risk_level)

    result = query.order("created_at", desc=True).range(offset, offset + limit - 1).execute()
    jobs = result.data or []
    total = result.count if getattr(result, "count", None) is not None else len(jobs)

    return {
        "data": jobs,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": (total + limit - 1) // limit if total else 0,
        },
    }


@router.get("/{job_id}")
async def get_job(job_id: str, auth: AuthContext = Depends(get_auth_context)):
    supabase = require_db()
    job = _get_job(supabase, auth.organization_id, job_id)
    return {"data": _job_detail(supabase, job)}


# =============================================================================
# CREATE / UPDATE / DELETE
# =============================================================================

@router.post("", status_code=201)
async def create_job(
    body: JobCreate,
    request: Request,
    auth: AuthContext = Depends(require_write_access),
):
    supabase = require_db()
    payload = body.dict(exclude={"risk_factor_codes"})
    payload.update({
        "organization_id": auth.organization_id,
        "created_by": auth.user_id,
        "status": "draft",
        "version": 1,
    })

    result = supabase.table("jobs").insert(payload).execute()
    if not result.data:
        raise HTTPException(status_code=500, detail="Failed to create job")
    job = result.data[0]

    record_request_event(
        supabase,
        request,
        organization_id=auth.organization_id,
        actor_id=auth.user_id,
        event_name="job.created",
        target_type="job",
        target_id=job["id"],
        metadata={
            "client_name": body.client_name,
            "job_type": body.job_type,
            "location": body.location,
            "start_date": body.start_date,
            "risk_factor_count": len(body.risk_factor_codes),
        },
    )

    if body.risk_factor_codes:
        _apply_scoring(supabase, job["id"], body.risk_factor_codes)
        job = _get_job(supabase, auth.organization_id, job["id"])

    logger.info(f"Job {job['id']} created by {auth.user_id} in org {auth.organization_id}")
    return {"data": _job_detail(supabase, job)}


@router.patch("/{job_id}")
async def update_job(
    job_id: str,
    body: JobUpdate,
    request: Request,
    auth: AuthContext = Depends(require_write_access),
):
    supabase = require_db()
    existing = _get_job(supabase, auth.organization_id, job_id)

    if body.version is not None and existing.get("version") is not None:
        handle_conflict(existing["version"], body.version)

    updates = body.dict(exclude_unset=True, exclude={"risk_factor_codes", "version"})
    if updates:
        updates["updated_at"] = datetime.utcnow().isoformat()
        if existing.get("version") is not None:
            updates["version"] = existing["version"] + 1
        supabase.table("jobs")\
            .update(updates)\
            .eq("id", job_id)\
            .eq("organization_id", auth.organization_id)\
            .execute()

    if body.risk_factor_codes is not None:
        scored = _apply_scoring(supabase, job_id, body.risk_factor_codes)
        new_score = scored.get("overall_score") if scored else existing.get("risk_score")
        if scored and new_score != existing.get("risk_score"):
            record_request_event(
                supabase,
                request,
                organization_id=auth.organization_id,
                actor_id=auth.user_id,
                event_name="job.risk_score_changed",
                target_type="job",
                target_id=job_id,
                metadata={
                    "previous_score": existing.get("risk_score"),
                    "new_score": new_score,
                    "previous_level": existing.get("risk_level"),
                    "new_level": scored.get("risk_level"),
                },
            )

    record_request_event(
        supabase,
        request,
        organization_id=auth.organization_id,
        actor_id=auth.user_id,
        event_name="job.updated",
        target_type="job",
        target_id=job_id,
        metadata={"fields": sorted(body.dict(exclude_unset=True, exclude={"version"}).keys())},
    )

    job = _get_job(supabase, auth.organization_id, job_id)
    return {"data": _job_detail(supabase, job)}


@router.delete("/{job_id}")
async def delete_job(
    job_id: str,
    request: Request,
    auth: AuthContext = Depends(require_write_access),
):
    """Soft delete. Admins only, and only for drafts."""
    auth.require_role(Role.ADMIN, "Only owners and admins can delete jobs")
    supabase = require_db()

    result = supabase.table("jobs")\
        .select("id, status, client_name, deleted_at")\
        .eq("id", job_id)\
        .eq("organization_id", auth.organization_id)\
        .limit(1)\
        .execute()
    if not result.data:
        return create_error_response("Job not found", "JOB_NOT_FOUND", 404)
    job = result.data[0]

    if job.get("deleted_at"):
        return create_error_response("Job has already been deleted", "ALREADY_DELETED", 409)
    if job.get("status") != "draft":
        return create_error_response(
            "Only draft jobs can be deleted. Archive completed or active jobs instead.",
            "NOT_ELIGIBLE_FOR_DELETE",
            409,
            details={"status": job.get("status")},
        )

    deleted_at = datetime.utcnow().isoformat()
    supabase.table("jobs")\
        .update({"deleted_at": deleted_at})\
        .eq("id", job_id)\
        .eq("organization_id", auth.organization_id)\
        .execute()

    record_request_event(
        supabase,
        request,
        organization_id=auth.organization_id,
        actor_id=auth.user_id,
        event_name="job.deleted",
        target_type="job",
        target_id=job_id,
        metadata={"client_name": job.get("client_name"), "status": job.get("status")},
    )

    return {"data": {"id": job_id, "deleted_at": deleted_at}}


# =============================================================================
# MITIGATIONS
# =============================================================================

@router.patch("/{job_id}/mitigations/{mitigation_id}")
async def update_mitigation(
    job_id: str,
    mitigation_id: str,
    body: MitigationUpdate,
    request: Request,
    auth: AuthContext = Depends(require_write_access),
):
    supabase = require_db()
    _get_job(supabase, auth.organization_id, job_id, columns="id")

    result = supabase.table("mitigation_items")\
        .update({
            "done": body.done,
            "is_completed": body.done,
            "completed_at": datetime.utcnow().isoformat() if body.done else None,
        })\
        .eq("id", mitigation_id)\
        .eq("job_id", job_id)\
        .execute()
    if not result.data:
        raise HTTPException(status_code=404, detail={"message": "Mitigation item not found", "code": "MITIGATION_NOT_FOUND"})

    record_request_event(
        supabase,
        request,
        organization_id=auth.organization_id,
        actor_id=auth.user_id,
        event_name="mitigation.completed" if body.done else "mitigation.updated",
        target_type="mitigation",
        target_id=mitigation_id,
        metadata={"job_id": job_id, "done": body.done},
    )

    return {"data": result.data[0]}


# =============================================================================
# DOCUMENTS
# =============================================================================

@router.get("/{job_id}/documents")
async def list_documents(job_id: str, auth: AuthContext = Depends(get_auth_context)):
    supabase = require_db()
    _get_job(supabase, auth.organization_id, job_id, columns="id")
    ttl = get_default(supabase, auth.organization_id, "document_link_ttl_seconds", 600)

    docs = supabase.table("documents")\
        .select("id, name, type, file_size, file_path, mime_type, description, created_at, uploaded_by")\
        .eq("job_id", job_id)\
        .eq("organization_id", auth.organization_id)\
        .order("created_at", desc=True)\
        .execute().data or []

    return {
        "data": [
            {
                "id": d["id"],
                "name": d.get("name"),
                "type": d.get("type"),
                "size": d.get("file_size"),
                "storage_path": d.get("file_path"),
                "mime_type": d.get("mime_type"),
                "description": d.get("description"),
                "created_at": d.get("created_at"),
                "uploaded_by": d.get("uploaded_by"),
                "url": create_signed_download_url(supabase, DOCUMENTS_BUCKET, d["file_path"], ttl) if d.get("file_path") else None,
            }
            for d in docs
        ]
    }


@router.post("/{job_id}/documents", status_code=201)
async def upload_document(
    job_id: str,
    request: Request,
    file: UploadFile = File(...),
    doc_type: str = Form("photo", alias="type"),
    description: Optional[str] = Form(None),
    auth: AuthContext = Depends(require_write_access),
):
    """Upload one evidence file and attach it to the job."""
    supabase = require_db()
    _get_job(supabase, auth.organization_id, job_id, columns="id")
    check_rate_limit(auth.user_id, "upload")

    contents = await file.read()
    content_type = file.content_type or "application/octet-stream"
    validation = validate_file_upload(file.filename, content_type, len(contents), contents)
    if not validation["valid"]:
        return create_error_response(
            "File failed validation",
            "VALIDATION_ERROR",
            400,
            details={"errors": validation["errors"]},
        )

    file_path = f"{auth.organization_id}/{job_id}/{uuid4().hex}-{_safe_filename(file.filename)}"
    supabase.storage.from_(DOCUMENTS_BUCKET).upload(
        file_path,
        contents,
        {"content-type": content_type},
    )

    result = supabase.table("documents").insert({
        "job_id": job_id,
        "organization_id": auth.organization_id,
        "name": file.filename,
        "type": doc_type,
        "file_size": len(contents),
        "file_path": file_path,
        "mime_type": content_type,
        "description": description,
        "uploaded_by": auth.user_id,
    }).execute()
    if not result.data:
        raise HTTPException(status_code=500, detail="Failed to record document")
    doc = result.data[0]

    record_request_event(
        supabase,
        request,
        organization_id=auth.organization_id,
        actor_id=auth.user_id,
        event_name="document.uploaded",
        target_type="document",
        target_id=doc["id"],
        metadata={
            "job_id": job_id,
            "name": file.filename,
            "type": doc_type,
            "file_path": file_path,
            "file_size": len(contents),
        },
    )

    logger.info(f"Document {doc['id']} uploaded to job {job_id} ({len(contents)} bytes)")
    return {
        "data": {
            "id": doc["id"],
            "name": doc.get("name"),
            "type": doc.get("type"),
            "size": doc.get("file_size"),
            "storage_path": file_path,
            "mime_type": content_type,
            "description": description,
            "created_at": doc.get("created_at"),
        }
    }


# =============================================================================
# SIGN-OFFS
# =============================================================================

@router.post("/{job_id}/signoffs", status_code=201)
async def create_signoff(
    job_id: str,
    body: SignoffCreate,
    request: Request,
    auth: AuthContext = Depends(require_write_access),
):
    supabase = require_db()
    _get_job(supabase, auth.organization_id, job_id, columns="id")

    result = supabase.table("job_signoffs").insert({
        "job_id": job_id,
        "organization_id": auth.organization_id,
        "signer_id": auth.user_id,
        "signer_name": body.signer_name or auth.full_name or auth.email,
        "signer_email": auth.email,
        "signer_role": auth.role,
        "signoff_type": body.signoff_type,
        "comments": body.comments,
        "status": "signed",
        "signed_at": datetime.utcnow().isoformat(),
    }).execute()
    if not result.data:
        raise HTTPException(status_code=500, detail="Failed to record sign-off")
    signoff = result.data[0]

    record_request_event(
        supabase,
        request,
        organization_id=auth.organization_id,
        actor_id=auth.user_id,
        event_name="signoff.created",
        target_type="signoff",
        target_id=signoff["id"],
        metadata={
            "job_id": job_id,
            "work_record_id": job_id,
            "signoff_type": body.signoff_type,
            "signer_role": auth.role,
        },
    )

    return {"data": signoff}


# =============================================================================
# REVIEW FLAG
# =============================================================================

@router.post("/{job_id}/flag")
async def flag_job_for_review(
    job_id: str,
    body: JobFlagRequest,
    request: Request,
    auth: AuthContext = Depends(require_write_access),
):
    """Raise or clear the safety review flag. Any writer may raise it; clearing needs safety_lead+."""
    if not body.flagged:
        auth.require_role(Role.SAFETY_LEAD, "Only safety leads and above can clear a review flag")

    supabase = require_db()
    job = _get_job(supabase, auth.organization_id, job_id, columns="id, client_name, review_flag, site_id")

    supabase.table("jobs")\
        .update({"review_flag": body.flagged, "updated_at": datetime.utcnow().isoformat()})\
        .eq("id", job_id)\
        .eq("organization_id", auth.organization_id)\
        .execute()

    record_request_event(
        supabase,
        request,
        organization_id=auth.organization_id,
        actor_id=auth.user_id,
        event_name="job.flagged_for_review" if body.flagged else "job.unflagged",
        target_type="job",
        target_id=job_id,
        metadata={
            "job_id": job_id,
            "work_record_id": job_id,
            "site_id": job.get("site_id"),
            "client_name": job.get("client_name"),
            "was_flagged": bool(job.get("review_flag")),
            "reason": body.reason,
        },
    )

    return {"data": {"id": job_id, "review_flag": body.flagged}}


# =============================================================================
# JOB ACTIVITY
# =============================================================================

@router.get("/{job_id}/audit")
async def get_job_audit(job_id: str, auth: AuthContext = Depends(get_auth_context)):
    """Ledger events that target the job or carry it in metadata.job_id."""
    supabase = require_db()
    _get_job(supabase, auth.organization_id, job_id, columns="id")

    events = supabase.table("audit_logs")\
        .select("*")\
        .eq("organization_id", auth.organization_id)\
        .or_(f"target_id.eq.{job_id},job_id.eq.{job_id},metadata->>job_id.eq.{job_id}")\
        .order("created_at", desc=True)\
        .limit(JOB_AUDIT_LIMIT)\
        .execute().data or []

    return {"data": events}


# =============================================================================
# PROOF PACK
# =============================================================================

@router.post("/{job_id}/proof-pack")
async def generate_job_proof_pack(
    job_id: str,
    request: Request,
    auth: AuthContext = Depends(rate_limited("proof_pack")),
):
    """
    Build the single-job proof pack inline. Generating evidence is allowed
    for read-only roles, so this route skips the write-access check.
    """
    supabase = require_db()
    job = _get_job(supabase, auth.organization_id, job_id)

    meta = build_pack_meta(supabase, auth.organization_id, auth.user_id, time_range="all")
    pdf, info = build_job_proof_pack_pdf(supabase, auth.organization_id, job, meta)

    record_request_event(
        supabase,
        request,
        organization_id=auth.organization_id,
        actor_id=auth.user_id,
        event_name="proof_pack.generated",
        target_type="job",
        target_id=job_id,
        metadata={
            "job_id": job_id,
            "pack_id": meta.pack_id,
            "sha256": info["sha256"],
            "bytes": info["bytes"],
            "counts": info["counts"],
        },
    )

    logger.info(f"Proof pack {meta.pack_id} generated for job {job_id} ({info['bytes']} bytes)")
    return {
        "data": {
            "pack_id": meta.pack_id,
            "filename": info["filename"],
            "content_type": "application/pdf",
            "sha256": info["sha256"],
            "bytes": info["bytes"],
            "counts": info["counts"],
            "base64": base64.b64encode(pdf).decode("ascii"),
        }
    }
