"""
Proof Pack Service

Implements:
- Ledger, controls and attestations queries scoped to an organization
- PDF generation (ledger export, controls, attestations, evidence index, single-job pack)
- Manifest construction and hashing
- ZIP proof pack assembly
- Storage upload and signed URL generation

Design notes:
- Every PDF shares the layout in riskmate.pdf_theme and the normalization in riskmate.pdf_normalize
- The evidence index lists payload hashes but is never hashed by itself
- manifest_hash is computed over sorted-key JSON so clients can recompute it
"""

from __future__ import annotations

import io
import json
import hashlib
import logging
import os
import zipfile
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from reportlab.lib.units import inch
from reportlab.platypus import PageBreak, Spacer

from riskmate.ledger import ledger_status
from riskmate.pdf_normalize import (
    active_filters,
    calculate_attestation_kpis,
    calculate_control_kpis,
    format_date,
    format_datetime,
    format_filter_context,
    format_hash_short,
    normalize_attestation_status,
    normalize_control_status,
    sort_attestations,
    sort_controls,
    truncate_text,
)
from riskmate.pdf_theme import (
    PackMeta,
    data_table,
    empty_state,
    header_block,
    kpi_row,
    para,
    render_pdf,
    section_title,
)

logger = logging.getLogger(__name__)


EXPORT_BUCKET = os.environ.get("EXPORT_BUCKET", "exports")
MANIFEST_VERSION = "1.0"
LEDGER_EXPORT_MAX_ROWS = 1000
EVIDENCE_REFERENCE_LIMIT = 50
ORG_JOB_SCAN_LIMIT = 500

EVIDENCE_INDEX_NAME = "evidence-index.pdf"

AUDIT_EVENT_COLUMNS = (
    "id, organization_id, event_name, created_at, category, outcome, severity, actor_id, actor_name, actor_role, "
    "job_id, site_id, target_type, target_id, summary, metadata, ledger_seq, hash, prev_hash"
)

TIME_RANGES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}


def _sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def _safe_filename(name: str) -> str:
    return "".join(c if c.isalnum() or c in ("-", "_", ".", " ") else "_" for c in (name or "file")).strip().replace(" ", "_")


def _now_iso() -> str:
    return datetime.utcnow().isoformat()


def _file_type(name: str) -> str:
    return name.rsplit(".", 1)[-1].lower() if "." in name else "bin"


def resolve_time_range(
    time_range: Optional[str],
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """
    Turn a time_range preset (24h|7d|30d|90d|all|custom) into ISO bounds.
    "custom" uses the explicit dates; unknown presets fall back to 30d.
    """
    if time_range == "all":
        return None, None
    if time_range == "custom":
        return start_date, end_date
    now = now or datetime.utcnow()
    delta = TIME_RANGES.get(time_range or "30d", TIME_RANGES["30d"])
    return (now - delta).isoformat(), None


# =============================================================================
# DATA
# =============================================================================

def fetch_ledger_events(
    supabase,
    org_id: str,
    filters: Optional[Dict[str, Any]] = None,
    limit: int = LEDGER_EXPORT_MAX_ROWS,
) -> Tuple[List[Dict[str, Any]], int]:
    """
    Newest-first audit rows for an organization. Returns (events, total matching).
    """
    filters = filters or {}
    query = supabase.table("audit_logs")\
        .select(AUDIT_EVENT_COLUMNS, count="exact")\
        .eq("organization_id", org_id)

    for key in ("category", "site_id", "job_id", "actor_id", "severity", "outcome"):
        if filters.get(key):
            query = query.eq(key, filters[key])

    start, end = resolve_time_range(filters.get("time_range"), filters.get("start_date"), filters.get("end_date"))
    if start:
        query = query.gte("created_at", start)
    if end:
        query = query.lte("created_at", end)

    result = query.order("created_at", desc=True).limit(limit).execute()
    events = result.data or []
    total = result.count if getattr(result, "count", None) is not None else len(events)
    return events, total


def build_pack_meta(
    supabase,
    org_id: str,
    user_id: Optional[str],
    *,
    pack_id: Optional[str] = None,
    time_range: Optional[str] = None,
) -> PackMeta:
    """Header metadata for a pack; lookups that fail fall back to placeholders."""
    organization_name = "Organization"
    generated_by, generated_by_role = "System", "system"
    try:
        org = supabase.table("organizations").select("name").eq("id", org_id).limit(1).execute()
        if org.data:
            organization_name = org.data[0].get("name") or organization_name
        if user_id:
            user = supabase.table("users").select("full_name, email, role").eq("id", user_id).limit(1).execute()
            if user.data:
                generated_by = user.data[0].get("full_name") or user.data[0].get("email") or "Unknown"
                generated_by_role = user.data[0].get("role") or "member"
    except Exception as e:
        logger.warning(f"Pack metadata lookup failed for org {org_id}: {e}")

    return PackMeta(
        pack_id=pack_id or f"PACK-{uuid4().hex[:12].upper()}",
        organization_name=organization_name,
        generated_by=generated_by,
        generated_by_role=generated_by_role,
        generated_at=_now_iso(),
        time_range=time_range or "30d",
    )


def _org_job_ids(supabase, org_id: str, job_id: Optional[str]) -> List[str]:
    if job_id:
        return [job_id]
    jobs = supabase.table("jobs")\
        .select("id")\
        .eq("organization_id", org_id)\
        .is_("deleted_at", "null")\
        .order("created_at", desc=True)\
        .limit(ORG_JOB_SCAN_LIMIT)\
        .execute().data or []
    return [j["id"] for j in jobs]


def to_control_row(item: Dict[str, Any], org_id: str) -> Dict[str, Any]:
    factor = item.get("risk_factors") or {}
    return {
        "control_id": item.get("id"),
        "work_record_id": item.get("job_id"),
        "org_id": org_id,
        "title": item.get("title") or "Untitled control",
        "status_at_export": "completed" if (item.get("done") or item.get("is_completed")) else "pending",
        "severity": item.get("severity") or factor.get("severity") or "info",
        "owner_email": item.get("owner_email") or "",
        "due_date": item.get("due_date"),
        "updated_at": item.get("completed_at") or item.get("updated_at") or item.get("created_at"),
    }


def to_attestation_row(signoff: Dict[str, Any], org_id: str) -> Dict[str, Any]:
    signoff_type = signoff.get("signoff_type") or "general"
    return {
        "attestation_id": signoff.get("id"),
        "work_record_id": signoff.get("job_id"),
        "org_id": org_id,
        "title": f"{signoff_type.replace('_', ' ').title()} sign-off",
        "description": signoff.get("comments") or "",
        "status_at_export": signoff.get("status") or ("signed" if signoff.get("signed_at") else "pending"),
        "attested_by_user_id": signoff.get("signer_id"),
        "attested_by_email": signoff.get("signer_email") or signoff.get("signer_name") or "",
        "attested_at": signoff.get("signed_at"),
        "created_at": signoff.get("created_at"),
    }


def fetch_controls(supabase, org_id: str, job_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Mitigation items for the org (or one job) as control rows."""
    job_ids = _org_job_ids(supabase, org_id, job_id)
    if not job_ids:
        return []
    items = supabase.table("mitigation_items")\
        .select("*, risk_factors(severity)")\
        .in_("job_id", job_ids)\
        .execute().data or []
    return [to_control_row(item, org_id) for item in items]


def fetch_attestations(supabase, org_id: str, job_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Job sign-offs for the org (or one job) as attestation rows."""
    query = supabase.table("job_signoffs").select("*").eq("organization_id", org_id)
    if job_id:
        query = query.eq("job_id", job_id)
    signoffs = query.order("created_at", desc=True).execute().data or []
    return [to_attestation_row(s, org_id) for s in signoffs]


# =============================================================================
# PDF GENERATION
# =============================================================================

def generate_ledger_export_pdf(
    *,
    events: List[Dict[str, Any]],
    meta: PackMeta,
    filters: Optional[Dict[str, Any]] = None,
    total: Optional[int] = None,
    integrity: str = "not_verified",
) -> bytes:
    """
    Compliance ledger export. Shows at most LEDGER_EXPORT_MAX_ROWS events
    (newest first) and an evidence reference listing work record ids.
    """
    displayed = events[:LEDGER_EXPORT_MAX_ROWS]
    hash_label = {"verified": "Yes", "broken": "Broken"}.get(integrity, "Not verified")

    story: List[Any] = header_block("Compliance Ledger Export", meta)
    story.append(kpi_row([
        ("Total Events", total if total is not None else len(events)),
        ("Displayed", len(displayed)),
        ("Active Filters", len(active_filters(filters))),
        ("Hash Verified", hash_label),
    ]))
    story.append(Spacer(1, 0.2 * inch))

    if not displayed:
        story.extend(empty_state(
            "No Events Found",
            "No ledger events were found for this export with the applied filters.",
            filters,
            "Try adjusting the time range or filters to see more events.",
        ))
        return render_pdf(story, meta, "Compliance Ledger Export")

    story.append(section_title("Event Data"))
    rows = [
        [
            format_datetime(e.get("created_at")),
            e.get("event_name") or "unknown",
            e.get("category") or "operations",
            e.get("outcome") or "allowed",
            e.get("severity") or "info",
            e.get("actor_name") or "System",
            e.get("actor_role") or "",
            e.get("job_title") or e.get("target_type") or "",
        ]
        for e in displayed
    ]
    story.append(data_table(
        [("Timestamp", 1.2), ("Event", 1.5), ("Category", 1.0), ("Outcome", 0.8),
         ("Severity", 0.8), ("Actor", 1.2), ("Role", 0.8), ("Target", 1.2)],
        rows,
    ))

    story.append(section_title("Evidence Reference"))
    story.append(para(
        "Note: Evidence files are auth-gated. Use the Work Record IDs below to retrieve "
        "evidence via the Compliance Ledger interface.",
        context="Evidence Reference note",
    ))
    seen: Dict[str, str] = {}
    for e in events:
        job_id = e.get("job_id")
        if job_id and job_id not in seen:
            seen[job_id] = e.get("job_title") or ""
    for job_id, title in list(seen.items())[:EVIDENCE_REFERENCE_LIMIT]:
        suffix = f" ({title})" if title else ""
        story.append(para(f"- Work Record ID: {job_id}{suffix}", context=f"Work Record ID {job_id}"))

    return render_pdf(story, meta, "Compliance Ledger Export")


def generate_controls_pdf(
    controls: List[Dict[str, Any]],
    meta: PackMeta,
    filters: Optional[Dict[str, Any]] = None,
) -> bytes:
    kpis = calculate_control_kpis(controls)
    story: List[Any] = header_block("Controls Report", meta)
    story.append(kpi_row([
        ("Total", kpis["total"]),
        ("Completed", kpis["completed"]),
        ("Pending", kpis["pending"]),
        ("Overdue", kpis["overdue"]),
        ("High Severity", kpis["high_severity"]),
    ]))
    story.append(Spacer(1, 0.2 * inch))

    if not controls:
        story.extend(empty_state(
            "No Controls Found",
            "No controls were recorded for the selected work records and time range.",
            filters,
            "Controls are created from risk factors when a job is scored.",
        ))
        return render_pdf(story, meta, "Controls Report")

    story.append(section_title("Controls"))
    rows = [
        [
            truncate_text(c.get("control_id") or "", 16),
            c.get("title") or "",
            normalize_control_status(c.get("status_at_export")),
            c.get("severity") or "info",
            c.get("owner_email") or "Unassigned",
            format_date(c.get("due_date")),
            format_date(c.get("updated_at")),
        ]
        for c in sort_controls(controls)
    ]
    story.append(data_table(
        [("Control ID", 1.1), ("Title", 2.2), ("Status", 0.8), ("Severity", 0.8),
         ("Owner", 1.4), ("Due Date", 0.9), ("Last Updated", 0.9)],
        rows,
    ))
    return render_pdf(story, meta, "Controls Report")


def generate_attestations_pdf(
    attestations: List[Dict[str, Any]],
    meta: PackMeta,
    filters: Optional[Dict[str, Any]] = None,
) -> bytes:
    kpis = calculate_attestation_kpis(attestations)
    story: List[Any] = header_block("Attestations Report", meta)
    story.append(kpi_row([
        ("Total", kpis["total"]),
        ("Completed", kpis["completed"]),
        ("Pending", kpis["pending"]),
    ]))
    story.append(Spacer(1, 0.2 * inch))

    if not attestations:
        story.extend(empty_state(
            "No Attestations Found",
            "No sign-offs were recorded for the selected work records and time range.",
            filters,
            "Sign-offs are collected from the job detail page.",
        ))
        return render_pdf(story, meta, "Attestations Report")

    story.append(section_title("Attestations"))
    rows = [
        [
            truncate_text(a.get("attestation_id") or "", 16),
            a.get("title") or "",
            normalize_attestation_status(a.get("status_at_export")),
            a.get("attested_by_email") or "Unknown",
            format_datetime(a.get("attested_at")),
        ]
        for a in sort_attestations(attestations)
    ]
    story.append(data_table(
        [("Attestation ID", 1.2), ("Title", 2.4), ("Status", 0.9), ("Attested By", 1.6), ("Attested At", 1.4)],
        rows,
    ))
    return render_pdf(story, meta, "Attestations Report")


def generate_evidence_index_pdf(manifest: Dict[str, Any], meta: PackMeta) -> bytes:
    """
    Index of the payload files in a pack with sizes and hashes.
    The index itself is listed but never hashed.
    """
    files = manifest.get("files") or []
    counts = manifest.get("counts") or {}

    story: List[Any] = header_block("Evidence Index", meta)
    story.append(kpi_row([
        ("Ledger Events", counts.get("ledger_events", 0)),
        ("Controls", counts.get("controls", 0)),
        ("Attestations", counts.get("attestations", 0)),
        ("Total PDFs", len(files) + 1),
    ]))
    story.append(Spacer(1, 0.2 * inch))

    story.append(section_title("Contents"))
    story.append(para(
        f"This pack contains {len(files)} payload file(s) plus this index. "
        "Each payload file is listed with its SHA-256 hash for independent verification."
    ))

    story.append(section_title("Payload Files"))
    story.append(data_table(
        [("File", 2.0), ("Bytes", 1.0), ("SHA-256", 3.0)],
        [[f.get("name"), f"{int(f.get('bytes') or 0):,}", format_hash_short(f.get("sha256"))] for f in files],
    ))

    story.append(section_title("Index"))
    story.append(para(f"{EVIDENCE_INDEX_NAME} (this document; not self-hashed)"))

    story.append(PageBreak())
    story.append(section_title("Full Hashes"))
    for f in files:
        story.append(para(f.get("name"), "meta"))
        story.append(para(f.get("sha256") or "N/A", "mono"))

    story.append(section_title("Applied Filters"))
    story.append(para(format_filter_context(manifest.get("filters"))))

    return render_pdf(story, meta, "Evidence Index")


# =============================================================================
# MANIFEST
# =============================================================================

def build_manifest(
    *,
    organization_id: str,
    files: Dict[str, bytes],
    counts: Optional[Dict[str, int]] = None,
    filters: Optional[Dict[str, Any]] = None,
    work_record_id: Optional[str] = None,
    pack_id: Optional[str] = None,
    generated_at: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "version": MANIFEST_VERSION,
        "pack_id": pack_id or str(uuid4()),
        "generated_at": generated_at or _now_iso(),
        "organization_id": organization_id,
        "work_record_id": work_record_id,
        "filters": active_filters(filters),
        "counts": counts or {},
        "files": [
            {"name": name, "type": _file_type(name), "bytes": len(data), "sha256": _sha256_bytes(data)}
            for name, data in files.items()
        ],
    }


def manifest_hash(manifest: Dict[str, Any]) -> str:
    """SHA-256 of the sorted-key JSON serialization."""
    return _sha256_bytes(json.dumps(manifest, sort_keys=True).encode("utf-8"))


def manifest_bytes(manifest: Dict[str, Any]) -> bytes:
    return json.dumps(manifest, indent=2, sort_keys=True).encode("utf-8")


# =============================================================================
# PACK BUILDERS
# =============================================================================

def build_ledger_export(
    supabase,
    org_id: str,
    *,
    meta: PackMeta,
    filters: Optional[Dict[str, Any]] = None,
    max_rows: int = LEDGER_EXPORT_MAX_ROWS,
) -> Tuple[bytes, Dict[str, Any]]:
    """Single ledger export PDF and its manifest."""
    events, total = fetch_ledger_events(supabase, org_id, filters, limit=max_rows)
    pdf = generate_ledger_export_pdf(
        events=events,
        meta=meta,
        filters=filters,
        total=total,
        integrity=ledger_status(events),
    )
    manifest = build_manifest(
        organization_id=org_id,
        files={"ledger-export.pdf": pdf},
        counts={"ledger_events": len(events)},
        filters=filters,
        work_record_id=(filters or {}).get("job_id"),
        pack_id=meta.pack_id,
        generated_at=meta.generated_at,
    )
    return pdf, manifest


def build_proof_pack(
    supabase,
    org_id: str,
    *,
    meta: PackMeta,
    job_id: Optional[str] = None,
    filters: Optional[Dict[str, Any]] = None,
) -> Tuple[bytes, Dict[str, Any]]:
    """
    Create a ZIP with the ledger export, controls, attestations and evidence
    index PDFs plus manifest.json. Returns (zip bytes, manifest).
    """
    filters = dict(filters or {})
    if job_id:
        filters["job_id"] = job_id

    events, total = fetch_ledger_events(supabase, org_id, filters)
    controls = fetch_controls(supabase, org_id, job_id)
    attestations = fetch_attestations(supabase, org_id, job_id)
    counts = {"ledger_events": len(events), "controls": len(controls), "attestations": len(attestations)}

    payload = {
        "ledger-export.pdf": generate_ledger_export_pdf(
            events=events, meta=meta, filters=filters, total=total, integrity=ledger_status(events)
        ),
        "controls.pdf": generate_controls_pdf(controls, meta, filters),
        "attestations.pdf": generate_attestations_pdf(attestations, meta, filters),
    }
    payload_manifest = build_manifest(
        organization_id=org_id,
        files=payload,
        counts=counts,
        filters=filters,
        work_record_id=job_id,
        pack_id=meta.pack_id,
        generated_at=meta.generated_at,
    )
    payload[EVIDENCE_INDEX_NAME] = generate_evidence_index_pdf(payload_manifest, meta)

    manifest = build_manifest(
        organization_id=org_id,
        files=payload,
        counts=counts,
        filters=filters,
        work_record_id=job_id,
        pack_id=meta.pack_id,
        generated_at=meta.generated_at,
    )

    zip_buf = io.BytesIO()
    with zipfile.ZipFile(zip_buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in payload.items():
            zf.writestr(name, data)
        zf.writestr("manifest.json", manifest_bytes(manifest))

    logger.info(f"Proof pack {meta.pack_id} built for org {org_id}: {counts}")
    return zip_buf.getvalue(), manifest


def build_job_proof_pack_pdf(
    supabase,
    org_id: str,
    job: Dict[str, Any],
    meta: PackMeta,
) -> Tuple[bytes, Dict[str, Any]]:
    """
    One combined PDF for a single job: summary, controls, attestations,
    documents and recent ledger activity.
    """
    job_id = job["id"]
    controls = fetch_controls(supabase, org_id, job_id)
    attestations = fetch_attestations(supabase, org_id, job_id)
    events, _ = fetch_ledger_events(supabase, org_id, {"job_id": job_id, "time_range": "all"}, limit=100)
    documents = supabase.table("documents")\
        .select("id, name, type, file_size, created_at")\
        .eq("job_id", job_id)\
        .order("created_at", desc=True)\
        .execute().data or []

    control_kpis = calculate_control_kpis(controls)
    attestation_kpis = calculate_attestation_kpis(attestations)

    story: List[Any] = header_block(f"Job Proof Pack: {job.get('client_name') or job_id}", meta)
    story.append(kpi_row([
        ("Risk Score", job.get("risk_score") if job.get("risk_score") is not None else "N/A"),
        ("Risk Level", (job.get("risk_level") or "n/a").upper()),
        ("Controls Done", f"{control_kpis['completed']}/{control_kpis['total']}"),
        ("Sign-offs", f"{attestation_kpis['completed']}/{attestation_kpis['total']}"),
        ("Documents", len(documents)),
    ]))

    story.append(section_title("Job Summary"))
    story.append(data_table(
        [("Field", 1.0), ("Value", 3.0)],
        [
            ["Client", job.get("client_name") or ""],
            ["Job Type", job.get("job_type") or ""],
            ["Location", job.get("location") or ""],
            ["Status", job.get("status") or ""],
            ["Start Date", format_date(job.get("start_date"))],
            ["Work Record ID", job_id],
        ],
    ))

    story.append(section_title("Controls"))
    if controls:
        story.append(data_table(
            [("Title", 3.0), ("Status", 0.9), ("Severity", 0.9), ("Due Date", 1.0)],
            [[c["title"], normalize_control_status(c["status_at_export"]), c["severity"], format_date(c["due_date"])]
             for c in sort_controls(controls)],
        ))
    else:
        story.append(para("No controls recorded for this job."))

    story.append(section_title("Attestations"))
    if attestations:
        story.append(data_table(
            [("Title", 2.4), ("Status", 0.9), ("Attested By", 1.6), ("Attested At", 1.4)],
            [[a["title"], normalize_attestation_status(a["status_at_export"]), a["attested_by_email"] or "Unknown",
              format_datetime(a["attested_at"])] for a in sort_attestations(attestations)],
        ))
    else:
        story.append(para("No sign-offs recorded for this job."))

    story.append(section_title("Documents"))
    if documents:
        story.append(data_table(
            [("Name", 2.6), ("Type", 1.0), ("Size", 0.9), ("Uploaded", 1.2)],
            [[d.get("name") or "", d.get("type") or "", f"{int(d.get('file_size') or 0):,}", format_date(d.get("created_at"))]
             for d in documents],
        ))
    else:
        story.append(para("No documents uploaded for this job."))

    story.append(section_title("Recent Activity"))
    if events:
        story.append(data_table(
            [("Timestamp", 1.3), ("Event", 1.8), ("Actor", 1.3), ("Outcome", 0.8)],
            [[format_datetime(e.get("created_at")), e.get("event_name") or "", e.get("actor_name") or "System",
              e.get("outcome") or "allowed"] for e in events],
        ))
    else:
        story.append(para("No ledger activity recorded for this job."))

    pdf = render_pdf(story, meta, "Job Proof Pack")
    info = {
        "filename": f"proof-pack-{_safe_filename(job.get('client_name') or job_id)}-{job_id[:8]}.pdf",
        "sha256": _sha256_bytes(pdf),
        "bytes": len(pdf),
        "counts": {
            "controls": len(controls),
            "attestations": len(attestations),
            "documents": len(documents),
            "ledger_events": len(events),
        },
    }
    return pdf, info


# =============================================================================
# STORAGE
# =============================================================================

def ensure_bucket_exists(supabase, bucket: str = EXPORT_BUCKET) -> bool:
    try:
        supabase.storage.get_bucket(bucket)
        return True
    except Exception:
        logger.info(f"Storage bucket {bucket} not found, creating it")
    try:
        supabase.storage.create_bucket(bucket, options={"public": False})
        return True
    except Exception as e:
        logger.warning(f"Failed to create bucket {bucket}: {e}")
        return False


def upload_artifact(
    supabase,
    path: str,
    data: bytes,
    content_type: str,
    bucket: str = EXPORT_BUCKET,
) -> str:
    """Upload bytes to storage, overwriting any previous object. Returns the path."""
    supabase.storage.from_(bucket).upload(
        path,
        data,
        {"content-type": content_type, "upsert": "true"},
    )
    return path


def create_signed_download_url(supabase, bucket: str, path: str, expires_seconds: int = 3600) -> Optional[str]:
    try:
        res = supabase.storage.from_(bucket).create_signed_url(path, expires_seconds)
        # supabase-py returns dict with signedURL
        if isinstance(res, dict):
            return res.get("signedURL") or res.get("signedUrl")
        return getattr(res, "signedURL", None) or getattr(res, "signedUrl", None)
    except Exception as e:
        logger.warning(f"signed url failed: {e}")
        return None
