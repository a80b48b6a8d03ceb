"""
Audit Routes

Endpoints for:
- GET /api/audit/events - filtered, cursor-paginated ledger feed with stats
- POST /api/audit/export - CSV, JSON or PDF export of the same feed
"""

import csv
import io
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response

from riskmate.audit import record_request_event
from riskmate.event_catalog import get_event_mapping
from riskmate.ledger import ledger_status
from riskmate.org_settings_loader import get_default, get_feature_flag
from riskmate.pdf_normalize import active_filters
from riskmate.proof_pack_service import build_pack_meta, generate_ledger_export_pdf, resolve_time_range
from riskmate.rbac import AuthContext, get_auth_context, rate_limited
from riskmate.router_utils import create_error_response, require_db
from riskmate.schemas import AuditExportRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/audit", tags=["audit"])

FILTER_KEYS = ("category", "site_id", "job_id", "actor_id", "severity", "outcome")
EXPORT_MAX_EVENTS = 1000

# Saved view presets: (equality filters, or-expression)
VIEW_PRESETS = {
    "governance-enforcement": ({"category": "governance", "outcome": "blocked"}, None),
    "incident-review": ({}, "event_name.ilike.%flag%,event_name.ilike.%incident%"),
    "access-review": ({"category": "access"}, None),
    "insurance-ready": ({}, "event_name.ilike.%proof_pack%,event_name.ilike.%signoff%,event_name.ilike.%job.completed%"),
}


# =============================================================================
# QUERY HELPERS
# =============================================================================

def query_events(
    supabase,
    org_id: str,
    filters: Dict[str, Any],
    view: Optional[str] = None,
    cursor: Optional[str] = None,
    limit: int = 50,
):
    """Run the filtered feed query. Returns (events, total count)."""
    query = supabase.table("audit_logs")\
        .select("*", count="exact")\
        .eq("organization_id", org_id)

    start, end = resolve_time_range(filters.get("time_range"), filters.get("start_date"), filters.get("end_date"))
    if start:
        query = query.gte("created_at", start)
    if end:
        query = query.lte("created_at", end)

    for key in FILTER_KEYS:
        if filters.get(key):
            query = query.eq(key, filters[key])

    if view in VIEW_PRESETS:
        equals, or_expr = VIEW_PRESETS[view]
        for key, value in equals.items():
            query = query.eq(key, value)
        if or_expr:
            query = query.or_(or_expr)

    if cursor:
        query = query.lt("created_at", cursor)

    result = query.order("created_at", desc=True).limit(limit).execute()
    events = result.data or []
    total = result.count if getattr(result, "count", None) is not None else len(events)
    return events, total


def describe_event(event: Dict[str, Any]) -> Dict[str, Any]:
    mapping = get_event_mapping(event.get("event_name") or "")
    return {**event, "event_title": mapping["title"], "event_description": mapping["description"]}


def enrich_events(supabase, events: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Catalog titles, plus job_title for rows written before denormalization. Best effort."""
    events = [describe_event(e) for e in events]
    job_ids = sorted({e["job_id"] for e in events if e.get("job_id") and not e.get("job_title")})
    if not job_ids:
        return events
    try:
        jobs = supabase.table("jobs").select("id, client_name, risk_score").in_("id", job_ids).execute().data or []
    except Exception as e:
        logger.warning(f"Audit event enrichment failed: {e}")
        return events

    by_id = {j["id"]: j for j in jobs}
    enriched = []
    for event in events:
        job = by_id.get(event.get("job_id"))
        if job and not event.get("job_title"):
            event = {**event, "job_title": job.get("client_name"), "job_risk_score": job.get("risk_score")}
        enriched.append(event)
    return enriched


def compute_stats(events: List[Dict[str, Any]], total: int) -> Dict[str, int]:
    return {
        "total": total,
        "violations": sum(1 for e in events if e.get("category") == "governance" and e.get("outcome") == "blocked"),
        "jobs_touched": len({e["job_id"] for e in events if e.get("job_id")}),
        "proof_packs": sum(1 for e in events if "proof_pack" in (e.get("event_name") or "")),
        "signoffs": sum(1 for e in events if "signoff" in (e.get("event_name") or "")),
        "access_changes": sum(1 for e in events if e.get("category") == "access"),
    }


# =============================================================================
# EVENTS FEED
# =============================================================================

@router.get("/events")
async def get_audit_events(
    category: Optional[str] = Query(None),
    site_id: Optional[str] = Query(None),
    job_id: Optional[str] = Query(None),
    actor_id: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    outcome: Optional[str] = Query(None),
    time_range: str = Query("30d"),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    view: Optional[str] = Query(None),
    cursor: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=EXPORT_MAX_EVENTS),
    auth: AuthContext = Depends(get_auth_context),
):
    supabase = require_db()
    filters = {
        "category": category, "site_id": site_id, "job_id": job_id, "actor_id": actor_id,
        "severity": severity, "outcome": outcome,
        "time_range": time_range, "start_date": start_date, "end_date": end_date,
    }

    events, total = query_events(supabase, auth.organization_id, filters, view, cursor, limit)
    events = enrich_events(supabase, events)

    return {
        "data": {
            "events": events,
            "stats": compute_stats(events, total),
            "pagination": {
                "next_cursor": events[-1].get("created_at") if events else None,
                "limit": limit,
                "has_more": len(events) == limit,
            },
        }
    }


# =============================================================================
# EXPORT
# =============================================================================

def _csv_export(events: List[Dict[str, Any]], header: Dict[str, Any], integrity: str) -> str:
    out = io.StringIO()
    out.write("Riskmate Compliance Ledger Export\n")
    out.write(f"Export ID: {header['export_id']}\n")
    out.write(f"Generated: {header['generated_at']}\n")
    out.write(f"Generated By: {header['generated_by']} ({header['generated_by_role']})\n")
    out.write(f"Organization: {header['organization']}\n")
    out.write(f"View Preset: {header['view_preset']}\n")
    out.write(f"Time Range: {header['time_range']}\n")
    out.write(f"Filters: {json.dumps(header['filters'], sort_keys=True)}\n")
    out.write(f"Event Count: {header['event_count']}\n")
    out.write(f"Hash Chain: {integrity}\n")
    out.write("\n--- Event Data ---\n")

    writer = csv.writer(out, quoting=csv.QUOTE_ALL)
    writer.writerow(["Timestamp", "Event", "Category", "Outcome", "Severity", "Actor", "Role", "Target", "Site", "Summary"])
    for e in events:
        writer.writerow([
            e.get("created_at") or "",
            e.get("event_name") or "",
            e.get("category") or "operations",
            e.get("outcome") or "allowed",
            e.get("severity") or "info",
            e.get("actor_name") or "System",
            e.get("actor_role") or "",
            e.get("job_title") or e.get("target_type") or "",
            e.get("site_name") or "",
            e.get("summary") or "",
        ])
    return out.getvalue()


@router.post("/export")
async def export_audit_events(
    body: AuditExportRequest,
    request: Request,
    auth: AuthContext = Depends(rate_limited("export")),
):
    """Export the filtered feed. Read-only roles may export."""
    supabase = require_db()
    if body.format == "pdf" and not get_feature_flag(supabase, auth.organization_id, "enable_pdf_ledger_export", True):
        return create_error_response("PDF ledger exports are disabled for this organization", "FEATURE_DISABLED", 403)

    filters = {k: getattr(body, k) for k in FILTER_KEYS}
    filters.update({"time_range": body.time_range, "start_date": body.start_date, "end_date": body.end_date})

    max_rows = get_default(supabase, auth.organization_id, "ledger_export_max_rows", EXPORT_MAX_EVENTS)
    events, _ = query_events(supabase, auth.organization_id, filters, body.view, limit=max_rows)
    events = enrich_events(supabase, events)
    integrity = ledger_status(events)

    export_id = f"EXP-{datetime.utcnow().strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:6].upper()}"
    meta = build_pack_meta(supabase, auth.organization_id, auth.user_id, pack_id=export_id, time_range=body.time_range)
    header = {
        "export_id": export_id,
        "generated_at": meta.generated_at,
        "generated_by": meta.generated_by,
        "generated_by_role": meta.generated_by_role,
        "organization": meta.organization_name,
        "view_preset": body.view or "custom",
        "time_range": body.time_range,
        "filters": active_filters({k: filters[k] for k in FILTER_KEYS}),
        "event_count": len(events),
    }

    if body.format == "csv":
        content = _csv_export(events, header, integrity).encode("utf-8")
        media_type = "text/csv"
    elif body.format == "json":
        content = json.dumps({
            "export_metadata": header,
            "events": events,
            "integrity": {
                "ledger_status": integrity,
                "hash_chain_verified": integrity == "verified",
                "note": "Events carry ledger_seq, hash and prev_hash. Verify continuity with GET /api/ledger/verify.",
            },
        }, default=str, indent=2).encode("utf-8")
        media_type = "application/json"
    else:
        content = generate_ledger_export_pdf(
            events=events,
            meta=meta,
            filters=header["filters"],
            total=len(events),
            integrity=integrity,
        )
        media_type = "application/pdf"

    record_request_event(
        supabase,
        request,
        organization_id=auth.organization_id,
        actor_id=auth.user_id,
        event_name="audit.export",
        target_type="system",
        metadata={
            "format": body.format,
            "export_id": export_id,
            "event_count": len(events),
            "view": body.view,
            "filters": header["filters"],
        },
    )

    logger.info(f"Audit export {export_id}: {len(events)} events as {body.format} for org {auth.organization_id}")
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="audit-export-{export_id}.{body.format}"'},
    )
