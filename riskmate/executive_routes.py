"""
Executive Routes

Endpoints for:
- GET /api/executive/risk-posture - organization risk posture for executives

The posture is cached per organization and time range (see executive_cache);
material audit events invalidate it.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from riskmate.executive_cache import get_cached, set_cached
from riskmate.ledger import fetch_chain_segment, verify_chain
from riskmate.org_settings_loader import get_default
from riskmate.rbac import AuthContext, Role, require_any_role
from riskmate.router_utils import create_error_response, require_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/executive", tags=["executive"])

POSTURE_TIME_RANGES = {"7d": 7, "30d": 30, "90d": 90, "all": None}
MATERIAL_SEVERITIES = ["material", "critical"]
INTEGRITY_SAMPLE_SIZE = 1000
BASIS_EVENT_LIMIT = 10


# =============================================================================
# POSTURE COMPUTATION
# =============================================================================

def summarize_jobs(jobs: List[Dict[str, Any]], high_risk_threshold: int) -> Dict[str, int]:
    """Job-derived counts; a score strictly above the threshold is high risk."""
    def high(j):
        return j.get("risk_score") is not None and j["risk_score"] > high_risk_threshold

    return {
        "high_risk_jobs": sum(1 for j in jobs if high(j)),
        "flagged_jobs": sum(1 for j in jobs if j.get("review_flag") is True),
        "open_incidents": sum(
            1 for j in jobs
            if j.get("status") == "incident" or (j.get("review_flag") is True and high(j))
        ),
        "incident_jobs": sum(1 for j in jobs if j.get("status") == "incident"),
    }


def exposure_level(violations: int, high_risk_jobs: int, open_incidents: int) -> str:
    if violations > 0:
        return "high"
    if high_risk_jobs > 0 or open_incidents > 0:
        return "moderate"
    return "low"


def confidence_statement(violations: int, pending_signoffs: int, high_risk_jobs: int, flagged_jobs: int) -> str:
    plural = "s" if high_risk_jobs > 1 else ""
    if violations > 0:
        return "Blocked role violations detected in this period."
    if pending_signoffs > 3:
        return f"{pending_signoffs} pending sign-offs affecting audit defensibility."
    if high_risk_jobs > 0 and flagged_jobs == 0:
        return f"{high_risk_jobs} high-risk job{plural} not yet flagged for review."
    if high_risk_jobs > 0:
        return f"No unresolved governance violations. {high_risk_jobs} high-risk job{plural} under active review."
    return "No unresolved governance violations. All jobs within acceptable risk thresholds."


def top_violation_driver(violations: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Most frequent blocked action, grouped on metadata.attempted_action / reason / endpoint."""
    if not violations:
        return None
    reasons = Counter(
        (v.get("metadata") or {}).get("attempted_action")
        or (v.get("metadata") or {}).get("reason")
        or (v.get("metadata") or {}).get("endpoint")
        or "unknown"
        for v in violations
    )
    reason, count = reasons.most_common(1)[0]
    label = reason.replace(".", " ").replace("_", " ").strip().title()
    return {"key": f"VIOLATION.{reason}", "label": f"{label} blocked", "count": count}


def recommended_actions(violations: int, high_risk_jobs: int, pending_signoffs: int) -> List[Dict[str, Any]]:
    actions = []
    if violations > 0:
        actions.append({
            "priority": 1,
            "action": f"Review {violations} blocked violation{'s' if violations > 1 else ''}",
            "reason": "Role violations indicate unauthorized access attempts",
        })
    if high_risk_jobs > 0:
        actions.append({
            "priority": 2,
            "action": f"Add evidence to {high_risk_jobs} high-risk job{'s' if high_risk_jobs > 1 else ''}",
            "reason": "High-risk jobs require documented evidence for defensibility",
        })
    if pending_signoffs > 0:
        actions.append({
            "priority": 3,
            "action": f"Request {pending_signoffs} pending attestation{'s' if pending_signoffs > 1 else ''}",
            "reason": "Unsigned approvals weaken audit defensibility",
        })
    return sorted(actions, key=lambda a: a["priority"])[:3]


def _ledger_integrity(supabase, org_id: str) -> Dict[str, Any]:
    events = fetch_chain_segment(supabase, org_id, limit=INTEGRITY_SAMPLE_SIZE)
    if not events:
        return {"status": "not_verified", "verified_through_seq": None, "errors": []}
    verification = verify_chain(events)
    return {
        "status": "verified" if verification.ok else "error",
        "verified_through_seq": events[-1].get("ledger_seq") if verification.ok else verification.first_broken_seq,
        "errors": verification.errors[:5],
    }


def _count_events(supabase, org_id: str, start: Optional[str], end: Optional[str], *, event_name=None, like=None) -> int:
    query = supabase.table("audit_logs")\
        .select("id", count="exact")\
        .eq("organization_id", org_id)
    if event_name:
        query = query.eq("event_name", event_name)
    if like:
        query = query.like("event_name", like)
    if start:
        query = query.gte("created_at", start)
    if end:
        query = query.lt("created_at", end)
    result = query.execute()
    return result.count if getattr(result, "count", None) is not None else len(result.data or [])


def _period_counts(supabase, org_id: str, start: Optional[str], end: Optional[str], threshold: int) -> Dict[str, Any]:
    query = supabase.table("jobs")\
        .select("id, risk_score, risk_level, review_flag, status, created_at")\
        .eq("organization_id", org_id)\
        .is_("deleted_at", "null")
    if start:
        query = query.gte("created_at", start)
    if end:
        query = query.lt("created_at", end)
    jobs = query.execute().data or []

    signed = 0
    if jobs:
        signoffs = supabase.table("job_signoffs")\
            .select("job_id, status")\
            .in_("job_id", [j["id"] for j in jobs])\
            .execute().data or []
        signed = sum(1 for s in signoffs if s.get("status") == "signed")

    return {
        **summarize_jobs(jobs, threshold),
        "signed_signoffs": signed,
        "pending_signoffs": max(len(jobs) - signed, 0),
        "violations": _count_events(supabase, org_id, start, end, event_name="auth.role_violation"),
        "proof_packs": _count_events(supabase, org_id, start, end, like="proof_pack.%"),
    }


def compute_risk_posture(supabase, org_id: str, time_range: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    days = POSTURE_TIME_RANGES[time_range]
    threshold = get_default(supabase, org_id, "high_risk_threshold", 75)

    start = (now - timedelta(days=days)).isoformat() if days else None
    current = _period_counts(supabase, org_id, start, None, threshold)
    previous = None
    if days:
        previous = _period_counts(
            supabase, org_id, (now - timedelta(days=2 * days)).isoformat(), start, threshold
        )

    violation_query = supabase.table("audit_logs")\
        .select("id, metadata")\
        .eq("organization_id", org_id)\
        .eq("event_name", "auth.role_violation")
    if start:
        violation_query = violation_query.gte("created_at", start)
    violation_rows = violation_query.execute().data or []

    material_query = supabase.table("audit_logs")\
        .select("id, created_at")\
        .eq("organization_id", org_id)\
        .in_("severity", MATERIAL_SEVERITIES)
    if start:
        material_query = material_query.gte("created_at", start)
    material = material_query.order("created_at", desc=True).limit(BASIS_EVENT_LIMIT).execute().data or []

    integrity = _ledger_integrity(supabase, org_id)

    keys = ("high_risk_jobs", "open_incidents", "violations", "flagged_jobs", "pending_signoffs", "signed_signoffs", "proof_packs")
    deltas = {k: current[k] - (previous[k] if previous else 0) for k in keys}

    drivers: Dict[str, List[Dict[str, Any]]] = {
        "high_risk_jobs": [], "open_incidents": [], "violations": [], "flagged": [],
        "pending": [], "signed": [], "proof_packs": [],
    }
    if current["high_risk_jobs"]:
        drivers["high_risk_jobs"].append({
            "key": "MISSING_EVIDENCE.HIGH_RISK",
            "label": "Missing evidence on high-risk records",
            "count": current["high_risk_jobs"],
        })
    if current["incident_jobs"]:
        drivers["open_incidents"].append({
            "key": "INCIDENT.OPEN", "label": "Open incidents requiring resolution", "count": current["incident_jobs"],
        })
    violation_driver = top_violation_driver(violation_rows)
    if violation_driver:
        drivers["violations"].append(violation_driver)
    if current["flagged_jobs"]:
        drivers["flagged"].append({
            "key": "FLAGGED.REVIEW_REQUIRED", "label": "Jobs flagged for safety review", "count": current["flagged_jobs"],
        })
    if current["pending_signoffs"]:
        drivers["pending"].append({
            "key": "PENDING.ATTESTATIONS", "label": "Attestations outstanding", "count": current["pending_signoffs"],
        })
    if current["signed_signoffs"]:
        drivers["signed"].append({
            "key": "SIGNED.COMPLETED", "label": "Completed attestations", "count": current["signed_signoffs"],
        })
    drivers["proof_packs"].append(
        {"key": "PROOF_PACKS.GENERATED", "label": "Proof packs generated", "count": current["proof_packs"]}
        if current["proof_packs"] else
        {"key": "PROOF_PACKS.NONE", "label": "No proof packs generated", "count": 0}
    )

    return {
        "exposure_level": exposure_level(current["violations"], current["high_risk_jobs"], current["open_incidents"]),
        "unresolved_violations": current["violations"],
        "open_reviews": current["flagged_jobs"],
        "high_risk_jobs": current["high_risk_jobs"],
        "open_incidents": current["open_incidents"],
        "pending_signoffs": current["pending_signoffs"],
        "signed_signoffs": current["signed_signoffs"],
        "proof_packs_generated": current["proof_packs"],
        "last_material_event_at": material[0]["created_at"] if material else None,
        "confidence_statement": confidence_statement(
            current["violations"], current["pending_signoffs"], current["high_risk_jobs"], current["flagged_jobs"]
        ),
        "ledger_integrity": integrity["status"],
        "ledger_integrity_last_verified_at": now.isoformat() if integrity["status"] != "not_verified" else None,
        "ledger_integrity_verified_through_seq": integrity["verified_through_seq"],
        "ledger_integrity_errors": integrity["errors"],
        "drivers": drivers,
        "deltas": deltas,
        "recommended_actions": recommended_actions(
            current["violations"], current["high_risk_jobs"], current["pending_signoffs"]
        ),
        "basis_event_ids": [e["id"] for e in material],
    }


# =============================================================================
# ENDPOINT
# =============================================================================

@router.get("/risk-posture")
async def get_risk_posture(
    time_range: str = Query("30d"),
    auth: AuthContext = Depends(require_any_role(Role.OWNER, Role.ADMIN, Role.EXECUTIVE)),
):
    if time_range not in POSTURE_TIME_RANGES:
        time_range = "30d"

    cached = get_cached(auth.organization_id, time_range)
    if cached:
        return {"data": {**cached["posture"], "_provenance": {**cached["provenance"], "cached": True}}}

    supabase = require_db()
    try:
        posture = compute_risk_posture(supabase, auth.organization_id, time_range)
    except Exception as e:
        logger.exception(f"Risk posture computation failed for org {auth.organization_id}: {e}")
        return create_error_response("Failed to compute risk posture", "EXECUTIVE_POSTURE_FAILED", 500)

    provenance = {
        "generated_at": datetime.utcnow().isoformat(),
        "basis_event_count": len(posture["basis_event_ids"]),
        "time_range": time_range,
    }
    set_cached(auth.organization_id, time_range, {"posture": posture, "provenance": provenance})

    return {"data": {**posture, "_provenance": {**provenance, "cached": False}}}
