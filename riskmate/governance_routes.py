"""
Governance Routes

Endpoints for:
- POST /api/review-queue/assign - assign jobs or ledger events for review (safety_lead+)
- POST /api/review-queue/resolve - resolve or waive review items (safety_lead+)
- POST /api/incidents/close - close an incident work record
- POST /api/incidents/corrective-action - open a corrective action on a work record
- POST /api/access/revoke - revoke or downgrade a member's access (admin+)
- POST /api/access/flag-suspicious - flag an access event or user for investigation (safety_lead+)

Ledger rows are never edited here. Acting on an existing event records a new
event whose subject carries the related_event_id.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request

from riskmate.audit import AuditResult, record_request_event
from riskmate.rbac import (
    ALLOWED_ROLES,
    AuthContext,
    Role,
    can_assign_role,
    require_write_access,
    require_write_role,
)
from riskmate.router_utils import create_error_response, require_db
from riskmate.schemas import (
    AccessRevokeRequest,
    CorrectiveActionRequest,
    IncidentCloseRequest,
    ReviewAssignRequest,
    ReviewResolveRequest,
    SuspiciousAccessFlag,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["governance"])


# =============================================================================
# HELPERS
# =============================================================================

def _find_job(supabase, org_id: str, job_id: str, columns: str = "id, client_name, metadata") -> Optional[Dict[str, Any]]:
    result = supabase.table("jobs")\
        .select(columns)\
        .eq("id", job_id)\
        .eq("organization_id", org_id)\
        .is_("deleted_at", "null")\
        .limit(1)\
        .execute()
    return result.data[0] if result.data else None


def _find_event(supabase, org_id: str, event_id: str) -> Optional[Dict[str, Any]]:
    result = supabase.table("audit_logs")\
        .select("id, event_name, job_id, actor_id")\
        .eq("id", event_id)\
        .eq("organization_id", org_id)\
        .limit(1)\
        .execute()
    return result.data[0] if result.data else None


def _find_member(supabase, org_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    result = supabase.table("users")\
        .select("id, email, full_name, role")\
        .eq("id", user_id)\
        .eq("organization_id", org_id)\
        .is_("archived_at", "null")\
        .limit(1)\
        .execute()
    return result.data[0] if result.data else None


def _resolve_review_item(supabase, org_id: str, item_id: str) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
    """A review item is a job or a ledger event. Returns (kind, row) or (None, None)."""
    job = _find_job(supabase, org_id, item_id)
    if job:
        return "job", job
    event = _find_event(supabase, org_id, item_id)
    if event:
        return "event", event
    return None, None


def _update_job(supabase, org_id: str, job_id: str, updates: Dict[str, Any]):
    updates["updated_at"] = datetime.utcnow().isoformat()
    supabase.table("jobs")\
        .update(updates)\
        .eq("id", job_id)\
        .eq("organization_id", org_id)\
        .execute()


def _item_event_fields(kind: str, item_id: str, row: Dict[str, Any]) -> Dict[str, Any]:
    """Target and linking metadata for an event about a review item."""
    if kind == "job":
        return {
            "target_type": "job",
            "target_id": item_id,
            "metadata": {"work_record_id": item_id, "target_name": row.get("client_name")},
        }
    return {
        "target_type": "event",
        "target_id": item_id,
        "metadata": {
            "work_record_id": row.get("job_id"),
            "related_event_id": item_id,
            "target_name": row.get("event_name"),
        },
    }


def _entry_ids(results: List[AuditResult]) -> List[str]:
    return [r.id for r in results if r.id]


# =============================================================================
# REVIEW QUEUE
# =============================================================================

@router.post("/review-queue/assign")
async def assign_review_items(
    body: ReviewAssignRequest,
    request: Request,
    auth: AuthContext = Depends(require_write_role(Role.SAFETY_LEAD)),
):
    if not body.item_ids:
        return create_error_response("item_ids must list at least one item", "VALIDATION_ERROR", 400)
    if not body.assignee_id or not body.due_at:
        return create_error_response("assignee_id and due_at are required", "VALIDATION_ERROR", 400)

    supabase = require_db()
    org_id = auth.organization_id
    assignee = _find_member(supabase, org_id, body.assignee_id)
    if not assignee:
        return create_error_response("Assignee not found in organization", "USER_NOT_FOUND", 404)

    assignment = {
        "assigned_to": body.assignee_id,
        "assigned_to_name": assignee.get("full_name") or assignee.get("email"),
        "assigned_by": auth.user_id,
        "assigned_at": datetime.utcnow().isoformat(),
        "priority": body.priority,
        "due_at": body.due_at,
        "note": body.note,
    }

    results = []
    for item_id in body.item_ids:
        kind, row = _resolve_review_item(supabase, org_id, item_id)
        if not kind:
            logger.warning(f"Review item {item_id} not found in org {org_id}, skipping")
            continue

        if kind == "job":
            _update_job(supabase, org_id, item_id, {
                "owner_id": body.assignee_id,
                "due_date": body.due_at,
                "review_flag": True,
                "metadata": {**(row.get("metadata") or {}), "assignment": assignment},
            })

        fields = _item_event_fields(kind, item_id, row)
        results.append(record_request_event(
            supabase,
            request,
            organization_id=org_id,
            actor_id=auth.user_id,
            event_name="review.assigned",
            target_type=fields["target_type"],
            target_id=item_id,
            metadata={
                **fields["metadata"],
                **assignment,
                "summary": f"Review assigned to {assignment['assigned_to_name']} ({body.priority})",
            },
        ))

    assigned = _entry_ids(results)
    logger.info(f"{len(results)} review item(s) assigned to {body.assignee_id} in org {org_id}")
    return {"data": {"assigned_count": len(results), "ledger_entry_ids": assigned}}


@router.post("/review-queue/resolve")
async def resolve_review_items(
    body: ReviewResolveRequest,
    request: Request,
    auth: AuthContext = Depends(require_write_role(Role.SAFETY_LEAD)),
):
    if not body.item_ids:
        return create_error_response("item_ids must list at least one item", "VALIDATION_ERROR", 400)
    if not body.resolution:
        return create_error_response("resolution is required", "VALIDATION_ERROR", 400)
    if body.waived and not body.waiver_reason:
        return create_error_response("waiver_reason is required when waived is true", "VALIDATION_ERROR", 400)

    supabase = require_db()
    org_id = auth.organization_id
    resolution = {
        "resolution": body.resolution,
        "notes": body.notes,
        "waived": body.waived,
        "waiver_reason": body.waiver_reason,
        "resolved_by": auth.user_id,
        "resolved_at": datetime.utcnow().isoformat(),
    }

    results = []
    for item_id in body.item_ids:
        kind, row = _resolve_review_item(supabase, org_id, item_id)
        if not kind:
            logger.warning(f"Review item {item_id} not found in org {org_id}, skipping")
            continue

        if kind == "job":
            _update_job(supabase, org_id, item_id, {
                "review_flag": False,
                "metadata": {**(row.get("metadata") or {}), "resolution": resolution},
            })

        fields = _item_event_fields(kind, item_id, row)
        results.append(record_request_event(
            supabase,
            request,
            organization_id=org_id,
            actor_id=auth.user_id,
            event_name="review.waived" if body.waived else "review.resolved",
            target_type=fields["target_type"],
            target_id=item_id,
            metadata={
                **fields["metadata"],
                **resolution,
                "summary": f"Resolved as: {body.resolution}" + (" (waived)" if body.waived else ""),
            },
        ))

    return {"data": {"resolved_count": len(results), "ledger_entry_ids": _entry_ids(results)}}


# =============================================================================
# INCIDENTS
# =============================================================================

def _open_action_count(supabase, job_id: str) -> int:
    result = supabase.table("mitigation_items")\
        .select("id", count="exact")\
        .eq("job_id", job_id)\
        .eq("done", False)\
        .execute()
    if getattr(result, "count", None) is not None:
        return result.count
    return len(result.data or [])


@router.post("/incidents/close")
async def close_incident(
    body: IncidentCloseRequest,
    request: Request,
    auth: AuthContext = Depends(require_write_access),
):
    if not body.work_record_id or not body.closure_summary:
        return create_error_response(
            "work_record_id and closure_summary are required", "VALIDATION_ERROR", 400
        )
    if body.no_action_required and not body.no_action_justification:
        return create_error_response(
            "no_action_justification is required when no_action_required is true", "VALIDATION_ERROR", 400
        )
    if body.waived and not body.waiver_reason:
        return create_error_response("waiver_reason is required when waived is true", "VALIDATION_ERROR", 400)

    supabase = require_db()
    org_id = auth.organization_id
    job_id = body.work_record_id
    job = _find_job(supabase, org_id, job_id, columns="id, client_name, status, metadata")
    if not job:
        return create_error_response("Work record not found", "JOB_NOT_FOUND", 404)

    if not body.no_action_required:
        open_actions = _open_action_count(supabase, job_id)
        if open_actions and not body.no_action_justification:
            return create_error_response(
                f"Cannot close incident: {open_actions} open corrective action(s) remain. "
                "Provide justification or mark as no_action_required.",
                "VALIDATION_ERROR",
                400,
                details={"open_actions_count": open_actions},
            )

    closure = {
        "closed_by": auth.user_id,
        "closed_at": datetime.utcnow().isoformat(),
        "closure_summary": body.closure_summary,
        "root_cause": body.root_cause,
        "evidence_attached": body.evidence_attached,
        "waived": body.waived,
        "waiver_reason": body.waiver_reason,
        "no_action_required": body.no_action_required,
        "no_action_justification": body.no_action_justification,
    }
    _update_job(supabase, org_id, job_id, {
        "status": "completed",
        "review_flag": False,
        "metadata": {**(job.get("metadata") or {}), "incident_closed": closure},
    })

    attestation_id = None
    if body.require_attestation:
        signoff = supabase.table("job_signoffs").insert({
            "job_id": job_id,
            "organization_id": org_id,
            "signer_id": auth.user_id,
            "signer_name": auth.full_name or auth.email,
            "signer_email": auth.email,
            "signer_role": auth.role,
            "signoff_type": "incident_closure",
            "comments": body.closure_summary,
            "status": "signed",
            "signed_at": closure["closed_at"],
        }).execute()
        attestation_id = signoff.data[0].get("id") if signoff.data else None

    result = record_request_event(
        supabase,
        request,
        organization_id=org_id,
        actor_id=auth.user_id,
        event_name="incident.closed",
        target_type="job",
        target_id=job_id,
        metadata={
            **closure,
            "work_record_id": job_id,
            "previous_status": job.get("status"),
            "attestation_id": attestation_id,
            "summary": f"Incident closed: {body.closure_summary}",
        },
    )

    logger.info(f"Incident {job_id} closed by {auth.user_id} in org {org_id}")
    return {"data": {"work_record_id": job_id, "attestation_id": attestation_id, "ledger_entry_id": result.id}}


@router.post("/incidents/corrective-action", status_code=201)
async def create_corrective_action(
    body: CorrectiveActionRequest,
    request: Request,
    auth: AuthContext = Depends(require_write_access),
):
    if not (body.work_record_id and body.title and body.owner_id and body.due_date):
        return create_error_response(
            "work_record_id, title, owner_id and due_date are required", "VALIDATION_ERROR", 400
        )

    supabase = require_db()
    org_id = auth.organization_id
    job_id = body.work_record_id
    if not _find_job(supabase, org_id, job_id, columns="id"):
        return create_error_response("Work record not found", "JOB_NOT_FOUND", 404)
    owner = _find_member(supabase, org_id, body.owner_id)
    if not owner:
        return create_error_response("Owner not found in organization", "USER_NOT_FOUND", 404)

    inserted = supabase.table("mitigation_items").insert({
        "job_id": job_id,
        "title": body.title,
        "description": body.notes or body.title,
        "owner_id": body.owner_id,
        "due_date": body.due_date,
        "done": False,
        "is_completed": False,
        "verification_method": body.verification_method,
        "metadata": {
            "incident_event_id": body.incident_event_id,
            "severity": body.severity,
            "created_as_corrective_action": True,
            "created_by": auth.user_id,
        },
    }).execute()
    if not inserted.data:
        raise HTTPException(status_code=500, detail="Failed to create corrective action")
    action = inserted.data[0]

    metadata = {
        "work_record_id": job_id,
        "incident_event_id": body.incident_event_id,
        "title": body.title,
        "owner_id": body.owner_id,
        "owner_name": owner.get("full_name") or owner.get("email"),
        "due_date": body.due_date,
        "verification_method": body.verification_method,
        "severity": body.severity,
        "summary": f"Corrective action created: {body.title}",
    }
    if body.incident_event_id:
        metadata["related_event_id"] = body.incident_event_id

    result = record_request_event(
        supabase,
        request,
        organization_id=org_id,
        actor_id=auth.user_id,
        event_name="incident.corrective_action_created",
        target_type="control",
        target_id=action["id"],
        metadata=metadata,
    )

    return {"data": {**action, "ledger_entry_id": result.id}}


# =============================================================================
# ACCESS
# =============================================================================

@router.post("/access/revoke")
async def revoke_access(
    body: AccessRevokeRequest,
    request: Request,
    auth: AuthContext = Depends(require_write_role(Role.ADMIN)),
):
    """
    Revoke a member's access. With new_role the member is downgraded,
    otherwise the account is archived. Executives cannot be revoked here.
    """
    if not body.user_id or not body.reason:
        return create_error_response("user_id and reason are required", "VALIDATION_ERROR", 400)
    if body.user_id == auth.user_id:
        return create_error_response("Cannot revoke your own access", "VALIDATION_ERROR", 400)
    if body.new_role is not None:
        if body.new_role not in ALLOWED_ROLES:
            return create_error_response("Invalid role", "VALIDATION_ERROR", 400)
        if not can_assign_role(auth.role, body.new_role):
            return create_error_response(
                "Admins can only set roles: member, safety_lead, executive", "AUTH_ROLE_FORBIDDEN", 403
            )

    supabase = require_db()
    org_id = auth.organization_id
    target = _find_member(supabase, org_id, body.user_id)
    if not target:
        return create_error_response("User not found", "USER_NOT_FOUND", 404)

    target_role = target.get("role")
    if target_role == Role.EXECUTIVE.value:
        return create_error_response(
            "Cannot revoke executive access (executives are immutable)", "AUTH_ROLE_FORBIDDEN", 403
        )
    if target_role == Role.OWNER.value and auth.role != Role.OWNER.value:
        return create_error_response("Only owners can revoke other owners", "AUTH_ROLE_FORBIDDEN", 403)

    now = datetime.utcnow().isoformat()
    if body.new_role:
        updates = {"role": body.new_role, "updated_at": now}
    else:
        updates = {"archived_at": now, "account_status": "deactivated", "deactivated_at": now}
    supabase.table("users")\
        .update(updates)\
        .eq("id", body.user_id)\
        .eq("organization_id", org_id)\
        .execute()

    result = record_request_event(
        supabase,
        request,
        organization_id=org_id,
        actor_id=auth.user_id,
        event_name="access.revoked",
        target_type="user",
        target_id=body.user_id,
        metadata={
            "target_user_name": target.get("full_name") or target.get("email"),
            "target_user_role": target_role,
            "new_role": body.new_role,
            "reason": body.reason,
            "revoked_at": now,
            "summary": f"Access revoked: {body.reason}",
        },
    )

    logger.info(f"Access for {body.user_id} revoked by {auth.user_id} in org {org_id}")
    return {"data": {"user_id": body.user_id, "new_role": body.new_role, "ledger_entry_id": result.id}}


@router.post("/access/flag-suspicious")
async def flag_suspicious_access(
    body: SuspiciousAccessFlag,
    request: Request,
    auth: AuthContext = Depends(require_write_role(Role.SAFETY_LEAD)),
):
    """
    Flag an access event or a user for investigation. Opens a review queue
    item and records the flag; critical flags are reported as incidents.
    """
    if not body.event_id and not body.user_id:
        return create_error_response("Either event_id or user_id is required", "VALIDATION_ERROR", 400)
    reason = (body.reason or "").strip()
    if len(reason) < 3:
        return create_error_response("reason is required (minimum 3 characters)", "VALIDATION_ERROR", 400)

    supabase = require_db()
    org_id = auth.organization_id
    target_user_id = body.user_id
    target_name = None
    work_record_id = None

    if body.event_id:
        event = _find_event(supabase, org_id, body.event_id)
        if not event:
            return create_error_response("Event not found", "EVENT_NOT_FOUND", 404)
        target_user_id = target_user_id or event.get("actor_id")
        target_name = event.get("event_name")
        work_record_id = event.get("job_id")
    else:
        member = _find_member(supabase, org_id, body.user_id)
        if not member:
            return create_error_response("User not found", "USER_NOT_FOUND", 404)
        target_name = member.get("full_name") or member.get("email")

    target_type = "event" if body.event_id else "user"
    target_id = body.event_id or target_user_id
    flag = {
        "target_user_id": target_user_id,
        "severity": body.severity,
        "reason": reason,
        "notes": body.notes.strip() if body.notes else None,
        "assigned_to": body.assigned_to,
        "work_record_id": work_record_id,
    }
    if body.event_id:
        flag["related_event_id"] = body.event_id

    queued = record_request_event(
        supabase,
        request,
        organization_id=org_id,
        actor_id=auth.user_id,
        event_name="review_queue.created_from_access",
        target_type=target_type,
        target_id=target_id,
        metadata={
            **flag,
            "source_type": "access_flag",
            "summary": f"Review queue item created from suspicious access flag: {reason}",
        },
    )

    result = record_request_event(
        supabase,
        request,
        organization_id=org_id,
        actor_id=auth.user_id,
        event_name="access.flagged_suspicious",
        target_type=target_type,
        target_id=target_id,
        metadata={
            **flag,
            "target_name": target_name,
            "review_queue_entry_id": queued.id,
            "summary": f"Suspicious access flagged: {reason}",
        },
    )

    return {
        "data": {
            "ledger_entry_id": result.id,
            "review_queue_entry_id": queued.id,
            "incident_opened": body.severity == "critical",
        }
    }
