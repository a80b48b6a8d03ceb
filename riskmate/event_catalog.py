"""
Audit Event Catalog

Human-readable labels for ledger event names, plus the minimal field
contracts each family of ledger events must satisfy before it is written.
"""

from typing import Any, Dict, List

from riskmate.audit import (
    get_category_from_event_name,
    get_outcome_from_event_name,
    get_severity_from_event_name,
    humanize_event_name,
    DEFAULT_POLICY_STATEMENT,
)


def _mapping(title, category, severity, description, outcome="allowed", policy_statement=None):
    entry = {
        "title": title,
        "category": category,
        "severity": severity,
        "outcome": outcome,
        "description": description,
    }
    if policy_statement:
        entry["policy_statement"] = policy_statement
    return entry


EVENT_MAPPINGS: Dict[str, Dict[str, Any]] = {
    # Governance enforcement
    "auth.role_violation": _mapping(
        "Capability Blocked: Unauthorized Action Attempted", "governance", "critical",
        "Action blocked due to insufficient role permissions",
        outcome="blocked", policy_statement=DEFAULT_POLICY_STATEMENT,
    ),
    "job.flagged_for_review": _mapping(
        "Job Flagged for Review", "governance", "material",
        "Job marked for safety lead review",
        policy_statement="High-risk jobs require safety lead oversight",
    ),
    "job.unflagged": _mapping("Job Review Flag Removed", "governance", "info", "Job no longer requires review"),
    "review.assigned": _mapping("Review Assigned", "governance", "info", "Review responsibility assigned to a named owner"),
    "review.resolved": _mapping("Review Resolved", "governance", "material", "Review completed with resolution outcome"),
    "review.waived": _mapping("Review Waived", "governance", "material", "Review closed under a documented waiver"),
    "review_queue.created_from_access": _mapping(
        "Review Opened From Access Flag", "governance", "material", "Suspicious access queued for investigation"
    ),
    "incident.closed": _mapping("Incident Closed", "operations", "material", "Incident closed with summary and attestation"),
    "incident.corrective_action_created": _mapping(
        "Corrective Action Created", "operations", "material", "Corrective action opened against an incident"
    ),
    "job.risk_score_changed": _mapping("Risk Score Changed", "operations", "material", "Job risk score updated due to factor changes"),
    "user_role_changed": _mapping("User Role Changed", "governance", "material", "Member role modified by an administrator"),
    "account.organization_updated": _mapping("Organization Settings Changed", "governance", "material", "Organization name or settings modified"),

    # Operations
    "job.created": _mapping("Job Created", "operations", "info", "New job record created"),
    "job.updated": _mapping("Job Updated", "operations", "info", "Job details modified"),
    "job.archived": _mapping("Job Archived", "operations", "info", "Job moved to archived status"),
    "job.deleted": _mapping("Job Deleted", "operations", "material", "Job removed from active records"),
    "mitigation.completed": _mapping("Mitigation Completed", "operations", "info", "Risk mitigation action completed"),
    "mitigation.updated": _mapping("Mitigation Updated", "operations", "info", "Mitigation checklist item modified"),
    "document.uploaded": _mapping("Document Uploaded", "operations", "info", "Document attached to job"),
    "proof_pack.generated": _mapping("Proof Pack Generated", "operations", "material", "Exportable proof pack created"),
    "signoff.created": _mapping("Sign-off Recorded", "operations", "material", "Digital sign-off captured with timestamp"),
    "audit.export": _mapping("Ledger Exported", "operations", "info", "Compliance ledger exported"),

    # Access & security
    "team.invite_sent": _mapping("Team Invitation Sent", "access", "info", "User invitation sent"),
    "team.invite_revoked": _mapping("Team Invitation Revoked", "access", "info", "Pending invitation cancelled"),
    "team.member_removed": _mapping("Access Revoked", "access", "material", "User access deactivated"),
    "access.revoked": _mapping("Access Revoked", "access", "material", "Member access revoked or downgraded"),
    "access.flagged_suspicious": _mapping(
        "Suspicious Access Flagged", "access", "material", "Access event or user flagged for investigation"
    ),
    "security.login": _mapping("User Login", "access", "info", "User authenticated"),
    "security.password_changed": _mapping("Password Changed", "access", "material", "User password updated"),
}


def get_event_mapping(event_name: str) -> Dict[str, Any]:
    """Return the catalog entry, or one derived from the event name."""
    if event_name in EVENT_MAPPINGS:
        return EVENT_MAPPINGS[event_name]
    return {
        "title": humanize_event_name(event_name) if event_name else "Unknown Event",
        "category": get_category_from_event_name(event_name or ""),
        "severity": get_severity_from_event_name(event_name or ""),
        "outcome": get_outcome_from_event_name(event_name or ""),
        "description": "System event recorded",
    }


# =============================================================================
# LEDGER EVENT CONTRACTS
# =============================================================================

# prefix -> required top-level fields and metadata keys
LEDGER_EVENT_CONTRACTS: Dict[str, Dict[str, List[str]]] = {
    "review.": {"fields": ["target_id"], "metadata": ["work_record_id"]},
    "incident.": {"fields": ["target_id"], "metadata": ["work_record_id"]},
    "attestation.": {"fields": ["target_id", "actor_id"], "metadata": ["work_record_id"]},
    "access.": {"fields": ["target_id", "actor_id"], "metadata": []},
    "export.": {"fields": ["target_id"], "metadata": ["export_type"]},
    "signoff.": {"fields": ["target_id", "actor_id"], "metadata": ["work_record_id", "signoff_type"]},
}


def validate_ledger_event(event: Dict[str, Any]) -> List[str]:
    """
    Check an event payload against its family contract.
    Returns a list of problems; empty means valid. Unknown families pass.
    """
    problems: List[str] = []
    event_name = event.get("event_name") or ""
    if not event_name:
        return ["event_name is required"]
    if not event.get("organization_id"):
        problems.append("organization_id is required")
    if not event.get("target_type"):
        problems.append("target_type is required")

    for prefix, contract in LEDGER_EVENT_CONTRACTS.items():
        if not event_name.startswith(prefix):
            continue
        for field_name in contract["fields"]:
            if not event.get(field_name):
                problems.append(f"{event_name}: {field_name} is required")
        metadata = event.get("metadata") or {}
        for key in contract["metadata"]:
            if metadata.get(key) in (None, ""):
                problems.append(f"{event_name}: metadata.{key} is required")
        break

    return problems
