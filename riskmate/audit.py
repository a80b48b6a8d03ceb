"""
Audit Ledger Writer

Single entry point for appending governance events to the audit_logs table.
Every row carries derived classification columns (category, action, outcome,
severity) computed from the event name, plus denormalized actor fields so the
ledger stays readable after users are archived.

Rows are only ever inserted. Sequence numbers and the hash chain are assigned
by the database on insert (see riskmate.ledger for verification).
"""

import re
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import Request

from riskmate.executive_cache import invalidate_executive_cache

logger = logging.getLogger(__name__)

MAX_METADATA_SIZE = 8000
DEFAULT_POLICY_STATEMENT = "Role-based access control prevents unauthorized actions"

_ACTION_SUFFIXES = {
    "created": "create",
    "updated": "update",
    "deleted": "delete",
    "flagged": "flag",
    "unflagged": "unflag",
}
_ACTION_PATTERN = re.compile(r"\.(created|updated|deleted|flagged|unflagged)$")


@dataclass
class AuditEntry:
    organization_id: str
    event_name: str
    target_type: str
    actor_id: Optional[str] = None
    target_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    client: Optional[str] = None
    app_version: Optional[str] = None
    device_id: Optional[str] = None


@dataclass
class AuditResult:
    id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# =============================================================================
# CLASSIFICATION
# =============================================================================

def get_category_from_event_name(event_name: str) -> str:
    """Map an event name to one of: governance, operations, access."""
    if "auth." in event_name or "violation" in event_name or "policy." in event_name:
        return "governance"
    if "user_role_changed" in event_name:
        return "governance"
    if any(token in event_name for token in ("access.", "security.", "login", "team.", "account.")):
        return "access"
    return "operations"


def get_outcome_from_event_name(event_name: str) -> str:
    if "violation" in event_name or "blocked" in event_name or "denied" in event_name:
        return "blocked"
    return "allowed"


def get_severity_from_event_name(event_name: str) -> str:
    if "violation" in event_name or "critical" in event_name:
        return "critical"
    if "flag" in event_name or "change" in event_name or "remove" in event_name:
        return "material"
    return "info"


def is_material_event(event_name: str, severity: str) -> bool:
    """Material events invalidate cached executive views."""
    if severity in ("critical", "material"):
        return True
    return any(token in event_name for token in ("violation", "flag", "signoff", "risk_score_changed", "review", "incident"))


def derive_action(event_name: str) -> str:
    # job.created -> job.create
    return _ACTION_PATTERN.sub(lambda m: "." + _ACTION_SUFFIXES[m.group(1)], event_name)


def humanize_event_name(event_name: str) -> str:
    words = event_name.replace(".", " ").replace("_", " ")
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), words)


def truncate_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not metadata:
        return metadata
    serialized = json.dumps(metadata, default=str)
    if len(serialized) <= MAX_METADATA_SIZE:
        return metadata
    logger.warning(f"Audit metadata of {len(serialized)} chars exceeds {MAX_METADATA_SIZE}, truncated")
    return {"truncated": True}


def extract_client_metadata(request: Optional[Request]) -> Dict[str, str]:
    """Read client, app_version, device_id from request headers."""
    if request is None:
        return {"client": "unknown", "app_version": "unknown", "device_id": "unknown"}
    headers = request.headers
    return {
        "client": headers.get("x-client") or headers.get("client") or "web",
        "app_version": headers.get("x-app-version") or headers.get("app-version") or "unknown",
        "device_id": headers.get("x-device-id") or headers.get("device-id") or "unknown",
    }


# =============================================================================
# WRITER
# =============================================================================

def _get_actor(supabase, actor_id: Optional[str]) -> Dict[str, Any]:
    if not actor_id:
        return {}
    try:
        result = supabase.table("users")\
            .select("email, role, full_name")\
            .eq("id", actor_id)\
            .limit(1)\
            .execute()
        return result.data[0] if result.data else {}
    except Exception as e:
        logger.warning(f"Actor lookup failed for {actor_id}: {e}")
        return {}


def build_audit_row(entry: AuditEntry, actor: Dict[str, Any]) -> Dict[str, Any]:
    """Build the audit_logs insert payload for an entry."""
    metadata = entry.metadata or {}
    client_metadata = {
        "client": entry.client or "unknown",
        "app_version": entry.app_version or "unknown",
        "device_id": entry.device_id or "unknown",
    }
    payload = truncate_metadata({**client_metadata, **metadata}) or {}

    subject: Dict[str, Any] = {"type": entry.target_type, "id": entry.target_id}
    if metadata.get("related_event_id"):
        subject["related_event_id"] = metadata["related_event_id"]

    work_record_id = metadata.get("work_record_id") or (entry.target_id if entry.target_type == "job" else None)
    summary = metadata.get("summary") or (
        humanize_event_name(entry.event_name) + (f" for {entry.target_type}" if entry.target_id else "")
    )

    row = {
        "organization_id": entry.organization_id,
        "actor_id": entry.actor_id,
        "event_name": entry.event_name,
        "target_type": entry.target_type,
        "target_id": entry.target_id,
        "metadata": {**payload, "subject": subject},
        "category": get_category_from_event_name(entry.event_name),
        "action": derive_action(entry.event_name),
        "outcome": get_outcome_from_event_name(entry.event_name),
        "severity": get_severity_from_event_name(entry.event_name),
        "resource_type": entry.target_type,
        "resource_id": entry.target_id,
        "job_id": work_record_id,
        "site_id": metadata.get("site_id"),
        "actor_email": actor.get("email"),
        "actor_role": actor.get("role"),
        "actor_name": actor.get("full_name") or actor.get("email"),
        "summary": summary,
    }

    if "violation" in entry.event_name:
        row["policy_statement"] = metadata.get("policy_statement") or DEFAULT_POLICY_STATEMENT

    return row


def record_audit_log(supabase, entry: AuditEntry) -> AuditResult:
    """
    Append one event to the audit ledger.

    Never raises: a failed write is logged and reported through the result so
    the calling request can carry on.
    """
    if supabase is None:
        logger.warning(f"Audit log skipped (no database): {entry.event_name}")
        return AuditResult(error="Database unavailable")

    try:
        actor = _get_actor(supabase, entry.actor_id)
        row = build_audit_row(entry, actor)
        result = supabase.table("audit_logs").insert(row).execute()
    except Exception as e:
        logger.error(f"Audit log insert failed for {entry.event_name}: {e}")
        return AuditResult(error=str(e))

    if is_material_event(entry.event_name, row["severity"]):
        invalidate_executive_cache(entry.organization_id)

    inserted = result.data[0] if result.data else {}
    return AuditResult(id=inserted.get("id"))


def record_request_event(
    supabase,
    request: Optional[Request],
    *,
    organization_id: str,
    actor_id: Optional[str],
    event_name: str,
    target_type: str,
    target_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditResult:
    """Convenience wrapper that fills client metadata from the request."""
    client_meta = extract_client_metadata(request)
    return record_audit_log(
        supabase,
        AuditEntry(
            organization_id=organization_id,
            actor_id=actor_id,
            event_name=event_name,
            target_type=target_type,
            target_id=target_id,
            metadata=metadata or {},
            client=client_meta["client"],
            app_version=client_meta["app_version"],
            device_id=client_meta["device_id"],
        ),
    )
