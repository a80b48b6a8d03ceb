from typing import List, Dict, Any, Optional
from pydantic import BaseModel, Field, validator

# =============================================================================
# JOBS
# =============================================================================

JOB_STATUSES = ["draft", "pending", "in_progress", "completed", "cancelled", "on_hold"]

class JobCreate(BaseModel):
    client_name: str = Field(..., min_length=1, max_length=255)
    client_type: str = Field(..., min_length=1)
    job_type: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    description: Optional[str] = None
    site_id: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    risk_factor_codes: List[str] = []

class JobUpdate(BaseModel):
    client_name: Optional[str] = None
    client_type: Optional[str] = None
    job_type: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    site_id: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    status: Optional[str] = None
    risk_factor_codes: Optional[List[str]] = None
    version: Optional[int] = None # Optimistic concurrency

    @validator('status')
    def validate_status(cls, v):
        if v is not None and v not in JOB_STATUSES:
            raise ValueError(f"Status must be one of {JOB_STATUSES}")
        return v

class MitigationUpdate(BaseModel):
    done: bool

class SignoffCreate(BaseModel):
    signoff_type: str = Field(..., min_length=1)
    signer_name: Optional[str] = None
    comments: Optional[str] = None

# =============================================================================
# TEAM
# =============================================================================

class InviteRequest(BaseModel):
    email: str = Field(..., min_length=3)
    role: str = "member"

    @validator('email')
    def validate_email(cls, v):
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v.strip().lower()

class RoleChangeRequest(BaseModel):
    role: str
    reason: Optional[str] = None

# =============================================================================
# AUDIT / EXPORTS
# =============================================================================

class AuditExportRequest(BaseModel):
    format: str = "csv"
    category: Optional[str] = None
    site_id: Optional[str] = None
    job_id: Optional[str] = None
    actor_id: Optional[str] = None
    severity: Optional[str] = None
    outcome: Optional[str] = None
    time_range: str = "30d"
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    view: Optional[str] = None

    @validator('format')
    def validate_format(cls, v):
        allowed = ["csv", "json", "pdf"]
        if v not in allowed:
            raise ValueError(f"Format must be one of {allowed}")
        return v

class ExportCreate(BaseModel):
    export_type: str
    work_record_id: Optional[str] = None
    filters: Dict[str, Any] = {}

    @validator('export_type')
    def validate_export_type(cls, v):
        allowed = ["proof_pack", "ledger"]
        if v not in allowed:
            raise ValueError(f"Export type must be one of {allowed}")
        return v

class ManifestVerifyRequest(BaseModel):
    manifest: Optional[Dict[str, Any]] = None # checked in the route to return VALIDATION_ERROR
    export_id: Optional[str] = None

# =============================================================================
# GOVERNANCE ACTIONS
# =============================================================================

REVIEW_PRIORITIES = ["low", "medium", "high", "critical"]
FLAG_SEVERITIES = ["critical", "material", "info"]

class JobFlagRequest(BaseModel):
    flagged: bool
    reason: Optional[str] = None

class ReviewAssignRequest(BaseModel):
    # required fields are checked in the route to return VALIDATION_ERROR
    item_ids: List[str] = []
    assignee_id: Optional[str] = None
    priority: str = "medium"
    due_at: Optional[str] = None
    note: Optional[str] = None

    @validator('priority')
    def validate_priority(cls, v):
        if v not in REVIEW_PRIORITIES:
            raise ValueError(f"Priority must be one of {REVIEW_PRIORITIES}")
        return v

class ReviewResolveRequest(BaseModel):
    item_ids: List[str] = []
    resolution: Optional[str] = None
    notes: Optional[str] = None
    waived: bool = False
    waiver_reason: Optional[str] = None

class IncidentCloseRequest(BaseModel):
    work_record_id: Optional[str] = None
    closure_summary: Optional[str] = None
    root_cause: Optional[str] = None
    evidence_attached: bool = False
    waived: bool = False
    waiver_reason: Optional[str] = None
    no_action_required: bool = False
    no_action_justification: Optional[str] = None
    require_attestation: bool = True

class CorrectiveActionRequest(BaseModel):
    work_record_id: Optional[str] = None
    incident_event_id: Optional[str] = None
    title: Optional[str] = None
    owner_id: Optional[str] = None
    due_date: Optional[str] = None
    verification_method: str = "attestation"
    notes: Optional[str] = None
    severity: Optional[str] = None

class AccessRevokeRequest(BaseModel):
    user_id: Optional[str] = None
    reason: Optional[str] = None
    new_role: Optional[str] = None

class SuspiciousAccessFlag(BaseModel):
    event_id: Optional[str] = None
    user_id: Optional[str] = None
    severity: str = "material"
    reason: Optional[str] = None
    notes: Optional[str] = None
    assigned_to: Optional[str] = None

    @validator('severity')
    def validate_severity(cls, v):
        if v not in FLAG_SEVERITIES:
            raise ValueError(f"Severity must be one of {FLAG_SEVERITIES}")
        return v
