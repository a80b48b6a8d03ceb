"""
Role-Based Access Control

Centralized role hierarchy and authorization dependencies for the Riskmate API.
Backend checks complement row-level security in the database.

Roles rank owner > admin > executive > safety_lead > member. Executives and
external auditors are read-only: any write verb they send is refused and the
attempt is recorded in the ledger as auth.role_violation.
"""

import os
import uuid
import logging
from typing import List, Dict, Any, Optional, Callable
from datetime import datetime, timedelta
from enum import Enum

from fastapi import HTTPException, Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from riskmate.supabase_client import get_supabase, verify_supabase_token, get_user_record
from riskmate.audit import record_request_event

logger = logging.getLogger(__name__)

# =============================================================================
# ROLE DEFINITIONS
# =============================================================================

class Role(str, Enum):
    """Organization roles, highest privilege first"""
    OWNER = "owner"
    ADMIN = "admin"
    EXECUTIVE = "executive"
    SAFETY_LEAD = "safety_lead"
    MEMBER = "member"
    AUDITOR = "auditor"


ROLE_HIERARCHY: Dict[str, int] = {
    Role.OWNER.value: 5,
    Role.ADMIN.value: 4,
    Role.EXECUTIVE.value: 3,
    Role.SAFETY_LEAD.value: 2,
    Role.MEMBER.value: 1,
    Role.AUDITOR.value: 0,  # external, read-only, below every member role
}

# Roles that can be assigned to organization members
ALLOWED_ROLES = [Role.OWNER.value, Role.ADMIN.value, Role.EXECUTIVE.value, Role.SAFETY_LEAD.value, Role.MEMBER.value]

READ_ONLY_ROLES = {Role.EXECUTIVE.value, Role.AUDITOR.value}

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# Roles each inviter may grant
INVITABLE_ROLES: Dict[str, List[str]] = {
    Role.OWNER.value: list(ALLOWED_ROLES),
    Role.ADMIN.value: [Role.MEMBER.value, Role.SAFETY_LEAD.value, Role.EXECUTIVE.value],
    Role.SAFETY_LEAD.value: [Role.MEMBER.value],
}


def _role_value(role: Any) -> Optional[str]:
    if isinstance(role, Role):
        return role.value
    return role


def has_role_at_least(user_role: Any, required_role: Any) -> bool:
    """Integer comparison on the hierarchy. An unknown user role ranks 0; an unknown requirement never passes."""
    required_rank = ROLE_HIERARCHY.get(_role_value(required_role))
    if required_rank is None:
        return False
    return ROLE_HIERARCHY.get(_role_value(user_role), 0) >= required_rank


def is_read_only_role(role: Any) -> bool:
    return _role_value(role) in READ_ONLY_ROLES


def can_invite_role(actor_role: Any, target_role: Any) -> bool:
    return _role_value(target_role) in INVITABLE_ROLES.get(_role_value(actor_role), [])


def only_owner_can_set_owner(actor_role: Any, target_role: Any) -> bool:
    """False when a non-owner tries to grant the owner role."""
    if _role_value(target_role) == Role.OWNER.value:
        return _role_value(actor_role) == Role.OWNER.value
    return True


def can_assign_role(actor_role: Any, target_role: Any) -> bool:
    """Owners may assign any role; admins only member, safety_lead or executive."""
    actor = _role_value(actor_role)
    target = _role_value(target_role)
    if target not in ALLOWED_ROLES:
        return False
    if not only_owner_can_set_owner(actor, target):
        return False
    if actor == Role.OWNER.value:
        return True
    if actor == Role.ADMIN.value:
        return target in (Role.MEMBER.value, Role.SAFETY_LEAD.value, Role.EXECUTIVE.value)
    return False


# =============================================================================
# AUTHORIZATION CONTEXT
# =============================================================================

class AuthContext:
    """
    Authorization context for a request.
    Contains user info, organization and role.
    """
    def __init__(
        self,
        user_id: str,
        email: str,
        organization_id: str,
        role: Optional[str] = None,
        full_name: Optional[str] = None,
        request_id: Optional[str] = None
    ):
        self.user_id = user_id
        self.email = email
        self.organization_id = organization_id
        self.role = role
        self.full_name = full_name
        self.request_id = request_id or str(uuid.uuid4())[:8]

    @property
    def is_read_only(self) -> bool:
        return is_read_only_role(self.role)

    def has_role_at_least(self, role: Any) -> bool:
        return has_role_at_least(self.role, role)

    def require_role(self, role: Any, message: str = None):
        """Raise HTTPException if the caller ranks below role"""
        if not self.has_role_at_least(role):
            raise HTTPException(
                status_code=403,
                detail={
                    "message": message or f"Requires {_role_value(role)} role or higher",
                    "code": "AUTH_ROLE_FORBIDDEN",
                }
            )

    def to_log_context(self) -> Dict[str, Any]:
        """Return context suitable for logging"""
        return {
            "user_id": self.user_id,
            "organization_id": self.organization_id,
            "role": self.role,
            "request_id": self.request_id,
        }


# =============================================================================
# AUTHENTICATION
# =============================================================================

security = HTTPBearer(auto_error=False)


def _looks_like_jwt(token: str) -> bool:
    parts = token.split(".")
    return len(parts) == 3 and all(parts)


async def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> AuthContext:
    """
    Extract and validate authentication, returning an AuthContext.
    This is the primary auth dependency for protected endpoints.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())[:8]

    token = credentials.credentials if credentials else None
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")

    if not _looks_like_jwt(token):
        raise HTTPException(status_code=401, detail="Malformed token")

    user = verify_supabase_token(token)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user_id = user.get("id")
    record = get_user_record(user_id)
    if not record:
        raise HTTPException(status_code=403, detail="User account is not provisioned")

    if not record.get("organization_id"):
        raise HTTPException(status_code=403, detail="User is not a member of an organization")

    if record.get("archived_at"):
        raise HTTPException(status_code=403, detail="Account has been deactivated")

    return AuthContext(
        user_id=user_id,
        email=record.get("email") or user.get("email") or "",
        organization_id=record["organization_id"],
        role=record.get("role") or Role.MEMBER.value,
        full_name=record.get("full_name"),
        request_id=request_id
    )


# =============================================================================
# ROLE DEPENDENCIES
# =============================================================================

def require_role(min_role: Any, message: str = None) -> Callable:
    """
    Dependency factory: resolves to the AuthContext when the caller ranks
    at or above min_role, otherwise 403 AUTH_ROLE_FORBIDDEN.
    """
    async def dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        auth.require_role(min_role, message)
        return auth
    return dependency


def require_any_role(*roles: Any) -> Callable:
    """Dependency factory for an explicit allow-list of roles."""
    allowed = {_role_value(r) for r in roles}

    async def dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if auth.role not in allowed:
            raise HTTPException(
                status_code=403,
                detail={
                    "message": f"Requires one of: {', '.join(sorted(allowed))}",
                    "code": "AUTH_ROLE_FORBIDDEN",
                }
            )
        return auth
    return dependency


def enforce_write_access(auth: AuthContext, request: Request):
    """
    Refuse write verbs from read-only roles, recording the attempt as an
    auth.role_violation ledger event before raising 403.
    """
    if request.method.upper() not in WRITE_METHODS or not auth.is_read_only:
        return

    label = "Executives" if auth.role == Role.EXECUTIVE.value else "Auditors"
    error_id = str(uuid.uuid4())

    record_request_event(
        get_supabase(),
        request,
        organization_id=auth.organization_id,
        actor_id=auth.user_id,
        event_name="auth.role_violation",
        target_type="system",
        metadata={
            "role": auth.role,
            "method": request.method.upper(),
            "endpoint": request.url.path,
            "request_id": auth.request_id,
            "error_id": error_id,
            "policy_statement": f"{label} have read-only access",
        },
    )
    logger.warning(f"Read-only write blocked: {auth.to_log_context()} {request.method} {request.url.path}")

    raise HTTPException(
        status_code=403,
        detail={
            "message": f"{label} have read-only access",
            "code": "AUTH_ROLE_READ_ONLY",
            "error_id": error_id,
        },
        headers={"X-Error-ID": error_id},
    )


async def require_write_access(
    request: Request,
    auth: AuthContext = Depends(get_auth_context)
) -> AuthContext:
    """Dependency for mutating endpoints."""
    enforce_write_access(auth, request)
    return auth


def require_write_role(min_role: Any, message: str = None) -> Callable:
    """Write access plus a minimum role. Read-only roles are refused (and logged) first."""
    async def dependency(auth: AuthContext = Depends(require_write_access)) -> AuthContext:
        auth.require_role(min_role, message)
        return auth
    return dependency


# =============================================================================
# RATE LIMITING
# =============================================================================

# In-memory fixed-window counters, per process
_rate_limit_cache: Dict[str, Dict[str, Any]] = {}

RATE_LIMITS = {
    "verification": {"max_requests": 30, "window_minutes": 1},
    "export": {"max_requests": 10, "window_minutes": 1},
    "proof_pack": {"max_requests": 5, "window_minutes": 1},
    "upload": {"max_requests": 20, "window_minutes": 1},
    "default": {"max_requests": 60, "window_minutes": 1},
}


def check_rate_limit(key: str, endpoint: str) -> bool:
    """
    Check if request is within rate limits.
    Returns True if allowed, raises HTTPException if rate limited.
    """
    limit_config = RATE_LIMITS.get(endpoint, RATE_LIMITS["default"])
    max_requests = limit_config["max_requests"]
    window_minutes = limit_config["window_minutes"]

    cache_key = f"{key}:{endpoint}"
    now = datetime.utcnow()
    window_start = now - timedelta(minutes=window_minutes)

    entry = _rate_limit_cache.get(cache_key)
    if entry and entry["window_start"] > window_start:
        if entry["count"] >= max_requests:
            raise HTTPException(
                status_code=429,
                detail={
                    "message": f"Rate limit exceeded. Max {max_requests} requests per {window_minutes} minute(s).",
                    "code": "RATE_LIMITED",
                }
            )
        entry["count"] += 1
    else:
        _rate_limit_cache[cache_key] = {"window_start": now, "count": 1}

    return True


def rate_limited(endpoint: str) -> Callable:
    """Dependency factory applying check_rate_limit per organization user."""
    async def dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        check_rate_limit(auth.user_id, endpoint)
        return auth
    return dependency


# =============================================================================
# FILE UPLOAD VALIDATION
# =============================================================================

# Evidence attached to jobs: site photos, signed forms and permits
EVIDENCE_TYPES = {
    "image/jpeg": (".jpg", ".jpeg"),
    "image/png": (".png",),
    "image/heic": (".heic",),
    "image/webp": (".webp",),
    "application/pdf": (".pdf",),
    "text/plain": (".txt",),
}

MAGIC_BYTES = (
    (b"%PDF", "application/pdf"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG", "image/png"),
)

MAX_FILE_SIZE_MB = 50
MAX_FILE_SIZE_BYTES = MAX_FILE_SIZE_MB * 1024 * 1024


def sniff_content_type(header: bytes) -> Optional[str]:
    for magic, content_type in MAGIC_BYTES:
        if header.startswith(magic):
            return content_type
    return None


def validate_file_upload(
    filename: str,
    content_type: str,
    file_size: int,
    file_content: bytes = None
) -> Dict[str, Any]:
    """
    Check an evidence upload before it goes to storage.

    Rejects unknown types, extensions that disagree with the declared type,
    empty or oversized files, and content whose magic bytes contradict the
    declared type (a renamed executable claiming to be a photo).
    """
    errors = []
    ext = os.path.splitext((filename or "").lower())[1]
    known_exts = sorted({e for exts in EVIDENCE_TYPES.values() for e in exts})

    if ext not in known_exts:
        errors.append(f"Evidence files must be one of {', '.join(known_exts)} (got '{ext or 'none'}')")
    if content_type not in EVIDENCE_TYPES:
        errors.append(f"Content type '{content_type}' is not accepted as evidence")
    elif ext not in EVIDENCE_TYPES[content_type]:
        errors.append(f"File extension '{ext}' does not match content type '{content_type}'")

    if file_size <= 0:
        errors.append("File is empty")
    elif file_size > MAX_FILE_SIZE_BYTES:
        errors.append(f"File too large. Maximum size is {MAX_FILE_SIZE_MB}MB")

    if file_content:
        sniffed = sniff_content_type(file_content[:8])
        if sniffed and sniffed != content_type:
            logger.warning(f"Evidence upload {filename}: declared {content_type}, content looks like {sniffed}")
            errors.append(f"File content does not match content type '{content_type}'")

    return {
        "valid": not errors,
        "errors": errors,
        "filename": filename,
        "content_type": content_type,
        "size": file_size,
    }


# =============================================================================
# CORS CONFIGURATION
# =============================================================================

def get_cors_origins() -> List[str]:
    """Get allowed CORS origins from environment"""
    origins_str = os.getenv("CORS_ORIGINS", "")

    if not origins_str:
        return [
            "http://localhost:3000",
            "https://riskmate.dev",
            "https://www.riskmate.dev",
            "https://app.riskmate.dev",
        ]

    return [o.strip() for o in origins_str.split(",") if o.strip()]

