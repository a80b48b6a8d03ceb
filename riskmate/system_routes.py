"""
System Routes

Health check (public) and the caller's identity/permission summary.
"""

import os
import logging
from typing import Dict, Optional
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from riskmate.supabase_client import get_supabase
from riskmate.rbac import AuthContext, Role, get_auth_context, can_invite_role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/system", tags=["system"])


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    environment: str
    services: Dict[str, str]


class MeResponse(BaseModel):
    user_id: str
    email: str
    full_name: Optional[str]
    organization_id: str
    role: str
    is_read_only: bool
    permissions: Dict[str, bool]


# =============================================================================
# HEALTH CHECK (PUBLIC)
# =============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.
    Public - no auth required.
    """
    services = {}

    try:
        supabase = get_supabase()
        if supabase:
            supabase.table("organizations").select("id").limit(1).execute()
            services["database"] = "healthy"
        else:
            services["database"] = "unavailable"
    except Exception as e:
        services["database"] = f"error: {str(e)[:50]}"

    environment = os.getenv("ENVIRONMENT", "development")
    status = "healthy" if all(v == "healthy" for v in services.values()) else "degraded"

    return HealthResponse(
        status=status,
        timestamp=datetime.utcnow().isoformat(),
        version="1.0.0",
        environment=environment,
        services=services
    )


# =============================================================================
# CURRENT USER
# =============================================================================

@router.get("/me", response_model=MeResponse)
async def get_me(auth: AuthContext = Depends(get_auth_context)):
    """Identity and coarse permissions for the frontend."""
    return MeResponse(
        user_id=auth.user_id,
        email=auth.email,
        full_name=auth.full_name,
        organization_id=auth.organization_id,
        role=auth.role,
        is_read_only=auth.is_read_only,
        permissions={
            "can_write": not auth.is_read_only,
            "can_invite": can_invite_role(auth.role, Role.MEMBER.value),
            "can_manage_team": auth.has_role_at_least(Role.ADMIN.value),
            "can_view_executive": auth.role in (Role.OWNER.value, Role.ADMIN.value, Role.EXECUTIVE.value),
            "can_generate_proof_packs": True,
        },
    )
