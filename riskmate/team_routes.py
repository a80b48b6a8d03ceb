"""
Team Routes

Endpoints for:
- GET /api/team - members, pending invites and role coverage
- POST /api/team/invite - provision a teammate with a temporary password (safety_lead+)
- DELETE /api/team/invite/{invite_id} - revoke a pending invite (admin+)
- PATCH /api/team/member/{user_id}/role - change a member's role (admin+)
- DELETE /api/team/member/{user_id} - deactivate a member (admin+)
"""

import logging
import secrets
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from riskmate.audit import record_request_event
from riskmate.rbac import (
    ALLOWED_ROLES,
    AuthContext,
    Role,
    can_assign_role,
    can_invite_role,
    get_auth_context,
    only_owner_can_set_owner,
    require_write_role,
)
from riskmate.router_utils import create_error_response, require_db
from riskmate.schemas import InviteRequest, RoleChangeRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/team", tags=["team"])

TEMP_PASSWORD_CHARSET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz23456789"


def generate_temp_password(length: int = 12) -> str:
    return "".join(secrets.choice(TEMP_PASSWORD_CHARSET) for _ in range(length))


def _count_active_with_role(supabase, org_id: str, role: str) -> int:
    result = supabase.table("users")\
        .select("id", count="exact")\
        .eq("organization_id", org_id)\
        .eq("role", role)\
        .is_("archived_at", "null")\
        .execute()
    if getattr(result, "count", None) is not None:
        return result.count
    return len(result.data or [])


def _get_active_member(supabase, org_id: str, user_id: str) -> Optional[dict]:
    result = supabase.table("users")\
        .select("id, email, role, organization_id")\
        .eq("id", user_id)\
        .eq("organization_id", org_id)\
        .is_("archived_at", "null")\
        .limit(1)\
        .execute()
    return result.data[0] if result.data else None


# =============================================================================
# ROSTER
# =============================================================================

@router.get("")
async def get_team(auth: AuthContext = Depends(get_auth_context)):
    supabase = require_db()
    org_id = auth.organization_id

    members = supabase.table("users")\
        .select("id, email, full_name, role, created_at, must_reset_password")\
        .eq("organization_id", org_id)\
        .is_("archived_at", "null")\
        .order("created_at")\
        .execute().data or []

    invites = supabase.table("organization_invites")\
        .select("id, email, role, created_at, invited_by, user_id")\
        .eq("organization_id", org_id)\
        .is_("accepted_at", "null")\
        .is_("revoked_at", "null")\
        .order("created_at")\
        .execute().data or []

    coverage = {role: 0 for role in ALLOWED_ROLES}
    for member in members:
        if member.get("role") in coverage:
            coverage[member["role"]] += 1

    return {
        "data": {
            "members": members,
            "invites": invites,
            "seats": {"used": len(members), "pending": len(invites)},
            "risk_coverage": coverage,
            "current_user_role": auth.role or Role.MEMBER.value,
        }
    }


# =============================================================================
# INVITES
# =============================================================================

@router.post("/invite")
async def invite_member(
    body: InviteRequest,
    request: Request,
    auth: AuthContext = Depends(require_write_role(Role.SAFETY_LEAD)),
):
    if body.role not in ALLOWED_ROLES:
        return create_error_response("Invalid role selection", "VALIDATION_ERROR", 400)
    if not only_owner_can_set_owner(auth.role, body.role):
        return create_error_response("Only owners can invite or create owners", "AUTH_ROLE_FORBIDDEN", 403)
    if not can_invite_role(auth.role, body.role):
        return create_error_response(
            "You cannot invite this role. Owners can invite anyone; admins can invite member, "
            "safety lead or executive; safety leads can invite members only.",
            "AUTH_ROLE_FORBIDDEN",
            403,
        )

    supabase = require_db()
    org_id = auth.organization_id

    existing = supabase.table("users")\
        .select("id")\
        .eq("organization_id", org_id)\
        .eq("email", body.email)\
        .is_("archived_at", "null")\
        .limit(1)\
        .execute()
    if existing.data:
        return create_error_response("That teammate is already part of your organization.", "ALREADY_MEMBER", 409)

    temp_password = generate_temp_password()
    try:
        created = supabase.auth.admin.create_user({
            "email": body.email,
            "password": temp_password,
            "email_confirm": True,
            "user_metadata": {"invited_by": auth.user_id, "organization_id": org_id},
        })
    except Exception as e:
        if "already registered" in str(e):
            return create_error_response("That email already has a Riskmate account.", "ALREADY_REGISTERED", 409)
        logger.error(f"Auth user creation failed for invite to {body.email}: {e}")
        raise HTTPException(status_code=500, detail="Failed to send invite")

    new_user_id = created.user.id
    try:
        supabase.table("users").insert({
            "id": new_user_id,
            "email": body.email,
            "organization_id": org_id,
            "role": body.role,
            "must_reset_password": True,
            "invited_by": auth.user_id,
        }).execute()
    except Exception as e:
        logger.error(f"User row insert failed for {new_user_id}, rolling back auth user: {e}")
        supabase.auth.admin.delete_user(new_user_id)
        raise HTTPException(status_code=500, detail="Failed to send invite")

    invite = None
    try:
        result = supabase.table("organization_invites").insert({
            "organization_id": org_id,
            "email": body.email,
            "role": body.role,
            "invited_by": auth.user_id,
            "user_id": new_user_id,
        }).execute()
        invite = result.data[0] if result.data else None
    except Exception as e:
        logger.warning(f"Invite row insert failed for {body.email}: {e}")

    record_request_event(
        supabase,
        request,
        organization_id=org_id,
        actor_id=auth.user_id,
        event_name="team.invite_sent",
        target_type="user",
        target_id=new_user_id,
        metadata={
            "email": body.email,
            "role": body.role,
            "invite_id": invite.get("id") if invite else None,
        },
    )

    logger.info(f"Invite sent to {body.email} as {body.role} in org {org_id}")
    return {
        "data": invite or {"email": body.email, "role": body.role, "user_id": new_user_id},
        "temporary_password": temp_password,
    }


@router.delete("/invite/{invite_id}")
async def revoke_invite(
    invite_id: str,
    request: Request,
    auth: AuthContext = Depends(require_write_role(Role.ADMIN)),
):
    supabase = require_db()
    org_id = auth.organization_id

    result = supabase.table("organization_invites")\
        .select("id, user_id, email")\
        .eq("id", invite_id)\
        .eq("organization_id", org_id)\
        .is_("accepted_at", "null")\
        .limit(1)\
        .execute()
    if not result.data:
        return create_error_response("Invite not found", "INVITE_NOT_FOUND", 404)
    invite = result.data[0]
    now = datetime.utcnow().isoformat()

    if invite.get("user_id"):
        supabase.table("users").update({"archived_at": now}).eq("id", invite["user_id"]).execute()
        try:
            supabase.auth.admin.delete_user(invite["user_id"])
        except Exception as e:
            logger.warning(f"Auth user deletion failed for revoked invite {invite_id}: {e}")

    supabase.table("organization_invites")\
        .update({"revoked_at": now})\
        .eq("id", invite_id)\
        .eq("organization_id", org_id)\
        .execute()

    record_request_event(
        supabase,
        request,
        organization_id=org_id,
        actor_id=auth.user_id,
        event_name="team.invite_revoked",
        target_type="user",
        target_id=invite.get("user_id"),
        metadata={"invite_id": invite_id, "email": invite.get("email")},
    )

    return {"data": {"status": "revoked", "invite_id": invite_id}}


# =============================================================================
# MEMBERS
# =============================================================================

@router.patch("/member/{user_id}/role")
async def change_member_role(
    user_id: str,
    body: RoleChangeRequest,
    request: Request,
    auth: AuthContext = Depends(require_write_role(Role.ADMIN)),
):
    new_role = body.role
    if new_role not in ALLOWED_ROLES:
        return create_error_response("Invalid role", "VALIDATION_ERROR", 400)
    if not only_owner_can_set_owner(auth.role, new_role):
        return create_error_response("Only owners can promote to owner", "AUTH_ROLE_FORBIDDEN", 403)
    if not can_assign_role(auth.role, new_role):
        return create_error_response(
            "Admins can only set roles: member, safety_lead, executive",
            "AUTH_ROLE_FORBIDDEN",
            403,
        )

    supabase = require_db()
    org_id = auth.organization_id
    target = _get_active_member(supabase, org_id, user_id)
    if not target:
        return create_error_response("User not found", "USER_NOT_FOUND", 404)

    old_role = target.get("role") or Role.MEMBER.value
    if old_role == new_role:
        return {"data": {"message": "Role unchanged", "user_id": user_id, "role": old_role}}

    if old_role == Role.ADMIN.value and _count_active_with_role(supabase, org_id, Role.ADMIN.value) <= 1:
        return create_error_response(
            "Cannot change role of the last admin. Promote another user to admin first.",
            "LAST_ADMIN",
            400,
        )
    if old_role == Role.OWNER.value and _count_active_with_role(supabase, org_id, Role.OWNER.value) <= 1:
        return create_error_response(
            "Cannot change role of the last owner. Transfer ownership first.",
            "LAST_OWNER",
            400,
        )

    supabase.table("users")\
        .update({"role": new_role, "updated_at": datetime.utcnow().isoformat()})\
        .eq("id", user_id)\
        .eq("organization_id", org_id)\
        .execute()

    record_request_event(
        supabase,
        request,
        organization_id=org_id,
        actor_id=auth.user_id,
        event_name="user_role_changed",
        target_type="user",
        target_id=user_id,
        metadata={
            "old_role": old_role,
            "new_role": new_role,
            "actor_role": auth.role,
            "reason": body.reason,
        },
    )

    logger.info(f"Role of {user_id} changed {old_role} -> {new_role} by {auth.user_id}")
    return {"data": {"message": "Role updated", "user_id": user_id, "old_role": old_role, "new_role": new_role}}


@router.delete("/member/{user_id}")
async def remove_member(
    user_id: str,
    request: Request,
    auth: AuthContext = Depends(require_write_role(Role.ADMIN)),
):
    """Deactivate a member. Access is revoked by archiving, never by deleting the row."""
    if user_id == auth.user_id:
        return create_error_response("You cannot remove yourself.", "VALIDATION_ERROR", 400)

    supabase = require_db()
    org_id = auth.organization_id
    target = _get_active_member(supabase, org_id, user_id)
    if not target:
        return create_error_response("Teammate not found", "USER_NOT_FOUND", 404)

    target_role = target.get("role")
    if target_role == Role.ADMIN.value and _count_active_with_role(supabase, org_id, Role.ADMIN.value) <= 1:
        return create_error_response(
            "Cannot remove the last admin. Promote another user to admin first or transfer ownership.",
            "LAST_ADMIN",
            400,
        )
    if target_role == Role.OWNER.value:
        if auth.role != Role.OWNER.value:
            return create_error_response("Only owners can remove other owners", "AUTH_ROLE_FORBIDDEN", 403)
        if _count_active_with_role(supabase, org_id, Role.OWNER.value) <= 1:
            return create_error_response(
                "Cannot remove the last owner. Transfer ownership or add another owner first.",
                "LAST_OWNER",
                400,
            )

    now = datetime.utcnow().isoformat()
    supabase.table("users")\
        .update({"archived_at": now, "account_status": "deactivated", "deactivated_at": now})\
        .eq("id", user_id)\
        .eq("organization_id", org_id)\
        .execute()

    record_request_event(
        supabase,
        request,
        organization_id=org_id,
        actor_id=auth.user_id,
        event_name="team.member_removed",
        target_type="user",
        target_id=user_id,
        metadata={"target_role": target_role, "target_email": target.get("email")},
    )

    return {"data": {"status": "removed", "user_id": user_id}}
