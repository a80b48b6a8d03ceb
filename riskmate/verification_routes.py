"""
Verification Routes

Endpoints for:
- GET /api/ledger/events/{event_id}/verify - recompute one event's hash and walk its chain
- GET /api/ledger/verify - verify a contiguous range of the organization's ledger
- POST /api/verify/manifest - check a proof pack manifest against the export and ledger
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from riskmate.ledger import LEDGER_COLUMNS, fetch_chain_segment, verify_chain, verify_event, walk_chain
from riskmate.proof_pack_service import manifest_hash
from riskmate.rbac import AuthContext, rate_limited
from riskmate.router_utils import create_error_response, require_db
from riskmate.schemas import ManifestVerifyRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["verification"])


@router.get("/ledger/events/{event_id}/verify")
async def verify_ledger_event(
    event_id: str,
    auth: AuthContext = Depends(rate_limited("verification")),
):
    supabase = require_db()
    org_id = auth.organization_id

    result = supabase.table("audit_logs")\
        .select(LEDGER_COLUMNS)\
        .eq("id", event_id)\
        .eq("organization_id", org_id)\
        .limit(1)\
        .execute()
    if not result.data:
        return create_error_response("Ledger event not found", "EVENT_NOT_FOUND", 404)
    event = result.data[0]

    prev_event = None
    if event.get("prev_hash"):
        prev = supabase.table("audit_logs")\
            .select(LEDGER_COLUMNS)\
            .eq("organization_id", org_id)\
            .eq("hash", event["prev_hash"])\
            .limit(1)\
            .execute()
        prev_event = prev.data[0] if prev.data else None

    check = verify_event(event, prev_event)
    chain = walk_chain(supabase, org_id, event) if prev_event else {
        "chain_ok": not event.get("prev_hash"),
        "chain_depth_checked": 0,
    }

    return {
        "data": {
            "event_id": event_id,
            **check,
            **chain,
            "ledger_seq": event.get("ledger_seq"),
            "verified_at": datetime.utcnow().isoformat(),
        }
    }


@router.get("/ledger/verify")
async def verify_ledger_range(
    limit: int = Query(500, ge=1, le=5000),
    before_seq: Optional[int] = Query(None),
    auth: AuthContext = Depends(rate_limited("verification")),
):
    """Verify the newest `limit` hashed events (optionally before a sequence number)."""
    supabase = require_db()
    events = fetch_chain_segment(supabase, auth.organization_id, limit=limit, before_seq=before_seq)
    verification = verify_chain(events)

    if not verification.ok:
        logger.warning(
            f"Ledger chain broken for org {auth.organization_id} at seq {verification.first_broken_seq}: "
            f"{len(verification.errors)} error(s)"
        )

    return {
        "data": {
            **verification.to_dict(),
            "from_seq": events[0].get("ledger_seq") if events else None,
            "to_seq": events[-1].get("ledger_seq") if events else None,
            "verified_at": datetime.utcnow().isoformat(),
        }
    }


@router.post("/verify/manifest")
async def verify_manifest(
    body: ManifestVerifyRequest,
    auth: AuthContext = Depends(rate_limited("verification")),
):
    if not body.manifest:
        return create_error_response("Manifest is required", "VALIDATION_ERROR", 400)

    manifest = body.manifest
    if not manifest.get("version") or not isinstance(manifest.get("files"), list):
        return create_error_response("Invalid manifest format", "VALIDATION_ERROR", 400)

    supabase = require_db()
    org_id = auth.organization_id
    computed = manifest_hash(manifest)

    export_match = False
    stored_hash = None
    export_state = None
    ledger_match = False
    ledger_event_id = None

    if body.export_id:
        exp = supabase.table("exports")\
            .select("manifest_hash, state")\
            .eq("id", body.export_id)\
            .eq("organization_id", org_id)\
            .limit(1)\
            .execute()
        if exp.data:
            stored_hash = exp.data[0].get("manifest_hash")
            export_state = exp.data[0].get("state")
            export_match = stored_hash == computed

        ledger = supabase.table("audit_logs")\
            .select("id, metadata")\
            .eq("organization_id", org_id)\
            .eq("target_type", "export")\
            .eq("target_id", body.export_id)\
            .like("event_name", "export.%completed")\
            .order("created_at", desc=True)\
            .limit(1)\
            .execute()
        if ledger.data and (ledger.data[0].get("metadata") or {}).get("manifest_hash") == computed:
            ledger_match = True
            ledger_event_id = ledger.data[0]["id"]

    return {
        "data": {
            "manifest_hash": computed,
            "manifest_valid": True,
            "export_id": body.export_id,
            "export_match": export_match,
            "stored_manifest_hash": stored_hash,
            "export_state": export_state,
            "ledger_match": ledger_match,
            "ledger_event_id": ledger_event_id,
            "verified_at": datetime.utcnow().isoformat(),
        }
    }
