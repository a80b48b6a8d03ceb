import uuid
import logging
from fastapi import HTTPException
from fastapi.responses import JSONResponse
from typing import Any, Dict, Optional
from riskmate.supabase_client import get_supabase

logger = logging.getLogger(__name__)

def handle_conflict(db_version: int, incoming_version: int):
    """Detects and handles version conflicts."""
    if db_version != incoming_version:
        raise HTTPException(
            status_code=409,
            detail={
                "code": "CONFLICT",
                "message": "The record has been modified by another user. Please reload.",
                "db_version": db_version,
                "incoming_version": incoming_version
            }
        )

def require_db():
    """Return the Supabase client or fail the request with 503."""
    supabase = get_supabase()
    if not supabase:
        raise HTTPException(status_code=503, detail="Database unavailable")
    return supabase

def create_error_response(
    message: str,
    code: str,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
    error_id: Optional[str] = None,
) -> JSONResponse:
    """
    Build the standard error body ({message, code, error_id}) and echo the
    error id in the X-Error-ID header so support can correlate logs.
    """
    error_id = error_id or str(uuid.uuid4())
    body: Dict[str, Any] = {"message": message, "code": code, "error_id": error_id}
    if details:
        body["details"] = details

    if status_code >= 500:
        logger.error(f"[{error_id}] {code}: {message}")
    else:
        logger.info(f"[{error_id}] {code}: {message}")

    return JSONResponse(status_code=status_code, content=body, headers={"X-Error-ID": error_id})
