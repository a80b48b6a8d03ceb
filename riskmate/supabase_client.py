import os
import logging
from supabase import create_client, Client
from dotenv import load_dotenv
from jose import jwt, JWTError
from typing import Optional

load_dotenv()

logger = logging.getLogger(__name__)

SUPABASE_URL = os.environ.get("SUPABASE_URL") or os.environ.get("NEXT_PUBLIC_SUPABASE_URL")
SUPABASE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")  # Use service role for backend
SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY") or os.environ.get("NEXT_PUBLIC_SUPABASE_ANON_KEY")
SUPABASE_JWT_SECRET = os.environ.get("SUPABASE_JWT_SECRET")  # JWT secret for token verification

_client: Optional[Client] = None


def get_supabase() -> Client | None:
    """Get the Supabase client instance, creating it on first use."""
    global _client

    if _client is not None:
        return _client

    if not SUPABASE_URL:
        logger.warning("SUPABASE_URL not set. Supabase features will be disabled.")
        return None

    # Use service role key if available (full access), otherwise anon key
    key_to_use = SUPABASE_KEY or SUPABASE_ANON_KEY
    if not key_to_use:
        logger.warning("No Supabase key found. Supabase features will be disabled.")
        return None

    try:
        _client = create_client(SUPABASE_URL, key_to_use)
    except Exception as e:
        logger.error(f"Failed to create Supabase client: {e}")
        return None
    return _client


def verify_supabase_token(token: str) -> Optional[dict]:
    """
    Verify a Supabase JWT token and return the user data.
    Returns None if verification fails.

    When SUPABASE_JWT_SECRET is configured the signature and audience are
    checked; otherwise the claims are read unverified.
    """
    if not token:
        logger.debug("[Auth] No token provided")
        return None

    try:
        if SUPABASE_JWT_SECRET:
            decoded = jwt.decode(
                token,
                SUPABASE_JWT_SECRET,
                algorithms=["HS256"],
                audience="authenticated",
            )
        else:
            decoded = jwt.get_unverified_claims(token)
    except JWTError as decode_error:
        logger.warning(f"[Auth] JWT decode error: {decode_error}")
        return None

    user_id = decoded.get("sub")
    if not user_id:
        logger.warning("[Auth] No user_id (sub) in decoded token")
        return None

    return {
        "id": user_id,
        "email": decoded.get("email"),
        "role": decoded.get("role", "authenticated"),
    }


def get_user_record(user_id: str) -> dict | None:
    """Get the application user row (organization, role, archive state)."""
    supabase = get_supabase()
    if not supabase:
        return None

    try:
        response = supabase.table("users")\
            .select("id, organization_id, email, full_name, role, archived_at, account_status")\
            .eq("id", user_id)\
            .single()\
            .execute()
        return response.data
    except Exception as e:
        logger.warning(f"Error fetching user record {user_id}: {e}")
        return None
