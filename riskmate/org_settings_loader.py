"""
Org Settings Loader

Provides cached access to organization governance settings.
Exports, the worker and the executive views read settings through here.
"""

import logging
from typing import Any, Dict, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

# In-memory cache with TTL
_settings_cache: Dict[str, Dict[str, Any]] = {}
_cache_timestamps: Dict[str, datetime] = {}
CACHE_TTL_SECONDS = 300  # 5 minutes


# Default settings (conservative fallbacks)
DEFAULT_SETTINGS = {
    "defaults": {
        "export_link_ttl_seconds": 3600,
        "document_link_ttl_seconds": 600,
        "ledger_export_max_rows": 1000,
        "high_risk_threshold": 75,
        "proof_pack_time_range": "30d",
    },
    "feature_flags": {
        "enable_proof_packs": True,
        "enable_ledger_roots": True,
        "enable_pdf_ledger_export": True,
    },
}


def get_org_settings(supabase, org_id: str, force_refresh: bool = False) -> Dict[str, Any]:
    """
    Get organization settings with caching.

    Args:
        supabase: Supabase client
        org_id: Organization ID
        force_refresh: If True, bypass cache

    Returns:
        Dict with keys: defaults, feature_flags
    """
    now = datetime.utcnow()

    if not force_refresh and org_id in _settings_cache:
        cache_time = _cache_timestamps.get(org_id)
        if cache_time and (now - cache_time).total_seconds() < CACHE_TTL_SECONDS:
            return _settings_cache[org_id]

    try:
        result = supabase.table("org_settings").select("*").eq("organization_id", org_id).limit(1).execute()
        if result.data:
            row = result.data[0]
            settings = {
                "defaults": {**DEFAULT_SETTINGS["defaults"], **(row.get("defaults") or {})},
                "feature_flags": {**DEFAULT_SETTINGS["feature_flags"], **(row.get("feature_flags") or {})},
            }
            _settings_cache[org_id] = settings
            _cache_timestamps[org_id] = now
            return settings
    except Exception as e:
        logger.warning(f"Failed to fetch org_settings for {org_id}: {e}")

    return {
        "defaults": dict(DEFAULT_SETTINGS["defaults"]),
        "feature_flags": dict(DEFAULT_SETTINGS["feature_flags"]),
    }


def get_default(supabase, org_id: str, key: str, fallback: Any = None) -> Any:
    """
    Get a specific default value from org settings.

    Args:
        supabase: Supabase client
        org_id: Organization ID
        key: Key in the defaults dict (e.g., "export_link_ttl_seconds")
        fallback: Value to return if key not found
    """
    defaults = get_org_settings(supabase, org_id).get("defaults", {})
    return defaults.get(key, fallback)


def get_feature_flag(supabase, org_id: str, flag: str, fallback: bool = False) -> bool:
    flags = get_org_settings(supabase, org_id).get("feature_flags", {})
    return bool(flags.get(flag, fallback))


def invalidate_cache(org_id: Optional[str] = None):
    """
    Invalidate settings cache.

    Args:
        org_id: Specific org to invalidate, or None for all
    """
    if org_id:
        _settings_cache.pop(org_id, None)
        _cache_timestamps.pop(org_id, None)
    else:
        _settings_cache.clear()
        _cache_timestamps.clear()
