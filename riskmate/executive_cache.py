"""
Executive Cache

In-memory TTL cache for executive risk-posture responses.
Keys are "executive:{org_id}:{time_range}"; material audit events drop every
entry for the affected organization.
"""

import logging
from typing import Any, Dict, Optional
from datetime import datetime

logger = logging.getLogger(__name__)

_posture_cache: Dict[str, Dict[str, Any]] = {}
_cache_timestamps: Dict[str, datetime] = {}
CACHE_TTL_SECONDS = 60


def cache_key(org_id: str, time_range: str) -> str:
    return f"executive:{org_id}:{time_range}"


def get_cached(org_id: str, time_range: str) -> Optional[Dict[str, Any]]:
    key = cache_key(org_id, time_range)
    cached_at = _cache_timestamps.get(key)
    if not cached_at:
        return None
    if (datetime.utcnow() - cached_at).total_seconds() >= CACHE_TTL_SECONDS:
        _posture_cache.pop(key, None)
        _cache_timestamps.pop(key, None)
        return None
    return _posture_cache.get(key)


def set_cached(org_id: str, time_range: str, payload: Dict[str, Any]):
    key = cache_key(org_id, time_range)
    _posture_cache[key] = payload
    _cache_timestamps[key] = datetime.utcnow()


def invalidate_executive_cache(org_id: Optional[str] = None):
    """
    Invalidate cached posture.

    Args:
        org_id: Specific org to invalidate, or None for all
    """
    if not org_id:
        _posture_cache.clear()
        _cache_timestamps.clear()
        return

    prefix = f"executive:{org_id}:"
    for key in [k for k in _posture_cache if k.startswith(prefix)]:
        _posture_cache.pop(key, None)
        _cache_timestamps.pop(key, None)
    logger.debug(f"Executive cache invalidated for org {org_id}")
