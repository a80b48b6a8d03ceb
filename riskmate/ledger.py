"""
Ledger Integrity

Recomputes and verifies the per-organization hash chain on audit_logs.

Each row carries ledger_seq, hash and prev_hash. The hash is
sha256(canonical_json + (prev_hash or "") + salt) where canonical_json is the
event's identity fields in a fixed key order, pretty-printed with two-space
indentation. Daily ledger roots summarise one UTC day of hashes per org.
"""

import os
import json
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from riskmate.org_settings_loader import get_feature_flag

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_SALT = "riskmate-ledger-v1-2025"
MAX_CHAIN_DEPTH = 10


def get_ledger_salt() -> str:
    return os.environ.get("LEDGER_HASH_SALT") or DEFAULT_LEDGER_SALT


def canonical_ledger_json(
    seq: int,
    org_id: str,
    actor_id: Optional[str],
    event_name: str,
    target_type: str,
    target_id: Optional[str],
    created_at: str,
    metadata: Optional[Dict[str, Any]],
) -> str:
    canonical = {
        "seq": seq,
        "org_id": str(org_id),
        "actor_id": str(actor_id) if actor_id else "",
        "event": event_name,
        "target_type": target_type,
        "target_id": str(target_id) if target_id else "",
        "created_at": str(created_at),
        "metadata": metadata or {},
    }
    return json.dumps(canonical, indent=2, ensure_ascii=False)


def compute_ledger_hash(
    prev_hash: Optional[str],
    seq: int,
    org_id: str,
    actor_id: Optional[str],
    event_name: str,
    target_type: str,
    target_id: Optional[str],
    metadata: Optional[Dict[str, Any]],
    created_at: str,
    salt: Optional[str] = None,
) -> str:
    """Compute the chained hash for a single ledger row."""
    canonical = canonical_ledger_json(seq, org_id, actor_id, event_name, target_type, target_id, created_at, metadata)
    hash_input = canonical + (prev_hash or "") + (salt or get_ledger_salt())
    return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()


def compute_event_hash(event: Dict[str, Any], salt: Optional[str] = None) -> str:
    return compute_ledger_hash(
        event.get("prev_hash"),
        event.get("ledger_seq") or 0,
        event.get("organization_id"),
        event.get("actor_id"),
        event.get("event_name"),
        event.get("target_type"),
        event.get("target_id"),
        event.get("metadata"),
        event.get("created_at"),
        salt=salt,
    )


def verify_event(event: Dict[str, Any], prev_event: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Check one row's stored hash and its link to the previous row."""
    computed = compute_event_hash(event)
    prev_hash = event.get("prev_hash")
    return {
        "stored_hash": event.get("hash"),
        "computed_hash": computed,
        "hash_matches": event.get("hash") == computed,
        "prev_hash": prev_hash,
        "prev_exists": prev_event is not None,
        "prev_hash_valid": not prev_hash or (prev_event is not None and prev_event.get("hash") == prev_hash),
    }


@dataclass
class ChainVerification:
    ok: bool = True
    checked: int = 0
    first_broken_seq: Optional[int] = None
    errors: List[str] = field(default_factory=list)

    def fail(self, seq: Optional[int], message: str):
        self.ok = False
        if self.first_broken_seq is None:
            self.first_broken_seq = seq
        self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "checked": self.checked,
            "first_broken_seq": self.first_broken_seq,
            "errors": self.errors,
        }


def verify_chain(events: List[Dict[str, Any]]) -> ChainVerification:
    """
    Verify a contiguous run of one organization's ledger rows.
    The first row's prev_hash is trusted since its predecessor is outside the range.
    """
    result = ChainVerification()
    ordered = sorted(events, key=lambda e: e.get("ledger_seq") or 0)
    previous: Optional[Dict[str, Any]] = None

    for event in ordered:
        seq = event.get("ledger_seq")
        result.checked += 1

        if compute_event_hash(event) != event.get("hash"):
            result.fail(seq, f"seq {seq}: stored hash does not match recomputed hash")

        if previous is not None:
            if (seq or 0) <= (previous.get("ledger_seq") or 0):
                result.fail(seq, f"seq {seq}: sequence is not strictly increasing")
            if event.get("prev_hash") != previous.get("hash"):
                result.fail(seq, f"seq {seq}: prev_hash does not link to seq {previous.get('ledger_seq')}")

        previous = event

    return result


def ledger_status(events: List[Dict[str, Any]]) -> str:
    """
    verified | broken | not_verified (rows carry no hashes).

    Export rows are usually a filtered, non-contiguous slice of the ledger, so
    every row's own hash is recomputed but prev_hash is only checked between
    rows whose ledger_seq values are adjacent.
    """
    hashed = sorted((e for e in events if e.get("hash")), key=lambda e: e.get("ledger_seq") or 0)
    if not hashed:
        return "not_verified"

    previous: Optional[Dict[str, Any]] = None
    for event in hashed:
        if compute_event_hash(event) != event.get("hash"):
            return "broken"
        seq = event.get("ledger_seq")
        if previous is not None and seq is not None and seq == (previous.get("ledger_seq") or 0) + 1:
            if event.get("prev_hash") != previous.get("hash"):
                return "broken"
        previous = event
    return "verified"


# =============================================================================
# DATABASE ACCESS
# =============================================================================

LEDGER_COLUMNS = "id, organization_id, actor_id, event_name, target_type, target_id, metadata, created_at, ledger_seq, hash, prev_hash"


def fetch_chain_segment(
    supabase,
    org_id: str,
    limit: int = 500,
    before_seq: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Fetch the newest `limit` hashed rows (optionally before a sequence), oldest first."""
    query = supabase.table("audit_logs")\
        .select(LEDGER_COLUMNS)\
        .eq("organization_id", org_id)\
        .not_.is_("ledger_seq", "null")
    if before_seq is not None:
        query = query.lt("ledger_seq", before_seq)
    result = query.order("ledger_seq", desc=True).limit(limit).execute()
    return list(reversed(result.data or []))


def walk_chain(supabase, org_id: str, event: Dict[str, Any], max_depth: int = MAX_CHAIN_DEPTH) -> Dict[str, Any]:
    """Follow prev_hash links backwards up to max_depth rows."""
    depth = 0
    chain_ok = True
    current = event

    while current.get("prev_hash") and depth < max_depth:
        result = supabase.table("audit_logs")\
            .select(LEDGER_COLUMNS)\
            .eq("organization_id", org_id)\
            .eq("hash", current["prev_hash"])\
            .limit(1)\
            .execute()
        rows = result.data or []
        if not rows:
            chain_ok = False
            break
        prev = rows[0]
        if compute_event_hash(prev) != prev.get("hash"):
            chain_ok = False
            break
        current = prev
        depth += 1

    return {"chain_ok": chain_ok, "chain_depth_checked": depth}


# =============================================================================
# DAILY ROOTS
# =============================================================================

def compute_root_hash(hashes: List[str]) -> str:
    return hashlib.sha256("".join(sorted(hashes)).encode("utf-8")).hexdigest()


def _day_bounds(day: date):
    start = datetime(day.year, day.month, day.day)
    return start.isoformat() + "Z", (start + timedelta(days=1)).isoformat() + "Z"


def compute_org_daily_root(supabase, org_id: str, day: date) -> Optional[Dict[str, Any]]:
    """Compute and upsert the ledger root for one org and UTC day. None if the day is empty."""
    start, end = _day_bounds(day)
    result = supabase.table("audit_logs")\
        .select("id, hash, ledger_seq")\
        .eq("organization_id", org_id)\
        .gte("created_at", start)\
        .lt("created_at", end)\
        .not_.is_("hash", "null")\
        .order("ledger_seq")\
        .execute()
    events = result.data or []
    if not events:
        return None

    root = {
        "organization_id": org_id,
        "date": day.isoformat(),
        "root_hash": compute_root_hash([e["hash"] for e in events]),
        "event_count": len(events),
        "first_event_id": events[0]["id"],
        "last_event_id": events[-1]["id"],
        "first_seq": events[0].get("ledger_seq"),
        "last_seq": events[-1].get("ledger_seq"),
        "computed_at": datetime.utcnow().isoformat(),
    }
    supabase.table("ledger_roots").upsert(root, on_conflict="organization_id,date").execute()
    return root


def compute_daily_roots(supabase, day: Optional[date] = None) -> Dict[str, Any]:
    """Compute roots for every organization; defaults to yesterday (UTC)."""
    day = day or (datetime.utcnow().date() - timedelta(days=1))
    orgs = supabase.table("organizations").select("id").execute().data or []

    computed, failed = 0, 0
    for org in orgs:
        try:
            if not get_feature_flag(supabase, org["id"], "enable_ledger_roots", fallback=True):
                continue
            if compute_org_daily_root(supabase, org["id"], day):
                computed += 1
        except Exception as e:
            failed += 1
            logger.error(f"Ledger root failed for org {org['id']} on {day}: {e}")

    logger.info(f"Ledger roots for {day}: {computed} computed, {failed} failed, {len(orgs)} orgs")
    return {"date": day.isoformat(), "computed": computed, "failed": failed, "organizations": len(orgs)}
